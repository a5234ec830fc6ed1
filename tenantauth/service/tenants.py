from __future__ import annotations

import ipaddress
from dataclasses import dataclass
from typing import Optional, Protocol

from tenantauth.config import Settings
from tenantauth.logging import get_logger
from tenantauth.service.errors import AuthResult, ErrorKind
from tenantauth.storage.models import Institution

logger = get_logger(__name__)

HOST_SUBDOMAIN = "subdomain"
HOST_CUSTOM_DOMAIN = "custom_domain"
HOST_NONE = "none"


class InstitutionDirectory(Protocol):
    def get_institution_by_subdomain(self, subdomain: str) -> Optional[Institution]: ...

    def get_institution_by_domain(self, domain: str) -> Optional[Institution]: ...


@dataclass(frozen=True)
class HostClassification:
    kind: str
    value: Optional[str] = None


@dataclass(frozen=True)
class TenantContext:
    """Tenant resolved for one request; ``institution`` is None when tenant-less."""

    host: str
    institution: Optional[Institution] = None

    @property
    def institution_id(self) -> Optional[str]:
        return self.institution.id if self.institution else None

    @property
    def is_tenantless(self) -> bool:
        return self.institution is None


def normalize_host(raw_host: Optional[str]) -> str:
    """Lower-case the host and drop any port, handling bracketed IPv6."""
    if not raw_host:
        return ""
    host = raw_host.split(",")[0].strip().lower()
    if host.startswith("["):
        end = host.find("]")
        return host[1:end] if end != -1 else host
    if host.count(":") == 1:
        host = host.split(":", 1)[0]
    return host.rstrip(".")


def _is_ip(host: str) -> bool:
    try:
        ipaddress.ip_address(host)
    except ValueError:
        return False
    return True


class TenantResolver:
    """Maps an inbound host and path onto an active institution."""

    def __init__(self, store: InstitutionDirectory, settings: Settings) -> None:
        self.store = store
        self.settings = settings

    def classify_host(self, host: str) -> HostClassification:
        if not host or _is_ip(host):
            return HostClassification(HOST_NONE)
        parts = host.split(".")
        platform = self.settings.platform_domain
        reserved = set(self.settings.reserved_subdomains)

        if len(parts) >= 3 and parts[-2] == platform:
            label = parts[0]
            if label in reserved:
                return HostClassification(HOST_NONE)
            return HostClassification(HOST_SUBDOMAIN, label)
        if parts[-1] == "localhost" or host.endswith(".127.0.0.1"):
            if len(parts) < 2 or parts[0] in reserved:
                return HostClassification(HOST_NONE)
            return HostClassification(HOST_SUBDOMAIN, parts[0])
        if len(parts) == 2 or (len(parts) == 3 and parts[0] == "www"):
            return HostClassification(HOST_CUSTOM_DOMAIN, host)
        return HostClassification(HOST_NONE)

    def is_tenantless_path(self, path: str) -> bool:
        return any(path.startswith(prefix) for prefix in self.settings.tenantless_paths)

    def resolve(self, raw_host: Optional[str], path: str) -> AuthResult[TenantContext]:
        host = normalize_host(raw_host)
        tenantless_ok = self.is_tenantless_path(path)
        if not host:
            if tenantless_ok:
                return AuthResult.success(TenantContext(host=""))
            return AuthResult.failure(
                ErrorKind.TENANT_REQUIRED, "Host header is required"
            )

        classification = self.classify_host(host)
        institution: Optional[Institution] = None
        if classification.kind == HOST_SUBDOMAIN:
            institution = self.store.get_institution_by_subdomain(classification.value)
            if institution is None or not institution.is_active:
                logger.warning(
                    "tenant_not_found",
                    host=host,
                    subdomain=classification.value,
                    inactive=institution is not None,
                )
                return AuthResult.failure(ErrorKind.TENANT_NOT_FOUND)
        elif classification.kind == HOST_CUSTOM_DOMAIN:
            institution = self.store.get_institution_by_domain(classification.value)
            if institution is not None and not institution.is_active:
                logger.warning("tenant_inactive_domain", host=host)
                return AuthResult.failure(ErrorKind.TENANT_NOT_FOUND)

        if institution is None and not tenantless_ok:
            return AuthResult.failure(ErrorKind.TENANT_REQUIRED)
        return AuthResult.success(TenantContext(host=host, institution=institution))
