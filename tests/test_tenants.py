"""Tests for host classification and tenant resolution."""

import pytest

from tenantauth.service.errors import ErrorKind
from tenantauth.service.tenants import (
    HOST_CUSTOM_DOMAIN,
    HOST_NONE,
    HOST_SUBDOMAIN,
    TenantResolver,
    normalize_host,
)


@pytest.fixture
def resolver(memory_store, settings):
    return TenantResolver(memory_store, settings)


class TestNormalizeHost:
    """Host header normalization."""

    def test_strips_port_and_lowercases(self):
        """Ports are dropped and the host is lower-cased."""
        assert normalize_host("Demo.ScholarBridgeLMS.com:8443") == "demo.scholarbridgelms.com"

    def test_takes_first_forwarded_host(self):
        """A comma-separated forwarded list resolves to its first entry."""
        assert normalize_host("a.example.com, proxy.internal") == "a.example.com"

    def test_bracketed_ipv6(self):
        """Bracketed IPv6 literals lose brackets and port."""
        assert normalize_host("[::1]:8000") == "::1"

    def test_empty(self):
        """Missing host normalizes to an empty string."""
        assert normalize_host(None) == ""
        assert normalize_host("") == ""


class TestClassifyHost:
    """Host shape to classification."""

    def test_platform_subdomain(self, resolver):
        """<label>.<platform>.<tld> yields the label."""
        result = resolver.classify_host("demo.scholarbridgelms.com")
        assert result.kind == HOST_SUBDOMAIN
        assert result.value == "demo"

    def test_reserved_label_is_tenantless(self, resolver):
        """Reserved labels such as www do not name an institution."""
        assert resolver.classify_host("www.scholarbridgelms.com").kind == HOST_NONE
        assert resolver.classify_host("api.scholarbridgelms.com").kind == HOST_NONE

    def test_localhost_subdomain(self, resolver):
        """demo.localhost yields subdomain demo."""
        result = resolver.classify_host("demo.localhost")
        assert result.kind == HOST_SUBDOMAIN
        assert result.value == "demo"

    def test_loopback_subdomain(self, resolver):
        """demo.127.0.0.1 yields subdomain demo for local development."""
        result = resolver.classify_host("demo.127.0.0.1")
        assert result.kind == HOST_SUBDOMAIN
        assert result.value == "demo"
        assert resolver.classify_host("www.127.0.0.1").kind == HOST_NONE

    def test_bare_localhost_and_ip(self, resolver):
        """Bare localhost and IP literals are tenant-less."""
        assert resolver.classify_host("localhost").kind == HOST_NONE
        assert resolver.classify_host("127.0.0.1").kind == HOST_NONE

    def test_custom_domain_shapes(self, resolver):
        """Two-label hosts and www.<name>.<tld> are custom domains."""
        assert resolver.classify_host("college.edu").kind == HOST_CUSTOM_DOMAIN
        www = resolver.classify_host("www.college.edu")
        assert www.kind == HOST_CUSTOM_DOMAIN
        assert www.value == "www.college.edu"

    def test_deep_foreign_host_is_tenantless(self, resolver):
        """Other multi-label hosts are not classified."""
        assert resolver.classify_host("a.b.example.org").kind == HOST_NONE


class TestResolve:
    """Resolution against the institution directory."""

    def test_resolves_active_subdomain(self, resolver, institution):
        """An active institution is attached to the context."""
        result = resolver.resolve("demo.scholarbridgelms.com", "/auth/login")
        assert result.ok
        assert result.value.institution_id == institution.id

    def test_unknown_subdomain_is_not_found(self, resolver):
        """A subdomain with no institution fails with TenantNotFound."""
        result = resolver.resolve("ghost.scholarbridgelms.com", "/auth/login")
        assert not result.ok
        assert result.kind == ErrorKind.TENANT_NOT_FOUND

    def test_inactive_institution_is_not_found(self, resolver, memory_store, institution):
        """Deactivated institutions resolve like unknown ones."""
        memory_store.set_institution_active(institution.id, False)
        result = resolver.resolve("demo.localhost", "/auth/login")
        assert result.kind == ErrorKind.TENANT_NOT_FOUND

    def test_custom_domain_lookup(self, resolver, memory_store):
        """A custom domain maps to its institution by full host."""
        inst = memory_store.create_institution("Other", "other", custom_domain="college.edu")
        result = resolver.resolve("college.edu:443", "/auth/login")
        assert result.ok
        assert result.value.institution_id == inst.id

    def test_unmatched_custom_domain_requires_tenant(self, resolver):
        """Unknown custom domains are tenant-less, so tenant routes fail."""
        result = resolver.resolve("unknown.edu", "/auth/login")
        assert result.kind == ErrorKind.TENANT_REQUIRED

    def test_tenantless_path_allowed_without_tenant(self, resolver):
        """Allow-listed prefixes succeed with no institution."""
        result = resolver.resolve("www.scholarbridgelms.com", "/auth/super-admin/login")
        assert result.ok
        assert result.value.is_tenantless

    def test_session_routes_allowed_without_tenant(self, resolver):
        """Platform accounts reach refresh, logout and password change on bare hosts."""
        for path in ("/auth/refresh-token", "/auth/logout-all", "/auth/change-password", "/auth/me"):
            assert resolver.resolve("localhost", path).ok
        assert resolver.resolve("localhost", "/auth/forgot-password").kind == ErrorKind.TENANT_REQUIRED

    def test_missing_host(self, resolver):
        """No host at all is TenantRequired unless the path is allow-listed."""
        missing = resolver.resolve(None, "/auth/login")
        assert missing.kind == ErrorKind.TENANT_REQUIRED
        assert missing.message == "Host header is required"
        assert resolver.resolve(None, "/health").ok
