from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from tenantauth.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _split_csv(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return [str(item).strip() for item in value if str(item).strip()]


class Settings(BaseModel):
    """Process-wide settings for the authentication service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/tenantauth", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/tenantauth", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(
        False,
        "ALLOW_REDIS_FALLBACK_DEV",
        description="Permit running without Redis; rate limits become per-process",
    )
    test_mode: bool = env_field(False, "TEST_MODE")

    # Token signing
    jwt_secret: str | None = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_previous_secrets: list[str] = env_field(
        [],
        "JWT_PREVIOUS_SECRETS",
        description="Retired signing secrets still accepted for verification",
    )
    jwt_issuer: str = env_field("tenantauth", "JWT_ISSUER")
    jwt_audience: str = env_field("tenantauth-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(30, "ACCESS_TOKEN_TTL_MINUTES", ge=1)
    refresh_token_ttl_minutes: int = env_field(
        60 * 24 * 7, "REFRESH_TOKEN_TTL_MINUTES", ge=1
    )
    refresh_token_pepper: str | None = env_field(
        None,
        "REFRESH_TOKEN_PEPPER",
        description="HMAC key for stored refresh token hashes (defaults to JWT secret)",
    )

    # Lockout
    max_login_attempts: int = env_field(5, "MAX_LOGIN_ATTEMPTS", ge=1)
    lockout_duration_minutes: int = env_field(15, "LOCKOUT_DURATION_MINUTES", ge=1)

    # One-time password reset
    otp_length: int = env_field(6, "OTP_LENGTH", ge=4, le=10)
    otp_ttl_minutes: int = env_field(5, "OTP_TTL_MINUTES", ge=1)
    otp_max_attempts: int = env_field(3, "OTP_MAX_ATTEMPTS", ge=1)
    otp_dispatch_timeout_seconds: float = env_field(
        5.0, "OTP_DISPATCH_TIMEOUT_SECONDS", gt=0
    )

    # Sessions
    single_device_sessions: bool = env_field(
        True,
        "SINGLE_DEVICE_SESSIONS",
        description="Revoke prior sessions on login (institutions may override)",
    )

    # Tenant resolution
    platform_domain: str = env_field("scholarbridgelms", "PLATFORM_DOMAIN")
    reserved_subdomains: list[str] = env_field(["www", "api"], "RESERVED_SUBDOMAINS")
    # Session routes stay reachable for platform accounts, whose tokens carry no tenant
    tenantless_paths: list[str] = env_field(
        [
            "/health",
            "/super-admin",
            "/auth/super-admin",
            "/auth/refresh-token",
            "/auth/logout",
            "/auth/change-password",
            "/auth/me",
            "/auth/sessions",
        ],
        "TENANTLESS_PATHS",
    )

    # Rate limits
    login_rate_limit_per_minute: int = env_field(20, "LOGIN_RATE_LIMIT_PER_MINUTE", ge=1)
    reset_rate_limit_per_minute: int = env_field(5, "RESET_RATE_LIMIT_PER_MINUTE", ge=1)

    # Email delivery
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("ScholarBridge", "EMAIL_FROM_NAME")

    # SMS delivery
    msg91_api_key: str | None = env_field(None, "MSG91_API_KEY")
    msg91_sender_id: str | None = env_field(None, "MSG91_SENDER_ID")
    msg91_template_id: str | None = env_field(None, "MSG91_TEMPLATE_ID")
    two_factor_api_key: str | None = env_field(None, "TWO_FACTOR_API_KEY")

    cors_allow_origins: list[str] = env_field(
        ["http://localhost:3000", "http://localhost:5173"], "CORS_ALLOW_ORIGINS"
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator(
        "jwt_previous_secrets",
        "reserved_subdomains",
        "tenantless_paths",
        "cors_allow_origins",
        mode="before",
    )
    @classmethod
    def _parse_csv(cls, value: Any) -> list[str]:
        return _split_csv(value)

    @field_validator("reserved_subdomains")
    @classmethod
    def _lower_labels(cls, value: list[str]) -> list[str]:
        return [label.lower() for label in value]

    @field_validator("platform_domain")
    @classmethod
    def _lower_domain(cls, value: str) -> str:
        return value.strip().lower()

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so tokens survive restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/tenantauth"))
        secret_path = fs_root / ".jwt_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            # Directory may be owned by another user (e.g., container volume)
            pass
        except OSError as exc:
            logger.warning(
                "jwt_secret_dir_setup",
                error=str(exc),
                path=str(fs_root),
            )

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error(
                    "jwt_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".jwt_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path is not None:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass
            logger.error(
                "jwt_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET env var or make SHARED_FS_ROOT writable"
            ) from exc
        return generated

    @model_validator(mode="after")
    def _default_pepper(self) -> "Settings":
        if not self.refresh_token_pepper:
            self.refresh_token_pepper = self.jwt_secret
        return self

    @property
    def verification_secrets(self) -> list[str]:
        """Current signing secret first, then retired ones."""
        return [self.jwt_secret, *self.jwt_previous_secrets]


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
