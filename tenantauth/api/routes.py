from __future__ import annotations

import asyncio
from typing import Callable, Optional

from fastapi import APIRouter, Depends, Header, Request

from tenantauth.api.schemas import (
    ChangePasswordRequest,
    CompleteProfileRequest,
    Envelope,
    ForgotPasswordRequest,
    LoginRequest,
    LogoutRequest,
    RefreshTokenRequest,
    ResetPasswordRequest,
    UpdateProfileRequest,
    login_payload,
    session_payload,
    token_payload,
    user_payload,
)
from tenantauth.logging import get_logger
from tenantauth.service.errors import ForbiddenError, RateLimitedError
from tenantauth.service.gate import (
    ANY_STATE_RULES,
    CHANGE_PASSWORD_RULES,
    COMPLETE_PROFILE_RULES,
    DEFAULT_RULES,
    GateRules,
    Principal,
)
from tenantauth.service.runtime import check_rate_limit, get_runtime
from tenantauth.service.sessions import ClientInfo
from tenantauth.service.tenants import TenantContext

logger = get_logger(__name__)

router = APIRouter()

FORGOT_PASSWORD_MESSAGE = "If the account exists, you will receive a reset code"


def _client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip() or None
    return request.client.host if request.client else None


def _client_info(request: Request, device_name: Optional[str] = None) -> ClientInfo:
    user_agent = request.headers.get("user-agent")
    return ClientInfo(
        ip_addr=_client_ip(request),
        user_agent=user_agent[:512] if user_agent else None,
        device_name=device_name,
    )


def _tenant(request: Request) -> TenantContext:
    tenant = getattr(request.state, "tenant", None)
    if tenant is None:
        runtime = get_runtime()
        host = request.headers.get("host") or request.headers.get("x-forwarded-host")
        tenant = runtime.auth.tenants.resolve(host, request.url.path).unwrap()
        request.state.tenant = tenant
    return tenant


def _tenant_key(tenant: TenantContext) -> str:
    return tenant.institution_id or "platform"


async def _enforce_rate_limit(runtime, key: str, limit: int, window_seconds: int = 60) -> None:
    allowed, _remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    if not allowed:
        logger.warning("rate_limited", key=key, retry_after=reset_seconds)
        raise RateLimitedError(
            "Too many requests", detail={"retryAfterSeconds": max(reset_seconds, 1)}
        )


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, value = authorization.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    return value.strip() or None


def _principal_dependency(rules: GateRules) -> Callable:
    async def dependency(
        request: Request, authorization: Optional[str] = Header(None)
    ) -> Principal:
        runtime = get_runtime()
        principal = runtime.auth.authenticate(
            _bearer_token(authorization),
            _tenant(request),
            rules,
            ip_addr=_client_ip(request),
        ).unwrap()
        request.state.principal = principal
        return principal

    return dependency


get_principal = _principal_dependency(DEFAULT_RULES)
get_any_state_principal = _principal_dependency(ANY_STATE_RULES)
get_password_change_principal = _principal_dependency(CHANGE_PASSWORD_RULES)
get_profile_principal = _principal_dependency(COMPLETE_PROFILE_RULES)


def require_roles(*roles: str) -> Callable:
    """Dependency admitting only principals holding one of ``roles``."""

    async def dependency(principal: Principal = Depends(get_principal)) -> Principal:
        if not principal.capabilities.has_role(roles):
            raise ForbiddenError("Insufficient permissions", detail={"requiredRoles": list(roles)})
        return principal

    return dependency


def require_permission(permission: str) -> Callable:
    """Dependency admitting only principals granted ``permission``."""

    async def dependency(principal: Principal = Depends(get_principal)) -> Principal:
        if not principal.capabilities.has_permission(permission):
            raise ForbiddenError(
                "Insufficient permissions", detail={"requiredPermission": permission}
            )
        return principal

    return dependency


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    """Authenticate with username, email or phone inside the request's institution.

    Raises:
        401: Invalid credentials (also for unknown or disabled accounts)
        423: Account locked, with ``retryAfterSeconds``
        429: Rate limit exceeded for this identifier
    """
    runtime = get_runtime()
    tenant = _tenant(request)
    await _enforce_rate_limit(
        runtime,
        f"login:{_tenant_key(tenant)}:{body.identifier.lower()}",
        runtime.settings.login_rate_limit_per_minute,
    )
    result = await asyncio.to_thread(
        runtime.auth.login,
        tenant,
        body.identifier,
        body.password,
        _client_info(request, body.device_name),
    )
    outcome = result.unwrap()
    return Envelope(
        success=True,
        message="Login successful",
        data=login_payload(outcome.account, outcome.issued.tokens),
    )


@router.post(
    "/auth/super-admin/login",
    response_model=Envelope,
    tags=["auth"],
)
async def super_admin_login(body: LoginRequest, request: Request):
    """Platform login for super-admin accounts; only on hosts without an institution."""
    runtime = get_runtime()
    tenant = _tenant(request)
    await _enforce_rate_limit(
        runtime,
        f"login:platform:{body.identifier.lower()}",
        runtime.settings.login_rate_limit_per_minute,
    )
    result = await asyncio.to_thread(
        runtime.auth.super_admin_login,
        tenant,
        body.identifier,
        body.password,
        _client_info(request, body.device_name),
    )
    outcome = result.unwrap()
    return Envelope(
        success=True,
        message="Login successful",
        data=login_payload(outcome.account, outcome.issued.tokens),
    )


@router.post("/auth/refresh-token", response_model=Envelope, tags=["auth"])
async def refresh_token(body: RefreshTokenRequest, request: Request):
    """Exchange a refresh token for a new pair; the presented token is spent.

    Raises:
        401: Token invalid, expired, or already used (the whole chain is then revoked)
    """
    runtime = get_runtime()
    outcome = runtime.auth.refresh(
        _tenant(request), body.refresh_token, _client_info(request)
    ).unwrap()
    return Envelope(
        success=True,
        message="Token refreshed",
        data=token_payload(outcome.issued.tokens),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    body: Optional[LogoutRequest] = None,
    principal: Principal = Depends(get_any_state_principal),
):
    runtime = get_runtime()
    revoked = runtime.auth.logout(principal, body.refresh_token if body else None)
    return Envelope(
        success=True, message="Logged out successfully", data={"revokedSessions": revoked}
    )


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(request: Request, principal: Principal = Depends(get_any_state_principal)):
    runtime = get_runtime()
    revoked = runtime.auth.logout_all(principal, ip_addr=_client_ip(request))
    return Envelope(
        success=True,
        message="Logged out from all devices",
        data={"revokedSessions": revoked},
    )


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: ForgotPasswordRequest, request: Request):
    """Start an OTP reset. The reply is identical whether or not the account exists."""
    runtime = get_runtime()
    tenant = _tenant(request)
    await _enforce_rate_limit(
        runtime,
        f"forgot:{_tenant_key(tenant)}:{body.identifier.lower()}",
        runtime.settings.reset_rate_limit_per_minute,
    )
    method = (await runtime.auth.forgot_password(tenant, body.identifier)).unwrap()
    return Envelope(success=True, message=FORGOT_PASSWORD_MESSAGE, data={"method": method})


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: ResetPasswordRequest, request: Request):
    """Set a new password with the emailed or texted code; logs out every session.

    Raises:
        400: Code invalid or expired, or the new password fails policy
        429: Attempts exhausted (a new code must be requested) or rate limited
    """
    runtime = get_runtime()
    tenant = _tenant(request)
    await _enforce_rate_limit(
        runtime,
        f"reset:{_tenant_key(tenant)}:{body.identifier.lower()}",
        runtime.settings.reset_rate_limit_per_minute,
    )
    await asyncio.to_thread(
        lambda: runtime.auth.reset_password(
            tenant,
            body.identifier,
            body.otp,
            body.new_password,
            ip_addr=_client_ip(request),
        ).unwrap()
    )
    return Envelope(success=True, message="Password reset successful. Please log in")


@router.post("/auth/change-password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: ChangePasswordRequest,
    request: Request,
    principal: Principal = Depends(get_password_change_principal),
):
    """Replace the password; other sessions end, the caller's chain stays valid."""
    runtime = get_runtime()
    account = await asyncio.to_thread(
        lambda: runtime.auth.change_password(
            principal,
            body.current_password,
            body.new_password,
            ip_addr=_client_ip(request),
        ).unwrap()
    )
    return Envelope(
        success=True,
        message="Password changed successfully",
        data={"user": user_payload(account)},
    )


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def get_me(principal: Principal = Depends(get_any_state_principal)):
    return Envelope(
        success=True,
        message="Profile retrieved",
        data={
            "user": user_payload(principal.account),
            "capabilities": {
                "role": principal.capabilities.role,
                "permissions": sorted(principal.capabilities.permissions),
            },
        },
    )


@router.put("/auth/me", response_model=Envelope, tags=["auth"])
async def update_me(body: UpdateProfileRequest, principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    account = runtime.auth.update_profile(principal, **body.changes()).unwrap()
    return Envelope(success=True, message="Profile updated", data={"user": user_payload(account)})


@router.post("/auth/complete-profile", response_model=Envelope, tags=["auth"])
async def complete_profile(
    body: CompleteProfileRequest, principal: Principal = Depends(get_profile_principal)
):
    runtime = get_runtime()
    account = runtime.auth.complete_profile(principal, **body.changes()).unwrap()
    return Envelope(success=True, message="Profile completed", data={"user": user_payload(account)})


@router.get("/auth/sessions", response_model=Envelope, tags=["auth"])
async def list_sessions(principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    sessions = runtime.auth.list_sessions(principal)
    return Envelope(
        success=True,
        message="Active sessions",
        data={
            "sessions": [
                session_payload(s, current_family_id=principal.family_id) for s in sessions
            ]
        },
    )
