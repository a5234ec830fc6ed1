from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from tenantauth.api.error_handling import error_response, register_exception_handlers
from tenantauth.api.routes import router
from tenantauth.config import get_settings
from tenantauth.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup and release pools on shutdown."""
    from tenantauth.service.runtime import get_runtime

    get_runtime()
    yield
    try:
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="TenantAuth", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    return get_settings().cors_allow_origins


@app.middleware("http")
async def resolve_tenant(request: Request, call_next):
    """Attach the institution named by the Host header before any route runs.

    Requests whose host cannot be resolved are answered here, so routes never
    see a request without a settled ``request.state.tenant``.
    """
    if request.method.upper() == "OPTIONS":
        return await call_next(request)
    from tenantauth.service.runtime import get_runtime

    runtime = get_runtime()
    host = request.headers.get("host") or request.headers.get("x-forwarded-host")
    resolved = runtime.auth.tenants.resolve(host, request.url.path)
    if not resolved.ok:
        error = resolved.to_error()
        logger.info(
            "tenant_resolution_failed",
            host=host,
            path=request.url.path,
            error_code=error.error_code,
        )
        return error_response(error.status_code, error.message, code=error.error_code)
    request.state.tenant = resolved.value
    return await call_next(request)


@app.middleware("http")
async def add_correlation_id(request: Request, call_next):
    """Bind X-Request-ID (or a fresh id) to the logging context and echo it back."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/auth/"):
        response.headers.setdefault("Cache-Control", "no-store")
    if request.url.scheme == "https":
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    return response


# Outermost, so tenant-resolution failures carry CORS headers too
app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID", "Retry-After"],
    max_age=3600,
)

register_exception_handlers(app)
app.include_router(router)


@app.get("/health")
async def health() -> Dict[str, Any]:
    """Report store and cache reachability, each probe bounded in time."""
    from tenantauth.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}

    async def _run_bounded(label: str, func) -> bool:
        try:
            await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
            return True
        except asyncio.TimeoutError:
            logger.error(
                "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
            )
        except Exception as exc:
            logger.error("health_check_failed", component=label, error=str(exc))
        return False

    db_ok = await _run_bounded("database", runtime.store.verify_connection)
    checks["database"] = {
        "status": "healthy" if db_ok else "unhealthy",
        "type": "memory" if runtime.settings.use_memory_store else "postgres",
    }

    healthy = db_ok
    if runtime.cache is not None:
        cache_ok = await _run_bounded("redis", runtime.cache.verify_connection)
        checks["redis"] = {"status": "healthy" if cache_ok else "unhealthy"}
        healthy = healthy and cache_ok
    else:
        checks["redis"] = {"status": "not_configured"}

    return {
        "success": healthy,
        "message": "healthy" if healthy else "unhealthy",
        "data": {
            "checks": checks,
            "version": __version__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
    }
