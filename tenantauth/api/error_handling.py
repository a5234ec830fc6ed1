from __future__ import annotations

from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from tenantauth.api.schemas import Envelope, ErrorDetail
from tenantauth.logging import get_logger
from tenantauth.service.errors import ServiceError
from tenantauth.storage.errors import ConstraintViolation

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "VALIDATION_ERROR",
    401: "TOKEN_INVALID",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    423: "ACCOUNT_LOCKED",
    429: "RATE_LIMITED",
    500: "INTERNAL_ERROR",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "INTERNAL_ERROR")


def error_response(
    status_code: int,
    message: str,
    *,
    code: Optional[str] = None,
    data: Optional[dict] = None,
    field: Optional[str] = None,
    errors: Optional[list[ErrorDetail]] = None,
) -> JSONResponse:
    """Render a failure envelope; the stable code always leads ``errors``."""
    error_code = code or _error_code_for_status(status_code)
    details = [ErrorDetail(code=error_code, message=message, field=field)]
    if errors:
        details.extend(errors)
    envelope = Envelope(success=False, message=message, data=data or None, errors=details)
    headers = None
    retry_after = (data or {}).get("retryAfterSeconds")
    if retry_after is not None:
        headers = {"Retry-After": str(retry_after)}
    return JSONResponse(
        status_code=status_code,
        content=envelope.model_dump(exclude_none=True),
        headers=headers,
    )


def _validation_message(error: dict[str, Any]) -> str:
    message = str(error.get("msg", "Invalid value"))
    prefix = "Value error, "
    return message[len(prefix):] if message.startswith(prefix) else message


def _validation_field(error: dict[str, Any]) -> Optional[str]:
    loc = [str(part) for part in error.get("loc", ()) if part not in ("body", "query", "header")]
    return ".".join(loc) or None


def register_exception_handlers(app: FastAPI) -> None:
    """Install the handlers that turn every failure into the uniform envelope."""

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
        )
        detail = dict(exc.detail or {})
        field = detail.pop("field", None)
        return error_response(
            exc.status_code, exc.message, code=exc.error_code, data=detail, field=field
        )

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            field=exc.field,
        )
        return error_response(409, exc.message, code="CONFLICT", field=exc.field)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        details = [
            ErrorDetail(
                code="VALIDATION_ERROR",
                message=_validation_message(err),
                field=_validation_field(err),
            )
            for err in exc.errors()
        ]
        logger.info(
            "request_validation_failed",
            path=request.url.path,
            fields=[d.field for d in details],
        )
        # A single model-level rule ("Username is required") reads best as the headline
        message = details[0].message if len(details) == 1 else "Validation failed"
        return error_response(400, message, code="VALIDATION_ERROR", errors=details)

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "HTTP error"
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
            )
        return error_response(exc.status_code, message)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        return error_response(500, "Internal server error", code="INTERNAL_ERROR")
