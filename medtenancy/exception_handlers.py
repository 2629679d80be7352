"""
Global Exception Handlers

Every failure leaves the service in the same JSON shape:

{
    "error": "Tenant not found",
    "error_code": "TENANT_NOT_FOUND",
    "message": "This domain is not registered with our platform",
    "details": {...},
    "path": "/api/telemedicine/sessions"
}

Server-side failures are logged in full but answered generically; driver
messages can carry SQL text, database names or connection targets.
"""

import logging
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from medtenancy.exceptions import ErrorCode, ProvisioningError, TenancyError, TenantNotFoundError

logger = logging.getLogger(__name__)

HTTP_ERROR_CODES = {
    status.HTTP_400_BAD_REQUEST: ErrorCode.VALIDATION_FAILED,
    status.HTTP_404_NOT_FOUND: ErrorCode.RESOURCE_NOT_FOUND,
    status.HTTP_409_CONFLICT: ErrorCode.VALIDATION_DUPLICATE_RESOURCE,
    422: ErrorCode.VALIDATION_FAILED,
    status.HTTP_500_INTERNAL_SERVER_ERROR: ErrorCode.INTERNAL_ERROR,
}

GENERIC_FAILURE_MESSAGE = "An unexpected error occurred. Please try again later."


def create_error_response(
    status_code: int,
    error: str,
    error_code: str | ErrorCode | None = None,
    message: str | None = None,
    details: dict[str, Any] | None = None,
    path: str | None = None,
) -> JSONResponse:
    """Build the error body; empty optional fields are left out."""
    if isinstance(error_code, ErrorCode):
        error_code = error_code.value
    body = {"error": error, "error_code": error_code, "message": message, "details": details, "path": path}
    return JSONResponse(status_code=status_code, content={key: value for key, value in body.items() if value})


def get_http_error_code(status_code: int) -> str:
    return HTTP_ERROR_CODES.get(status_code, ErrorCode.UNKNOWN_ERROR).value


def _public_fields(exc: TenancyError) -> tuple[str | None, dict[str, Any] | None]:
    # (message, details) safe to show the caller
    if isinstance(exc, TenantNotFoundError):
        return exc.hint, None
    if isinstance(exc, ProvisioningError):
        # the reason names the failing statement; only the tenant is public
        return None, {"tenant_code": exc.tenant_code}
    return None, exc.details or None


async def tenancy_exception_handler(request: Request, exc: TenancyError) -> JSONResponse:
    path = request.url.path
    if exc.status_code >= 500:
        logger.error("%s on %s: %s", type(exc).__name__, path, exc, extra={"status_code": exc.status_code})
    else:
        logger.warning("%s on %s: %s", type(exc).__name__, path, exc.message, extra={"status_code": exc.status_code})

    message, details = _public_fields(exc)
    return create_error_response(exc.status_code, exc.message, exc.error_code, message, details, path)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    logger.warning("HTTP %d on %s: %s", exc.status_code, request.url.path, exc.detail)
    return create_error_response(
        exc.status_code,
        str(exc.detail),
        get_http_error_code(exc.status_code),
        path=request.url.path,
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    problems = [
        {
            "field": ".".join(str(part) for part in error["loc"] if part not in ("body", "query", "path")),
            "message": error["msg"],
            "type": error["type"],
        }
        for error in exc.errors()
    ]
    logger.warning("Rejected request on %s: %d invalid field(s)", request.url.path, len(problems))
    return create_error_response(
        422,
        "Validation failed",
        ErrorCode.VALIDATION_FAILED,
        details={"validation_errors": problems},
        path=request.url.path,
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        "Unhandled %s on %s %s",
        type(exc).__name__,
        request.method,
        request.url.path,
        exc_info=exc,
    )
    return create_error_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "Internal server error",
        ErrorCode.INTERNAL_ERROR,
        GENERIC_FAILURE_MESSAGE,
        path=request.url.path,
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(TenancyError, tenancy_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
