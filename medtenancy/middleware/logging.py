"""
Structured Logging Middleware

One access record per request, plus JSON log output for everything else.
Records are stamped with the request ID and the code of the tenant the
request was routed to, so a single tenant's traffic can be followed across
the resolver, the pool registry and the handlers.
"""

import json
import logging
import time
import uuid
from collections.abc import Callable
from contextvars import ContextVar
from datetime import datetime, timezone

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

REQUEST_ID_HEADER = "X-Request-ID"

# probes and scrapes would drown the access log
QUIET_PATHS = frozenset({"/health", "/metrics"})

request_id_var: ContextVar[str] = ContextVar("request_id", default="")
tenant_code_var: ContextVar[str] = ContextVar("tenant_code", default="")


class RequestContextFilter(logging.Filter):
    """Copy the request ID and tenant code from context onto each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_var.get()
        record.tenant_code = tenant_code_var.get()
        return True


class StructuredFormatter(logging.Formatter):
    """One JSON object per line."""

    ACCESS_FIELDS = ("method", "path", "status_code", "duration_ms", "client_ip", "resolved_by")

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": getattr(record, "request_id", ""),
            "tenant_code": getattr(record, "tenant_code", ""),
        }
        entry.update({field: getattr(record, field) for field in self.ACCESS_FIELDS if hasattr(record, field)})
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def _client_ip(request: Request) -> str:
    forwarded = request.headers.get("X-Forwarded-For") or request.headers.get("X-Real-IP")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def _level_for(status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400:
        return logging.WARNING
    return logging.INFO


class StructuredLoggingMiddleware(BaseHTTPMiddleware):
    """
    Assign a request ID (or keep the caller's ``X-Request-ID``), time the
    request and write the access record once the response is known.

    The tenant fields are read from ``request.state`` after the inner
    tenant middleware has run.
    """

    def __init__(self, app: ASGIApp, logger_name: str = "medtenancy.access"):
        super().__init__(app)
        self.logger = logging.getLogger(logger_name)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        token = request_id_var.set(request_id)
        started = time.perf_counter()
        try:
            try:
                response = await call_next(request)
            except Exception as exc:
                self._access(request, 500, started, error=type(exc).__name__)
                raise
            response.headers[REQUEST_ID_HEADER] = request_id
            self._access(request, response.status_code, started)
            return response
        finally:
            request_id_var.reset(token)

    def _access(self, request: Request, status_code: int, started: float, error: str | None = None) -> None:
        if request.url.path in QUIET_PATHS:
            return

        duration_ms = round((time.perf_counter() - started) * 1000, 2)
        context = getattr(request.state, "tenant", None)
        tenant_code = context.code if context else "-"

        message = f"{request.method} {request.url.path} [{tenant_code}] {status_code} ({duration_ms}ms)"
        if error:
            message = f"{message} {error}"

        self.logger.log(
            _level_for(status_code),
            message,
            extra={
                "method": request.method,
                "path": request.url.path,
                "status_code": status_code,
                "duration_ms": duration_ms,
                "client_ip": _client_ip(request),
                "resolved_by": context.resolved_by if context else None,
            },
        )


# third-party loggers kept at WARNING regardless of the application level
QUIET_LOGGERS = ("uvicorn", "uvicorn.access", "sqlalchemy.engine", "apscheduler")


def setup_structured_logging(log_level: str = "INFO", json_format: bool = True) -> None:
    """
    Route all logging through one stderr handler.

    JSON output is meant for production log shipping; the plain format is
    easier to read in a terminal and during tests.
    """
    level = logging.getLevelName(log_level.upper())

    handler = logging.StreamHandler()
    handler.addFilter(RequestContextFilter())
    if json_format:
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s [%(request_id)s %(tenant_code)s] %(message)s")
        )

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    logging.getLogger("medtenancy").setLevel(level)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
