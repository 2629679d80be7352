"""
Tenant Resolution Middleware

Runs the TenantResolver for every request and exposes the outcome to
downstream handlers:

    request.state.tenant        TenantContext | None  (None = unresolved)
    request.state.access_scope  AccessScope built from the actor headers

Resolution never fails the request by itself; endpoints that need a tenant
depend on ``require_tenant``. Pool failures are rendered through the
tenancy exception handler because this middleware sits outside FastAPI's
exception middleware.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from starlette.middleware.base import BaseHTTPMiddleware

from medtenancy.exception_handlers import tenancy_exception_handler
from medtenancy.exceptions import TenancyError
from medtenancy.middleware.logging import tenant_code_var
from medtenancy.services.row_scope import access_scope_from_headers

if TYPE_CHECKING:
    from collections.abc import Callable

    from fastapi import Request
    from starlette.responses import Response

logger = logging.getLogger(__name__)


class TenantResolverMiddleware(BaseHTTPMiddleware):
    EXEMPT_PATHS = {"/health", "/metrics", "/docs", "/redoc", "/openapi.json"}

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        # Always initialise state so downstream code can safely read without AttributeError
        request.state.tenant = None
        request.state.access_scope = access_scope_from_headers(request.headers)

        if request.url.path in self.EXEMPT_PATHS:
            return await call_next(request)

        resolver = request.app.state.tenant_resolver
        try:
            context = await resolver.resolve(request)
        except TenancyError as exc:
            return await tenancy_exception_handler(request, exc)

        request.state.tenant = context
        token = tenant_code_var.set(context.code if context else "")
        try:
            return await call_next(request)
        finally:
            tenant_code_var.reset(token)
