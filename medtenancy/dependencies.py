"""
FastAPI dependencies exposing the tenancy layer to route handlers.
"""

from fastapi import Request

from medtenancy.exceptions import TenantNotFoundError
from medtenancy.services.pool_registry import TenantPoolRegistry
from medtenancy.services.provisioner import TenantProvisioner
from medtenancy.services.row_scope import AccessScope, access_scope_from_headers
from medtenancy.services.schema_probe import SchemaCapabilityProber
from medtenancy.services.tenant_resolver import TenantContext


def get_tenant_context(request: Request) -> TenantContext | None:
    """The resolved tenant, or None when the request is unresolved."""
    return getattr(request.state, "tenant", None)


def require_tenant(request: Request) -> TenantContext:
    """Resolved tenant for endpoints that cannot run without one (404 otherwise)."""
    context = get_tenant_context(request)
    if context is None:
        raise TenantNotFoundError()
    return context


def get_access_scope(request: Request) -> AccessScope:
    scope = getattr(request.state, "access_scope", None)
    if scope is None:
        scope = access_scope_from_headers(request.headers)
    return scope


def get_pool_registry(request: Request) -> TenantPoolRegistry:
    return request.app.state.tenant_pools


def get_schema_prober(request: Request) -> SchemaCapabilityProber:
    return request.app.state.schema_prober


def get_provisioner(request: Request) -> TenantProvisioner:
    return request.app.state.provisioner
