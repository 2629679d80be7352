"""
Tenant Resolver

Turns a request's hostname, or an explicit tenant-code override during
local development, into a TenantContext (descriptor + pool).

Resolution order:
  1. Platform management paths skip resolution entirely.
  2. Loopback hosts (or ``allow_tenant_override``) honour the override
     header / query parameter, looked up as an active tenant code.
  3. Any other host is looked up as a verified domain binding of an
     active tenant.

Registry failures are logged and leave the request unresolved; endpoints
that need a tenant turn that into a 404 through ``require_tenant``.
"""

from __future__ import annotations

import ipaddress
import logging
from dataclasses import dataclass

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine
from starlette.requests import Request

from medtenancy.config import Settings
from medtenancy.services.pool_registry import TenantPoolRegistry
from medtenancy.services.registry import RegistryClient, TenantDescriptor
from medtenancy.utils.metrics import record_resolution

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TenantContext:
    tenant: TenantDescriptor
    pool: AsyncEngine
    resolved_by: str  # "override" or "domain"

    @property
    def code(self) -> str:
        return self.tenant.code


def normalize_host(host: str | None) -> str:
    """
    Lowercase a Host header value and strip port and leading "www.".

    Examples:
        "Clinic-A.example.com:8443" -> "clinic-a.example.com"
        "www.clinic-a.example.com"  -> "clinic-a.example.com"
        "[::1]:8000"                -> "::1"
    """
    if not host:
        return ""
    host = host.strip().lower()
    if host.startswith("["):
        host = host[1:].split("]", 1)[0]
    elif host.count(":") == 1:
        host = host.split(":", 1)[0]
    if host.startswith("www."):
        host = host[4:]
    return host.rstrip(".")


def is_loopback_host(host: str) -> bool:
    if host == "localhost" or host.endswith(".localhost"):
        return True
    try:
        return ipaddress.ip_address(host).is_loopback
    except ValueError:
        return False


class TenantResolver:
    def __init__(self, registry: RegistryClient, pools: TenantPoolRegistry, settings: Settings):
        self.registry = registry
        self.pools = pools
        self.settings = settings

    def is_platform_path(self, path: str) -> bool:
        return any(path.startswith(prefix) for prefix in self.settings.platform_path_prefixes)

    def override_from(self, request: Request) -> str | None:
        value = request.headers.get(self.settings.tenant_override_header) or request.query_params.get(
            self.settings.tenant_override_query_param
        )
        value = (value or "").strip()
        return value or None

    async def resolve(self, request: Request) -> TenantContext | None:
        """Resolve the tenant for a request, or None when unresolved."""
        if self.is_platform_path(request.url.path):
            record_resolution("skipped")
            return None
        return await self.resolve_host(request.headers.get("host"), self.override_from(request))

    async def resolve_host(self, host: str | None, override: str | None = None) -> TenantContext | None:
        hostname = normalize_host(host)
        override_allowed = self.settings.allow_tenant_override or is_loopback_host(hostname)

        if override and override_allowed:
            descriptor = await self._lookup("override", self.registry.find_active_by_code, override)
            return await self._attach(descriptor, "override")

        if not hostname or is_loopback_host(hostname):
            record_resolution("unresolved")
            return None

        descriptor = await self._lookup("domain", self.registry.find_by_domain, hostname)
        return await self._attach(descriptor, "domain")

    async def _lookup(self, kind: str, finder, key: str) -> TenantDescriptor | None:
        # records "error" or "unresolved" itself; a hit is recorded by _attach
        try:
            descriptor = await finder(key)
        except (SQLAlchemyError, OSError) as exc:
            record_resolution("error")
            logger.error("Tenant resolution by %s failed for %r: %s", kind, key, type(exc).__name__)
            return None
        if descriptor is None:
            record_resolution("unresolved")
        return descriptor

    async def _attach(self, descriptor: TenantDescriptor | None, resolved_by: str) -> TenantContext | None:
        if descriptor is None:
            return None
        pool = await self.pools.get_or_create(descriptor.code)
        record_resolution(resolved_by)
        logger.debug("Resolved tenant code=%s by %s", descriptor.code, resolved_by)
        return TenantContext(tenant=descriptor, pool=pool, resolved_by=resolved_by)
