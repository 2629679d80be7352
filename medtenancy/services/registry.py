"""
Registry Client

Read-only view of the platform registry used on the request path. Lookups
return immutable TenantDescriptor snapshots so nothing downstream holds an
ORM object tied to a closed platform session.

Descriptors can be seeded in memory. The pre-multi-tenant installation is
seeded as tenant #0 so it flows through the same lookups as every other
tenant instead of through a special-cased branch.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from medtenancy.config import Settings
from medtenancy.models.tenant import Tenant, TenantDomain, TenantStatus, TenantType
from medtenancy.services import tenant_service

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TenantDescriptor:
    id: int
    code: str
    name: str
    type: str
    status: str
    database_name: str
    domain: str | None = None
    is_primary_domain: bool = False

    @property
    def is_active(self) -> bool:
        return self.status == TenantStatus.active.value

    @classmethod
    def from_model(cls, tenant: Tenant, binding: TenantDomain | None = None, database_name: str | None = None):
        return cls(
            id=tenant.id,
            code=tenant.tenant_code,
            name=tenant.name,
            type=tenant.type,
            status=tenant.status,
            database_name=database_name or tenant.tenant_code,
            domain=binding.domain if binding is not None else None,
            is_primary_domain=bool(binding.is_primary) if binding is not None else False,
        )

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_code": self.code,
            "name": self.name,
            "type": self.type,
            "status": self.status,
            "domain": self.domain,
        }


def legacy_descriptor(settings: Settings) -> TenantDescriptor:
    return TenantDescriptor(
        id=0,
        code=settings.legacy_tenant_code,
        name=settings.legacy_tenant_name,
        type=TenantType.single_practitioner.value,
        status=TenantStatus.active.value,
        database_name=settings.legacy_database_name,
    )


class RegistryClient:
    """Tenant lookups against the platform database plus seeded descriptors."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory
        self._seeded: dict[str, TenantDescriptor] = {}

    def seed(self, descriptor: TenantDescriptor) -> None:
        self._seeded[descriptor.code] = descriptor
        logger.info("Registry: seeded tenant code=%s database=%s", descriptor.code, descriptor.database_name)

    def database_name_for(self, tenant_code: str) -> str:
        seeded = self._seeded.get(tenant_code)
        return seeded.database_name if seeded is not None else tenant_code

    async def find_active_by_code(self, tenant_code: str) -> TenantDescriptor | None:
        seeded = self._seeded.get(tenant_code)
        if seeded is not None:
            return seeded if seeded.is_active else None

        async with self._session_factory() as db:
            tenant = await tenant_service.get_active_tenant_by_code(tenant_code, db)
            if tenant is None:
                return None
            return TenantDescriptor.from_model(tenant, database_name=self.database_name_for(tenant.tenant_code))

    async def find_by_domain(self, hostname: str) -> TenantDescriptor | None:
        async with self._session_factory() as db:
            match = await tenant_service.resolve_domain(hostname, db)
            if match is None:
                return None
            tenant, binding = match
            return TenantDescriptor.from_model(tenant, binding, database_name=self.database_name_for(tenant.tenant_code))
