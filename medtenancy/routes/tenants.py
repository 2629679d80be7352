"""
Tenant Administration Routes

Platform-level management of tenants and their domain bindings. These paths
are never tenant-resolved.

POST   /api/tenants/register                               → create + provision tenant
GET    /api/tenants                                        → list tenants
GET    /api/tenants/{id}                                   → tenant with domains
PATCH  /api/tenants/{id}                                   → update contact details
PATCH  /api/tenants/{id}/status                            → status transition
POST   /api/tenants/{id}/domains                           → bind a domain
POST   /api/tenants/{id}/domains/{domain_id}/verify        → DNS ownership check
POST   /api/tenants/{id}/apply-facility-schema             → add facility tables
POST   /api/tenants/{id}/schema-cache/invalidate           → forget probed schema facts
"""

import logging
from datetime import datetime

from fastapi import APIRouter, Depends, Query, Request, status
from pydantic import BaseModel, ConfigDict, EmailStr, Field
from sqlalchemy.ext.asyncio import AsyncSession

from medtenancy.database import get_db
from medtenancy.dependencies import get_pool_registry, get_provisioner, get_schema_prober
from medtenancy.exceptions import InvalidOperationError, ResourceNotFoundError
from medtenancy.models.tenant import Tenant, TenantDomain, TenantStatus, TenantType
from medtenancy.services import tenant_service
from medtenancy.services.pool_registry import TenantPoolRegistry
from medtenancy.services.provisioner import TenantProvisioner, provision_tenant
from medtenancy.services.schema_probe import SchemaCapabilityProber

router = APIRouter(tags=["Tenants"])
logger = logging.getLogger(__name__)

VERIFICATION_RECORD_PREFIX = "_saas-verify"


# ── Pydantic schemas ───────────────────────────────────────────────────────────


class TenantRegister(BaseModel):
    name: str = Field(min_length=2, max_length=255)
    type: TenantType = TenantType.single_practitioner
    email: EmailStr
    phone: str | None = Field(default=None, max_length=20)
    address: str | None = None
    domain: str | None = None


class TenantUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=2, max_length=255)
    email: EmailStr | None = None
    phone: str | None = Field(default=None, max_length=20)
    address: str | None = None


class StatusUpdate(BaseModel):
    status: TenantStatus


class DomainCreate(BaseModel):
    domain: str = Field(min_length=3, max_length=255)
    is_primary: bool = False


class DomainResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    domain: str
    is_primary: bool
    verification_status: str
    verified_at: datetime | None = None


class TenantResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    tenant_code: str
    name: str
    type: str
    email: str
    phone: str | None = None
    address: str | None = None
    status: str
    provision_attempts: int = 0
    created_at: datetime | None = None


class TenantDetail(TenantResponse):
    domains: list[DomainResponse] = []


class DnsInstructions(BaseModel):
    type: str = "TXT"
    host: str
    value: str


class RegistrationResponse(BaseModel):
    tenant: TenantResponse
    domain: DomainResponse | None = None
    dns_instructions: DnsInstructions | None = None


def dns_instructions_for(binding: TenantDomain) -> DnsInstructions:
    return DnsInstructions(host=f"{VERIFICATION_RECORD_PREFIX}.{binding.domain}", value=binding.verification_token)


async def simulated_ownership_check(domain: str, token: str) -> bool:
    """Accept every binding. Replace via ``app.state.domain_ownership_check``."""
    logger.warning("Domain ownership check simulated for %s", domain)
    return True


async def _get_tenant_or_404(tenant_id: int, db: AsyncSession) -> Tenant:
    tenant = await tenant_service.get_tenant_by_id(tenant_id, db)
    if tenant is None:
        raise ResourceNotFoundError("Tenant", tenant_id)
    return tenant


def _forget_schema(tenant_code: str, pools: TenantPoolRegistry, prober: SchemaCapabilityProber) -> int:
    handle = pools.handle(tenant_code)
    if handle is None:
        return 0
    return prober.invalidate(handle.engine)


# ── Routes ─────────────────────────────────────────────────────────────────────


@router.post("/register", response_model=RegistrationResponse, status_code=status.HTTP_201_CREATED)
async def register_tenant_route(
    payload: TenantRegister,
    db: AsyncSession = Depends(get_db),
    provisioner: TenantProvisioner = Depends(get_provisioner),
) -> RegistrationResponse:
    """
    Register a tenant and materialize its database.

    A provisioning failure leaves the tenant ``failed`` for the
    reconciliation job and surfaces as a 500. A taken domain is rejected
    before the tenant row exists, so the email stays free for a retry.
    """
    if payload.domain:
        await tenant_service.ensure_domain_available(payload.domain, db)

    tenant = await tenant_service.create_tenant(
        name=payload.name,
        tenant_type=payload.type,
        email=payload.email,
        db=db,
        phone=payload.phone,
        address=payload.address,
    )

    binding = None
    if payload.domain:
        binding = await tenant_service.add_domain(int(tenant.id), payload.domain, db, is_primary=True)

    tenant = await provision_tenant(tenant, db, provisioner)
    return RegistrationResponse(
        tenant=TenantResponse.model_validate(tenant),
        domain=DomainResponse.model_validate(binding) if binding else None,
        dns_instructions=dns_instructions_for(binding) if binding else None,
    )


@router.get("", response_model=list[TenantResponse])
async def list_tenants_route(
    status_filter: TenantStatus | None = Query(default=None, alias="status"),
    tenant_type: TenantType | None = Query(default=None, alias="type"),
    search: str | None = None,
    skip: int = 0,
    limit: int = 50,
    db: AsyncSession = Depends(get_db),
) -> list[TenantResponse]:
    tenants = await tenant_service.list_tenants(
        db,
        status=status_filter.value if status_filter else None,
        type=tenant_type.value if tenant_type else None,
        search=search,
        skip=skip,
        limit=limit,
    )
    return [TenantResponse.model_validate(t) for t in tenants]


@router.get("/{tenant_id}", response_model=TenantDetail)
async def get_tenant_route(tenant_id: int, db: AsyncSession = Depends(get_db)) -> TenantDetail:
    tenant = await _get_tenant_or_404(tenant_id, db)
    domains = await tenant_service.list_domains(tenant_id, db)
    return TenantDetail(
        **TenantResponse.model_validate(tenant).model_dump(),
        domains=[DomainResponse.model_validate(d) for d in domains],
    )


@router.patch("/{tenant_id}", response_model=TenantResponse)
async def update_tenant_route(
    tenant_id: int,
    payload: TenantUpdate,
    db: AsyncSession = Depends(get_db),
) -> TenantResponse:
    updates = {k: v for k, v in payload.model_dump(mode="json").items() if v is not None}
    updated = await tenant_service.update_tenant(tenant_id, updates, db)
    if updated is None:
        raise ResourceNotFoundError("Tenant", tenant_id)
    return TenantResponse.model_validate(updated)


@router.patch("/{tenant_id}/status", response_model=TenantResponse)
async def update_tenant_status_route(
    tenant_id: int,
    payload: StatusUpdate,
    db: AsyncSession = Depends(get_db),
    provisioner: TenantProvisioner = Depends(get_provisioner),
) -> TenantResponse:
    """Move a tenant along its lifecycle; ``provisioning`` re-runs provisioning."""
    tenant = await _get_tenant_or_404(tenant_id, db)
    if payload.status is TenantStatus.provisioning:
        tenant = await provision_tenant(tenant, db, provisioner)
    else:
        tenant = await tenant_service.set_tenant_status(tenant, payload.status, db)
    return TenantResponse.model_validate(tenant)


@router.post("/{tenant_id}/domains", status_code=status.HTTP_201_CREATED)
async def add_domain_route(
    tenant_id: int,
    payload: DomainCreate,
    db: AsyncSession = Depends(get_db),
) -> dict:
    binding = await tenant_service.add_domain(tenant_id, payload.domain, db, is_primary=payload.is_primary)
    return {
        "domain": DomainResponse.model_validate(binding),
        "dns_instructions": dns_instructions_for(binding),
    }


@router.post("/{tenant_id}/domains/{domain_id}/verify", response_model=DomainResponse)
async def verify_domain_route(
    tenant_id: int,
    domain_id: int,
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> DomainResponse:
    check = getattr(request.app.state, "domain_ownership_check", None) or simulated_ownership_check
    binding = await tenant_service.verify_domain(tenant_id, domain_id, db, check)
    return DomainResponse.model_validate(binding)


@router.post("/{tenant_id}/apply-facility-schema")
async def apply_facility_schema_route(
    tenant_id: int,
    db: AsyncSession = Depends(get_db),
    provisioner: TenantProvisioner = Depends(get_provisioner),
    pools: TenantPoolRegistry = Depends(get_pool_registry),
    prober: SchemaCapabilityProber = Depends(get_schema_prober),
) -> dict:
    """Create the facility tables a hospital tenant is missing."""
    tenant = await _get_tenant_or_404(tenant_id, db)
    if TenantType(tenant.type) is not TenantType.facility:
        raise InvalidOperationError("Facility schema can only be applied to hospital tenants")

    executed = await provisioner.apply_facility_schema(tenant.tenant_code)
    invalidated = _forget_schema(tenant.tenant_code, pools, prober)
    return {"tenant_code": tenant.tenant_code, "statements_executed": executed, "cache_entries_invalidated": invalidated}


@router.post("/{tenant_id}/schema-cache/invalidate")
async def invalidate_schema_cache_route(
    tenant_id: int,
    db: AsyncSession = Depends(get_db),
    pools: TenantPoolRegistry = Depends(get_pool_registry),
    prober: SchemaCapabilityProber = Depends(get_schema_prober),
) -> dict:
    tenant = await _get_tenant_or_404(tenant_id, db)
    invalidated = _forget_schema(tenant.tenant_code, pools, prober)
    logger.info("Schema cache invalidated for tenant code=%s (%d entries)", tenant.tenant_code, invalidated)
    return {"tenant_code": tenant.tenant_code, "cache_entries_invalidated": invalidated}
