"""
Tenant Service

Async operations on the platform registry (tenants and domain bindings).
All functions accept an injected AsyncSession bound to the platform database.
"""

import logging
import re
import secrets
import string
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from medtenancy.exceptions import DuplicateResourceError, InvalidStatusTransitionError, ResourceNotFoundError
from medtenancy.models.tenant import (
    STATUS_TRANSITIONS,
    Tenant,
    TenantDomain,
    TenantStatus,
    TenantType,
    VerificationStatus,
)

logger = logging.getLogger(__name__)

CODE_PREFIXES = {
    TenantType.single_practitioner: "dr",
    TenantType.facility: "hosp",
}
VERIFICATION_TOKEN_PREFIX = "saas_verify_"
_TOKEN_ALPHABET = string.ascii_lowercase + string.digits
CREATE_ATTEMPTS = 3


def normalize_domain(domain: str) -> str:
    return domain.strip().lower().rstrip(".")


async def get_tenant_by_id(tenant_id: int, db: AsyncSession) -> Tenant | None:
    """Return a Tenant by primary key, or None if not found."""
    result = await db.execute(select(Tenant).where(Tenant.id == tenant_id))
    return result.scalars().first()


async def get_tenant_by_code(tenant_code: str, db: AsyncSession) -> Tenant | None:
    result = await db.execute(select(Tenant).where(Tenant.tenant_code == tenant_code))
    return result.scalars().first()


async def get_tenant_by_email(email: str, db: AsyncSession) -> Tenant | None:
    result = await db.execute(select(Tenant).where(Tenant.email == email))
    return result.scalars().first()


async def get_active_tenant_by_code(tenant_code: str, db: AsyncSession) -> Tenant | None:
    """Return the tenant with this code only if it is active."""
    result = await db.execute(
        select(Tenant).where(Tenant.tenant_code == tenant_code, Tenant.status == TenantStatus.active.value)
    )
    return result.scalars().first()


async def resolve_domain(domain: str, db: AsyncSession) -> tuple[Tenant, TenantDomain] | None:
    """
    Return the active tenant bound to a verified domain.

    Unverified bindings and non-active tenants never resolve.
    """
    result = await db.execute(
        select(Tenant, TenantDomain)
        .join(TenantDomain, TenantDomain.tenant_id == Tenant.id)
        .where(
            TenantDomain.domain == normalize_domain(domain),
            TenantDomain.verification_status == VerificationStatus.verified.value,
            Tenant.status == TenantStatus.active.value,
        )
    )
    row = result.first()
    if row is None:
        return None
    return row[0], row[1]


async def list_tenants(
    db: AsyncSession,
    status: str | None = None,
    type: str | None = None,
    search: str | None = None,
    skip: int = 0,
    limit: int = 50,
) -> list[Tenant]:
    """Return tenants newest first, optionally filtered."""
    query = select(Tenant)
    if status:
        query = query.where(Tenant.status == status)
    if type:
        query = query.where(Tenant.type == type)
    if search:
        pattern = f"%{search}%"
        query = query.where(or_(Tenant.name.like(pattern), Tenant.email.like(pattern)))
    query = query.order_by(Tenant.created_at.desc(), Tenant.id.desc()).offset(skip).limit(limit)
    result = await db.execute(query)
    return list(result.scalars().all())


async def list_failed_tenants(db: AsyncSession, max_attempts: int) -> list[Tenant]:
    """Failed tenants still below the provisioning attempt ceiling."""
    result = await db.execute(
        select(Tenant)
        .where(Tenant.status == TenantStatus.failed.value, Tenant.provision_attempts < max_attempts)
        .order_by(Tenant.id)
    )
    return list(result.scalars().all())


async def generate_tenant_code(name: str, tenant_type: TenantType, db: AsyncSession) -> str:
    """
    Derive a unique tenant code from a display name.

    "St. Mary's Hospital" (facility) -> "hosp_st_mary_s_hospital"; clashes get
    a numeric suffix.
    """
    prefix = CODE_PREFIXES[TenantType(tenant_type)]
    base = re.sub(r"[^a-z0-9]", "_", name.lower())
    base = re.sub(r"_+", "_", base)[:20]

    code = f"{prefix}_{base}"
    counter = 1
    while await get_tenant_by_code(code, db) is not None:
        code = f"{prefix}_{base}_{counter}"
        counter += 1
    return code


def generate_verification_token() -> str:
    suffix = "".join(secrets.choice(_TOKEN_ALPHABET) for _ in range(32))
    return f"{VERIFICATION_TOKEN_PREFIX}{suffix}"


async def create_tenant(
    name: str,
    tenant_type: TenantType,
    email: str,
    db: AsyncSession,
    phone: str | None = None,
    address: str | None = None,
    tenant_code: str | None = None,
) -> Tenant:
    """
    Create a pending tenant; its database is materialized separately.

    A generated code can be taken by a concurrent registration between the
    uniqueness check and the commit. The unique constraint catches that and
    the code is generated again, up to CREATE_ATTEMPTS times. An explicit
    ``tenant_code`` that is already taken is a duplicate.
    """
    for _ in range(CREATE_ATTEMPTS):
        if await get_tenant_by_email(email, db) is not None:
            raise DuplicateResourceError("Tenant", "email", email)

        code = tenant_code or await generate_tenant_code(name, tenant_type, db)
        tenant = Tenant(
            tenant_code=code,
            name=name,
            type=TenantType(tenant_type).value,
            email=email,
            phone=phone,
            address=address,
            status=TenantStatus.pending.value,
            provision_attempts=0,
        )
        db.add(tenant)
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            if tenant_code:
                raise DuplicateResourceError("Tenant", "tenant_code", tenant_code) from None
            logger.warning("Tenant code %s claimed concurrently, generating another", code)
            continue
        await db.refresh(tenant)
        logger.info("Tenant created: id=%d code=%s", tenant.id, tenant.tenant_code)
        return tenant
    raise DuplicateResourceError("Tenant", "tenant_code", code)


async def update_tenant(tenant_id: int, updates: dict, db: AsyncSession) -> Tenant | None:
    """
    Apply a partial update to a Tenant.

    Only contact details can change; ``tenant_code`` is immutable.
    Returns None if the tenant does not exist.
    """
    tenant = await get_tenant_by_id(tenant_id, db)
    if tenant is None:
        return None
    allowed_fields = {"name", "email", "phone", "address"}
    for field, value in updates.items():
        if field in allowed_fields:
            setattr(tenant, field, value)
    await db.commit()
    await db.refresh(tenant)
    return tenant


async def set_tenant_status(tenant: Tenant, target: TenantStatus, db: AsyncSession) -> Tenant:
    """Move a tenant along the status machine, rejecting illegal transitions."""
    current = TenantStatus(tenant.status)
    target = TenantStatus(target)
    if target not in STATUS_TRANSITIONS[current]:
        raise InvalidStatusTransitionError(current.value, target.value)
    tenant.status = target.value
    await db.commit()
    await db.refresh(tenant)
    logger.info("Tenant status changed: id=%d code=%s %s -> %s", tenant.id, tenant.tenant_code, current.value, target.value)
    return tenant


async def record_provisioning_failure(tenant: Tenant, reason: str, db: AsyncSession) -> Tenant:
    tenant.provision_attempts = (tenant.provision_attempts or 0) + 1
    tenant.provision_error = reason[:2000]
    return await set_tenant_status(tenant, TenantStatus.failed, db)


async def list_domains(tenant_id: int, db: AsyncSession) -> list[TenantDomain]:
    result = await db.execute(select(TenantDomain).where(TenantDomain.tenant_id == tenant_id).order_by(TenantDomain.id))
    return list(result.scalars().all())


async def ensure_domain_available(domain: str, db: AsyncSession) -> str:
    """Normalize ``domain`` and raise DuplicateResourceError if any tenant already binds it."""
    domain = normalize_domain(domain)
    existing = await db.execute(select(TenantDomain.id).where(TenantDomain.domain == domain))
    if existing.first() is not None:
        raise DuplicateResourceError("Domain", "domain", domain)
    return domain


async def add_domain(tenant_id: int, domain: str, db: AsyncSession, is_primary: bool = False) -> TenantDomain:
    """Bind a hostname to a tenant, pending DNS verification."""
    if await get_tenant_by_id(tenant_id, db) is None:
        raise ResourceNotFoundError("Tenant", tenant_id)

    domain = await ensure_domain_available(domain, db)

    if is_primary:
        await db.execute(update(TenantDomain).where(TenantDomain.tenant_id == tenant_id).values(is_primary=False))

    binding = TenantDomain(
        tenant_id=tenant_id,
        domain=domain,
        is_primary=is_primary,
        verification_status=VerificationStatus.pending.value,
        verification_token=generate_verification_token(),
    )
    db.add(binding)
    await db.commit()
    await db.refresh(binding)
    logger.info("Domain added: tenant_id=%d domain=%s primary=%s", tenant_id, domain, is_primary)
    return binding


DomainOwnershipCheck = Callable[[str, str], Awaitable[bool]]


async def verify_domain(
    tenant_id: int,
    domain_id: int,
    db: AsyncSession,
    check_ownership: DomainOwnershipCheck,
) -> TenantDomain:
    """
    Run the ownership check for a binding and record the outcome.

    ``check_ownership(domain, token)`` looks for the TXT record
    ``_saas-verify.<domain>`` carrying the binding's token.
    """
    result = await db.execute(
        select(TenantDomain).where(TenantDomain.id == domain_id, TenantDomain.tenant_id == tenant_id)
    )
    binding = result.scalars().first()
    if binding is None:
        raise ResourceNotFoundError("Domain", domain_id)

    if await check_ownership(binding.domain, binding.verification_token):
        binding.verification_status = VerificationStatus.verified.value
        binding.verified_at = datetime.now(timezone.utc)
        logger.info("Domain verified: tenant_id=%d domain=%s", tenant_id, binding.domain)
    else:
        binding.verification_status = VerificationStatus.failed.value
        logger.warning("Domain verification failed: tenant_id=%d domain=%s", tenant_id, binding.domain)

    await db.commit()
    await db.refresh(binding)
    return binding
