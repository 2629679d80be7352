"""
Tenant Provisioner

Materializes a tenant database from SQL templates. Templates reference the
tenant through the ``{{TENANT_CODE}}`` token; the rendered script is split
into statements and executed one by one over an administrative connection
that has cross-database DDL rights. The first failing statement aborts the
run. There is no transaction across registry rows and DDL, so the registry
side is tracked as a status machine:

    pending|failed -> provisioning -> active | failed

and ``reconcile_failed_tenants`` retries failed tenants (drop, then
provision again) until ``provision_max_attempts`` is reached.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path

from sqlalchemy import inspect
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from medtenancy.exceptions import InvalidTenantCodeError, ProvisioningError
from medtenancy.models.tenant import Tenant, TenantStatus, TenantType
from medtenancy.services import tenant_service
from medtenancy.utils.metrics import record_provisioning

logger = logging.getLogger(__name__)

TENANT_CODE_TOKEN = "{{TENANT_CODE}}"
TENANT_CODE_PATTERN = re.compile(r"^[a-z][a-z0-9_]{1,63}$")

DEFAULT_TEMPLATE_DIR = Path(__file__).resolve().parent.parent / "templates"
BASE_TEMPLATE = "tenant_schema.sql"
FACILITY_TEMPLATE = "facility_schema.sql"
DROP_TEMPLATE = "drop_tenant.sql"


def validate_tenant_code(tenant_code: str) -> str:
    if not TENANT_CODE_PATTERN.match(tenant_code or ""):
        raise InvalidTenantCodeError(tenant_code)
    return tenant_code


def split_statements(script: str) -> list[str]:
    """
    Split a SQL script on semicolons that are outside quotes.

    Lines that are only ``--`` comments are dropped; empty statements are
    skipped.
    """
    lines = [line for line in script.splitlines() if not line.lstrip().startswith("--")]
    script = "\n".join(lines)

    statements: list[str] = []
    current: list[str] = []
    quote: str | None = None
    for char in script:
        if quote:
            if char == quote:
                quote = None
        elif char in ("'", '"', "`"):
            quote = char
        elif char == ";":
            statement = "".join(current).strip()
            if statement:
                statements.append(statement)
            current = []
            continue
        current.append(char)

    tail = "".join(current).strip()
    if tail:
        statements.append(tail)
    return statements


class TenantProvisioner:
    def __init__(self, admin_engine: AsyncEngine, template_dir: str | Path | None = None):
        self.admin_engine = admin_engine
        self.template_dir = Path(template_dir) if template_dir else DEFAULT_TEMPLATE_DIR

    def load_template(self, name: str) -> str:
        return (self.template_dir / name).read_text(encoding="utf-8")

    def render(self, tenant_code: str, template: str) -> str:
        validate_tenant_code(tenant_code)
        try:
            script = self.load_template(template)
        except OSError as exc:
            logger.error("Schema template %s unreadable in %s: %s", template, self.template_dir, type(exc).__name__)
            raise ProvisioningError(tenant_code, f"template {template} unreadable") from exc
        return script.replace(TENANT_CODE_TOKEN, tenant_code)

    def templates_for(self, tenant_type: str) -> list[str]:
        templates = [BASE_TEMPLATE]
        if TenantType(tenant_type) is TenantType.facility:
            templates.append(FACILITY_TEMPLATE)
        return templates

    async def database_exists(self, tenant_code: str) -> bool:
        try:
            async with self.admin_engine.connect() as conn:
                names = await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_schema_names())
        except SQLAlchemyError as exc:
            logger.error("Admin database unreachable for tenant code=%s: %s", tenant_code, type(exc).__name__)
            raise ProvisioningError(tenant_code, type(exc).__name__) from exc
        return tenant_code.lower() in {name.lower() for name in names}

    async def provision(self, tenant_code: str, tenant_type: str = TenantType.single_practitioner.value) -> int:
        """
        Create a brand-new tenant database. Returns the number of statements run.

        Refuses to touch a database that already exists.
        """
        validate_tenant_code(tenant_code)
        if await self.database_exists(tenant_code):
            raise ProvisioningError(tenant_code, "tenant database already exists")

        statements: list[str] = []
        for template in self.templates_for(tenant_type):
            statements.extend(split_statements(self.render(tenant_code, template)))

        executed = await self._execute(tenant_code, statements)
        logger.info("Provisioned tenant code=%s (%d statements)", tenant_code, executed)
        return executed

    async def apply_facility_schema(self, tenant_code: str) -> int:
        """Re-apply the additive facility template to create missing tables."""
        statements = split_statements(self.render(tenant_code, FACILITY_TEMPLATE))
        executed = await self._execute(tenant_code, statements)
        logger.info("Applied facility schema to tenant code=%s (%d statements)", tenant_code, executed)
        return executed

    async def drop(self, tenant_code: str) -> None:
        statements = split_statements(self.render(tenant_code, DROP_TEMPLATE))
        await self._execute(tenant_code, statements)
        logger.warning("Dropped tenant database code=%s", tenant_code)

    async def _execute(self, tenant_code: str, statements: list[str]) -> int:
        # None until the first statement runs, so connection failures carry no index
        index: int | None = None
        try:
            async with self.admin_engine.connect() as conn:
                for index, statement in enumerate(statements):
                    await conn.exec_driver_sql(statement)
                    await conn.commit()
        except SQLAlchemyError as exc:
            position = "connect" if index is None else f"{index + 1}/{len(statements)}"
            logger.error(
                "Provisioning statement %s failed for tenant code=%s: %s",
                position,
                tenant_code,
                type(exc).__name__,
            )
            raise ProvisioningError(tenant_code, type(exc).__name__, statement_index=index) from exc
        return len(statements)


async def provision_tenant(tenant: Tenant, db: AsyncSession, provisioner: TenantProvisioner) -> Tenant:
    """
    Drive one tenant through provisioning and record the outcome.

    On failure the tenant is left ``failed`` (for the reconciliation job)
    and the ProvisioningError is re-raised to the caller.
    """
    tenant = await tenant_service.set_tenant_status(tenant, TenantStatus.provisioning, db)
    try:
        await provisioner.provision(tenant.tenant_code, tenant.type)
    except ProvisioningError as exc:
        record_provisioning("failure")
        await tenant_service.record_provisioning_failure(tenant, str(exc), db)
        raise

    record_provisioning("success")
    tenant.provision_error = None
    return await tenant_service.set_tenant_status(tenant, TenantStatus.active, db)


async def reconcile_failed_tenants(
    session_factory: async_sessionmaker[AsyncSession],
    provisioner: TenantProvisioner,
    max_attempts: int,
) -> dict[str, str]:
    """
    Retry provisioning of failed tenants. Returns {tenant_code: outcome}.

    Each retry first drops whatever the failed run left behind.
    """
    outcomes: dict[str, str] = {}
    async with session_factory() as db:
        for tenant in await tenant_service.list_failed_tenants(db, max_attempts):
            code = tenant.tenant_code
            try:
                await provisioner.drop(code)
            except ProvisioningError as exc:
                tenant.provision_attempts = (tenant.provision_attempts or 0) + 1
                tenant.provision_error = str(exc)
                await db.commit()
                outcomes[code] = "failed"
                continue

            try:
                await provision_tenant(tenant, db, provisioner)
            except ProvisioningError as exc:
                outcomes[code] = "failed"
                if tenant.provision_attempts >= max_attempts:
                    logger.error("Tenant code=%s exhausted %d provisioning attempts: %s", code, max_attempts, exc)
                continue
            outcomes[code] = "active"
            logger.info("Reconciled tenant code=%s", code)
    return outcomes
