import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from medtenancy.services.provisioner import TenantProvisioner, reconcile_failed_tenants

logger = logging.getLogger(__name__)


def create_scheduler() -> AsyncIOScheduler:
    # one scheduler per application; it binds to the loop it is started on
    return AsyncIOScheduler()


async def run_reconciliation(
    session_factory: async_sessionmaker[AsyncSession],
    provisioner: TenantProvisioner,
    max_attempts: int,
) -> dict[str, str]:
    try:
        outcomes = await reconcile_failed_tenants(session_factory, provisioner, max_attempts)
    except SQLAlchemyError as exc:
        logger.error("[Scheduler] Reconciliation run aborted: %s", type(exc).__name__)
        return {}
    if outcomes:
        logger.info("[Scheduler] Reconciled %d failed tenant(s): %s", len(outcomes), outcomes)
    return outcomes


def install_reconcile_job(
    scheduler: AsyncIOScheduler,
    session_factory: async_sessionmaker[AsyncSession],
    provisioner: TenantProvisioner,
    max_attempts: int,
    interval_seconds: int,
) -> None:
    scheduler.add_job(
        run_reconciliation,
        trigger=IntervalTrigger(seconds=interval_seconds),
        args=[session_factory, provisioner, max_attempts],
        id="reconcile_failed_tenants",
        replace_existing=True,
        max_instances=1,
    )
    logger.info("[Scheduler] Reconciliation job scheduled every %ds", interval_seconds)
