"""
Tenant Pool Monitor

Polls the statistics of every open tenant pool and pushes them into the
Prometheus gauges. Runs as a recurring APScheduler job so there is no
per-request overhead.

Attach once at startup via install_pool_monitor().
"""

import logging

from apscheduler.triggers.interval import IntervalTrigger

from medtenancy.services.pool_registry import TenantPoolRegistry
from medtenancy.utils.metrics import update_pool_metrics

logger = logging.getLogger(__name__)


async def poll_pool_metrics(pools: TenantPoolRegistry) -> None:
    """Scheduled job: scrape tenant pool stats and update Prometheus gauges."""
    try:
        update_pool_metrics(pools.stats())
    except (AttributeError, TypeError) as exc:
        logger.warning("pool_monitor: failed to collect pool stats: %s", exc)


def install_pool_monitor(scheduler, pools: TenantPoolRegistry, interval_seconds: int = 15) -> None:
    """
    Register the pool-metrics polling job with the application's scheduler.

    Args:
        scheduler: The application's AsyncIOScheduler (from medtenancy.scheduler).
        pools: Registry whose pools are scraped.
        interval_seconds: How often to scrape pool stats (default 15 s).
    """
    scheduler.add_job(
        poll_pool_metrics,
        trigger=IntervalTrigger(seconds=interval_seconds),
        args=[pools],
        id="pool_monitor",
        replace_existing=True,
        max_instances=1,
    )
    logger.info("pool_monitor: installed (interval=%ds)", interval_seconds)
