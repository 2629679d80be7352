"""
Monitoring Routes

Liveness probe and Prometheus metrics for observability.
"""

import time
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel

from medtenancy.dependencies import get_pool_registry
from medtenancy.services.pool_registry import TenantPoolRegistry
from medtenancy.utils.metrics import update_pool_metrics

router = APIRouter(tags=["Monitoring"])

# Application start time for uptime calculation
APP_START_TIME = time.time()


class HealthStatus(BaseModel):
    """Health check response model."""

    status: str
    timestamp: str
    version: str
    uptime_seconds: float
    tenant_pools: int


@router.get("/health", response_model=HealthStatus)
async def health_check(request: Request, pools: TenantPoolRegistry = Depends(get_pool_registry)) -> HealthStatus:
    """
    Liveness probe endpoint.

    Does not touch any database, so a dead tenant database never fails it.
    """
    return HealthStatus(
        status="healthy",
        timestamp=datetime.now(timezone.utc).isoformat(),
        version=request.app.state.settings.app_version,
        uptime_seconds=round(time.time() - APP_START_TIME, 2),
        tenant_pools=len(pools),
    )


@router.get("/metrics")
async def metrics(pools: TenantPoolRegistry = Depends(get_pool_registry)) -> Response:
    """Prometheus metrics in text exposition format."""
    update_pool_metrics(pools.stats())
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
