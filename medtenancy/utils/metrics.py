"""
Prometheus metrics for the tenancy layer, exposed at /metrics.

Request metrics are labelled by route template rather than raw path so
tenant and domain ids do not explode label cardinality. Pool gauges are
refreshed by the pool monitor job and on every scrape.
"""

import time
from collections.abc import Callable

from prometheus_client import Counter, Gauge, Histogram, Info
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

APP_INFO = Info("medtenancy_app", "Tenancy service information")

HTTP_REQUESTS_TOTAL = Counter(
    "medtenancy_http_requests_total",
    "HTTP requests handled, by route template",
    ["method", "route", "status_code"],
)

HTTP_REQUEST_DURATION_SECONDS = Histogram(
    "medtenancy_http_request_duration_seconds",
    "Time spent serving a request, tenant resolution included",
    ["method", "route"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

TENANT_RESOLUTIONS_TOTAL = Counter(
    "medtenancy_tenant_resolutions_total",
    "Tenant resolution outcomes",
    ["outcome"],  # override, domain, unresolved, skipped, error
)

TENANT_POOLS_OPEN = Gauge(
    "medtenancy_tenant_pools_open",
    "Number of tenant connection pools held by this process",
)

TENANT_POOL_CHECKED_OUT = Gauge(
    "medtenancy_tenant_pool_checked_out",
    "Connections currently checked out from a tenant pool",
    ["tenant"],
)

SCHEMA_PROBES_TOTAL = Counter(
    "medtenancy_schema_probes_total",
    "Schema capability lookups",
    ["result"],  # hit, miss, error
)

PROVISIONING_RUNS_TOTAL = Counter(
    "medtenancy_provisioning_runs_total",
    "Tenant provisioning runs",
    ["result"],  # success, failure
)


def set_app_info(version: str, environment: str) -> None:
    APP_INFO.info({"version": version, "environment": environment})


def record_resolution(outcome: str) -> None:
    TENANT_RESOLUTIONS_TOTAL.labels(outcome=outcome).inc()


def record_schema_probe(result: str) -> None:
    SCHEMA_PROBES_TOTAL.labels(result=result).inc()


def record_provisioning(result: str) -> None:
    PROVISIONING_RUNS_TOTAL.labels(result=result).inc()


def update_pool_metrics(stats: dict[str, dict]) -> None:
    """Push per-tenant pool stats from TenantPoolRegistry.stats() into gauges."""
    TENANT_POOLS_OPEN.set(len(stats))
    for tenant_code, pool_stats in stats.items():
        TENANT_POOL_CHECKED_OUT.labels(tenant=tenant_code).set(pool_stats.get("checkedout", 0))


def route_label(request: Request) -> str:
    """
    Route template of the matched endpoint, e.g. ``/api/tenants/{tenant_id}``.

    Unmatched paths fall back to the raw path with numeric segments folded:
    ``/api/tenants/12/x`` -> ``/api/tenants/{id}/x``.
    """
    route = request.scope.get("route")
    template = getattr(route, "path", None)
    if template:
        return template
    return "/".join("{id}" if part.isdigit() else part for part in request.url.path.split("/"))


class PrometheusMiddleware(BaseHTTPMiddleware):
    SCRAPE_PATHS = frozenset({"/metrics", "/health", "/favicon.ico"})

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path in self.SCRAPE_PATHS:
            return await call_next(request)

        started = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            # routing has run by now, so the template is on the scope
            route = route_label(request)
            HTTP_REQUEST_DURATION_SECONDS.labels(method=request.method, route=route).observe(
                time.perf_counter() - started
            )
            HTTP_REQUESTS_TOTAL.labels(method=request.method, route=route, status_code=str(status_code)).inc()
