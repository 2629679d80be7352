import logging
from contextlib import asynccontextmanager
from functools import partial

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from medtenancy import models  # noqa: F401  (registers tables on Base.metadata)
from medtenancy.config import Settings, get_settings
from medtenancy.database import (
    Base,
    create_admin_engine,
    create_platform_engine,
    create_session_factory,
    create_tenant_engine,
)
from medtenancy.exception_handlers import register_exception_handlers
from medtenancy.middleware.logging import StructuredLoggingMiddleware, setup_structured_logging
from medtenancy.middleware.tenant import TenantResolverMiddleware
from medtenancy.routes import monitoring, telemedicine, tenants
from medtenancy.scheduler import create_scheduler, install_reconcile_job
from medtenancy.services.pool_registry import TenantPoolRegistry
from medtenancy.services.provisioner import TenantProvisioner
from medtenancy.services.registry import RegistryClient, legacy_descriptor
from medtenancy.services.schema_probe import SchemaCapabilityProber
from medtenancy.services.tenant_resolver import TenantResolver
from medtenancy.utils.metrics import PrometheusMiddleware, set_app_info
from medtenancy.utils.pool_monitor import install_pool_monitor

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the tenancy services on startup and release every pool on shutdown."""
    settings: Settings = app.state.settings
    logger.info("Starting %s (%s)", settings.app_name, settings.environment)

    platform_engine = create_platform_engine(settings)
    if settings.debug:
        async with platform_engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Platform tables created (if not existing).")

    platform_sessions = create_session_factory(platform_engine)
    registry = RegistryClient(platform_sessions)
    registry.seed(legacy_descriptor(settings))

    pools = TenantPoolRegistry(partial(create_tenant_engine, settings=settings), registry.database_name_for)
    admin_engine = create_admin_engine(settings)
    provisioner = TenantProvisioner(admin_engine, settings.schema_template_dir)

    app.state.platform_sessions = platform_sessions
    app.state.registry = registry
    app.state.tenant_pools = pools
    app.state.tenant_resolver = TenantResolver(registry, pools, settings)
    app.state.schema_prober = SchemaCapabilityProber()
    app.state.provisioner = provisioner

    scheduler = None
    if settings.scheduler_enabled:
        scheduler = create_scheduler()
        install_reconcile_job(
            scheduler,
            platform_sessions,
            provisioner,
            settings.provision_max_attempts,
            settings.reconcile_interval_seconds,
        )
        install_pool_monitor(scheduler, pools, settings.pool_monitor_interval_seconds)
        scheduler.start()

    try:
        yield
    finally:
        logger.info("Shutting down: disposing %d tenant pool(s)", len(pools))
        if scheduler is not None:
            scheduler.shutdown(wait=False)
        await pools.dispose_all()
        await admin_engine.dispose()
        await platform_engine.dispose()


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create the FastAPI application."""
    settings = settings or get_settings()
    setup_structured_logging(settings.log_level, settings.log_json)

    app = FastAPI(
        title=settings.app_name,
        description="Multi-tenant database routing for the clinic platform",
        debug=settings.debug,
        version=settings.app_version,
        lifespan=lifespan,
    )
    app.state.settings = settings
    set_app_info(version=settings.app_version, environment=settings.environment)

    register_exception_handlers(app)

    # Last added runs first: CORS, logging, metrics, then tenant resolution
    app.add_middleware(TenantResolverMiddleware)
    app.add_middleware(PrometheusMiddleware)
    app.add_middleware(StructuredLoggingMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(monitoring.router)
    app.include_router(tenants.router, prefix="/api/tenants")
    app.include_router(telemedicine.router, prefix="/api/telemedicine")

    if settings.debug:
        # SQL statements and pool checkouts, per tenant engine too
        for name in ("sqlalchemy.engine", "sqlalchemy.pool"):
            logging.getLogger(name).setLevel(logging.INFO)

    return app


app = create_app()
