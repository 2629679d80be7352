"""
Connection Pool Cache

Process-wide map from tenant code to a live SQLAlchemy AsyncEngine (each
engine owns its own bounded connection pool). Built once at startup and
handed to the resolver and routes through ``app.state``; engines are created
lazily on first use and only disposed at shutdown.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import AsyncEngine

from medtenancy.exceptions import PoolCreationError
from medtenancy.utils.metrics import TENANT_POOLS_OPEN

logger = logging.getLogger(__name__)

EngineFactory = Callable[[str], "AsyncEngine | Awaitable[AsyncEngine]"]


@dataclass
class PoolHandle:
    tenant_code: str
    database_name: str
    engine: AsyncEngine
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class TenantPoolRegistry:
    """
    Atomic get-or-create cache of tenant engines.

    Args:
        engine_factory: builds an engine for a database name; may be a plain
            function or a coroutine function.
        database_name_for: maps a tenant code to its physical database name
            (identity except for seeded legacy tenants).
    """

    def __init__(
        self,
        engine_factory: EngineFactory,
        database_name_for: Callable[[str], str] | None = None,
    ):
        self._engine_factory = engine_factory
        self._database_name_for = database_name_for or (lambda code: code)
        self._handles: dict[str, PoolHandle] = {}
        self._lock = asyncio.Lock()

    async def get_or_create(self, tenant_code: str) -> AsyncEngine:
        handle = self._handles.get(tenant_code)
        if handle is not None:
            return handle.engine

        async with self._lock:
            # another task may have created it while we waited
            handle = self._handles.get(tenant_code)
            if handle is not None:
                return handle.engine

            database_name = self._database_name_for(tenant_code)
            try:
                engine = self._engine_factory(database_name)
                if inspect.isawaitable(engine):
                    engine = await engine
            except Exception as exc:
                logger.error(
                    "Pool creation failed for tenant code=%s: %s", tenant_code, type(exc).__name__, exc_info=True
                )
                raise PoolCreationError(tenant_code) from exc

            self._handles[tenant_code] = PoolHandle(tenant_code, database_name, engine)
            TENANT_POOLS_OPEN.set(len(self._handles))
            logger.info("Created pool for tenant code=%s database=%s", tenant_code, database_name)
            return engine

    pool_for = get_or_create

    def handle(self, tenant_code: str) -> PoolHandle | None:
        return self._handles.get(tenant_code)

    def handles(self) -> list[PoolHandle]:
        return list(self._handles.values())

    def __contains__(self, tenant_code: str) -> bool:
        return tenant_code in self._handles

    def __len__(self) -> int:
        return len(self._handles)

    def stats(self) -> dict[str, dict]:
        """Per-tenant pool utilisation, for the pool monitor."""
        stats = {}
        for code, handle in self._handles.items():
            pool = handle.engine.pool
            stats[code] = {
                "database": handle.database_name,
                "created_at": handle.created_at.isoformat(),
                "size": _pool_value(pool, "size"),
                "checkedout": _pool_value(pool, "checkedout"),
                "checkedin": _pool_value(pool, "checkedin"),
            }
        return stats

    async def dispose_all(self) -> None:
        """Close every tenant pool. Only called at process shutdown."""
        async with self._lock:
            handles = list(self._handles.values())
            self._handles.clear()
        for handle in handles:
            await handle.engine.dispose()
        TENANT_POOLS_OPEN.set(0)
        logger.info("Disposed %d tenant pools", len(handles))


def _pool_value(pool, name: str) -> int:
    # NullPool/StaticPool do not track sizes
    getter = getattr(pool, name, None)
    if not callable(getter):
        return 0
    try:
        return int(getter())
    except (TypeError, NotImplementedError):
        return 0
