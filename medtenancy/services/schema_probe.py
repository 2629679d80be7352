"""
Schema Capability Prober

Tenant databases are materialized from whatever template was current when
the tenant registered, so older tenants lack newer tables and columns.
Callers ask the prober which columns a table has and build their SQL from
the answer, substituting NULL for missing columns so every tenant gets the
same response shape.

Facts come from the database catalog of the connection's current database
(SQLAlchemy's runtime inspector) and are memoized per pool target until an
explicit ``invalidate``. A catalog error counts as "capability absent" and is
not memoized.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Mapping

from sqlalchemy import inspect
from sqlalchemy.exc import NoSuchTableError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from medtenancy.utils.metrics import record_schema_probe

logger = logging.getLogger(__name__)

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def pool_key(pool: AsyncEngine) -> str:
    """Identity of the physical database behind a pool, without credentials."""
    return pool.url.render_as_string(hide_password=True)


class SchemaCapabilityProber:
    def __init__(self):
        # (pool key, table) -> column names; None records a missing table
        self._columns: dict[tuple[str, str], frozenset[str] | None] = {}

    async def columns_of(self, pool: AsyncEngine, table: str) -> frozenset[str]:
        """Column names of ``table`` in the pool's current database (empty if absent)."""
        columns = await self._probe(pool, table)
        return columns or frozenset()

    async def table_exists(self, pool: AsyncEngine, table: str) -> bool:
        return await self._probe(pool, table) is not None

    has_table = table_exists

    async def has_column(self, pool: AsyncEngine, table: str, column: str) -> bool:
        return column in await self.columns_of(pool, table)

    def invalidate(self, pool: AsyncEngine | None = None, table: str | None = None) -> int:
        """Forget memoized facts; returns the number of entries dropped."""
        if pool is None and table is None:
            dropped = len(self._columns)
            self._columns.clear()
            return dropped

        key = pool_key(pool) if pool is not None else None
        stale = [
            entry
            for entry in self._columns
            if (key is None or entry[0] == key) and (table is None or entry[1] == table)
        ]
        for entry in stale:
            del self._columns[entry]
        return len(stale)

    async def _probe(self, pool: AsyncEngine, table: str) -> frozenset[str] | None:
        if not _IDENTIFIER.match(table or ""):
            logger.warning("Schema probe refused unsafe table name %r", table)
            return None

        key = (pool_key(pool), table)
        if key in self._columns:
            record_schema_probe("hit")
            return self._columns[key]

        try:
            async with pool.connect() as conn:
                columns = await conn.run_sync(_read_columns, table)
        except SQLAlchemyError as exc:
            record_schema_probe("error")
            logger.warning("Schema probe failed for table=%s: %s", table, type(exc).__name__)
            return None

        record_schema_probe("miss")
        self._columns[key] = columns
        return columns


def _read_columns(sync_conn, table: str) -> frozenset[str] | None:
    inspector = inspect(sync_conn)
    if not inspector.has_table(table):
        return None
    try:
        return frozenset(column["name"] for column in inspector.get_columns(table))
    except NoSuchTableError:
        return None


def select_column(available: Iterable[str], column: str, alias: str | None = None, qualifier: str | None = None) -> str:
    """
    SELECT-list entry for an optional column.

    select_column({"session_type"}, "session_type", qualifier="ts") -> "ts.session_type AS session_type"
    select_column(set(), "session_type", qualifier="ts")            -> "NULL AS session_type"
    """
    alias = alias or column
    if column in available:
        source = f"{qualifier}.{column}" if qualifier else column
        return f"{source} AS {alias}"
    return f"NULL AS {alias}"


def pick_insert_columns(available: Iterable[str], values: Mapping[str, object]) -> dict[str, object]:
    """Drop values whose column does not exist in this tenant's table."""
    available = set(available)
    return {column: value for column, value in values.items() if column in available}
