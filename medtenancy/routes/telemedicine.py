"""
Telemedicine Routes

Tenant-scoped session listing and booking. Tenants created from older schema
templates may lack the table or some of its columns, so every statement is
assembled from the probed column set:

- missing table        → empty listing, 400 on booking
- missing column       → selected as NULL, never filtered or sorted on,
                         left out of INSERTs
"""

import logging
from datetime import date
from typing import NamedTuple

from fastapi import APIRouter, Depends, Query, Request, status
from pydantic import BaseModel, Field
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

from medtenancy.dependencies import get_access_scope, get_schema_prober, require_tenant
from medtenancy.exceptions import TenantFeatureUnavailableError, ValidationError
from medtenancy.services.row_scope import AccessScope, build_filter, practitioner_id_for_insert
from medtenancy.services.schema_probe import SchemaCapabilityProber, pick_insert_columns, select_column
from medtenancy.services.tenant_resolver import TenantContext

router = APIRouter(tags=["Telemedicine"])
logger = logging.getLogger(__name__)

SESSIONS_TABLE = "telemedicine_sessions"
PATIENTS_TABLE = "patients"

SESSION_COLUMNS = (
    "id",
    "patient_id",
    "doctor_id",
    "session_type",
    "scheduled_date",
    "scheduled_time",
    "status",
    "meeting_link",
    "notes",
    "created_at",
)

STATUS_GROUPS = {
    "upcoming": ("scheduled", "in-progress"),
    "past": ("completed", "cancelled"),
}

# sort key -> ordered (column, direction) pairs
SORT_OPTIONS = {
    "newest": [("scheduled_date", "DESC"), ("scheduled_time", "DESC")],
    "oldest": [("scheduled_date", "ASC"), ("scheduled_time", "ASC")],
    "type": [("session_type", "ASC"), ("scheduled_date", "DESC")],
    "status": [("status", "ASC"), ("scheduled_date", "DESC")],
}


class SessionCreate(BaseModel):
    patient_id: int | None = None
    patient_name: str | None = Field(default=None, max_length=255)
    doctor_id: int | None = None
    session_type: str | None = Field(default=None, max_length=20)
    scheduled_date: date | None = None
    scheduled_time: str = Field(min_length=1, max_length=20)
    meeting_link: str | None = Field(default=None, max_length=500)
    notes: str | None = None


class SessionQuery(NamedTuple):
    select_list: str
    source: str
    patient_name: str | None


async def _session_query(pool: AsyncEngine, prober: SchemaCapabilityProber, columns: frozenset[str]) -> SessionQuery:
    """SELECT list, FROM clause and patient name expression for the session table."""
    joins_patients = "patient_id" in columns and await prober.table_exists(pool, PATIENTS_TABLE)
    select_list = [select_column(columns, column, qualifier="ts") for column in SESSION_COLUMNS]

    if joins_patients and "patient_name" in columns:
        patient_name = "COALESCE(p.full_name, ts.patient_name)"
    elif joins_patients:
        patient_name = "p.full_name"
    elif "patient_name" in columns:
        patient_name = "ts.patient_name"
    else:
        patient_name = None
    select_list.append(f"{patient_name or 'NULL'} AS patient_name")

    source = f"FROM {SESSIONS_TABLE} ts"
    if joins_patients:
        source += f" LEFT JOIN {PATIENTS_TABLE} p ON p.id = ts.patient_id"
    return SessionQuery(", ".join(select_list), source, patient_name)


@router.get("/sessions")
async def list_sessions_route(
    request: Request,
    status_filter: str | None = Query(default=None, alias="status"),
    search: str | None = None,
    session_type: str | None = None,
    sort: str = "newest",
    tenant: TenantContext = Depends(require_tenant),
    scope: AccessScope = Depends(get_access_scope),
    prober: SchemaCapabilityProber = Depends(get_schema_prober),
) -> dict:
    """List sessions visible to the caller, newest first by default."""
    columns = await prober.columns_of(tenant.pool, SESSIONS_TABLE)
    if not columns:
        return {"sessions": []}

    row_filter = build_filter(scope, "ts.doctor_id", strict=request.app.state.settings.row_scope_strict)
    if row_filter and "doctor_id" not in columns:
        # a scoped actor on a table without practitioner ownership sees nothing
        return {"sessions": []}

    session_query = await _session_query(tenant.pool, prober, columns)
    conditions: list[str] = []
    params: dict[str, object] = {}

    if status_filter and status_filter != "all" and "status" in columns:
        group = STATUS_GROUPS.get(status_filter)
        if group:
            binds = []
            for index, value in enumerate(group):
                params[f"status_{index}"] = value
                binds.append(f":status_{index}")
            conditions.append(f"ts.status IN ({', '.join(binds)})")
        else:
            conditions.append("ts.status = :status")
            params["status"] = status_filter

    if session_type and "session_type" in columns:
        conditions.append("ts.session_type = :session_type")
        params["session_type"] = session_type

    if search:
        targets = [expr for expr in (session_query.patient_name, "ts.notes" if "notes" in columns else None) if expr]
        if targets:
            conditions.append("(" + " OR ".join(f"{expr} LIKE :search" for expr in targets) + ")")
            params["search"] = f"%{search}%"

    if row_filter:
        conditions.append(row_filter.sql)
        params.update(row_filter.params)

    query = f"SELECT {session_query.select_list} {session_query.source}"
    if conditions:
        query += " WHERE " + " AND ".join(conditions)

    ordering = SORT_OPTIONS.get(sort, SORT_OPTIONS["newest"])
    order_by = [f"ts.{column} {direction}" for column, direction in ordering if column in columns]
    if "id" in columns:
        order_by.append("ts.id DESC")
    if order_by:
        query += " ORDER BY " + ", ".join(order_by)

    async with tenant.pool.connect() as conn:
        result = await conn.execute(text(query), params)
        rows = [dict(row) for row in result.mappings().all()]
    return {"sessions": rows}


@router.post("/sessions", status_code=status.HTTP_201_CREATED)
async def create_session_route(
    payload: SessionCreate,
    tenant: TenantContext = Depends(require_tenant),
    scope: AccessScope = Depends(get_access_scope),
    prober: SchemaCapabilityProber = Depends(get_schema_prober),
) -> dict:
    columns = await prober.columns_of(tenant.pool, SESSIONS_TABLE)
    if not columns:
        raise TenantFeatureUnavailableError("Telemedicine")
    if payload.patient_id is None and not payload.patient_name:
        raise ValidationError("patient_id or patient_name is required")

    values = payload.model_dump(exclude_none=True)
    if "scheduled_date" in values:
        values["scheduled_date"] = values["scheduled_date"].isoformat()
    practitioner_id = practitioner_id_for_insert(scope)
    if practitioner_id is not None:
        values["doctor_id"] = practitioner_id
    values["status"] = "scheduled"

    values = pick_insert_columns(columns, values)
    names = ", ".join(values)
    binds = ", ".join(f":{name}" for name in values)

    async with tenant.pool.begin() as conn:
        result = await conn.execute(text(f"INSERT INTO {SESSIONS_TABLE} ({names}) VALUES ({binds})"), values)
        session_id = result.lastrowid

    session_query = await _session_query(tenant.pool, prober, columns)
    async with tenant.pool.connect() as conn:
        result = await conn.execute(
            text(f"SELECT {session_query.select_list} {session_query.source} WHERE ts.id = :id"), {"id": session_id}
        )
        row = result.mappings().first()

    logger.info("Telemedicine session created: tenant=%s id=%s", tenant.code, session_id)
    return {"success": True, "id": session_id, "session": dict(row) if row else None}
