"""
Row-Scope Filter

Facility tenants share tables across practitioners; an actor bound to one
practitioner only sees that practitioner's rows. The filter is a reusable
WHERE fragment with bound parameters, so callers can splice it into any
query built with ``sqlalchemy.text``.
"""

from __future__ import annotations

import enum
import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, NamedTuple

logger = logging.getLogger(__name__)

_COLUMN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?$")
_EMPTY_VALUES = {"", "null", "undefined", "none"}

# request headers set by the dashboards after login
ROLE_HEADER = "X-User-Role"
PRACTITIONER_HEADER = "X-Doctor-Id"


class ActorRole(str, enum.Enum):
    platform_admin = "platform_admin"
    facility_super_admin = "facility_super_admin"
    facility_admin = "facility_admin"
    practitioner = "practitioner"
    patient = "patient"


ROLE_ALIASES = {
    "super_admin": ActorRole.facility_super_admin,
    "superadmin": ActorRole.facility_super_admin,
    "admin": ActorRole.facility_admin,
    "doctor": ActorRole.practitioner,
}

UNRESTRICTED_ROLES = {ActorRole.platform_admin, ActorRole.facility_super_admin}


@dataclass(frozen=True)
class AccessScope:
    role: ActorRole | None = None
    practitioner_id: int | None = None

    @property
    def unrestricted(self) -> bool:
        return self.role in UNRESTRICTED_ROLES


class RowFilter(NamedTuple):
    sql: str
    # read-only so filters can be shared between requests
    params: Mapping[str, Any] = MappingProxyType({})

    def __bool__(self) -> bool:
        return bool(self.sql)

    def where(self, prefix: str = "WHERE") -> str:
        """Render as a clause: "" when empty, else "WHERE <sql>" / "AND <sql>"."""
        return f" {prefix} {self.sql}" if self.sql else ""


EMPTY_FILTER = RowFilter("")


def parse_role(value: str | None) -> ActorRole | None:
    if not value:
        return None
    value = value.strip().lower()
    if value in ROLE_ALIASES:
        return ROLE_ALIASES[value]
    try:
        return ActorRole(value)
    except ValueError:
        logger.debug("Ignoring unknown actor role %r", value)
        return None


def parse_practitioner_id(value: str | None) -> int | None:
    if value is None or value.strip().lower() in _EMPTY_VALUES:
        return None
    try:
        practitioner_id = int(value)
    except ValueError:
        logger.debug("Ignoring non-numeric practitioner id %r", value)
        return None
    return practitioner_id if practitioner_id > 0 else None


def access_scope_from_headers(headers: Mapping[str, str]) -> AccessScope:
    """Build a fresh AccessScope from request headers."""
    return AccessScope(
        role=parse_role(headers.get(ROLE_HEADER)),
        practitioner_id=parse_practitioner_id(headers.get(PRACTITIONER_HEADER)),
    )


def build_filter(actor: AccessScope, column_name: str = "doctor_id", strict: bool = False) -> RowFilter:
    """
    Translate an actor into a parameterized WHERE fragment.

    - platform / facility super admins: no restriction
    - an actor bound to a practitioner: ``<column_name> = :<bind>``
    - anything else: no restriction, or a match-nothing fragment when ``strict``
    """
    if not _COLUMN.match(column_name):
        raise ValueError(f"Invalid column name: {column_name!r}")

    if actor.unrestricted:
        return EMPTY_FILTER

    if actor.practitioner_id is not None:
        bind = "scope_" + column_name.replace(".", "_")
        return RowFilter(f"{column_name} = :{bind}", MappingProxyType({bind: actor.practitioner_id}))

    if strict:
        return RowFilter("1 = 0")
    return EMPTY_FILTER


doctor_filter = build_filter


def practitioner_id_for_insert(actor: AccessScope) -> int | None:
    return actor.practitioner_id
