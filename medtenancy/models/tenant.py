"""
Platform registry models.

A Tenant is an isolated customer (single practitioner or facility) whose
operational data lives in its own database named after ``tenant_code``.
TenantDomain maps a verified hostname to exactly one tenant.
"""

import enum
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import relationship

from medtenancy.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TenantType(str, enum.Enum):
    single_practitioner = "doctor"
    facility = "hospital"


class TenantStatus(str, enum.Enum):
    pending = "pending"
    provisioning = "provisioning"
    active = "active"
    suspended = "suspended"
    cancelled = "cancelled"
    failed = "failed"


class VerificationStatus(str, enum.Enum):
    pending = "pending"
    verified = "verified"
    failed = "failed"


# current status -> statuses it may move to
STATUS_TRANSITIONS: dict[TenantStatus, set[TenantStatus]] = {
    TenantStatus.pending: {TenantStatus.provisioning, TenantStatus.cancelled},
    TenantStatus.provisioning: {TenantStatus.active, TenantStatus.failed},
    TenantStatus.failed: {TenantStatus.provisioning, TenantStatus.cancelled},
    TenantStatus.active: {TenantStatus.suspended, TenantStatus.cancelled},
    TenantStatus.suspended: {TenantStatus.active, TenantStatus.cancelled},
    TenantStatus.cancelled: set(),
}


class Tenant(Base):
    __tablename__ = "tenants"

    id = Column(Integer, primary_key=True, index=True)
    tenant_code = Column(String(64), nullable=False, unique=True)  # also the tenant database name
    name = Column(String(255), nullable=False)
    type = Column(String(20), nullable=False, default=TenantType.single_practitioner.value)
    email = Column(String(255), nullable=False, unique=True)
    phone = Column(String(20), nullable=True)
    address = Column(Text, nullable=True)
    status = Column(String(20), nullable=False, default=TenantStatus.pending.value)
    provision_attempts = Column(Integer, nullable=False, default=0)
    provision_error = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=_utcnow)
    updated_at = Column(DateTime, nullable=False, default=_utcnow, onupdate=_utcnow)

    domains = relationship("TenantDomain", back_populates="tenant", lazy="selectin", order_by="TenantDomain.id")

    __table_args__ = (
        Index("idx_tenant_status", "status"),
        Index("idx_tenant_type", "type"),
    )


class TenantDomain(Base):
    __tablename__ = "tenant_domains"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), nullable=False)
    domain = Column(String(255), nullable=False, unique=True)
    is_primary = Column(Boolean, nullable=False, default=False)
    verification_status = Column(String(20), nullable=False, default=VerificationStatus.pending.value)
    verification_token = Column(String(64), nullable=True)
    verified_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=_utcnow)

    tenant = relationship("Tenant", back_populates="domains")

    __table_args__ = (Index("idx_tenant_domain_tenant", "tenant_id"),)
