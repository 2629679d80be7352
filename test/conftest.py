"""
Pytest configuration and fixtures for medtenancy tests

Real catalog behaviour is exercised against SQLite files under tmp_path:
one platform registry database plus one database file per tenant. Seeding
goes through synchronous engines so it never competes with the event loop
the application under test runs on.
"""

from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from medtenancy.config import Settings
from medtenancy.database import Base
from medtenancy.models.tenant import Tenant, TenantDomain, TenantStatus, TenantType, VerificationStatus
from utils.tenant_db import PATIENTS, SESSIONS_FULL, SESSIONS_LEGACY, insert_rows, run_sql, sync_url


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    return Settings(
        environment="test",
        platform_database_url=f"sqlite+aiosqlite:///{tmp_path / 'platform'}.db",
        tenant_database_url=f"sqlite+aiosqlite:///{tmp_path}/{{database}}.db",
        admin_database_url=f"sqlite+aiosqlite:///{tmp_path / 'admin'}.db",
        legacy_tenant_code="legacy_single_tenant",
        legacy_database_name="Doctor_Mann",
        scheduler_enabled=False,
        log_json=False,
        log_level="WARNING",
    )


@pytest.fixture
def platform_db(tmp_path, test_settings):
    """Synchronous engine over the platform registry file with all tables created."""
    engine = create_engine(sync_url(tmp_path, "platform"))
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def seed_tenant(platform_db):
    """Factory inserting a tenant (and optionally a domain binding) into the registry."""

    def _seed(
        code: str,
        domain: str | None = None,
        status: TenantStatus = TenantStatus.active,
        tenant_type: TenantType = TenantType.single_practitioner,
        verified: bool = True,
        provision_attempts: int = 0,
    ) -> int:
        with Session(platform_db) as db:
            tenant = Tenant(
                tenant_code=code,
                name=code.replace("_", " ").title(),
                type=tenant_type.value,
                email=f"{code}@example.com",
                status=status.value,
                provision_attempts=provision_attempts,
            )
            db.add(tenant)
            db.flush()
            if domain:
                db.add(
                    TenantDomain(
                        tenant_id=tenant.id,
                        domain=domain,
                        is_primary=True,
                        verification_status=(
                            VerificationStatus.verified.value if verified else VerificationStatus.pending.value
                        ),
                        verification_token="saas_verify_test",
                        verified_at=datetime.now(timezone.utc) if verified else None,
                    )
                )
            db.commit()
            return tenant.id

    return _seed


@pytest.fixture
def clinic_databases(tmp_path, seed_tenant):
    """
    Two tenants bound to their own hostnames:

    - clinic_a (clinic-a.example.com): current schema, two practitioners
    - clinic_b (clinic-b.example.com): older schema without session_type
    """
    seed_tenant("clinic_a", "clinic-a.example.com")
    seed_tenant("clinic_b", "clinic-b.example.com", tenant_type=TenantType.facility)

    run_sql(tmp_path, "clinic_a", SESSIONS_FULL, PATIENTS)
    insert_rows(
        tmp_path,
        "clinic_a",
        "patients",
        [{"full_name": "Asha Rao", "doctor_id": 1}, {"full_name": "Bo Lindqvist", "doctor_id": 2}],
    )
    insert_rows(
        tmp_path,
        "clinic_a",
        "telemedicine_sessions",
        [
            {
                "patient_id": 1,
                "doctor_id": 1,
                "session_type": "video",
                "scheduled_date": "2026-03-01",
                "scheduled_time": "09:00",
                "status": "scheduled",
                "notes": "follow-up",
            },
            {
                "patient_id": 2,
                "doctor_id": 2,
                "session_type": "chat",
                "scheduled_date": "2026-03-02",
                "scheduled_time": "10:30",
                "status": "completed",
                "notes": "lab results",
            },
        ],
    )

    run_sql(tmp_path, "clinic_b", SESSIONS_LEGACY)
    insert_rows(
        tmp_path,
        "clinic_b",
        "telemedicine_sessions",
        [
            {
                "patient_name": "Carmen Diaz",
                "doctor_id": 7,
                "scheduled_date": "2026-02-10",
                "scheduled_time": "14:00",
                "status": "scheduled",
            }
        ],
    )
    return tmp_path


@pytest.fixture
def client(test_settings, platform_db):
    """TestClient running the full application lifespan against the SQLite files."""
    from medtenancy.main import create_app

    app = create_app(test_settings)
    with TestClient(app) as test_client:
        yield test_client
