"""
Tenant service tests

Signature and pure-logic checks use an AsyncMock session; registry behaviour
runs against the SQLite platform file.
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from medtenancy.database import create_platform_engine, create_session_factory
from medtenancy.exceptions import DuplicateResourceError, InvalidStatusTransitionError, ResourceNotFoundError
from medtenancy.models.tenant import STATUS_TRANSITIONS, TenantStatus, TenantType, VerificationStatus
from medtenancy.services import tenant_service

# ── helpers ────────────────────────────────────────────────────────────────────


def _make_async_mock_db():
    """Return a MagicMock that satisfies common async DB call patterns."""
    db = AsyncMock()
    scalars = MagicMock()
    scalars.first.return_value = None
    scalars.all.return_value = []
    execute_result = MagicMock()
    execute_result.scalars.return_value = scalars
    db.execute.return_value = execute_result
    return db


@pytest.fixture
async def db(test_settings, platform_db):
    engine = create_platform_engine(test_settings)
    async with create_session_factory(engine)() as session:
        yield session
    await engine.dispose()


# ══════════════════════════════════════════════════════════════════════════════
# 1. Pure helpers
# ══════════════════════════════════════════════════════════════════════════════


class TestHelpers:
    def test_normalize_domain(self):
        assert tenant_service.normalize_domain(" Clinic-A.Example.com. ") == "clinic-a.example.com"

    def test_verification_token_shape(self):
        token = tenant_service.generate_verification_token()
        assert token.startswith("saas_verify_")
        assert len(token) == len("saas_verify_") + 32
        assert token != tenant_service.generate_verification_token()

    async def test_generate_code_for_practitioner(self):
        code = await tenant_service.generate_tenant_code("Dr. Jane Smith", TenantType.single_practitioner, _make_async_mock_db())
        assert code == "dr_dr_jane_smith"

    async def test_generate_code_for_facility_truncates(self):
        code = await tenant_service.generate_tenant_code(
            "St. Mary's General Hospital", TenantType.facility, _make_async_mock_db()
        )
        assert code.startswith("hosp_st_mary_s_general")
        assert len(code) <= len("hosp_") + 20

    def test_cancelled_is_terminal(self):
        assert STATUS_TRANSITIONS[TenantStatus.cancelled] == set()

    def test_provisioning_only_ends_active_or_failed(self):
        assert STATUS_TRANSITIONS[TenantStatus.provisioning] == {TenantStatus.active, TenantStatus.failed}


# ══════════════════════════════════════════════════════════════════════════════
# 2. Registry operations
# ══════════════════════════════════════════════════════════════════════════════


class TestTenantLifecycle:
    async def test_create_tenant_is_pending(self, db):
        tenant = await tenant_service.create_tenant("Lung Care", TenantType.single_practitioner, "lung@example.com", db)

        assert tenant.status == TenantStatus.pending.value
        assert tenant.tenant_code == "dr_lung_care"
        assert tenant.provision_attempts == 0

    async def test_generated_codes_do_not_clash(self, db):
        first = await tenant_service.create_tenant("Lung Care", TenantType.single_practitioner, "a@example.com", db)
        second = await tenant_service.create_tenant("Lung Care", TenantType.single_practitioner, "b@example.com", db)

        assert first.tenant_code == "dr_lung_care"
        assert second.tenant_code == "dr_lung_care_1"

    async def test_code_claimed_concurrently_gets_next_suffix(self, db, seed_tenant):
        seed_tenant("dr_lung_care")
        # both registrations saw the code as free before either committed
        racing = AsyncMock(side_effect=["dr_lung_care", "dr_lung_care_1"])

        with patch.object(tenant_service, "generate_tenant_code", racing):
            tenant = await tenant_service.create_tenant(
                "Lung Care", TenantType.single_practitioner, "lung@example.com", db
            )

        assert tenant.tenant_code == "dr_lung_care_1"
        assert racing.await_count == 2

    async def test_explicit_code_clash_is_duplicate(self, db, seed_tenant):
        seed_tenant("clinic_a")

        with pytest.raises(DuplicateResourceError):
            await tenant_service.create_tenant(
                "Clinic A", TenantType.single_practitioner, "other@example.com", db, tenant_code="clinic_a"
            )

    async def test_duplicate_email_is_rejected(self, db):
        await tenant_service.create_tenant("Lung Care", TenantType.single_practitioner, "lung@example.com", db)

        with pytest.raises(DuplicateResourceError):
            await tenant_service.create_tenant("Other", TenantType.facility, "lung@example.com", db)

    async def test_update_ignores_immutable_fields(self, db):
        tenant = await tenant_service.create_tenant("Lung Care", TenantType.single_practitioner, "lung@example.com", db)

        updated = await tenant_service.update_tenant(
            tenant.id, {"name": "Lung Care Plus", "tenant_code": "hijack", "status": "active"}, db
        )

        assert updated.name == "Lung Care Plus"
        assert updated.tenant_code == "dr_lung_care"
        assert updated.status == TenantStatus.pending.value

    async def test_update_missing_tenant_returns_none(self, db):
        assert await tenant_service.update_tenant(999, {"name": "x"}, db) is None

    async def test_illegal_transition_is_rejected(self, db):
        tenant = await tenant_service.create_tenant("Lung Care", TenantType.single_practitioner, "lung@example.com", db)

        with pytest.raises(InvalidStatusTransitionError):
            await tenant_service.set_tenant_status(tenant, TenantStatus.active, db)

    async def test_list_filters(self, db, seed_tenant):
        seed_tenant("clinic_a")
        seed_tenant("hosp_b", tenant_type=TenantType.facility, status=TenantStatus.suspended)

        suspended = await tenant_service.list_tenants(db, status="suspended")
        facilities = await tenant_service.list_tenants(db, type="hospital")
        searched = await tenant_service.list_tenants(db, search="Clinic")

        assert [t.tenant_code for t in suspended] == ["hosp_b"]
        assert [t.tenant_code for t in facilities] == ["hosp_b"]
        assert [t.tenant_code for t in searched] == ["clinic_a"]


class TestDomains:
    async def test_add_domain_is_pending_with_token(self, db, seed_tenant):
        tenant_id = seed_tenant("clinic_a")

        binding = await tenant_service.add_domain(tenant_id, "Clinic-A.example.com", db, is_primary=True)

        assert binding.domain == "clinic-a.example.com"
        assert binding.verification_status == VerificationStatus.pending.value
        assert binding.verification_token.startswith("saas_verify_")

    async def test_domain_is_unique_across_tenants(self, db, seed_tenant):
        seed_tenant("clinic_a", "clinic-a.example.com")
        other_id = seed_tenant("clinic_b")

        with pytest.raises(DuplicateResourceError):
            await tenant_service.add_domain(other_id, "clinic-a.example.com", db)

    async def test_new_primary_replaces_old(self, db, seed_tenant):
        tenant_id = seed_tenant("clinic_a", "clinic-a.example.com")

        await tenant_service.add_domain(tenant_id, "portal.clinic-a.com", db, is_primary=True)

        domains = {d.domain: d.is_primary for d in await tenant_service.list_domains(tenant_id, db)}
        assert domains == {"clinic-a.example.com": False, "portal.clinic-a.com": True}

    async def test_add_domain_to_missing_tenant(self, db):
        with pytest.raises(ResourceNotFoundError):
            await tenant_service.add_domain(42, "nowhere.example.com", db)

    async def test_verify_domain_records_outcome(self, db, seed_tenant):
        tenant_id = seed_tenant("clinic_a")
        binding = await tenant_service.add_domain(tenant_id, "clinic-a.example.com", db)
        check = AsyncMock(return_value=True)

        verified = await tenant_service.verify_domain(tenant_id, binding.id, db, check)

        check.assert_awaited_once_with("clinic-a.example.com", binding.verification_token)
        assert verified.verification_status == VerificationStatus.verified.value
        assert verified.verified_at is not None

    async def test_failed_ownership_check(self, db, seed_tenant):
        tenant_id = seed_tenant("clinic_a")
        binding = await tenant_service.add_domain(tenant_id, "clinic-a.example.com", db)

        result = await tenant_service.verify_domain(tenant_id, binding.id, db, AsyncMock(return_value=False))

        assert result.verification_status == VerificationStatus.failed.value

    async def test_verify_domain_of_other_tenant_is_not_found(self, db, seed_tenant):
        owner_id = seed_tenant("clinic_a")
        intruder_id = seed_tenant("clinic_b")
        binding = await tenant_service.add_domain(owner_id, "clinic-a.example.com", db)

        with pytest.raises(ResourceNotFoundError):
            await tenant_service.verify_domain(intruder_id, binding.id, db, AsyncMock(return_value=True))

    async def test_resolve_domain_requires_verified_and_active(self, db, seed_tenant):
        seed_tenant("clinic_a", "clinic-a.example.com")
        seed_tenant("clinic_b", "clinic-b.example.com", verified=False)

        match = await tenant_service.resolve_domain("clinic-a.example.com", db)

        assert match[0].tenant_code == "clinic_a"
        assert await tenant_service.resolve_domain("clinic-b.example.com", db) is None
