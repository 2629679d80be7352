"""
Tests for hostname / override tenant resolution
"""

from unittest.mock import AsyncMock, MagicMock, call, patch

import pytest
from sqlalchemy.exc import OperationalError
from starlette.requests import Request

from medtenancy.config import Settings
from medtenancy.database import create_platform_engine, create_session_factory
from medtenancy.exceptions import PoolCreationError
from medtenancy.services.pool_registry import TenantPoolRegistry
from medtenancy.services.registry import RegistryClient, TenantDescriptor, legacy_descriptor
from medtenancy.services.tenant_resolver import TenantResolver, is_loopback_host, normalize_host


def _request(path: str = "/api/telemedicine/sessions", host: str = "clinic-a.example.com", headers=None, query=b""):
    raw_headers = [(b"host", host.encode())]
    for key, value in (headers or {}).items():
        raw_headers.append((key.lower().encode(), value.encode()))
    return Request(
        {
            "type": "http",
            "method": "GET",
            "scheme": "http",
            "path": path,
            "root_path": "",
            "query_string": query,
            "headers": raw_headers,
        }
    )


def _descriptor(code: str = "clinic_a", status: str = "active") -> TenantDescriptor:
    return TenantDescriptor(id=1, code=code, name="Clinic A", type="doctor", status=status, database_name=code)


@pytest.fixture
def settings():
    return Settings(legacy_tenant_code="legacy_single_tenant", scheduler_enabled=False)


@pytest.fixture
def registry():
    registry = MagicMock()
    registry.find_by_domain = AsyncMock(return_value=None)
    registry.find_active_by_code = AsyncMock(return_value=None)
    return registry


@pytest.fixture
def pools():
    pools = MagicMock()
    pools.get_or_create = AsyncMock(side_effect=lambda code: f"engine:{code}")
    return pools


class TestNormalizeHost:
    def test_strips_port_and_lowercases(self):
        assert normalize_host("Clinic-A.Example.com:8443") == "clinic-a.example.com"

    def test_strips_www(self):
        assert normalize_host("www.clinic-a.example.com") == "clinic-a.example.com"

    def test_ipv6_literal(self):
        assert normalize_host("[::1]:8000") == "::1"

    def test_empty(self):
        assert normalize_host(None) == ""
        assert normalize_host("") == ""

    def test_loopback_detection(self):
        assert is_loopback_host("localhost")
        assert is_loopback_host("tenant.localhost")
        assert is_loopback_host("127.0.0.1")
        assert is_loopback_host("::1")
        assert not is_loopback_host("clinic-a.example.com")


class TestDomainResolution:
    async def test_verified_active_domain_resolves(self, registry, pools, settings):
        registry.find_by_domain.return_value = _descriptor("clinic_a")
        resolver = TenantResolver(registry, pools, settings)

        context = await resolver.resolve(_request(host="clinic-a.example.com:443"))

        assert context.code == "clinic_a"
        assert context.pool == "engine:clinic_a"
        assert context.resolved_by == "domain"
        registry.find_by_domain.assert_awaited_once_with("clinic-a.example.com")

    async def test_unregistered_domain_is_unresolved(self, registry, pools, settings):
        resolver = TenantResolver(registry, pools, settings)

        assert await resolver.resolve(_request(host="unregistered.example.com")) is None
        pools.get_or_create.assert_not_awaited()

    async def test_override_ignored_on_public_host(self, registry, pools, settings):
        resolver = TenantResolver(registry, pools, settings)

        await resolver.resolve(_request(host="unregistered.example.com", headers={"X-Tenant-Code": "clinic_b"}))

        registry.find_active_by_code.assert_not_awaited()
        registry.find_by_domain.assert_awaited_once()

    async def test_platform_paths_skip_resolution(self, registry, pools, settings):
        resolver = TenantResolver(registry, pools, settings)

        assert await resolver.resolve(_request(path="/api/tenants/register")) is None
        assert await resolver.resolve(_request(path="/api/platform/stats")) is None
        registry.find_by_domain.assert_not_awaited()

    async def test_registry_error_fails_open(self, registry, pools, settings):
        registry.find_by_domain.side_effect = OperationalError("SELECT 1", {}, Exception("gone away"))
        resolver = TenantResolver(registry, pools, settings)

        assert await resolver.resolve(_request()) is None

    async def test_registry_error_is_counted_once(self, registry, pools, settings):
        registry.find_by_domain.side_effect = OperationalError("SELECT 1", {}, Exception("gone away"))
        resolver = TenantResolver(registry, pools, settings)

        with patch("medtenancy.services.tenant_resolver.record_resolution") as record:
            await resolver.resolve(_request())

        assert record.call_args_list == [call("error")]

    async def test_miss_is_counted_once(self, registry, pools, settings):
        resolver = TenantResolver(registry, pools, settings)

        with patch("medtenancy.services.tenant_resolver.record_resolution") as record:
            await resolver.resolve(_request())

        assert record.call_args_list == [call("unresolved")]

    async def test_pool_error_propagates(self, registry, pools, settings):
        registry.find_by_domain.return_value = _descriptor("clinic_a")
        pools.get_or_create.side_effect = PoolCreationError("clinic_a")
        resolver = TenantResolver(registry, pools, settings)

        with pytest.raises(PoolCreationError):
            await resolver.resolve(_request())


class TestOverrideResolution:
    async def test_loopback_header_override(self, registry, pools, settings):
        registry.find_active_by_code.return_value = _descriptor("clinic_b")
        resolver = TenantResolver(registry, pools, settings)

        context = await resolver.resolve(_request(host="localhost:5173", headers={"X-Tenant-Code": "clinic_b"}))

        assert context.code == "clinic_b"
        assert context.resolved_by == "override"
        registry.find_by_domain.assert_not_awaited()

    async def test_loopback_query_override(self, registry, pools, settings):
        registry.find_active_by_code.return_value = _descriptor("clinic_b")
        resolver = TenantResolver(registry, pools, settings)

        context = await resolver.resolve(_request(host="127.0.0.1", query=b"tenantCode=clinic_b"))

        assert context.code == "clinic_b"
        registry.find_active_by_code.assert_awaited_once_with("clinic_b")

    async def test_loopback_without_override_is_unresolved(self, registry, pools, settings):
        resolver = TenantResolver(registry, pools, settings)

        assert await resolver.resolve(_request(host="localhost")) is None
        registry.find_by_domain.assert_not_awaited()

    async def test_override_allowed_everywhere_when_enabled(self, registry, pools):
        registry.find_active_by_code.return_value = _descriptor("clinic_b")
        settings = Settings(allow_tenant_override=True, scheduler_enabled=False)
        resolver = TenantResolver(registry, pools, settings)

        context = await resolver.resolve(_request(host="staging.example.com", headers={"X-Tenant-Code": "clinic_b"}))

        assert context.code == "clinic_b"


class TestAgainstRegistryDatabase:
    """Resolution through a real RegistryClient over the SQLite platform file."""

    @pytest.fixture
    async def resolver(self, test_settings, platform_db):
        engine = create_platform_engine(test_settings)
        registry = RegistryClient(create_session_factory(engine))
        registry.seed(legacy_descriptor(test_settings))
        pools = TenantPoolRegistry(lambda db: f"engine:{db}", registry.database_name_for)
        yield TenantResolver(registry, pools, test_settings)
        await engine.dispose()

    async def test_scenario_clinic_a(self, resolver, seed_tenant):
        seed_tenant("clinic_a", "clinic-a.example.com")

        context = await resolver.resolve_host("clinic-a.example.com")

        assert context.code == "clinic_a"
        assert context.tenant.domain == "clinic-a.example.com"
        assert context.pool == "engine:clinic_a"

    async def test_unverified_domain_is_unresolved(self, resolver, seed_tenant):
        seed_tenant("clinic_c", "clinic-c.example.com", verified=False)

        assert await resolver.resolve_host("clinic-c.example.com") is None

    async def test_suspended_tenant_is_unresolved(self, resolver, seed_tenant):
        from medtenancy.models.tenant import TenantStatus

        seed_tenant("clinic_d", "clinic-d.example.com", status=TenantStatus.suspended)

        assert await resolver.resolve_host("clinic-d.example.com") is None

    async def test_legacy_override_bypasses_registry_rows(self, resolver):
        context = await resolver.resolve_host("localhost", override="legacy_single_tenant")

        assert context.tenant.id == 0
        assert context.tenant.database_name == "Doctor_Mann"
        assert context.pool == "engine:Doctor_Mann"

    async def test_override_for_inactive_code_is_unresolved(self, resolver, seed_tenant):
        from medtenancy.models.tenant import TenantStatus

        seed_tenant("clinic_e", status=TenantStatus.pending)

        assert await resolver.resolve_host("localhost", override="clinic_e") is None
