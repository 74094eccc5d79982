"""
Tests for fleetlink.store memory store and models.
"""

import pytest

from fleetlink.store import create_store
from fleetlink.store.base import StoreError
from fleetlink.store.memory import MemoryStationStore
from fleetlink.store.models import EnrollmentMode, StationRecord, TenantConfig, TenantStatus


class TestEnrollmentMode:
    """Tests for EnrollmentMode parsing."""

    def test_parse(self):
        assert EnrollmentMode.parse("RADIUS") == EnrollmentMode.RADIUS
        assert EnrollmentMode.parse(" api ") == EnrollmentMode.API
        assert EnrollmentMode.parse(EnrollmentMode.RADIUS) == EnrollmentMode.RADIUS

    def test_unknown_falls_back(self):
        assert EnrollmentMode.parse("pppoe") == EnrollmentMode.API
        assert EnrollmentMode.parse(None, default=EnrollmentMode.RADIUS) == EnrollmentMode.RADIUS


class TestStationRecord:
    """Tests for StationRecord."""

    def test_public_dict_hides_secrets(self):
        record = StationRecord(tenant_id="t1", name="r", host="10.10.10.2",
                               password="gcm1:abc", radius_client_secret="s")
        data = record.to_public_dict()
        assert "password" not in data
        assert "radius_client_secret" not in data
        assert data["mode"] == "api"

    def test_matches_identity(self):
        record = StationRecord(tenant_id="t1", name="r", host="10.10.10.2", public_key="k1")
        assert record.matches_identity("10.10.10.2", None)
        assert record.matches_identity(None, "k1")
        assert not record.matches_identity("10.10.10.3", "k2")
        assert not record.matches_identity("", "")


class TestMemoryStationStore:
    """Tests for MemoryStationStore."""

    @pytest.mark.asyncio
    async def test_create_assigns_id(self, memory_store: MemoryStationStore):
        station = await memory_store.create_station(
            StationRecord(tenant_id="t1", name="r1", host="10.10.10.2")
        )
        assert station.id
        assert (await memory_store.get_station(station.id)).name == "r1"

    @pytest.mark.asyncio
    async def test_duplicate_identity_rejected(self, seeded_store):
        with pytest.raises(StoreError):
            await seeded_store.create_station(
                StationRecord(tenant_id="t1", name="dup", host="10.10.10.2")
            )

    @pytest.mark.asyncio
    async def test_same_host_other_tenant_rejected(self, seeded_store):
        with pytest.raises(StoreError):
            await seeded_store.create_station(
                StationRecord(tenant_id="t2", name="other", host="10.10.10.2")
            )
        assert len(await seeded_store.list_stations()) == 1

    @pytest.mark.asyncio
    async def test_identity_lookup_across_tenants(self, seeded_store):
        found = await seeded_store.get_station_by_identity(None, None, "cHViLWtleS0x")
        assert found.tenant_id == "t1"
        assert await seeded_store.get_station_by_identity("t2", "10.10.10.2", None) is None

    @pytest.mark.asyncio
    async def test_update_cannot_take_another_identity(self, seeded_store):
        other = await seeded_store.create_station(
            StationRecord(tenant_id="t2", name="other", host="10.10.10.3", public_key="a2V5LTI=")
        )
        with pytest.raises(StoreError):
            await seeded_store.update_station(other.id, {"host": "10.10.10.2"})
        assert (await seeded_store.get_station(other.id)).host == "10.10.10.3"

    @pytest.mark.asyncio
    async def test_records_are_copies(self, seeded_store):
        station = await seeded_store.get_station_by_host("t1", "10.10.10.2")
        station.name = "mutated"
        again = await seeded_store.get_station_by_host("t1", "10.10.10.2")
        assert again.name == "Router1"

    @pytest.mark.asyncio
    async def test_update_skips_protected_fields(self, seeded_store):
        station = await seeded_store.get_station_by_host("t1", "10.10.10.2")
        updated = await seeded_store.update_station(station.id, {
            "id": "other",
            "created_at": 0,
            "mode": "radius",
            "unknown": "x",
        })
        assert updated.id == station.id
        assert updated.created_at == station.created_at
        assert updated.mode == EnrollmentMode.RADIUS

    @pytest.mark.asyncio
    async def test_update_missing_station(self, memory_store):
        with pytest.raises(StoreError):
            await memory_store.update_station("missing", {"name": "x"})

    @pytest.mark.asyncio
    async def test_ddns_lookup_is_tenant_scoped(self, seeded_store):
        assert await seeded_store.get_station_by_ddns("t1", "abc123.sn.mynetname.net")
        assert await seeded_store.get_station_by_ddns("t2", "abc123.sn.mynetname.net") is None
        assert await seeded_store.get_station_by_ddns("t1", "") is None

    @pytest.mark.asyncio
    async def test_tenants(self, memory_store):
        await memory_store.save_tenant(TenantConfig(tenant_id="t9", status=TenantStatus.INACTIVE))
        tenant = await memory_store.get_tenant("t9")
        assert not tenant.is_active
        assert await memory_store.get_tenant("missing") is None


class TestCreateStore:
    """Tests for create_store factory."""

    def test_memory(self):
        assert isinstance(create_store("memory"), MemoryStationStore)

    def test_yaml_requires_path(self):
        with pytest.raises(ValueError):
            create_store("yaml")

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            create_store("postgres")
