"""
In-memory station store.
"""

import copy
import logging
import time
import uuid
from typing import Any, Dict, List, Optional

from fleetlink.store.base import StationStore, StoreError
from fleetlink.store.models import EnrollmentMode, StationRecord, TenantConfig

logger = logging.getLogger(__name__)


class MemoryStationStore(StationStore):
    """Keeps tenants and stations in process memory. Records are copied on
    the way in and out so callers never share state with the store."""

    def __init__(self):
        self._tenants: Dict[str, TenantConfig] = {}
        self._stations: Dict[str, StationRecord] = {}

    async def get_tenant(self, tenant_id: str) -> Optional[TenantConfig]:
        tenant = self._tenants.get(tenant_id)
        return copy.copy(tenant) if tenant else None

    async def save_tenant(self, tenant: TenantConfig) -> TenantConfig:
        self._tenants[tenant.tenant_id] = copy.copy(tenant)
        return tenant

    async def list_stations(self, tenant_id: Optional[str] = None) -> List[StationRecord]:
        return [
            copy.copy(s) for s in self._stations.values()
            if tenant_id is None or s.tenant_id == tenant_id
        ]

    async def create_station(self, record: StationRecord) -> StationRecord:
        existing = await self.get_station_by_identity(None, record.host, record.public_key)
        if existing:
            raise StoreError(f"Station identity already registered as {existing.id}")

        record = copy.copy(record)
        if not record.id:
            record.id = uuid.uuid4().hex
        self._stations[record.id] = record
        logger.debug(f"Created station {record.id} ({record.name})")
        return copy.copy(record)

    async def update_station(self, station_id: str, changes: Dict[str, Any]) -> StationRecord:
        station = self._stations.get(station_id)
        if station is None:
            raise StoreError(f"Station not found: {station_id}")

        host = changes.get("host", station.host)
        public_key = changes.get("public_key", station.public_key)
        for other in self._stations.values():
            if other.id != station_id and other.matches_identity(host, public_key):
                raise StoreError(f"Station identity already registered as {other.id}")

        for key, value in changes.items():
            if key in ("id", "created_at") or not hasattr(station, key):
                continue
            if key == "mode":
                value = EnrollmentMode.parse(value)
            setattr(station, key, value)
        station.updated_at = time.time()
        return copy.copy(station)
