"""
Station persistence interface.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from fleetlink.store.models import StationRecord, TenantConfig


class StoreError(Exception):
    """Raised when station persistence fails."""


class StationStore(ABC):
    """
    Async persistence for tenants and stations.

    Tunnel addresses are shared by all tenants, so identity (tunnel
    address or public key) maps to at most one station across the store.
    """

    @abstractmethod
    async def get_tenant(self, tenant_id: str) -> Optional[TenantConfig]:
        """Get tenant settings."""

    @abstractmethod
    async def save_tenant(self, tenant: TenantConfig) -> TenantConfig:
        """Create or replace tenant settings."""

    @abstractmethod
    async def list_stations(self, tenant_id: Optional[str] = None) -> List[StationRecord]:
        """List stations, optionally limited to one tenant."""

    @abstractmethod
    async def create_station(self, record: StationRecord) -> StationRecord:
        """Persist a new station and return it with its id."""

    @abstractmethod
    async def update_station(self, station_id: str, changes: Dict[str, Any]) -> StationRecord:
        """Merge ``changes`` into a station. Raises StoreError if missing."""

    async def get_station(self, station_id: str) -> Optional[StationRecord]:
        for station in await self.list_stations():
            if station.id == station_id:
                return station
        return None

    async def get_station_by_host(self, tenant_id: str, host: str) -> Optional[StationRecord]:
        for station in await self.list_stations(tenant_id):
            if station.host == host:
                return station
        return None

    async def get_station_by_identity(
        self,
        tenant_id: Optional[str],
        host: Optional[str],
        public_key: Optional[str],
    ) -> Optional[StationRecord]:
        """Find the station owning the tunnel address or the public key.

        A ``tenant_id`` of None searches every tenant.
        """
        for station in await self.list_stations(tenant_id):
            if station.matches_identity(host, public_key):
                return station
        return None

    async def get_station_by_ddns(self, tenant_id: str, ddns: str) -> Optional[StationRecord]:
        if not ddns:
            return None
        for station in await self.list_stations(tenant_id):
            if station.ddns == ddns:
                return station
        return None

    async def webfig_host_exists(self, webfig_host: str) -> bool:
        return any(s.webfig_host == webfig_host for s in await self.list_stations())

    async def radius_client_name_exists(self, name: str) -> bool:
        return any(s.radius_client_name == name for s in await self.list_stations())
