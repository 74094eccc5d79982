"""
YAML file station store.

The whole data set is rewritten on every mutation: write to a sibling
temp file, then rename over the original.
"""

import copy
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Tuple

import yaml

from fleetlink.store.base import StoreError
from fleetlink.store.memory import MemoryStationStore
from fleetlink.store.models import StationRecord, TenantConfig

logger = logging.getLogger(__name__)


class YamlStationStore(MemoryStationStore):
    """Station store persisted to a single YAML document."""

    def __init__(self, path: str):
        super().__init__()
        self.path = Path(path)
        self._load()

    def _load(self) -> None:
        if not self.path.exists():
            logger.info(f"Station store {self.path} not found, starting empty")
            return

        try:
            with open(self.path) as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise StoreError(f"Failed to read station store {self.path}: {e}")

        for item in data.get("tenants", []):
            tenant = TenantConfig.from_dict(item)
            self._tenants[tenant.tenant_id] = tenant
        for item in data.get("stations", []):
            station = StationRecord.from_dict(item)
            self._stations[station.id] = station

        logger.info(
            f"Loaded {len(self._tenants)} tenants and "
            f"{len(self._stations)} stations from {self.path}"
        )

    def _save(self) -> None:
        data = {
            "tenants": [t.to_dict() for t in self._tenants.values()],
            "stations": [s.to_dict() for s in self._stations.values()],
        }

        tmp_path = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                prefix=f".{self.path.name}.", dir=str(self.path.parent)
            )
            with os.fdopen(fd, "w") as f:
                yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, self.path)
        except OSError as e:
            if tmp_path:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass
            raise StoreError(f"Failed to write station store {self.path}: {e}")

    def _snapshot(self) -> Tuple[Dict[str, TenantConfig], Dict[str, StationRecord]]:
        return (
            {k: copy.copy(v) for k, v in self._tenants.items()},
            {k: copy.copy(v) for k, v in self._stations.items()},
        )

    def _commit(self, snapshot) -> None:
        """Write the data set, or put memory back as it was if that fails."""
        try:
            self._save()
        except StoreError:
            self._tenants, self._stations = snapshot
            raise

    async def save_tenant(self, tenant: TenantConfig) -> TenantConfig:
        snapshot = self._snapshot()
        result = await super().save_tenant(tenant)
        self._commit(snapshot)
        return result

    async def create_station(self, record: StationRecord) -> StationRecord:
        snapshot = self._snapshot()
        result = await super().create_station(record)
        self._commit(snapshot)
        return result

    async def update_station(self, station_id: str, changes: Dict[str, Any]) -> StationRecord:
        snapshot = self._snapshot()
        result = await super().update_station(station_id, changes)
        self._commit(snapshot)
        return result
