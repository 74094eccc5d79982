"""
Station and tenant persistence for fleetlink.
"""

from fleetlink.store.base import StationStore, StoreError
from fleetlink.store.memory import MemoryStationStore
from fleetlink.store.models import (
    EnrollmentMode,
    StationRecord,
    TenantConfig,
    TenantStatus,
)
from fleetlink.store.yaml_store import YamlStationStore


def create_store(backend: str = "memory", path: str = "") -> StationStore:
    """Create a station store for the configured backend."""
    if backend == "memory":
        return MemoryStationStore()
    if backend == "yaml":
        if not path:
            raise ValueError("YAML station store requires a path")
        return YamlStationStore(path)
    raise ValueError(f"Unknown storage backend: {backend}")


__all__ = [
    "StationStore",
    "StoreError",
    "MemoryStationStore",
    "YamlStationStore",
    "EnrollmentMode",
    "StationRecord",
    "TenantConfig",
    "TenantStatus",
    "create_store",
]
