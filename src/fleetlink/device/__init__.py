"""
Router access layer for fleetlink.

Provides:
- RouterOS API channels (gateway)
- Channel pooling with idle eviction
- Per-router FIFO locking
"""

from fleetlink.device.access import AccessResult, RouterAccess
from fleetlink.device.gateway import (
    DeviceChannel,
    DeviceConnectionError,
    DeviceError,
    DeviceGateway,
    ping_from,
)
from fleetlink.device.locks import RouterLockManager
from fleetlink.device.pool import ConnectionPool

__all__ = [
    "AccessResult",
    "RouterAccess",
    "DeviceChannel",
    "DeviceConnectionError",
    "DeviceError",
    "DeviceGateway",
    "ping_from",
    "RouterLockManager",
    "ConnectionPool",
]
