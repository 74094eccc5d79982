"""
Connection pool for router API channels.

Caches one live channel per (tenant, host). Entries idle longer than the
threshold are closed by a background sweep. A channel found dead on
acquire is treated as a cache miss and reopened.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional

from fleetlink.core.service import Service
from fleetlink.device.gateway import DeviceChannel, DeviceConnectionError, DeviceGateway
from fleetlink.security.encryption import PasswordCipher
from fleetlink.store.base import StationStore

logger = logging.getLogger(__name__)


def pool_key(tenant_id: str, host: str) -> str:
    return f"{tenant_id}:{host}"


@dataclass
class PoolEntry:
    """A cached channel."""
    channel: DeviceChannel
    created_at: float
    last_used: float = field(default=0.0)


class ConnectionPool(Service):
    """Per-(tenant, host) channel cache with idle eviction."""

    def __init__(
        self,
        store: StationStore,
        gateway: DeviceGateway,
        cipher: Optional[PasswordCipher] = None,
        idle_seconds: float = 120,
        sweep_interval: float = 30,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__("connection-pool")
        self.store = store
        self.gateway = gateway
        self.cipher = cipher
        self.idle_seconds = idle_seconds
        self.sweep_interval = sweep_interval
        self._clock = clock
        self._entries: Dict[str, PoolEntry] = {}
        self._sweep_task: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key) -> bool:
        return pool_key(*key) in self._entries

    async def acquire(self, tenant_id: str, host: str) -> Optional[DeviceChannel]:
        """
        Get a live channel to a tenant's router.

        Returns:
            The channel, or None when the device cannot be reached with the
            stored credentials (unknown or inactive tenant, unknown
            station, connect/auth failure, timeout).
        """
        key = pool_key(tenant_id, host)
        entry = self._entries.get(key)
        if entry is not None:
            if not entry.channel.closed:
                entry.last_used = self._clock()
                return entry.channel
            logger.debug(f"Dropping dead channel for {key}")
            await self._discard(key, entry)

        tenant = await self.store.get_tenant(tenant_id)
        if tenant is None or not tenant.is_active:
            logger.warning(f"Tenant {tenant_id} is unknown or inactive; not connecting to {host}")
            return None

        station = await self.store.get_station_by_host(tenant_id, host)
        if station is None or not station.username:
            logger.warning(f"No station credentials for {key}")
            return None

        password = station.password
        if self.cipher is not None:
            password = self.cipher.decrypt_safe(password)

        try:
            channel = await self.gateway.connect(host, station.username, password)
        except DeviceConnectionError as e:
            logger.warning(f"Device unreachable {key}: {e}")
            return None

        # Another caller may have filled the slot while we were connecting
        current = self._entries.get(key)
        if current is not None and not current.channel.closed:
            await _close_quietly(channel)
            current.last_used = self._clock()
            return current.channel

        now = self._clock()
        self._entries[key] = PoolEntry(channel=channel, created_at=now, last_used=now)
        logger.info(f"Opened channel for {key}")
        return channel

    async def evict(self, tenant_id: str, host: str) -> bool:
        """Close and forget the channel for a key."""
        key = pool_key(tenant_id, host)
        entry = self._entries.get(key)
        if entry is None:
            return False
        await self._discard(key, entry)
        return True

    async def sweep(self) -> int:
        """Close entries idle longer than the threshold. Returns the count."""
        now = self._clock()
        expired = [
            (key, entry) for key, entry in self._entries.items()
            if now - entry.last_used > self.idle_seconds
        ]
        for key, entry in expired:
            await self._discard(key, entry)
        if expired:
            logger.info(f"Evicted {len(expired)} idle channel(s)")
        return len(expired)

    async def close_all(self) -> None:
        for key, entry in list(self._entries.items()):
            await self._discard(key, entry)

    async def _discard(self, key: str, entry: PoolEntry) -> None:
        if self._entries.get(key) is entry:
            del self._entries[key]
        await _close_quietly(entry.channel)

    async def start(self) -> None:
        if self._sweep_task is None:
            self._sweep_task = asyncio.create_task(self._sweep_loop())

    async def stop(self) -> None:
        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
        await self.close_all()

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            try:
                await self.sweep()
            except Exception as e:
                logger.error(f"Pool sweep failed: {e}")


async def _close_quietly(channel: DeviceChannel) -> None:
    try:
        await channel.close()
    except Exception as e:
        logger.debug(f"Ignoring channel close error: {e}")
