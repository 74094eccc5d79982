"""
Serialized router access.

Every router-facing job goes through RouterAccess.run: take the router's
lock, get a pooled channel, run the operation, convert failures into a
structured result.
"""

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from fleetlink.device.gateway import DeviceChannel, DeviceError
from fleetlink.device.locks import RouterLockManager
from fleetlink.device.pool import ConnectionPool

logger = logging.getLogger(__name__)


@dataclass
class AccessResult:
    """Outcome of an operation run against a router."""
    success: bool
    message: str = ""
    value: Any = None
    unreachable: bool = False


class RouterAccess:
    """Runs operations against routers under the per-router lock."""

    def __init__(self, pool: ConnectionPool, locks: RouterLockManager):
        self.pool = pool
        self.locks = locks

    async def run(
        self,
        tenant_id: str,
        host: str,
        operation: Callable[[DeviceChannel], Awaitable[Any]],
    ) -> AccessResult:
        async with self.locks.locked(tenant_id, host):
            channel: Optional[DeviceChannel] = await self.pool.acquire(tenant_id, host)
            if channel is None:
                return AccessResult(
                    success=False,
                    message="Router unreachable",
                    unreachable=True,
                )

            try:
                value = await operation(channel)
            except DeviceError as e:
                logger.warning(f"Operation on {tenant_id}:{host} failed: {e}")
                await self.pool.evict(tenant_id, host)
                return AccessResult(success=False, message=str(e))

            return AccessResult(success=True, value=value)
