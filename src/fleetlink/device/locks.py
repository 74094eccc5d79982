"""
Per-router mutual exclusion.

Operations against the same (tenant, host) run one at a time, in arrival
order. Each key has an explicit FIFO queue of waiter futures; the head of
the queue holds the lock. The queue is dropped once drained.
"""

import asyncio
import logging
from collections import deque
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, Deque, Dict

logger = logging.getLogger(__name__)


class RouterLockManager:
    """FIFO lock per (tenant, host). No timeout: callers bound their bodies."""

    def __init__(self):
        self._queues: Dict[str, Deque[asyncio.Future]] = {}

    def __len__(self) -> int:
        return len(self._queues)

    @staticmethod
    def _key(tenant_id: str, host: str) -> str:
        return f"{tenant_id}:{host}"

    def pending(self, tenant_id: str, host: str) -> int:
        """Holder plus waiters for a key."""
        return len(self._queues.get(self._key(tenant_id, host), ()))

    @asynccontextmanager
    async def locked(self, tenant_id: str, host: str):
        key = self._key(tenant_id, host)
        queue = self._queues.setdefault(key, deque())
        waiter = asyncio.get_event_loop().create_future()
        queue.append(waiter)
        if queue[0] is waiter:
            waiter.set_result(None)

        try:
            await waiter
        except asyncio.CancelledError:
            self._release(key, waiter)
            raise

        try:
            yield
        finally:
            self._release(key, waiter)

    async def with_lock(self, tenant_id: str, host: str,
                        body: Callable[..., Awaitable[Any]], *args) -> Any:
        """Run ``body(*args)`` while holding the key's lock."""
        async with self.locked(tenant_id, host):
            return await body(*args)

    def _release(self, key: str, waiter: asyncio.Future) -> None:
        queue = self._queues.get(key)
        if queue is None:
            return

        was_holder = bool(queue) and queue[0] is waiter
        try:
            queue.remove(waiter)
        except ValueError:
            return

        if was_holder:
            # Hand over to the next waiter still interested
            while queue:
                nxt = queue[0]
                if not nxt.done():
                    nxt.set_result(None)
                    break
                queue.popleft()

        if not queue:
            del self._queues[key]
