"""
Per-session event channel.

Operators watching an enrollment subscribe to its token and receive
progress logs and the completion result. Delivery is best-effort: a
subscriber whose queue is full misses events.
"""

import asyncio
import logging
import time
from typing import Any, Dict, List

logger = logging.getLogger(__name__)

EVENT_LOG = "log"
EVENT_COMPLETE = "complete"
EVENT_SAVED = "saved"


class SessionEventHub:
    """Fan-out of session events to subscriber queues."""

    def __init__(self, max_queue: int = 100):
        self.max_queue = max_queue
        self._subscribers: Dict[str, List[asyncio.Queue]] = {}

    def subscribe(self, token: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.max_queue)
        self._subscribers.setdefault(token, []).append(queue)
        return queue

    def unsubscribe(self, token: str, queue: asyncio.Queue) -> None:
        queues = self._subscribers.get(token)
        if not queues:
            return
        if queue in queues:
            queues.remove(queue)
        if not queues:
            del self._subscribers[token]

    def subscriber_count(self, token: str) -> int:
        return len(self._subscribers.get(token, ()))

    def emit(self, token: str, event: str, data: Dict[str, Any]) -> int:
        """Queue an event for every subscriber. Returns deliveries made."""
        message = {
            "event": event,
            "data": dict(data, token=token, timestamp=int(time.time() * 1000)),
        }
        delivered = 0
        for queue in self._subscribers.get(token, ()):
            try:
                queue.put_nowait(message)
                delivered += 1
            except asyncio.QueueFull:
                logger.debug(f"Dropping {event} event for a slow subscriber")
        return delivered
