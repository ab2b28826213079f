"""Refresh notifications for UI subscribers."""

import asyncio
import logging
from typing import Any

logger = logging.getLogger(__name__)


class RefreshBroadcaster:
    """Fan-out of refresh messages to any number of subscriber queues.

    Owned by a scheduler instance; each WebSocket client subscribes for the
    life of its connection.
    """

    def __init__(self, max_queue_size: int = 100):
        self._subscribers: set[asyncio.Queue] = set()
        self._max_queue_size = max_queue_size

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._max_queue_size)
        self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self._subscribers.discard(queue)

    def publish(self, reason: str, **data: Any) -> None:
        message = {"type": "refresh", "reason": reason, **data}
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(message)
            except asyncio.QueueFull:
                # Slow consumer; it will catch up on the next refresh
                logger.debug("Dropping refresh for a full subscriber queue")

    def close(self) -> None:
        self._subscribers.clear()
