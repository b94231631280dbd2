"""In-process change feed.

Conversion progress is published per conversion id; the server-sent
events endpoint subscribes to the feed and forwards each payload to the
browser. A subscriber that falls behind loses its oldest pending payloads
rather than blocking the publisher.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import Any, Dict, Set

logger = logging.getLogger(__name__)


class Subscription:
    """Async iterator over the payloads published for one key.

    The subscription is registered as soon as it is created, so nothing
    published afterwards is missed. ``close()`` unregisters it.
    """

    def __init__(self, feed: "ChangeFeed", key: str, queue: asyncio.Queue) -> None:
        self.feed = feed
        self.key = key
        self._queue = queue
        self.closed = False

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> Any:
        if self.closed:
            raise StopAsyncIteration
        return await self._queue.get()

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.feed._unsubscribe(self.key, self._queue)

    async def aclose(self) -> None:
        self.close()


class ChangeFeed:
    def __init__(self, max_queue: int = 100) -> None:
        self.max_queue = max_queue
        self._subscribers: Dict[str, Set[asyncio.Queue]] = defaultdict(set)

    def subscriber_count(self, key: str) -> int:
        return len(self._subscribers.get(key, ()))

    def publish(self, key: str, payload: Any) -> None:
        for queue in list(self._subscribers.get(key, ())):
            try:
                queue.put_nowait(payload)
            except asyncio.QueueFull:
                logger.debug("Subscriber for %s is behind, dropping oldest payload", key)
                queue.get_nowait()
                queue.put_nowait(payload)

    def _unsubscribe(self, key: str, queue: asyncio.Queue) -> None:
        queues = self._subscribers.get(key)
        if queues is None:
            return
        queues.discard(queue)
        if not queues:
            del self._subscribers[key]

    def subscribe(self, key: str) -> Subscription:
        """Start receiving payloads published for ``key``."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.max_queue)
        self._subscribers[key].add(queue)
        return Subscription(self, key, queue)
