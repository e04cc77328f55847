"""Realtime propagation of committed order changes.

Subscriptions are async iterators bound to the event loop that created them.
``RealtimeNotifier.publish`` may be called from any thread (sync endpoints run
in the threadpool); delivery hops onto the subscriber's loop.
"""

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Set

from ordering.schemas import OrderRecord

logger = logging.getLogger(__name__)

INSERT = "INSERT"
UPDATE = "UPDATE"

_CLOSED = object()


@dataclass(frozen=True)
class OrderEvent:
    kind: str
    order_id: str
    version: int
    fields: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_record(cls, kind: str, order: OrderRecord) -> "OrderEvent":
        return cls(
            kind=kind,
            order_id=order.id,
            version=order.version,
            fields=order.model_dump(mode="json"),
        )

    def to_message(self) -> Dict[str, Any]:
        return {"type": self.kind, "order_id": self.order_id, "version": self.version, "new": self.fields}


class Subscription:
    def __init__(self, notifier: "RealtimeNotifier", order_id: Optional[str], queue_size: int):
        self.order_id = order_id
        self._notifier = notifier
        self._loop = asyncio.get_running_loop()
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._seen: Dict[str, int] = {}
        self._closed = False
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def matches(self, event: OrderEvent) -> bool:
        return self.order_id is None or self.order_id == event.order_id

    def mark_seen(self, order_id: str, version: int) -> None:
        """Skip future events at or below ``version`` (already covered by a snapshot)."""
        self._seen[order_id] = max(version, self._seen.get(order_id, 0))

    def deliver(self, event: OrderEvent) -> bool:
        if self._closed:
            return False
        try:
            self._loop.call_soon_threadsafe(self._offer, event)
        except RuntimeError:
            # loop already shut down
            self._closed = True
            return False
        return True

    def _offer(self, event: OrderEvent) -> None:
        if self._closed:
            return
        # per-order commit order; a late, older version is stale
        if event.version <= self._seen.get(event.order_id, 0):
            return
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning("Realtime queue full, dropped %s for order %s", event.kind, event.order_id)
            return
        self._seen[event.order_id] = event.version

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._notifier._discard(self)
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(_CLOSED)

    def __aiter__(self):
        return self

    async def __anext__(self) -> OrderEvent:
        if self._closed and self._queue.empty():
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item

    async def get(self, timeout: Optional[float] = None) -> OrderEvent:
        return await asyncio.wait_for(self.__anext__(), timeout=timeout)

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.close()


class RealtimeNotifier:
    def __init__(self, queue_size: int = 100):
        self._queue_size = queue_size
        self._lock = threading.Lock()
        self._subscriptions: Set[Subscription] = set()

    def subscribe_order(self, order_id: str) -> Subscription:
        return self._register(Subscription(self, order_id, self._queue_size))

    def subscribe_all(self) -> Subscription:
        return self._register(Subscription(self, None, self._queue_size))

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def publish(self, event: OrderEvent) -> int:
        with self._lock:
            targets = [s for s in self._subscriptions if s.matches(event)]
        delivered = 0
        for subscription in targets:
            if subscription.deliver(event):
                delivered += 1
            else:
                self._discard(subscription)
        logger.debug("Published %s for order %s v%d to %d subscribers",
                     event.kind, event.order_id, event.version, delivered)
        return delivered

    def _register(self, subscription: Subscription) -> Subscription:
        with self._lock:
            self._subscriptions.add(subscription)
        return subscription

    def _discard(self, subscription: Subscription) -> None:
        with self._lock:
            self._subscriptions.discard(subscription)
