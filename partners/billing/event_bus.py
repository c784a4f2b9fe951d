"""In-process publish/subscribe channel for subscription transitions.

Delivery is at-most-once to whoever is subscribed at publish time. There is no
durability or replay: a session that subscribes after a transition fired must
reconcile from the attempt store, not from the bus.
"""

import asyncio
import logging
from collections import defaultdict
from typing import Any

logger = logging.getLogger(__name__)


def user_topic(user_id: str) -> str:
    return f"subscription:{user_id}"


class BusSubscription:
    """A single subscriber's queue on one topic."""

    def __init__(self, bus: "EventBus", topic: str, maxsize: int):
        self.bus = bus
        self.topic = topic
        self.queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=maxsize)
        self.closed = False

    def deliver(self, message: dict[str, Any]) -> bool:
        try:
            self.queue.put_nowait(message)
        except asyncio.QueueFull:
            logger.warning("Dropping message on %s: subscriber queue full", self.topic)
            return False
        return True

    async def get(self, timeout: float | None = None) -> dict[str, Any]:
        """Wait for the next message (``asyncio.TimeoutError`` after ``timeout``)."""
        if timeout is None:
            return await self.queue.get()
        return await asyncio.wait_for(self.queue.get(), timeout)

    def get_nowait(self) -> dict[str, Any] | None:
        try:
            return self.queue.get_nowait()
        except asyncio.QueueEmpty:
            return None

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.bus.unsubscribe(self)

    def __aiter__(self):
        return self

    async def __anext__(self) -> dict[str, Any]:
        if self.closed:
            raise StopAsyncIteration
        return await self.get()


class EventBus:
    """Topic-keyed broadcast to live subscribers."""

    def __init__(self, queue_size: int = 100):
        self.queue_size = queue_size
        self._subscribers: dict[str, set[BusSubscription]] = defaultdict(set)

    def subscribe(self, topic: str) -> BusSubscription:
        subscription = BusSubscription(self, topic, self.queue_size)
        self._subscribers[topic].add(subscription)
        logger.debug("Subscribed to %s (%d listeners)", topic, len(self._subscribers[topic]))
        return subscription

    def unsubscribe(self, subscription: BusSubscription) -> None:
        listeners = self._subscribers.get(subscription.topic)
        if listeners is None:
            return
        listeners.discard(subscription)
        if not listeners:
            del self._subscribers[subscription.topic]

    def subscriber_count(self, topic: str) -> int:
        return len(self._subscribers.get(topic, ()))

    def publish(self, topic: str, message: dict[str, Any]) -> int:
        """Deliver ``message`` to current subscribers; returns how many received it."""
        delivered = 0
        for subscription in list(self._subscribers.get(topic, ())):
            if subscription.deliver(message):
                delivered += 1
        logger.debug("Published %s to %s (%d delivered)", message.get("status"), topic, delivered)
        return delivered
