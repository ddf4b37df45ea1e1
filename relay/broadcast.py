"""
In-process broadcast channel between the change feed and real-time clients.

Every subscriber owns a bounded asyncio.Queue. publish() never awaits: a
subscriber whose queue is full loses its oldest pending event.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from relay.events import FeedEvent
from relay.metrics import set_realtime_subscribers

logger = logging.getLogger(__name__)

_CLOSED = object()


class Subscription:
    """Async iterator over the events delivered to one subscriber."""

    def __init__(self, queue_size: int):
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self.dropped = 0

    def offer(self, item) -> None:
        if self.queue.full():
            self.queue.get_nowait()
            self.dropped += 1
            logger.warning(f"Subscriber queue full, dropped oldest event (total dropped: {self.dropped})")
        self.queue.put_nowait(item)

    async def get(self) -> Optional[FeedEvent]:
        """Next event, or None once the broadcaster is closed."""
        item = await self.queue.get()
        if item is _CLOSED:
            return None
        return item

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> FeedEvent:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event


class Broadcaster:
    def __init__(self, queue_size: int = 256):
        self._queue_size = queue_size
        self._subscriptions: set = set()
        self._closed = False

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    @asynccontextmanager
    async def subscribe(self) -> AsyncIterator[Subscription]:
        subscription = Subscription(self._queue_size)
        if self._closed:
            subscription.offer(_CLOSED)
        self._subscriptions.add(subscription)
        set_realtime_subscribers(len(self._subscriptions))
        logger.info(f"Subscriber connected ({len(self._subscriptions)} active)")
        try:
            yield subscription
        finally:
            self._subscriptions.discard(subscription)
            set_realtime_subscribers(len(self._subscriptions))
            logger.info(f"Subscriber disconnected ({len(self._subscriptions)} active)")

    def publish(self, event: FeedEvent) -> int:
        """
        Deliver an event to every current subscriber.

        Returns:
            Number of subscribers the event was queued for
        """
        for subscription in list(self._subscriptions):
            subscription.offer(event)
        return len(self._subscriptions)

    def close(self) -> None:
        """End every subscription; later subscribers end immediately."""
        self._closed = True
        for subscription in list(self._subscriptions):
            subscription.offer(_CLOSED)
