"""
Change Feed Translator.

Pulls the trigger-fed change log in order, translates every entry into a
real-time event and publishes it on the broadcaster. Runs as its own asyncio
task; store reads happen in a worker thread so request handling never waits
on the feed.

Delivery is at-least-once for subscribers connected at publish time. A failed
poll leaves the cursor where it was, so the next successful poll resumes from
the point of disruption. After too many consecutive failures the feed is
marked degraded and stops until the service is restarted.
"""

import asyncio
import logging
from enum import Enum
from typing import Optional

from relay.broadcast import Broadcaster
from relay.errors import FeedDisruption
from relay.events import translate_change
from relay.metrics import record_feed_disruption, record_feed_event
from relay.storage import MessageStore

logger = logging.getLogger(__name__)


class FeedState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    DEGRADED = "degraded"
    STOPPED = "stopped"


class ChangeFeedTranslator:
    def __init__(
        self,
        store: MessageStore,
        broadcaster: Broadcaster,
        poll_interval: float = 0.5,
        batch_size: int = 100,
        max_failures: int = 5,
        retry_backoff: float = 1.0,
    ):
        self._store = store
        self._broadcaster = broadcaster
        self._poll_interval = poll_interval
        self._batch_size = batch_size
        self._max_failures = max_failures
        self._retry_backoff = retry_backoff
        self._cursor: Optional[int] = None
        self._failures = 0
        self._task: Optional[asyncio.Task] = None
        self.state = FeedState.IDLE

    @property
    def cursor(self) -> Optional[int]:
        return self._cursor

    async def seek_to_head(self) -> int:
        """Position the cursor after the last existing change (no replay)."""
        try:
            self._cursor = await asyncio.to_thread(self._store.latest_change_id)
        except Exception as e:
            raise FeedDisruption(f"cannot read change log head: {e}") from e
        logger.info(f"Change feed positioned at change {self._cursor}")
        return self._cursor

    async def poll_once(self) -> int:
        """
        Read and publish the next batch of changes.

        Returns:
            Number of change entries consumed

        Raises:
            FeedDisruption: if the change log cannot be read
        """
        if self._cursor is None:
            await self.seek_to_head()

        try:
            changes = await asyncio.to_thread(self._store.read_changes, self._cursor, self._batch_size)
        except Exception as e:
            raise FeedDisruption(f"cannot read change log after {self._cursor}: {e}") from e

        for change in changes:
            event = translate_change(change)
            if event is None:
                logger.warning(f"Ignoring change {change.change_id} with operation {change.operation!r}")
            else:
                delivered = self._broadcaster.publish(event)
                record_feed_event(event.event)
                logger.debug(
                    f"Published {event.event} for {change.record.primary_id} "
                    f"to {delivered} subscribers"
                )
            self._cursor = change.change_id
        return len(changes)

    async def run(self) -> None:
        """Poll until cancelled or degraded."""
        self.state = FeedState.RUNNING
        logger.info("Change feed started")
        try:
            while True:
                try:
                    consumed = await self.poll_once()
                    self._failures = 0
                except FeedDisruption as e:
                    self._failures += 1
                    record_feed_disruption()
                    logger.error(f"Change feed disrupted ({self._failures}/{self._max_failures}): {e}")
                    if self._failures >= self._max_failures:
                        self.state = FeedState.DEGRADED
                        logger.critical("Change feed degraded; restart required to resume real-time events")
                        return
                    await asyncio.sleep(self._retry_backoff)
                    continue

                # A full batch means more may be waiting
                if consumed < self._batch_size:
                    await asyncio.sleep(self._poll_interval)
        finally:
            if self.state is FeedState.RUNNING:
                self.state = FeedState.STOPPED
                logger.info("Change feed stopped")

    def start(self) -> asyncio.Task:
        self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
