"""
Inventory Service — outbox dispatcher

Runs beside the API as a background task started from the lifespan hook.
It loops until the shutdown event is set, delivers what is due and sleeps
when there is nothing to do.

Delivery is at least once: a crash between publish and mark_published
re-sends the row, and consumers drop duplicates by event_id.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone

from .errors import PublishError
from .events import OutboxEvent
from .publisher import EventPublisher
from .repository import Repository, Transaction, in_transaction

logger = logging.getLogger(__name__)


class OutboxDispatcher:
    """Publishes committed outbox rows in id order, backing off failures."""

    def __init__(
        self,
        repo: Repository,
        publisher: EventPublisher,
        batch_size: int = 50,
        poll_seconds: float = 1.0,
        backoff_base: float = 1.0,
        backoff_cap: float = 300.0,
        max_attempts: int = 12,
    ):
        self.repo = repo
        self.publisher = publisher
        self.batch_size = batch_size
        self.poll_seconds = poll_seconds
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap
        self.max_attempts = max_attempts

    def next_delay(self, attempts: int) -> float:
        delay = self.backoff_base * (2 ** (max(attempts, 1) - 1))
        return min(delay, self.backoff_cap)

    async def dispatch_once(self) -> int:
        """Deliver one batch; returns the number of events published."""
        sent = 0
        async with in_transaction(self.repo, "dispatch outbox") as tx:
            events = await self.repo.get_pending_outbox_events(self.batch_size, tx=tx)
            for event in events:
                try:
                    await self.publisher.publish(event.topic, event.payload)
                except PublishError as exc:
                    await self._schedule_retry(event, exc, tx)
                    continue
                await self.repo.mark_outbox_published(event.id, tx=tx)
                sent += 1
        if sent:
            logger.debug("Dispatched %d outbox events", sent)
        return sent

    async def _schedule_retry(
        self, event: OutboxEvent, exc: Exception, tx: Transaction
    ) -> None:
        attempts = event.publish_attempts + 1
        if attempts >= self.max_attempts:
            logger.error(
                "Giving up on outbox event %s after %d attempts: %s",
                event.event_id,
                attempts,
                exc,
            )
            await self.repo.mark_outbox_failed(event.id, str(exc), None, tx=tx)
            return

        delay = self.next_delay(attempts)
        logger.warning(
            "Publishing outbox event %s failed (attempt %d), retrying in %.1fs: %s",
            event.event_id,
            attempts,
            delay,
            exc,
        )
        retry_at = datetime.now(timezone.utc) + timedelta(seconds=delay)
        await self.repo.mark_outbox_failed(event.id, str(exc), retry_at, tx=tx)

    async def run(self, shutdown_event: asyncio.Event) -> None:
        """Dispatch until shutdown_event is set, sleeping while the outbox is empty."""
        logger.info("Outbox dispatcher started")
        while not shutdown_event.is_set():
            try:
                sent = await self.dispatch_once()
            except Exception:
                logger.exception("Failed to dispatch outbox batch")
                sent = 0
            if sent == 0:
                try:
                    await asyncio.wait_for(shutdown_event.wait(), self.poll_seconds)
                except asyncio.TimeoutError:
                    pass
        logger.info("Outbox dispatcher stopped")
