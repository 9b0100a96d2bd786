"""
Durable domain events through the transactional outbox.

OutboxPublisher writes an `outbox_events` row, normally on the caller's
transaction connection so the event commits or rolls back with the write
that caused it. OutboxWorker drains pending rows to the topic exchange.
Delivery is at-least-once: the outbox row id is the envelope `event_id`,
so consumers can recognise redeliveries.
"""

import asyncio
import json
from datetime import UTC, datetime
from typing import Any

import psycopg

from app.config import settings
from app.db.helpers import DatabaseError, with_db_retry
from app.db.pool import get_db_transaction
from app.features.messaging.domain import OutboxEvent
from app.features.messaging.repository import OutboxRepository
from app.infrastructure.observability.logging import get_logger

from .exchange import TopicExchange

logger = get_logger(__name__)


def build_event_envelope(event: OutboxEvent) -> dict[str, Any]:
    created_at = event.created_at or datetime.now(UTC)
    return {
        "event_id": event.id,
        "event_type": event.event_type,
        "timestamp": created_at.isoformat(),
        "source_service": event.source_service,
        "payload": event.payload,
    }


def retry_delay(attempts: int) -> float:
    """Seconds before the next publish attempt: doubles per attempt, capped."""
    delay = settings.OUTBOX_RETRY_BASE_SECONDS * (2 ** min(attempts, 16))
    return min(delay, settings.OUTBOX_RETRY_MAX_SECONDS)


class OutboxPublisher:
    def __init__(self, repository: OutboxRepository, source_service: str | None = None):
        self.repository = repository
        self.source_service = source_service or settings.SERVICE_NAME

    async def publish(
        self,
        event_type: str,
        payload: dict[str, Any],
        *,
        connection: psycopg.AsyncConnection | None = None,
    ) -> OutboxEvent:
        event = await self.repository.add_event(
            event_type, payload, self.source_service, connection=connection
        )
        logger.debug("Outbox event recorded", event_id=event.id, event_type=event_type)
        return event


class OutboxWorker:
    """Polls the outbox and forwards pending events to the exchange."""

    def __init__(
        self,
        repository: OutboxRepository,
        exchange: TopicExchange,
        *,
        source_service: str | None = None,
        batch_size: int | None = None,
        poll_interval: float | None = None,
    ):
        self.repository = repository
        self.exchange = exchange
        self.source_service = source_service or settings.SERVICE_NAME
        self.batch_size = batch_size or settings.OUTBOX_BATCH_SIZE
        self.poll_interval = (
            poll_interval if poll_interval is not None else settings.OUTBOX_POLL_INTERVAL_SECONDS
        )
        self._stopping = asyncio.Event()

    @with_db_retry(max_retries=3, base_delay=0.5)
    async def run_once(self) -> dict[str, int]:
        """
        Drain one batch. Rows stay locked until the batch is finalized.

        A row the exchange could not take stays pending and is retried with
        backoff for as long as the outage lasts. Only an envelope that cannot
        be serialized is marked `failed`.
        """
        stats = {"claimed": 0, "published": 0, "retried": 0, "failed": 0}

        async with await get_db_transaction() as conn:
            events = await self.repository.claim_pending(
                self.source_service, self.batch_size, connection=conn
            )
            stats["claimed"] = len(events)

            for event in events:
                try:
                    body = json.dumps(build_event_envelope(event))
                except (TypeError, ValueError) as e:
                    await self.repository.mark_failed(
                        event.id, f"envelope not serializable: {e}", connection=conn
                    )
                    stats["failed"] += 1
                    logger.error(
                        "Outbox event cannot be serialized, parking as failed",
                        event_id=event.id,
                        event_type=event.event_type,
                        error=str(e),
                    )
                    continue

                if await self.exchange.publish(event.event_type, body):
                    await self.repository.mark_published(event.id, connection=conn)
                    stats["published"] += 1
                    continue

                delay = retry_delay(event.attempts)
                await self.repository.defer_attempt(
                    event.id, "exchange publish failed", delay, connection=conn
                )
                stats["retried"] += 1
                logger.warning(
                    "Outbox publish failed, will retry",
                    event_id=event.id,
                    event_type=event.event_type,
                    attempts=event.attempts + 1,
                    retry_in_seconds=delay,
                )

        if stats["claimed"]:
            logger.info("Outbox batch processed", **stats)
        return stats

    async def run_forever(self) -> None:
        logger.info(
            "Outbox worker started",
            source_service=self.source_service,
            batch_size=self.batch_size,
            poll_interval=self.poll_interval,
        )
        while not self._stopping.is_set():
            try:
                stats = await self.run_once()
            except asyncio.CancelledError:
                logger.info("Outbox worker cancelled")
                raise
            except DatabaseError as e:
                logger.error("Outbox batch failed", error=str(e), operation=e.operation)
                stats = {"claimed": 0}

            # A full batch means there is probably more waiting
            if stats.get("claimed", 0) >= self.batch_size:
                continue

            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.poll_interval)
            except TimeoutError:
                pass

        logger.info("Outbox worker stopped")

    def stop(self) -> None:
        self._stopping.set()
