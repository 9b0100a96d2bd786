"""
Transactional outbox table access.

Rows are written inside the caller's transaction and drained by the
outbox worker, which claims them with FOR UPDATE SKIP LOCKED so several
workers can drain the same table without double-publishing a batch.
"""

from typing import Any

import psycopg
from psycopg.types.json import Jsonb

from app.db.helpers import DatabaseError, execute_query, fetch_all, fetch_one
from app.features.messaging.domain import OutboxEvent, OutboxStatus

from .base import as_str


class OutboxRepositoryError(DatabaseError):
    """More specific exception for outbox persistence failures."""


class OutboxRepository:
    OUTBOX_COLUMNS = "id, event_type, payload, source_service, status, attempts, created_at"

    @staticmethod
    def _row_to_event(row: dict | None) -> OutboxEvent | None:
        if not row:
            return None

        return OutboxEvent(
            id=as_str(row["id"]),
            event_type=row["event_type"],
            payload=row.get("payload") or {},
            source_service=row["source_service"],
            status=OutboxStatus(row["status"]),
            attempts=int(row.get("attempts") or 0),
            created_at=row["created_at"],
        )

    async def add_event(
        self,
        event_type: str,
        payload: dict[str, Any],
        source_service: str,
        *,
        connection: psycopg.AsyncConnection | None = None,
    ) -> OutboxEvent:
        row = await fetch_one(
            f"""
            INSERT INTO outbox_events (event_type, payload, source_service, status)
            VALUES (%s, %s, %s, 'pending')
            RETURNING {self.OUTBOX_COLUMNS}
            """,
            (event_type, Jsonb(payload), source_service),
            connection=connection,
        )
        event = self._row_to_event(row)
        if not event:
            raise OutboxRepositoryError("Outbox insert returned no row", operation="add_event")
        return event

    async def claim_pending(
        self,
        source_service: str,
        batch_size: int,
        *,
        connection: psycopg.AsyncConnection,
    ) -> list[OutboxEvent]:
        """Lock the oldest pending rows that are due; must run inside a transaction."""
        rows = await fetch_all(
            f"""
            SELECT {self.OUTBOX_COLUMNS}
            FROM outbox_events
            WHERE status = 'pending'
              AND source_service = %s
              AND (next_attempt_at IS NULL OR next_attempt_at <= NOW())
            ORDER BY created_at ASC
            LIMIT %s
            FOR UPDATE SKIP LOCKED
            """,
            (source_service, batch_size),
            connection=connection,
        )
        return [self._row_to_event(row) for row in rows]

    async def mark_published(
        self, event_id: str, *, connection: psycopg.AsyncConnection | None = None
    ) -> None:
        await execute_query(
            """
            UPDATE outbox_events
            SET status = 'published', published_at = NOW(), error = NULL
            WHERE id = %s
            """,
            (event_id,),
            connection=connection,
        )

    async def defer_attempt(
        self,
        event_id: str,
        error: str,
        delay_seconds: float,
        *,
        connection: psycopg.AsyncConnection | None = None,
    ) -> None:
        """Count a failed publish and keep the row pending until the retry is due."""
        await execute_query(
            """
            UPDATE outbox_events
            SET attempts = attempts + 1,
                error = %s,
                error_at = NOW(),
                next_attempt_at = NOW() + make_interval(secs => %s)
            WHERE id = %s AND status = 'pending'
            """,
            (error[:1000], delay_seconds, event_id),
            connection=connection,
        )

    async def mark_failed(
        self, event_id: str, error: str, *, connection: psycopg.AsyncConnection | None = None
    ) -> None:
        """Park a row that can never be published; it stays for inspection."""
        await execute_query(
            """
            UPDATE outbox_events
            SET status = 'failed', attempts = attempts + 1, error = %s, error_at = NOW()
            WHERE id = %s
            """,
            (error[:1000], event_id),
            connection=connection,
        )
