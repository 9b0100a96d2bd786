"""
Persistence for chat messages.

The send path is one statement: a CTE inserts the message, moves the
conversation's last-message pointer and bumps the recipient's unread count,
so a message never exists without its conversation bookkeeping.
"""

from datetime import datetime
from typing import Any

import psycopg
from psycopg.types.json import Jsonb

from app.db.helpers import DatabaseError, fetch_all, fetch_one, fetch_val
from app.features.messaging.domain import Message, MessageKind
from app.infrastructure.observability.logging import get_logger

from .base import as_str

logger = get_logger(__name__)


class MessageRepositoryError(DatabaseError):
    """More specific exception for message persistence failures."""


class MessageRepository:
    MESSAGE_COLUMNS = """
        id, conversation_id, sender_id, kind, body, metadata, client_message_id,
        created_at, edited_at, redacted_at, redaction_reason
    """

    @staticmethod
    def _row_to_message(row: dict | None) -> Message | None:
        if not row:
            return None

        return Message(
            id=as_str(row["id"]),
            conversation_id=as_str(row["conversation_id"]),
            sender_id=as_str(row["sender_id"]),
            kind=MessageKind(row["kind"]),
            body=row.get("body"),
            metadata=row.get("metadata") or {},
            client_message_id=row.get("client_message_id"),
            created_at=row["created_at"],
            edited_at=row.get("edited_at"),
            redacted_at=row.get("redacted_at"),
            redaction_reason=row.get("redaction_reason"),
        )

    async def insert_message(
        self,
        conversation_id: str,
        sender_id: str,
        recipient_id: str,
        body: str | None,
        *,
        kind: MessageKind = MessageKind.USER,
        metadata: dict[str, Any] | None = None,
        client_message_id: str | None = None,
        connection: psycopg.AsyncConnection | None = None,
    ) -> Message:
        """
        Insert a message and update conversation bookkeeping atomically.

        Raises UniqueViolationError when (sender_id, client_message_id)
        already exists.
        """
        query = f"""
            WITH inserted AS (
                INSERT INTO chat_messages (
                    conversation_id, sender_id, kind, body, metadata, client_message_id
                )
                VALUES (%s, %s, %s, %s, %s, %s)
                RETURNING {self.MESSAGE_COLUMNS}
            ),
            touched AS (
                UPDATE chat_conversations c
                SET last_message_id = inserted.id,
                    last_message_at = inserted.created_at,
                    updated_at = NOW()
                FROM inserted
                WHERE c.id = inserted.conversation_id
                RETURNING c.id
            ),
            unread AS (
                UPDATE chat_conversation_participants p
                SET unread_count = p.unread_count + 1,
                    updated_at = NOW()
                FROM inserted
                WHERE p.conversation_id = inserted.conversation_id
                  AND p.user_id = %s
                RETURNING p.user_id
            )
            SELECT inserted.* FROM inserted
        """
        row = await fetch_one(
            query,
            (
                conversation_id,
                sender_id,
                kind.value,
                body,
                Jsonb(metadata or {}),
                client_message_id,
                recipient_id,
            ),
            connection=connection,
        )
        message = self._row_to_message(row)
        if not message:
            raise MessageRepositoryError("Message insert returned no row", operation="insert_message")

        logger.debug(
            "Message inserted",
            message_id=message.id,
            conversation_id=conversation_id,
            kind=kind.value,
        )
        return message

    async def find_by_client_message_id(
        self, sender_id: str, client_message_id: str
    ) -> Message | None:
        query = f"""
            SELECT {self.MESSAGE_COLUMNS}
            FROM chat_messages
            WHERE sender_id = %s AND client_message_id = %s
        """
        return self._row_to_message(await fetch_one(query, (sender_id, client_message_id)))

    async def get_message(self, message_id: str) -> Message | None:
        query = f"SELECT {self.MESSAGE_COLUMNS} FROM chat_messages WHERE id = %s"
        return self._row_to_message(await fetch_one(query, (message_id,)))

    async def count_user_messages(self, conversation_id: str) -> int:
        """Count of user-kind messages in the conversation, capped at 2."""
        query = """
            SELECT COUNT(*) AS total FROM (
                SELECT 1 FROM chat_messages
                WHERE conversation_id = %s AND kind = 'user'
                LIMIT 2
            ) AS sent
        """
        return int(await fetch_val(query, (conversation_id,)) or 0)

    async def list_messages(
        self,
        conversation_id: str,
        limit: int,
        after_id: str | None = None,
        before_id: str | None = None,
    ) -> list[Message]:
        """
        Page through a conversation in chronological order.

        `after_id` returns messages newer than the anchor; `before_id`
        returns the page immediately older than it. Unknown anchors are
        ignored.
        """
        if after_id:
            query = f"""
                SELECT {self.MESSAGE_COLUMNS}
                FROM chat_messages
                WHERE conversation_id = %s
                  AND (created_at, id) > (
                      SELECT created_at, id FROM chat_messages WHERE id = %s AND conversation_id = %s
                  )
                ORDER BY created_at ASC, id ASC
                LIMIT %s
            """
            rows = await fetch_all(query, (conversation_id, after_id, conversation_id, limit))
            if rows or await self._anchor_exists(conversation_id, after_id):
                return [self._row_to_message(row) for row in rows]

        elif before_id:
            query = f"""
                SELECT * FROM (
                    SELECT {self.MESSAGE_COLUMNS}
                    FROM chat_messages
                    WHERE conversation_id = %s
                      AND (created_at, id) < (
                          SELECT created_at, id FROM chat_messages WHERE id = %s AND conversation_id = %s
                      )
                    ORDER BY created_at DESC, id DESC
                    LIMIT %s
                ) AS page
                ORDER BY created_at ASC, id ASC
            """
            rows = await fetch_all(query, (conversation_id, before_id, conversation_id, limit))
            if rows or await self._anchor_exists(conversation_id, before_id):
                return [self._row_to_message(row) for row in rows]

        # Latest page
        query = f"""
            SELECT * FROM (
                SELECT {self.MESSAGE_COLUMNS}
                FROM chat_messages
                WHERE conversation_id = %s
                ORDER BY created_at DESC, id DESC
                LIMIT %s
            ) AS page
            ORDER BY created_at ASC, id ASC
        """
        rows = await fetch_all(query, (conversation_id, limit))
        return [self._row_to_message(row) for row in rows]

    async def _anchor_exists(self, conversation_id: str, message_id: str) -> bool:
        value = await fetch_val(
            "SELECT 1 AS found FROM chat_messages WHERE id = %s AND conversation_id = %s",
            (message_id, conversation_id),
        )
        return value is not None

    async def list_messages_by_ids(self, message_ids: list[str]) -> list[Message]:
        if not message_ids:
            return []
        query = f"""
            SELECT {self.MESSAGE_COLUMNS}
            FROM chat_messages
            WHERE id = ANY(%s::uuid[])
            ORDER BY created_at ASC
        """
        rows = await fetch_all(query, (message_ids,))
        return [self._row_to_message(row) for row in rows]

    async def list_recent_ids(self, conversation_id: str, limit: int) -> list[str]:
        query = """
            SELECT id FROM chat_messages
            WHERE conversation_id = %s
            ORDER BY created_at DESC
            LIMIT %s
        """
        rows = await fetch_all(query, (conversation_id, limit))
        return [as_str(row["id"]) for row in rows]

    async def merge_metadata(self, message_id: str, patch: dict[str, Any]) -> Message | None:
        """Shallow-merge `patch` into the message metadata; other keys are kept."""
        query = f"""
            UPDATE chat_messages
            SET metadata = COALESCE(metadata, '{{}}'::jsonb) || %s
            WHERE id = %s
            RETURNING {self.MESSAGE_COLUMNS}
        """
        return self._row_to_message(await fetch_one(query, (Jsonb(patch), message_id)))

    async def update_message(
        self,
        message_id: str,
        *,
        body: str | None = None,
        redact: bool = False,
        redaction_reason: str | None = None,
    ) -> Message | None:
        if redact:
            query = f"""
                UPDATE chat_messages
                SET body = NULL,
                    redacted_at = COALESCE(redacted_at, NOW()),
                    redaction_reason = %s
                WHERE id = %s
                RETURNING {self.MESSAGE_COLUMNS}
            """
            params: tuple = (redaction_reason, message_id)
        else:
            query = f"""
                UPDATE chat_messages
                SET body = %s, edited_at = NOW()
                WHERE id = %s AND redacted_at IS NULL
                RETURNING {self.MESSAGE_COLUMNS}
            """
            params = (body, message_id)

        return self._row_to_message(await fetch_one(query, params))

    async def redact_expired_batch(
        self, cutoff: datetime, batch_size: int, reason: str
    ) -> list[dict[str, str]]:
        """
        Redact up to `batch_size` unredacted messages older than `cutoff`.

        Returns the redacted (id, conversation_id) pairs; an empty list means
        nothing is left to redact.
        """
        query = """
            UPDATE chat_messages
            SET body = NULL,
                redacted_at = NOW(),
                redaction_reason = %s
            WHERE id IN (
                SELECT id FROM chat_messages
                WHERE redacted_at IS NULL AND created_at < %s
                ORDER BY created_at ASC
                LIMIT %s
                FOR UPDATE SKIP LOCKED
            )
            RETURNING id, conversation_id
        """
        rows = await fetch_all(query, (reason, cutoff, batch_size))
        return [
            {"id": as_str(row["id"]), "conversation_id": as_str(row["conversation_id"])}
            for row in rows
        ]
