"""
Persistence for conversations and per-participant state.
"""

from collections.abc import Awaitable, Callable
from typing import Any

import psycopg

from app.db.helpers import DatabaseError, execute_query, fetch_all, fetch_one, fetch_val
from app.db.pool import get_db_transaction
from app.features.messaging.domain import (
    Conversation,
    ConversationContext,
    ConversationCursor,
    ConversationFilter,
    ConversationListItem,
    ParticipantState,
    RequestState,
)
from app.infrastructure.observability.logging import get_logger

from .base import as_str

logger = get_logger(__name__)

CreatedHook = Callable[[Conversation, psycopg.AsyncConnection], Awaitable[None]]

_CONTEXT_FIELDS = ("application_id", "job_id", "company_id", "candidate_id")

# Columns a participant may change on their own row
_MUTABLE_PARTICIPANT_FIELDS = frozenset({"request_state", "muted_at", "archived_at"})


class ConversationRepositoryError(DatabaseError):
    """More specific exception for conversation persistence failures."""


class ConversationRepository:
    CONVERSATION_COLUMNS = """
        id, participant_a_id, participant_b_id,
        application_id, job_id, company_id, candidate_id,
        last_message_id, last_message_at, created_at, updated_at
    """

    PARTICIPANT_COLUMNS = """
        conversation_id, user_id, request_state, muted_at, archived_at,
        last_read_at, last_read_message_id, unread_count
    """

    @staticmethod
    def _row_to_conversation(row: dict | None, prefix: str = "") -> Conversation | None:
        if not row:
            return None

        return Conversation(
            id=as_str(row[f"{prefix}id"]),
            participant_a_id=as_str(row[f"{prefix}participant_a_id"]),
            participant_b_id=as_str(row[f"{prefix}participant_b_id"]),
            application_id=as_str(row.get(f"{prefix}application_id")),
            job_id=as_str(row.get(f"{prefix}job_id")),
            company_id=as_str(row.get(f"{prefix}company_id")),
            candidate_id=as_str(row.get(f"{prefix}candidate_id")),
            last_message_id=as_str(row.get(f"{prefix}last_message_id")),
            last_message_at=row.get(f"{prefix}last_message_at"),
            created_at=row[f"{prefix}created_at"],
            updated_at=row[f"{prefix}updated_at"],
        )

    @staticmethod
    def _row_to_participant(row: dict | None) -> ParticipantState | None:
        if not row:
            return None

        return ParticipantState(
            conversation_id=as_str(row["conversation_id"]),
            user_id=as_str(row["user_id"]),
            request_state=RequestState(row["request_state"]),
            muted_at=row.get("muted_at"),
            archived_at=row.get("archived_at"),
            last_read_at=row.get("last_read_at"),
            last_read_message_id=as_str(row.get("last_read_message_id")),
            unread_count=row.get("unread_count") or 0,
        )

    @staticmethod
    def _context_clause(context: ConversationContext) -> tuple[str, list[Any]]:
        """Unset context fields match IS NULL, never "any value"."""
        clauses = []
        params: list[Any] = []
        for name in _CONTEXT_FIELDS:
            value = getattr(context, name)
            if value:
                clauses.append(f"{name} = %s")
                params.append(value)
            else:
                clauses.append(f"{name} IS NULL")
        return " AND ".join(clauses), params

    async def find_conversation(
        self, participant_a_id: str, participant_b_id: str, context: ConversationContext
    ) -> Conversation | None:
        context_sql, context_params = self._context_clause(context)
        query = f"""
            SELECT {self.CONVERSATION_COLUMNS}
            FROM chat_conversations
            WHERE participant_a_id = %s
              AND participant_b_id = %s
              AND {context_sql}
        """
        row = await fetch_one(query, (participant_a_id, participant_b_id, *context_params))
        return self._row_to_conversation(row)

    async def create_conversation(
        self,
        participant_a_id: str,
        participant_b_id: str,
        context: ConversationContext,
        participants: list[tuple[str, RequestState]],
        on_created: CreatedHook | None = None,
    ) -> tuple[Conversation, bool]:
        """
        Insert the conversation and its participant rows in one transaction.

        `on_created` runs inside that transaction for a newly inserted row,
        so anything it writes commits or rolls back with the conversation.

        Returns (conversation, created). When a concurrent request already
        created the same pair+context, the existing row is returned with
        created=False and participant rows are left untouched.
        """
        insert_query = f"""
            INSERT INTO chat_conversations (
                participant_a_id, participant_b_id,
                application_id, job_id, company_id, candidate_id
            )
            VALUES (%s, %s, %s, %s, %s, %s)
            ON CONFLICT DO NOTHING
            RETURNING {self.CONVERSATION_COLUMNS}
        """
        participant_query = """
            INSERT INTO chat_conversation_participants (conversation_id, user_id, request_state)
            VALUES (%s, %s, %s)
            ON CONFLICT (conversation_id, user_id)
            DO UPDATE SET request_state = EXCLUDED.request_state, updated_at = NOW()
        """

        async with await get_db_transaction() as conn:
            row = await fetch_one(
                insert_query,
                (
                    participant_a_id,
                    participant_b_id,
                    context.application_id,
                    context.job_id,
                    context.company_id,
                    context.candidate_id,
                ),
                connection=conn,
            )
            if row:
                conversation = self._row_to_conversation(row)
                for user_id, state in participants:
                    await execute_query(
                        participant_query,
                        (conversation.id, user_id, state.value),
                        connection=conn,
                    )
                if on_created:
                    await on_created(conversation, conn)

        if row:
            logger.info(
                "Conversation created",
                conversation_id=conversation.id,
                participants=[user_id for user_id, _ in participants],
            )
            return conversation, True

        existing = await self.find_conversation(participant_a_id, participant_b_id, context)
        if not existing:
            raise ConversationRepositoryError(
                "Conversation insert conflicted but no row was found",
                operation="create_conversation",
            )
        logger.info("Conversation creation lost race, reusing row", conversation_id=existing.id)
        return existing, False

    async def get_conversation(self, conversation_id: str) -> Conversation | None:
        query = f"SELECT {self.CONVERSATION_COLUMNS} FROM chat_conversations WHERE id = %s"
        return self._row_to_conversation(await fetch_one(query, (conversation_id,)))

    async def get_participant_state(
        self, conversation_id: str, user_id: str
    ) -> ParticipantState | None:
        query = f"""
            SELECT {self.PARTICIPANT_COLUMNS}
            FROM chat_conversation_participants
            WHERE conversation_id = %s AND user_id = %s
        """
        return self._row_to_participant(await fetch_one(query, (conversation_id, user_id)))

    async def get_other_participant(
        self, conversation_id: str, user_id: str
    ) -> ParticipantState | None:
        query = f"""
            SELECT {self.PARTICIPANT_COLUMNS}
            FROM chat_conversation_participants
            WHERE conversation_id = %s AND user_id <> %s
            LIMIT 1
        """
        return self._row_to_participant(await fetch_one(query, (conversation_id, user_id)))

    async def list_conversations(
        self,
        user_id: str,
        conversation_filter: ConversationFilter,
        limit: int,
        cursor: ConversationCursor | None = None,
    ) -> tuple[list[ConversationListItem], int]:
        where = ["p.user_id = %s"]
        params: list[Any] = [user_id]

        if conversation_filter == ConversationFilter.ARCHIVED:
            where.append("p.archived_at IS NOT NULL")
        else:
            where.append("p.archived_at IS NULL")
            if conversation_filter == ConversationFilter.REQUESTS:
                where.append("p.request_state = 'pending'")
            else:
                where.append("p.request_state <> 'pending'")

        where_sql = " AND ".join(where)
        total = await fetch_val(
            f"""
            SELECT COUNT(*) AS total
            FROM chat_conversation_participants p
            WHERE {where_sql}
            """,
            tuple(params),
        )

        page_params = list(params)
        cursor_sql = ""
        if cursor:
            cursor_sql = (
                "AND (COALESCE(c.last_message_at, c.created_at), c.id) < (%s, %s::uuid)"
            )
            page_params.extend([cursor.activity_at, cursor.conversation_id])
        page_params.append(limit)

        rows = await fetch_all(
            f"""
            SELECT
                p.conversation_id, p.user_id, p.request_state, p.muted_at, p.archived_at,
                p.last_read_at, p.last_read_message_id, p.unread_count,
                c.id AS c_id, c.participant_a_id AS c_participant_a_id,
                c.participant_b_id AS c_participant_b_id,
                c.application_id AS c_application_id, c.job_id AS c_job_id,
                c.company_id AS c_company_id, c.candidate_id AS c_candidate_id,
                c.last_message_id AS c_last_message_id, c.last_message_at AS c_last_message_at,
                c.created_at AS c_created_at, c.updated_at AS c_updated_at
            FROM chat_conversation_participants p
            JOIN chat_conversations c ON c.id = p.conversation_id
            WHERE {where_sql} {cursor_sql}
            ORDER BY COALESCE(c.last_message_at, c.created_at) DESC, c.id DESC
            LIMIT %s
            """,
            tuple(page_params),
        )

        items = [
            ConversationListItem(
                conversation=self._row_to_conversation(row, prefix="c_"),
                participant=self._row_to_participant(row),
            )
            for row in rows
        ]
        return items, int(total or 0)

    async def update_participant_state(
        self, conversation_id: str, user_id: str, **updates: Any
    ) -> ParticipantState | None:
        unknown = set(updates) - _MUTABLE_PARTICIPANT_FIELDS
        if unknown:
            raise ValueError(f"Unsupported participant fields: {sorted(unknown)}")
        if not updates:
            return await self.get_participant_state(conversation_id, user_id)

        assignments = []
        params: list[Any] = []
        for name, value in updates.items():
            assignments.append(f"{name} = %s")
            params.append(value.value if isinstance(value, RequestState) else value)

        query = f"""
            UPDATE chat_conversation_participants
            SET {", ".join(assignments)}, updated_at = NOW()
            WHERE conversation_id = %s AND user_id = %s
            RETURNING {self.PARTICIPANT_COLUMNS}
        """
        row = await fetch_one(query, (*params, conversation_id, user_id))
        return self._row_to_participant(row)

    async def set_read_receipt(
        self, conversation_id: str, user_id: str, last_read_message_id: str | None
    ) -> ParticipantState | None:
        query = f"""
            UPDATE chat_conversation_participants
            SET last_read_at = NOW(),
                last_read_message_id = %s,
                unread_count = 0,
                updated_at = NOW()
            WHERE conversation_id = %s AND user_id = %s
            RETURNING {self.PARTICIPANT_COLUMNS}
        """
        row = await fetch_one(query, (last_read_message_id, conversation_id, user_id))
        return self._row_to_participant(row)
