"""
Persistence for blocks, reports, moderation audit and admin aggregates.
"""

from datetime import datetime
from typing import Any

from psycopg.types.json import Jsonb

from app.db.helpers import DatabaseError, execute_query, fetch_all, fetch_one, fetch_val
from app.features.messaging.domain import (
    ModerationAction,
    ModerationAudit,
    Report,
    ReportStatus,
)
from app.infrastructure.observability.logging import get_logger

from .base import as_str

logger = get_logger(__name__)


class ModerationRepositoryError(DatabaseError):
    """More specific exception for moderation persistence failures."""


class ModerationRepository:
    REPORT_COLUMNS = """
        id, reporter_user_id, reported_user_id, conversation_id, category,
        description, evidence_pointer, status, created_at, updated_at
    """

    AUDIT_COLUMNS = "id, actor_user_id, target_user_id, action, details, created_at"

    @staticmethod
    def _row_to_report(row: dict | None) -> Report | None:
        if not row:
            return None

        return Report(
            id=as_str(row["id"]),
            reporter_user_id=as_str(row["reporter_user_id"]),
            reported_user_id=as_str(row["reported_user_id"]),
            conversation_id=as_str(row["conversation_id"]),
            category=row["category"],
            description=row.get("description"),
            evidence_pointer=row.get("evidence_pointer"),
            status=ReportStatus(row["status"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_audit(row: dict | None) -> ModerationAudit | None:
        if not row:
            return None

        return ModerationAudit(
            id=as_str(row["id"]),
            actor_user_id=as_str(row["actor_user_id"]),
            target_user_id=as_str(row["target_user_id"]),
            action=ModerationAction(row["action"]),
            details=row.get("details"),
            created_at=row["created_at"],
        )

    # Blocks

    async def is_blocked(self, user_id: str, other_user_id: str) -> bool:
        """True when either user has blocked the other."""
        query = """
            SELECT 1 AS blocked
            FROM chat_user_blocks
            WHERE (blocker_user_id = %s AND blocked_user_id = %s)
               OR (blocker_user_id = %s AND blocked_user_id = %s)
            LIMIT 1
        """
        value = await fetch_val(query, (user_id, other_user_id, other_user_id, user_id))
        return value is not None

    async def add_block(self, blocker_user_id: str, blocked_user_id: str, reason: str | None) -> None:
        query = """
            INSERT INTO chat_user_blocks (blocker_user_id, blocked_user_id, reason)
            VALUES (%s, %s, %s)
            ON CONFLICT (blocker_user_id, blocked_user_id)
            DO UPDATE SET reason = EXCLUDED.reason
        """
        await execute_query(query, (blocker_user_id, blocked_user_id, reason))
        logger.info("User blocked", blocker_user_id=blocker_user_id, blocked_user_id=blocked_user_id)

    async def remove_block(self, blocker_user_id: str, blocked_user_id: str) -> bool:
        query = """
            DELETE FROM chat_user_blocks
            WHERE blocker_user_id = %s AND blocked_user_id = %s
        """
        removed = await execute_query(query, (blocker_user_id, blocked_user_id))
        return removed > 0

    # Reports

    async def create_report(
        self,
        reporter_user_id: str,
        reported_user_id: str,
        conversation_id: str,
        category: str,
        description: str | None,
        evidence_pointer: dict[str, Any],
    ) -> Report:
        query = f"""
            INSERT INTO chat_reports (
                reporter_user_id, reported_user_id, conversation_id,
                category, description, evidence_pointer, status
            )
            VALUES (%s, %s, %s, %s, %s, %s, 'open')
            RETURNING {self.REPORT_COLUMNS}
        """
        row = await fetch_one(
            query,
            (
                reporter_user_id,
                reported_user_id,
                conversation_id,
                category,
                description,
                Jsonb(evidence_pointer),
            ),
        )
        report = self._row_to_report(row)
        if not report:
            raise ModerationRepositoryError("Report insert returned no row", operation="create_report")
        return report

    async def list_reports(
        self, limit: int, cursor: datetime | None = None
    ) -> tuple[list[Report], int]:
        total = await fetch_val("SELECT COUNT(*) AS total FROM chat_reports")
        if cursor:
            query = f"""
                SELECT {self.REPORT_COLUMNS} FROM chat_reports
                WHERE created_at < %s
                ORDER BY created_at DESC
                LIMIT %s
            """
            rows = await fetch_all(query, (cursor, limit))
        else:
            query = f"""
                SELECT {self.REPORT_COLUMNS} FROM chat_reports
                ORDER BY created_at DESC
                LIMIT %s
            """
            rows = await fetch_all(query, (limit,))
        return [self._row_to_report(row) for row in rows], int(total or 0)

    async def get_report(self, report_id: str) -> Report | None:
        query = f"SELECT {self.REPORT_COLUMNS} FROM chat_reports WHERE id = %s"
        return self._row_to_report(await fetch_one(query, (report_id,)))

    async def update_report_status(self, report_id: str, status: ReportStatus) -> Report | None:
        query = f"""
            UPDATE chat_reports
            SET status = %s, updated_at = NOW()
            WHERE id = %s
            RETURNING {self.REPORT_COLUMNS}
        """
        return self._row_to_report(await fetch_one(query, (status.value, report_id)))

    # Audit

    async def create_audit(
        self,
        actor_user_id: str,
        target_user_id: str,
        action: ModerationAction,
        details: dict[str, Any] | None,
    ) -> ModerationAudit:
        query = f"""
            INSERT INTO chat_moderation_audit (actor_user_id, target_user_id, action, details)
            VALUES (%s, %s, %s, %s)
            RETURNING {self.AUDIT_COLUMNS}
        """
        row = await fetch_one(
            query,
            (
                actor_user_id,
                target_user_id,
                action.value,
                Jsonb(details) if details is not None else None,
            ),
        )
        audit = self._row_to_audit(row)
        if not audit:
            raise ModerationRepositoryError("Audit insert returned no row", operation="create_audit")
        return audit

    async def list_audit(
        self, limit: int, cursor: datetime | None = None
    ) -> tuple[list[ModerationAudit], int]:
        total = await fetch_val("SELECT COUNT(*) AS total FROM chat_moderation_audit")
        if cursor:
            query = f"""
                SELECT {self.AUDIT_COLUMNS} FROM chat_moderation_audit
                WHERE created_at < %s
                ORDER BY created_at DESC
                LIMIT %s
            """
            rows = await fetch_all(query, (cursor, limit))
        else:
            query = f"""
                SELECT {self.AUDIT_COLUMNS} FROM chat_moderation_audit
                ORDER BY created_at DESC
                LIMIT %s
            """
            rows = await fetch_all(query, (limit,))
        return [self._row_to_audit(row) for row in rows], int(total or 0)

    async def purge_audit_before(self, cutoff: datetime) -> int:
        return await execute_query(
            "DELETE FROM chat_moderation_audit WHERE created_at < %s", (cutoff,)
        )

    # Admin aggregates

    async def count_activity_since(self, since: datetime) -> dict[str, int]:
        query = """
            SELECT
                (SELECT COUNT(*) FROM chat_messages WHERE created_at >= %(since)s) AS messages,
                (SELECT COUNT(*) FROM chat_conversations WHERE created_at >= %(since)s) AS conversations,
                (SELECT COUNT(*) FROM chat_reports WHERE created_at >= %(since)s) AS reports,
                (SELECT COUNT(*) FROM chat_user_blocks WHERE created_at >= %(since)s) AS blocks,
                (SELECT COUNT(*) FROM chat_attachments WHERE created_at >= %(since)s) AS attachments,
                (SELECT COUNT(*) FROM chat_attachments
                    WHERE created_at >= %(since)s AND status = 'blocked') AS attachments_blocked,
                (SELECT COUNT(*) FROM chat_messages
                    WHERE created_at >= %(since)s AND redacted_at IS NOT NULL) AS redactions,
                (SELECT COUNT(*) FROM chat_moderation_audit
                    WHERE created_at >= %(since)s) AS moderation_actions,
                (SELECT COUNT(*) FROM chat_conversation_participants
                    WHERE request_state = 'pending') AS pending_requests,
                (SELECT COUNT(*) FROM chat_conversation_participants
                    WHERE request_state = 'declined') AS declined_requests
        """
        row = await fetch_one(query, {"since": since}) or {}
        return {key: int(value or 0) for key, value in row.items()}
