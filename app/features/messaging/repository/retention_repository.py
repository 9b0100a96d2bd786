"""
Retention configuration and the append-only log of retention runs.
"""

from app.db.helpers import DatabaseError, fetch_one
from app.features.messaging.domain import RetentionConfig, RetentionRun, RetentionRunStatus

from .base import as_str


class RetentionRepositoryError(DatabaseError):
    """More specific exception for retention persistence failures."""


class RetentionRepository:
    RUN_COLUMNS = """
        id, status, started_at, completed_at,
        messages_redacted, attachments_deleted, audits_archived, error_message
    """

    @staticmethod
    def _row_to_run(row: dict | None) -> RetentionRun | None:
        if not row:
            return None

        return RetentionRun(
            id=as_str(row["id"]),
            status=RetentionRunStatus(row["status"]),
            started_at=row["started_at"],
            completed_at=row.get("completed_at"),
            messages_redacted=row.get("messages_redacted") or 0,
            attachments_deleted=row.get("attachments_deleted") or 0,
            audits_archived=row.get("audits_archived") or 0,
            error_message=row.get("error_message"),
        )

    async def get_config(self) -> RetentionConfig | None:
        row = await fetch_one(
            """
            SELECT message_retention_days, attachment_retention_days, audit_retention_days
            FROM chat_retention_config
            WHERE id = 1
            """
        )
        if not row:
            return None
        return RetentionConfig(
            message_retention_days=int(row["message_retention_days"]),
            attachment_retention_days=int(row["attachment_retention_days"]),
            audit_retention_days=int(row["audit_retention_days"]),
        )

    async def start_run(self) -> RetentionRun:
        row = await fetch_one(
            f"""
            INSERT INTO chat_retention_runs (status)
            VALUES ('running')
            RETURNING {self.RUN_COLUMNS}
            """
        )
        run = self._row_to_run(row)
        if not run:
            raise RetentionRepositoryError("Run insert returned no row", operation="start_run")
        return run

    async def finish_run(
        self,
        run_id: str,
        status: RetentionRunStatus,
        *,
        messages_redacted: int,
        attachments_deleted: int,
        audits_archived: int,
        error_message: str | None = None,
    ) -> RetentionRun | None:
        """Finalize a run; a run that already left `running` is not touched again."""
        row = await fetch_one(
            f"""
            UPDATE chat_retention_runs
            SET status = %s,
                completed_at = NOW(),
                messages_redacted = %s,
                attachments_deleted = %s,
                audits_archived = %s,
                error_message = %s
            WHERE id = %s AND status = 'running'
            RETURNING {self.RUN_COLUMNS}
            """,
            (
                status.value,
                messages_redacted,
                attachments_deleted,
                audits_archived,
                error_message,
                run_id,
            ),
        )
        return self._row_to_run(row)

    async def latest_run(self) -> RetentionRun | None:
        row = await fetch_one(
            f"""
            SELECT {self.RUN_COLUMNS}
            FROM chat_retention_runs
            ORDER BY started_at DESC
            LIMIT 1
            """
        )
        return self._row_to_run(row)
