"""
Persistence for attachment records. Blob bytes live in object storage;
only metadata and lifecycle status are stored here.
"""

from datetime import datetime
from typing import Any

import psycopg
from psycopg.types.json import Jsonb

from app.db.helpers import DatabaseError, fetch_all, fetch_one
from app.features.messaging.domain import Attachment, AttachmentStatus
from app.infrastructure.observability.logging import get_logger

from .base import as_str

logger = get_logger(__name__)


class AttachmentRepositoryError(DatabaseError):
    """More specific exception for attachment persistence failures."""


class AttachmentRepository:
    ATTACHMENT_COLUMNS = """
        id, conversation_id, uploader_id, file_name, content_type, size_bytes,
        storage_key, status, scan_result, created_at, updated_at
    """

    @staticmethod
    def _row_to_attachment(row: dict | None) -> Attachment | None:
        if not row:
            return None

        return Attachment(
            id=as_str(row["id"]),
            conversation_id=as_str(row["conversation_id"]),
            uploader_id=as_str(row["uploader_id"]),
            file_name=row["file_name"],
            content_type=row["content_type"],
            size_bytes=int(row["size_bytes"]),
            storage_key=row["storage_key"],
            status=AttachmentStatus(row["status"]),
            scan_result=row.get("scan_result"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    async def create_attachment(
        self,
        attachment_id: str,
        conversation_id: str,
        uploader_id: str,
        file_name: str,
        content_type: str,
        size_bytes: int,
        storage_key: str,
    ) -> Attachment:
        query = f"""
            INSERT INTO chat_attachments (
                id, conversation_id, uploader_id, file_name, content_type,
                size_bytes, storage_key, status
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING {self.ATTACHMENT_COLUMNS}
        """
        row = await fetch_one(
            query,
            (
                attachment_id,
                conversation_id,
                uploader_id,
                file_name,
                content_type,
                size_bytes,
                storage_key,
                AttachmentStatus.PENDING_UPLOAD.value,
            ),
        )
        attachment = self._row_to_attachment(row)
        if not attachment:
            raise AttachmentRepositoryError(
                "Attachment insert returned no row", operation="create_attachment"
            )
        return attachment

    async def get_attachment(self, attachment_id: str) -> Attachment | None:
        query = f"SELECT {self.ATTACHMENT_COLUMNS} FROM chat_attachments WHERE id = %s"
        return self._row_to_attachment(await fetch_one(query, (attachment_id,)))

    async def list_attachments(self, conversation_id: str, attachment_ids: list[str]) -> list[Attachment]:
        if not attachment_ids:
            return []
        query = f"""
            SELECT {self.ATTACHMENT_COLUMNS}
            FROM chat_attachments
            WHERE conversation_id = %s AND id = ANY(%s::uuid[])
        """
        rows = await fetch_all(query, (conversation_id, attachment_ids))
        return [self._row_to_attachment(row) for row in rows]

    async def transition(
        self,
        attachment_id: str,
        target: AttachmentStatus,
        *,
        scan_result: dict[str, Any] | None = None,
        connection: psycopg.AsyncConnection | None = None,
    ) -> Attachment | None:
        """
        Move an attachment to `target` only from a status that allows it.

        Returns None when the row is missing or its current status does not
        permit the move; the guard lives in the WHERE clause so concurrent
        writers cannot step backwards.
        """
        sources = [status.value for status in AttachmentStatus.sources_for(target)]
        if not sources:
            return None

        query = f"""
            UPDATE chat_attachments
            SET status = %s,
                scan_result = COALESCE(%s, scan_result),
                updated_at = NOW()
            WHERE id = %s AND status = ANY(%s)
            RETURNING {self.ATTACHMENT_COLUMNS}
        """
        row = await fetch_one(
            query,
            (
                target.value,
                Jsonb(scan_result) if scan_result is not None else None,
                attachment_id,
                sources,
            ),
            connection=connection,
        )
        attachment = self._row_to_attachment(row)
        if attachment:
            logger.debug(
                "Attachment status changed",
                attachment_id=attachment_id,
                status=target.value,
            )
        return attachment

    async def list_expired(self, cutoff: datetime, batch_size: int) -> list[Attachment]:
        """Oldest non-deleted attachments created before `cutoff`."""
        query = f"""
            SELECT {self.ATTACHMENT_COLUMNS}
            FROM chat_attachments
            WHERE status <> 'deleted' AND created_at < %s
            ORDER BY created_at ASC, id ASC
            LIMIT %s
        """
        rows = await fetch_all(query, (cutoff, batch_size))
        return [self._row_to_attachment(row) for row in rows]
