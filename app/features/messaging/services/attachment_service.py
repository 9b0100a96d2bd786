"""
Attachment lifecycle: pending_upload -> pending_scan -> available | blocked -> deleted.

Blob bytes never pass through this service. Clients upload and download
directly against signed storage URLs; this service only tracks status.
"""

import re
import uuid
from datetime import UTC, datetime

from app.config import settings
from app.db.pool import get_db_transaction
from app.features.messaging.domain import (
    AccessContext,
    AccessDenied,
    Attachment,
    AttachmentsDisabled,
    AttachmentStatus,
    AttachmentUnavailable,
    ConversationDeclined,
    InvalidTransition,
    NotFound,
    RequestNotAccepted,
    RequestState,
    ValidationFailed,
)
from app.features.messaging.events import ATTACHMENT_UPLOADED, OutboxPublisher, RealtimeNotifier
from app.features.messaging.repository import AttachmentRepository
from app.infrastructure.observability.logging import get_logger
from app.services.infrastructure.storage_client import StorageClient

from .conversation_service import ConversationService

logger = get_logger(__name__)

SCANNER_NAME = "content-type-policy"
_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def sanitize_file_name(file_name: str) -> str:
    cleaned = _UNSAFE_FILENAME_CHARS.sub("_", file_name.strip()).strip("._")
    return (cleaned or "file")[:200]


def build_storage_key(conversation_id: str, attachment_id: str, file_name: str) -> str:
    return f"{conversation_id}/{attachment_id}-{sanitize_file_name(file_name)}"


class AttachmentService:
    def __init__(
        self,
        attachments: AttachmentRepository,
        conversation_service: ConversationService,
        storage: StorageClient,
        outbox: OutboxPublisher,
        notifier: RealtimeNotifier,
    ):
        self.attachments = attachments
        self.conversation_service = conversation_service
        self.storage = storage
        self.outbox = outbox
        self.notifier = notifier

    def _ensure_enabled(self) -> None:
        if not settings.CHAT_ATTACHMENTS_ENABLED:
            raise AttachmentsDisabled()

    async def init(
        self,
        access: AccessContext,
        conversation_id: str,
        file_name: str,
        content_type: str,
        size_bytes: int,
    ) -> tuple[Attachment, str]:
        """Create the pending_upload row and return it with a signed upload URL."""
        self._ensure_enabled()

        if not file_name or not file_name.strip():
            raise ValidationFailed("File name required")
        if not content_type or not content_type.strip():
            raise ValidationFailed("Content type required")
        if size_bytes <= 0 or size_bytes > settings.ATTACHMENT_MAX_SIZE_BYTES:
            raise ValidationFailed(
                f"Attachment size must be between 1 and {settings.ATTACHMENT_MAX_SIZE_BYTES} bytes"
            )

        participant = await self.conversation_service.ensure_participant(
            conversation_id, access.user_id
        )
        if participant.request_state == RequestState.PENDING:
            raise RequestNotAccepted()
        if participant.request_state == RequestState.DECLINED:
            raise ConversationDeclined()

        attachment_id = str(uuid.uuid4())
        attachment = await self.attachments.create_attachment(
            attachment_id,
            conversation_id,
            access.user_id,
            file_name.strip(),
            content_type.strip().lower(),
            size_bytes,
            build_storage_key(conversation_id, attachment_id, file_name),
        )
        upload_url = await self.storage.create_upload_url(attachment.storage_key)

        logger.info(
            "Attachment upload initialized",
            attachment_id=attachment.id,
            conversation_id=conversation_id,
            size_bytes=size_bytes,
        )
        return attachment, upload_url

    async def complete(self, access: AccessContext, attachment_id: str) -> Attachment:
        """Mark the upload finished and enqueue the scan; repeated calls are no-ops."""
        self._ensure_enabled()

        attachment = await self.attachments.get_attachment(attachment_id)
        if not attachment:
            raise NotFound("Attachment not found")
        if attachment.uploader_id != access.user_id:
            raise AccessDenied("Attachment access denied")
        await self.conversation_service.ensure_participant(attachment.conversation_id, access.user_id)

        if attachment.status == AttachmentStatus.PENDING_SCAN:
            return attachment
        if not attachment.status.can_transition_to(AttachmentStatus.PENDING_SCAN):
            raise InvalidTransition(
                "status", attachment.status.value, AttachmentStatus.PENDING_SCAN.value
            )

        async with await get_db_transaction() as conn:
            updated = await self.attachments.transition(
                attachment_id, AttachmentStatus.PENDING_SCAN, connection=conn
            )
            if not updated:
                raise InvalidTransition(
                    "status", attachment.status.value, AttachmentStatus.PENDING_SCAN.value
                )
            await self.outbox.publish(
                ATTACHMENT_UPLOADED,
                {
                    "attachment_id": updated.id,
                    "conversation_id": updated.conversation_id,
                    "uploader_user_id": updated.uploader_id,
                    "content_type": updated.content_type,
                    "size_bytes": updated.size_bytes,
                    "storage_key": updated.storage_key,
                },
                connection=conn,
            )

        logger.info("Attachment queued for scan", attachment_id=attachment_id)
        await self._notify(updated)
        return updated

    async def apply_scan_result(self, attachment_id: str) -> Attachment | None:
        """
        Scan step run by the attachment-scan worker.

        Content types on the block list are blocked, everything else becomes
        available. Attachments no longer awaiting a scan are left as they are.
        """
        attachment = await self.attachments.get_attachment(attachment_id)
        if not attachment:
            logger.warning("Scan requested for unknown attachment", attachment_id=attachment_id)
            return None
        if attachment.status != AttachmentStatus.PENDING_SCAN:
            logger.info(
                "Attachment not awaiting scan, skipping",
                attachment_id=attachment_id,
                status=attachment.status.value,
            )
            return attachment

        blocked_types = {value.lower() for value in settings.ATTACHMENT_BLOCKED_CONTENT_TYPES}
        blocked = attachment.content_type.lower() in blocked_types
        target = AttachmentStatus.BLOCKED if blocked else AttachmentStatus.AVAILABLE
        scan_result = {
            "scanner": SCANNER_NAME,
            "verdict": "blocked" if blocked else "clean",
            "scanned_at": datetime.now(UTC).isoformat(),
        }

        updated = await self.attachments.transition(attachment_id, target, scan_result=scan_result)
        if not updated:
            logger.info("Attachment changed during scan, skipping", attachment_id=attachment_id)
            return await self.attachments.get_attachment(attachment_id)

        logger.info("Attachment scanned", attachment_id=attachment_id, status=target.value)
        await self._notify(updated)
        return updated

    async def download_url(self, access: AccessContext, attachment_id: str) -> tuple[str, int]:
        self._ensure_enabled()

        attachment = await self.attachments.get_attachment(attachment_id)
        if not attachment:
            raise NotFound("Attachment not found")
        await self.conversation_service.ensure_participant(attachment.conversation_id, access.user_id)

        if attachment.status != AttachmentStatus.AVAILABLE:
            raise AttachmentUnavailable(attachment.status.value)

        expires_in = settings.ATTACHMENT_URL_TTL_SECONDS
        url = await self.storage.create_download_url(attachment.storage_key, expires_in)
        return url, expires_in

    async def _notify(self, attachment: Attachment) -> None:
        await self.notifier.publish_to_conversation(
            attachment.conversation_id,
            "attachment.updated",
            {"attachmentId": attachment.id, "status": attachment.status.value},
        )
