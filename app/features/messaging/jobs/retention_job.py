"""
Retention Job - redaction and deletion of aged chat data.

Each run:
1. Records a RetentionRun row in `running`
2. Redacts messages older than the message cutoff, batch by batch
3. Deletes attachment blobs older than the attachment cutoff (best effort)
   and marks the rows deleted
4. Purges moderation audit rows older than the audit cutoff
5. Finalizes the run as `completed` with counts, or `failed` with the error
   (including cancellation at shutdown)

Batch loops stop on the first empty page. Already-redacted messages and
deleted attachments drop out of the page queries, so an interrupted run
can simply be started again.

Schedule:
- Production: daily at RETENTION_SCHEDULE_HOUR (UTC)
- Development: manual trigger only (`python -m app.jobs.worker retention_once`)
"""

import asyncio
from datetime import UTC, datetime, timedelta

from app.config import settings
from app.features.messaging.domain import (
    AttachmentStatus,
    RetentionConfig,
    RetentionRun,
    RetentionRunStatus,
)
from app.features.messaging.events import RealtimeNotifier
from app.features.messaging.repository import (
    AttachmentRepository,
    MessageRepository,
    ModerationRepository,
    RetentionRepository,
)
from app.infrastructure.observability.logging import get_logger
from app.services.infrastructure.storage_client import StorageClient, StorageError

logger = get_logger(__name__)

REDACTION_REASON = "retention"


class RetentionJob:
    """
    Background job enforcing chat data retention.

    Overlapping runs inside one process are refused via `is_running`;
    across processes the scheduler must guarantee a single instance.
    """

    def __init__(
        self,
        retention: RetentionRepository,
        messages: MessageRepository,
        attachments: AttachmentRepository,
        moderation: ModerationRepository,
        storage: StorageClient,
        notifier: RealtimeNotifier,
        batch_size: int | None = None,
    ):
        self.retention = retention
        self.messages = messages
        self.attachments = attachments
        self.moderation = moderation
        self.storage = storage
        self.notifier = notifier
        self.batch_size = batch_size or settings.RETENTION_BATCH_SIZE
        self.is_running = False

    async def load_config(self) -> RetentionConfig:
        config = await self.retention.get_config()
        if config:
            return config
        return RetentionConfig(
            message_retention_days=settings.RETENTION_DEFAULT_MESSAGE_DAYS,
            attachment_retention_days=settings.RETENTION_DEFAULT_ATTACHMENT_DAYS,
            audit_retention_days=settings.RETENTION_DEFAULT_AUDIT_DAYS,
        )

    async def run(self) -> RetentionRun | None:
        """
        Execute one retention pass.

        Returns:
            The finalized RetentionRun, or None when a run is already in progress.
        """
        if self.is_running:
            logger.warning("Retention job already running, skipping")
            return None

        self.is_running = True
        try:
            return await self._run()
        finally:
            self.is_running = False

    async def _run(self) -> RetentionRun:
        run = await self.retention.start_run()
        start_time = datetime.now(UTC)
        counts = {"messages_redacted": 0, "attachments_deleted": 0, "audits_archived": 0}

        logger.info("Starting retention job", run_id=run.id, batch_size=self.batch_size)

        try:
            config = await self.load_config()
            now = datetime.now(UTC)

            await self._redact_messages(now - timedelta(days=config.message_retention_days), counts)
            await self._delete_attachments(
                now - timedelta(days=config.attachment_retention_days), counts
            )
            counts["audits_archived"] = await self.moderation.purge_audit_before(
                now - timedelta(days=config.audit_retention_days)
            )

        except asyncio.CancelledError:
            logger.warning("Retention job cancelled", run_id=run.id, **counts)
            await asyncio.shield(
                self.retention.finish_run(
                    run.id, RetentionRunStatus.FAILED, error_message="cancelled", **counts
                )
            )
            raise
        except Exception as e:
            logger.exception("Retention job failed", run_id=run.id, **counts)
            finalized = await self.retention.finish_run(
                run.id, RetentionRunStatus.FAILED, error_message=str(e)[:1000], **counts
            )
            return finalized or run

        finalized = await self.retention.finish_run(run.id, RetentionRunStatus.COMPLETED, **counts)

        logger.info(
            "Retention job completed",
            run_id=run.id,
            duration_seconds=(datetime.now(UTC) - start_time).total_seconds(),
            **counts,
        )
        return finalized or run

    async def _redact_messages(self, cutoff: datetime, counts: dict[str, int]) -> None:
        while True:
            redacted = await self.messages.redact_expired_batch(
                cutoff, self.batch_size, REDACTION_REASON
            )
            if not redacted:
                break

            counts["messages_redacted"] += len(redacted)

            by_conversation: dict[str, list[str]] = {}
            for row in redacted:
                by_conversation.setdefault(row["conversation_id"], []).append(row["id"])

            for conversation_id, message_ids in by_conversation.items():
                await self.notifier.publish_to_conversation(
                    conversation_id,
                    "message.updated",
                    {
                        "conversationId": conversation_id,
                        "messageIds": message_ids,
                        "redactionReason": REDACTION_REASON,
                    },
                )

            logger.info("Retention redacted message batch", count=len(redacted), cutoff=cutoff.isoformat())

    async def _delete_attachments(self, cutoff: datetime, counts: dict[str, int]) -> None:
        while True:
            page = await self.attachments.list_expired(cutoff, self.batch_size)
            if not page:
                break

            progressed = 0
            for attachment in page:
                try:
                    await self.storage.delete_object(attachment.storage_key)
                except StorageError as e:
                    logger.warning(
                        "Attachment blob delete failed, marking deleted anyway",
                        attachment_id=attachment.id,
                        storage_key=attachment.storage_key,
                        error=str(e),
                    )

                updated = await self.attachments.transition(attachment.id, AttachmentStatus.DELETED)
                if not updated:
                    continue

                progressed += 1
                counts["attachments_deleted"] += 1
                await self.notifier.publish_to_conversation(
                    updated.conversation_id,
                    "attachment.updated",
                    {"attachmentId": updated.id, "status": updated.status.value},
                )

            if not progressed:
                logger.warning("Retention attachment page made no progress, stopping", size=len(page))
                break


# ==========================================================================
# SCHEDULER
# ==========================================================================


async def start_retention_scheduler(job: RetentionJob) -> None:
    """Run the retention job daily at the configured hour (UTC)."""
    schedule_config = settings.get_retention_schedule_config()

    if not schedule_config["enabled"]:
        logger.info("Retention scheduler DISABLED", environment=settings.environment)
        return

    schedule_hour = schedule_config["schedule_hour"]
    logger.info(
        "Retention scheduler STARTED",
        schedule_hour=schedule_hour,
        environment=settings.environment,
    )

    while True:
        try:
            now = datetime.now(UTC)
            next_run = now.replace(hour=schedule_hour, minute=0, second=0, microsecond=0)
            if now >= next_run:
                next_run += timedelta(days=1)

            sleep_seconds = (next_run - now).total_seconds()
            logger.info(
                "Retention job scheduled",
                next_run=next_run.isoformat(),
                sleep_seconds=sleep_seconds,
            )
            await asyncio.sleep(sleep_seconds)

            run = await job.run()
            if run:
                logger.info("Scheduled retention run finished", run_id=run.id, status=run.status.value)

        except asyncio.CancelledError:
            logger.info("Retention scheduler cancelled")
            break
        except Exception as e:
            logger.error("Error in retention scheduler, will retry", error=str(e))
            await asyncio.sleep(3600)
