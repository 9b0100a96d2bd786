"""
Worker entry points for the messaging feature.

Each entry point opens the process-wide database pool and Redis client,
builds the messaging services, runs its loop and closes the resources in
reverse order when the loop ends or is cancelled.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from app.config import settings
from app.db.pool import db_pool
from app.features.messaging.container import MessagingServices, build_messaging_services
from app.features.messaging.events import OutboxWorker, QueueConsumer
from app.features.messaging.jobs import (
    AttachmentScanWorker,
    ModerationWorker,
    RetentionJob,
    start_retention_scheduler,
)
from app.infrastructure.observability.logging import get_logger, setup_logging
from app.services.infrastructure.redis_client import redis_client
from app.services.infrastructure.storage_client import StorageClient

logger = get_logger(__name__)


@asynccontextmanager
async def worker_resources() -> AsyncIterator[MessagingServices]:
    setup_logging("DEBUG" if settings.debug else "INFO")
    await db_pool.initialize()
    try:
        await redis_client.initialize()
        storage = StorageClient()
        try:
            yield build_messaging_services(redis_client, storage)
        finally:
            await storage.close()
            await redis_client.close()
    finally:
        await db_pool.close()


def build_retention_job(services: MessagingServices) -> RetentionJob:
    return RetentionJob(
        services.retention_repository,
        services.message_repository,
        services.attachment_repository,
        services.moderation_repository,
        services.storage,
        services.notifier,
    )


async def run_outbox_worker() -> None:
    async with worker_resources() as services:
        worker = OutboxWorker(services.outbox_repository, services.exchange)
        await worker.run_forever()


async def run_moderation_worker() -> None:
    async with worker_resources() as services:
        worker = ModerationWorker(
            services.exchange,
            QueueConsumer(redis_client, settings.MODERATION_QUEUE),
            redis_client,
            services.message_repository,
            services.notifier,
        )
        await worker.run_forever()


async def run_attachment_scan_worker() -> None:
    async with worker_resources() as services:
        worker = AttachmentScanWorker(
            services.exchange,
            QueueConsumer(redis_client, settings.ATTACHMENT_SCAN_QUEUE),
            services.attachments,
        )
        await worker.run_forever()


async def start_retention_worker() -> None:
    async with worker_resources() as services:
        await start_retention_scheduler(build_retention_job(services))


async def run_retention_once() -> None:
    """Manual trigger: one retention pass, then exit."""
    async with worker_resources() as services:
        run = await build_retention_job(services).run()
        if run:
            logger.info(
                "Manual retention run finished",
                run_id=run.id,
                status=run.status.value,
                messages_redacted=run.messages_redacted,
                attachments_deleted=run.attachments_deleted,
                audits_archived=run.audits_archived,
            )
