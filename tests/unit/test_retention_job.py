import asyncio
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from app.features.messaging.domain import (
    AttachmentStatus,
    RetentionConfig,
    RetentionRun,
    RetentionRunStatus,
)
from app.features.messaging.events import RealtimeNotifier
from app.features.messaging.jobs import RetentionJob, start_retention_scheduler
from app.features.messaging.jobs import retention_job as retention_module
from app.services.infrastructure.storage_client import StorageError
from tests.factories import NOW, make_attachment


def finished_run(run_id, status, *, error_message=None, **counts):
    return RetentionRun(
        id=run_id,
        status=status,
        started_at=NOW,
        completed_at=NOW,
        error_message=error_message,
        **counts,
    )


def build_job(fake_redis, redacted_pages=None, expired_pages=None, audits_purged=0):
    retention = AsyncMock()
    retention.get_config.return_value = None
    retention.start_run.return_value = RetentionRun(
        id="run-1", status=RetentionRunStatus.RUNNING, started_at=NOW
    )
    retention.finish_run.side_effect = finished_run

    messages = AsyncMock()
    messages.redact_expired_batch.side_effect = list(redacted_pages or []) + [[]]

    attachments = AsyncMock()
    attachments.list_expired.side_effect = list(expired_pages or []) + [[]]
    attachments.transition.side_effect = lambda attachment_id, target: make_attachment(
        attachment_id, target
    )

    moderation = AsyncMock()
    moderation.purge_audit_before.return_value = audits_purged

    return RetentionJob(
        retention,
        messages,
        attachments,
        moderation,
        AsyncMock(),
        RealtimeNotifier(fake_redis),
        batch_size=500,
    )


@pytest.mark.asyncio
async def test_defaults_used_when_no_config_row(fake_redis):
    job = build_job(fake_redis)

    config = await job.load_config()

    assert config == RetentionConfig(
        message_retention_days=730, attachment_retention_days=365, audit_retention_days=365
    )


@pytest.mark.asyncio
async def test_run_redacts_old_messages_and_notifies(fake_redis):
    job = build_job(
        fake_redis,
        redacted_pages=[[{"id": "msg-old", "conversation_id": "conv-1"}]],
        audits_purged=3,
    )

    run = await job.run()

    assert run.status == RetentionRunStatus.COMPLETED
    assert run.messages_redacted == 1
    assert run.audits_archived == 3

    cutoff, batch_size, reason = job.messages.redact_expired_batch.await_args_list[0].args
    now = datetime.now(UTC)
    assert now - timedelta(days=800) < cutoff < now - timedelta(days=100)
    assert batch_size == 500
    assert reason == "retention"

    [envelope] = fake_redis.events("conv:conv-1")
    assert envelope["type"] == "message.updated"
    assert envelope["data"]["messageIds"] == ["msg-old"]
    assert envelope["data"]["redactionReason"] == "retention"


@pytest.mark.asyncio
async def test_second_run_with_nothing_left_is_empty(fake_redis):
    job = build_job(fake_redis)

    run = await job.run()

    assert run.status == RetentionRunStatus.COMPLETED
    assert run.messages_redacted == 0
    assert run.attachments_deleted == 0
    assert fake_redis.published == []


@pytest.mark.asyncio
async def test_attachment_blob_failure_still_marks_deleted(fake_redis):
    job = build_job(
        fake_redis,
        expired_pages=[[make_attachment("att-1", AttachmentStatus.AVAILABLE)]],
    )
    job.storage.delete_object.side_effect = StorageError("bucket unavailable", status_code=503)

    run = await job.run()

    assert run.status == RetentionRunStatus.COMPLETED
    assert run.attachments_deleted == 1
    job.attachments.transition.assert_awaited_once_with("att-1", AttachmentStatus.DELETED)

    [envelope] = fake_redis.events("conv:conv-1")
    assert envelope["type"] == "attachment.updated"
    assert envelope["data"] == {"attachmentId": "att-1", "status": "deleted"}


@pytest.mark.asyncio
async def test_failure_finalizes_run_as_failed(fake_redis):
    job = build_job(fake_redis)
    job.messages.redact_expired_batch.side_effect = RuntimeError("connection reset")

    run = await job.run()

    assert run.status == RetentionRunStatus.FAILED
    assert run.error_message == "connection reset"
    assert job.is_running is False


@pytest.mark.asyncio
async def test_overlapping_run_is_skipped(fake_redis):
    job = build_job(fake_redis)
    job.is_running = True

    assert await job.run() is None
    job.retention.start_run.assert_not_awaited()


@pytest.mark.asyncio
async def test_scheduler_returns_when_disabled(monkeypatch, fake_redis):
    monkeypatch.setattr(retention_module.settings, "RETENTION_ENABLED", False)
    job = build_job(fake_redis)

    await start_retention_scheduler(job)

    job.retention.start_run.assert_not_awaited()


@pytest.mark.asyncio
async def test_cancelled_run_is_finalized_as_failed(fake_redis):
    job = build_job(fake_redis)
    job.messages.redact_expired_batch.side_effect = [
        [{"id": "msg-old", "conversation_id": "conv-1"}],
        asyncio.CancelledError(),
    ]

    with pytest.raises(asyncio.CancelledError):
        await job.run()

    job.retention.finish_run.assert_awaited_once_with(
        "run-1",
        RetentionRunStatus.FAILED,
        error_message="cancelled",
        messages_redacted=1,
        attachments_deleted=0,
        audits_archived=0,
    )
    assert job.is_running is False
