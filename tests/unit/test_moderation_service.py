from unittest.mock import AsyncMock

import pytest

from app.features.messaging.domain import (
    AdminRequired,
    ModerationAction,
    ModerationAudit,
    NotFound,
    ReportStatus,
    RetentionRun,
    RetentionRunStatus,
    ValidationFailed,
)
from app.features.messaging.services.moderation_service import ModerationService
from tests.factories import NOW, make_access, make_message, make_participant, make_report

ADMIN = make_access("admin-1", is_platform_admin=True)


def build_service():
    moderation = AsyncMock()
    messages = AsyncMock()
    retention = AsyncMock()
    retention.latest_run.return_value = None

    conversation_service = AsyncMock()
    conversation_service.conversations = AsyncMock()
    conversation_service.conversations.get_other_participant.return_value = make_participant(
        "user-b"
    )

    return ModerationService(moderation, messages, retention, conversation_service, AsyncMock())


@pytest.mark.asyncio
async def test_block_records_and_notifies_blocker():
    service = build_service()

    await service.block(make_access("user-a"), "user-b", "spam")

    service.moderation.add_block.assert_awaited_once_with("user-a", "user-b", "spam")
    service.notifier.publish_to_user.assert_awaited_once_with(
        "user-a", "block.created", {"blockedUserId": "user-b"}
    )


@pytest.mark.asyncio
async def test_cannot_block_self():
    service = build_service()

    with pytest.raises(ValidationFailed):
        await service.block(make_access("user-a"), "user-a")


@pytest.mark.asyncio
async def test_unblock_without_block_is_silent():
    service = build_service()
    service.moderation.remove_block.return_value = False

    await service.unblock(make_access("user-a"), "user-b")

    service.notifier.publish_to_user.assert_not_awaited()


@pytest.mark.asyncio
async def test_report_captures_recent_message_ids():
    service = build_service()
    service.messages.list_recent_ids.return_value = ["msg-3", "msg-2", "msg-1"]
    service.moderation.create_report.return_value = make_report()

    await service.report(make_access("user-a"), "conv-1", "user-b", "harassment", "rude")

    service.messages.list_recent_ids.assert_awaited_once_with("conv-1", 20)
    service.moderation.create_report.assert_awaited_once_with(
        "user-a",
        "user-b",
        "conv-1",
        "harassment",
        "rude",
        {"message_ids": ["msg-3", "msg-2", "msg-1"]},
    )


@pytest.mark.asyncio
async def test_report_must_target_other_participant():
    service = build_service()

    with pytest.raises(ValidationFailed):
        await service.report(make_access("user-a"), "conv-1", "user-z", "spam")

    service.moderation.create_report.assert_not_awaited()


@pytest.mark.asyncio
async def test_admin_endpoints_require_platform_admin():
    service = build_service()

    with pytest.raises(AdminRequired):
        await service.list_reports(make_access("user-a"))
    with pytest.raises(AdminRequired):
        await service.get_admin_metrics(make_access("user-a"))
    with pytest.raises(AdminRequired):
        await service.take_report_action(make_access("user-a"), "report-1", ModerationAction.WARN)


@pytest.mark.asyncio
async def test_report_evidence_loads_pointed_messages():
    service = build_service()
    service.moderation.get_report.return_value = make_report()
    service.messages.list_messages_by_ids.return_value = [make_message("msg-1")]

    report, messages = await service.get_report_evidence(ADMIN, "report-1")

    assert report.id == "report-1"
    assert [m.id for m in messages] == ["msg-1"]
    service.messages.list_messages_by_ids.assert_awaited_once_with(["msg-1", "msg-2"])


@pytest.mark.asyncio
async def test_missing_report_is_not_found():
    service = build_service()
    service.moderation.get_report.return_value = None

    with pytest.raises(NotFound):
        await service.get_report_evidence(ADMIN, "report-404")


@pytest.mark.asyncio
async def test_report_action_writes_audit_and_resolves():
    service = build_service()
    service.moderation.get_report.return_value = make_report()
    audit = ModerationAudit(
        id="audit-1",
        actor_user_id="admin-1",
        target_user_id="user-b",
        action=ModerationAction.SUSPEND_MESSAGING,
        details={"days": 7},
        created_at=NOW,
    )
    service.moderation.create_audit.return_value = audit
    service.moderation.update_report_status.return_value = make_report(status=ReportStatus.RESOLVED)

    report, recorded = await service.take_report_action(
        ADMIN, "report-1", ModerationAction.SUSPEND_MESSAGING, details={"days": 7}
    )

    assert recorded is audit
    assert report.status == ReportStatus.RESOLVED
    service.moderation.create_audit.assert_awaited_once_with(
        "admin-1", "user-b", ModerationAction.SUSPEND_MESSAGING, {"days": 7}
    )
    service.moderation.update_report_status.assert_awaited_once_with(
        "report-1", ReportStatus.RESOLVED
    )


@pytest.mark.asyncio
async def test_metrics_default_range_and_retention_summary():
    service = build_service()
    service.moderation.count_activity_since.return_value = {
        "messages": 42,
        "reports": 2,
        "pending_requests": 5,
        "declined_requests": 1,
    }
    service.retention.latest_run.return_value = RetentionRun(
        id="run-1",
        status=RetentionRunStatus.COMPLETED,
        started_at=NOW,
        completed_at=NOW,
        messages_redacted=10,
    )

    metrics = await service.get_admin_metrics(ADMIN)

    assert metrics["range_days"] == 7
    assert metrics["totals"]["messages"] == 42
    assert metrics["totals"]["blocks"] == 0
    assert metrics["requests"] == {"pending": 5, "declined": 1}
    assert metrics["retention"]["last_status"] == "completed"
    assert metrics["retention"]["messages_redacted"] == 10


@pytest.mark.asyncio
async def test_metrics_without_retention_history():
    service = build_service()
    service.moderation.count_activity_since.return_value = {}

    metrics = await service.get_admin_metrics(ADMIN, range_days=30)

    assert metrics["range_days"] == 30
    assert metrics["retention"]["last_run_at"] is None
    assert metrics["retention"]["last_status"] is None
