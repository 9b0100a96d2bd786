"""
User-facing moderation primitives (block, unblock, report) and the admin
surface (reports, evidence, actions, audit, metrics).
"""

from datetime import UTC, datetime, timedelta
from typing import Any

from app.config import settings
from app.features.messaging.domain import (
    AccessContext,
    AdminRequired,
    Message,
    ModerationAction,
    ModerationAudit,
    NotFound,
    Report,
    ReportStatus,
    ValidationFailed,
)
from app.features.messaging.events import RealtimeNotifier
from app.features.messaging.repository import (
    MessageRepository,
    ModerationRepository,
    RetentionRepository,
)
from app.infrastructure.observability.logging import get_logger

from .conversation_service import ConversationService, clamp_limit

logger = get_logger(__name__)

DEFAULT_METRICS_RANGE_DAYS = 7


def require_admin(access: AccessContext) -> None:
    if not access.is_platform_admin:
        raise AdminRequired()


class ModerationService:
    def __init__(
        self,
        moderation: ModerationRepository,
        messages: MessageRepository,
        retention: RetentionRepository,
        conversation_service: ConversationService,
        notifier: RealtimeNotifier,
    ):
        self.moderation = moderation
        self.messages = messages
        self.retention = retention
        self.conversation_service = conversation_service
        self.notifier = notifier

    async def block(self, access: AccessContext, blocked_user_id: str, reason: str | None = None) -> None:
        if not blocked_user_id or blocked_user_id == access.user_id:
            raise ValidationFailed("Cannot block yourself")

        await self.moderation.add_block(access.user_id, blocked_user_id, reason)
        await self.notifier.publish_to_user(
            access.user_id, "block.created", {"blockedUserId": blocked_user_id}
        )

    async def unblock(self, access: AccessContext, blocked_user_id: str) -> None:
        removed = await self.moderation.remove_block(access.user_id, blocked_user_id)
        if removed:
            await self.notifier.publish_to_user(
                access.user_id, "block.removed", {"blockedUserId": blocked_user_id}
            )

    async def report(
        self,
        access: AccessContext,
        conversation_id: str,
        reported_user_id: str,
        category: str,
        description: str | None = None,
    ) -> Report:
        """File a report, capturing the ids of the most recent messages as evidence."""
        await self.conversation_service.ensure_participant(conversation_id, access.user_id)
        if reported_user_id == access.user_id:
            raise ValidationFailed("Cannot report yourself")

        other = await self.conversation_service.conversations.get_other_participant(
            conversation_id, access.user_id
        )
        if not other or other.user_id != reported_user_id:
            raise ValidationFailed("Reported user is not in this conversation")

        evidence_ids = await self.messages.list_recent_ids(
            conversation_id, settings.REPORT_EVIDENCE_MESSAGES
        )
        report = await self.moderation.create_report(
            access.user_id,
            reported_user_id,
            conversation_id,
            category,
            description,
            {"message_ids": evidence_ids},
        )
        logger.info(
            "Conversation reported",
            report_id=report.id,
            conversation_id=conversation_id,
            category=category,
            evidence_count=len(evidence_ids),
        )
        return report

    # Admin

    async def list_reports(
        self, access: AccessContext, limit: int | None = None, cursor: datetime | None = None
    ) -> tuple[list[Report], int]:
        require_admin(access)
        return await self.moderation.list_reports(
            clamp_limit(limit, settings.MESSAGE_PAGE_DEFAULT), cursor
        )

    async def get_report_evidence(
        self, access: AccessContext, report_id: str
    ) -> tuple[Report, list[Message]]:
        require_admin(access)
        report = await self.moderation.get_report(report_id)
        if not report:
            raise NotFound("Report not found")

        messages = await self.messages.list_messages_by_ids(report.evidence_message_ids())
        return report, messages

    async def take_report_action(
        self,
        access: AccessContext,
        report_id: str,
        action: ModerationAction,
        status: ReportStatus | None = None,
        details: dict[str, Any] | None = None,
    ) -> tuple[Report, ModerationAudit]:
        require_admin(access)
        report = await self.moderation.get_report(report_id)
        if not report:
            raise NotFound("Report not found")

        audit = await self.moderation.create_audit(
            access.user_id, report.reported_user_id, action, details
        )
        updated = await self.moderation.update_report_status(report_id, status or ReportStatus.RESOLVED)

        logger.info(
            "Moderation action recorded",
            report_id=report_id,
            action=action.value,
            actor_user_id=access.user_id,
            target_user_id=report.reported_user_id,
        )
        return updated or report, audit

    async def list_moderation_audit(
        self, access: AccessContext, limit: int | None = None, cursor: datetime | None = None
    ) -> tuple[list[ModerationAudit], int]:
        require_admin(access)
        return await self.moderation.list_audit(
            clamp_limit(limit, settings.MESSAGE_PAGE_DEFAULT), cursor
        )

    async def get_admin_metrics(
        self, access: AccessContext, range_days: int | None = None
    ) -> dict[str, Any]:
        require_admin(access)
        if not range_days or range_days <= 0:
            range_days = DEFAULT_METRICS_RANGE_DAYS

        since = datetime.now(UTC) - timedelta(days=range_days)
        counts = await self.moderation.count_activity_since(since)
        last_run = await self.retention.latest_run()

        return {
            "range_days": range_days,
            "since": since.isoformat(),
            "totals": {
                "messages": counts.get("messages", 0),
                "conversations": counts.get("conversations", 0),
                "reports": counts.get("reports", 0),
                "blocks": counts.get("blocks", 0),
                "attachments": counts.get("attachments", 0),
                "attachments_blocked": counts.get("attachments_blocked", 0),
                "redactions": counts.get("redactions", 0),
                "moderation_actions": counts.get("moderation_actions", 0),
            },
            "requests": {
                "pending": counts.get("pending_requests", 0),
                "declined": counts.get("declined_requests", 0),
            },
            "retention": {
                "last_run_at": (
                    (last_run.completed_at or last_run.started_at).isoformat() if last_run else None
                ),
                "last_status": last_run.status.value if last_run else None,
                "messages_redacted": last_run.messages_redacted if last_run else 0,
                "attachments_deleted": last_run.attachments_deleted if last_run else 0,
                "audits_archived": last_run.audits_archived if last_run else 0,
            },
        }
