"""
Domain models for the messaging feature.

Enumerations carry their own transition tables so legality is decided in
one place; dataclasses mirror table rows and stay free of persistence code.
"""

import base64
import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from .errors import InvalidTransition, ValidationFailed


class RequestState(str, Enum):
    NONE = "none"
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"

    def can_transition_to(self, target: "RequestState") -> bool:
        return target == self or target in _REQUEST_TRANSITIONS[self]

    def transition_to(self, target: "RequestState") -> "RequestState":
        if not self.can_transition_to(target):
            raise InvalidTransition("request_state", self.value, target.value)
        return target


_REQUEST_TRANSITIONS: dict[RequestState, frozenset[RequestState]] = {
    RequestState.NONE: frozenset({RequestState.PENDING, RequestState.ACCEPTED}),
    RequestState.PENDING: frozenset({RequestState.ACCEPTED, RequestState.DECLINED}),
    RequestState.ACCEPTED: frozenset({RequestState.DECLINED}),
    RequestState.DECLINED: frozenset({RequestState.ACCEPTED}),
}


class AttachmentStatus(str, Enum):
    PENDING_UPLOAD = "pending_upload"
    PENDING_SCAN = "pending_scan"
    AVAILABLE = "available"
    BLOCKED = "blocked"
    DELETED = "deleted"

    def can_transition_to(self, target: "AttachmentStatus") -> bool:
        return target in _ATTACHMENT_TRANSITIONS[self]

    @classmethod
    def sources_for(cls, target: "AttachmentStatus") -> list["AttachmentStatus"]:
        """Every status from which `target` is reachable in one step."""
        return [status for status in cls if status.can_transition_to(target)]


_ATTACHMENT_TRANSITIONS: dict[AttachmentStatus, frozenset[AttachmentStatus]] = {
    AttachmentStatus.PENDING_UPLOAD: frozenset(
        {AttachmentStatus.PENDING_SCAN, AttachmentStatus.DELETED}
    ),
    AttachmentStatus.PENDING_SCAN: frozenset(
        {AttachmentStatus.AVAILABLE, AttachmentStatus.BLOCKED, AttachmentStatus.DELETED}
    ),
    AttachmentStatus.AVAILABLE: frozenset({AttachmentStatus.DELETED}),
    AttachmentStatus.BLOCKED: frozenset({AttachmentStatus.DELETED}),
    AttachmentStatus.DELETED: frozenset(),
}


class MessageKind(str, Enum):
    USER = "user"
    SYSTEM = "system"


class ConversationFilter(str, Enum):
    INBOX = "inbox"
    REQUESTS = "requests"
    ARCHIVED = "archived"


class ModerationAction(str, Enum):
    WARN = "warn"
    MUTE_USER = "mute_user"
    SUSPEND_MESSAGING = "suspend_messaging"
    BAN_USER = "ban_user"


class ReportStatus(str, Enum):
    OPEN = "open"
    REVIEWING = "reviewing"
    RESOLVED = "resolved"
    DISMISSED = "dismissed"


class RetentionRunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class OutboxStatus(str, Enum):
    PENDING = "pending"
    PUBLISHED = "published"
    FAILED = "failed"


@dataclass(slots=True, frozen=True)
class ConversationContext:
    """Business anchor of a conversation. Unset fields mean "no anchor", not "any"."""

    application_id: str | None = None
    job_id: str | None = None
    company_id: str | None = None
    candidate_id: str | None = None

    def is_empty(self) -> bool:
        return not (self.application_id or self.job_id or self.company_id or self.candidate_id)


@dataclass(slots=True)
class AccessContext:
    """Who the caller is across the identity tables."""

    user_id: str
    candidate_id: str | None = None
    recruiter_id: str | None = None
    organization_ids: list[str] = field(default_factory=list)
    is_platform_admin: bool = False


@dataclass(slots=True)
class RepresentationRoute:
    routed: bool
    recruiter_user_id: str | None = None
    candidate_id: str | None = None
    candidate_name: str | None = None
    recruiter_name: str | None = None

    @classmethod
    def none(cls) -> "RepresentationRoute":
        return cls(routed=False)


@dataclass(slots=True)
class Conversation:
    id: str
    participant_a_id: str
    participant_b_id: str
    application_id: str | None
    job_id: str | None
    company_id: str | None
    candidate_id: str | None
    last_message_id: str | None
    last_message_at: datetime | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class ParticipantState:
    conversation_id: str
    user_id: str
    request_state: RequestState
    muted_at: datetime | None = None
    archived_at: datetime | None = None
    last_read_at: datetime | None = None
    last_read_message_id: str | None = None
    unread_count: int = 0


@dataclass(slots=True)
class ConversationListItem:
    conversation: Conversation
    participant: ParticipantState


@dataclass(slots=True, frozen=True)
class ConversationCursor:
    """
    Keyset position in a conversation list ordered newest activity first.

    Activity is the last message time, or creation time for a conversation
    without messages. The id breaks ties between equal timestamps.
    """

    activity_at: datetime
    conversation_id: str

    @classmethod
    def after(cls, conversation: Conversation) -> "ConversationCursor":
        return cls(conversation.last_message_at or conversation.created_at, conversation.id)

    def encode(self) -> str:
        raw = json.dumps({"at": self.activity_at.isoformat(), "id": self.conversation_id})
        return base64.urlsafe_b64encode(raw.encode()).decode().rstrip("=")

    @classmethod
    def decode(cls, token: str) -> "ConversationCursor":
        try:
            padded = token + "=" * (-len(token) % 4)
            data = json.loads(base64.urlsafe_b64decode(padded.encode()))
            activity_at = datetime.fromisoformat(data["at"])
            conversation_id = str(UUID(data["id"]))
        except (ValueError, KeyError, TypeError) as e:
            raise ValidationFailed("Invalid conversation cursor") from e

        if activity_at.tzinfo is None:
            raise ValidationFailed("Invalid conversation cursor")
        return cls(activity_at, conversation_id)


@dataclass(slots=True)
class Message:
    id: str
    conversation_id: str
    sender_id: str
    kind: MessageKind
    body: str | None
    metadata: dict[str, Any]
    client_message_id: str | None
    created_at: datetime
    edited_at: datetime | None = None
    redacted_at: datetime | None = None
    redaction_reason: str | None = None


@dataclass(slots=True)
class Attachment:
    id: str
    conversation_id: str
    uploader_id: str
    file_name: str
    content_type: str
    size_bytes: int
    storage_key: str
    status: AttachmentStatus
    scan_result: dict[str, Any] | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class Report:
    id: str
    reporter_user_id: str
    reported_user_id: str
    conversation_id: str
    category: str
    description: str | None
    evidence_pointer: dict[str, Any] | None
    status: ReportStatus
    created_at: datetime
    updated_at: datetime

    def evidence_message_ids(self) -> list[str]:
        ids = (self.evidence_pointer or {}).get("message_ids")
        if not isinstance(ids, list):
            return []
        return [value for value in ids if isinstance(value, str)]


@dataclass(slots=True)
class ModerationAudit:
    id: str
    actor_user_id: str
    target_user_id: str
    action: ModerationAction
    details: dict[str, Any] | None
    created_at: datetime


@dataclass(slots=True)
class RetentionConfig:
    message_retention_days: int
    attachment_retention_days: int
    audit_retention_days: int


@dataclass(slots=True)
class RetentionRun:
    id: str
    status: RetentionRunStatus
    started_at: datetime
    completed_at: datetime | None = None
    messages_redacted: int = 0
    attachments_deleted: int = 0
    audits_archived: int = 0
    error_message: str | None = None


@dataclass(slots=True)
class OutboxEvent:
    id: str
    event_type: str
    payload: dict[str, Any]
    source_service: str
    status: OutboxStatus
    attempts: int
    created_at: datetime
