"""
Messaging API request and response models.

Requests are validated by pydantic at the edge; responses are built from
domain dataclasses with `from_domain` so routes never leak row shapes.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field, model_validator

from app.features.messaging.domain.models import (
    Attachment,
    AttachmentStatus,
    Conversation,
    ConversationContext,
    ConversationListItem,
    Message,
    MessageKind,
    ModerationAction,
    ModerationAudit,
    ParticipantState,
    Report,
    ReportStatus,
    RepresentationRoute,
    RequestState,
)

# Requests


def id_str(value: UUID | None) -> str | None:
    """Canonical lowercase form of an optional id."""
    return str(value) if value is not None else None


class ConversationContextRequest(BaseModel):
    """Optional business anchor for a conversation."""

    application_id: UUID | None = Field(None, description="Application the thread is about")
    job_id: UUID | None = Field(None, description="Job the thread is about")
    company_id: UUID | None = Field(None, description="Company the thread is about")

    def to_domain(self) -> ConversationContext:
        return ConversationContext(
            application_id=id_str(self.application_id),
            job_id=id_str(self.job_id),
            company_id=id_str(self.company_id),
        )


class CreateConversationRequest(BaseModel):
    participant_user_id: UUID = Field(..., description="Counterpart user id")
    context: ConversationContextRequest | None = Field(None, description="Business anchor")


class SendMessageRequest(BaseModel):
    body: str | None = Field(None, description="Message text")
    client_message_id: str | None = Field(
        None, max_length=128, description="Client idempotency token"
    )
    attachment_ids: list[UUID] = Field(default_factory=list, description="Attachments to link")


class ReadReceiptRequest(BaseModel):
    last_read_message_id: UUID | None = Field(None, description="Newest message the caller has seen")


class BlockRequest(BaseModel):
    blocked_user_id: UUID
    reason: str | None = Field(None, max_length=500)


class ReportRequest(BaseModel):
    conversation_id: UUID
    reported_user_id: UUID
    category: str = Field(..., min_length=1, max_length=64)
    description: str | None = Field(None, max_length=2000)


class AttachmentInitRequest(BaseModel):
    conversation_id: UUID
    file_name: str = Field(..., min_length=1, max_length=255)
    content_type: str = Field(..., min_length=1, max_length=255)
    size_bytes: int = Field(..., gt=0)


class ReportActionRequest(BaseModel):
    action: ModerationAction
    status: ReportStatus | None = Field(None, description="Report status after the action")
    details: dict[str, Any] | None = None


class MessageModerationRequest(BaseModel):
    """Admin redaction or edit of a single message."""

    redacted: bool = False
    reason: str | None = Field(None, max_length=500)
    body: str | None = None

    @model_validator(mode="after")
    def _require_change(self) -> "MessageModerationRequest":
        if not self.redacted and self.body is None:
            raise ValueError("Either redacted or body must be provided")
        return self


# Responses


class SuccessResponse(BaseModel):
    success: bool = True


class ConversationResponse(BaseModel):
    id: str
    participant_a_id: str
    participant_b_id: str
    application_id: str | None = None
    job_id: str | None = None
    company_id: str | None = None
    candidate_id: str | None = None
    last_message_id: str | None = None
    last_message_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_domain(cls, conversation: Conversation) -> "ConversationResponse":
        return cls(
            id=conversation.id,
            participant_a_id=conversation.participant_a_id,
            participant_b_id=conversation.participant_b_id,
            application_id=conversation.application_id,
            job_id=conversation.job_id,
            company_id=conversation.company_id,
            candidate_id=conversation.candidate_id,
            last_message_id=conversation.last_message_id,
            last_message_at=conversation.last_message_at,
            created_at=conversation.created_at,
            updated_at=conversation.updated_at,
        )


class ParticipantStateResponse(BaseModel):
    conversation_id: str
    user_id: str
    request_state: RequestState
    muted: bool
    archived: bool
    muted_at: datetime | None = None
    archived_at: datetime | None = None
    last_read_at: datetime | None = None
    last_read_message_id: str | None = None
    unread_count: int = 0

    @classmethod
    def from_domain(cls, state: ParticipantState) -> "ParticipantStateResponse":
        return cls(
            conversation_id=state.conversation_id,
            user_id=state.user_id,
            request_state=state.request_state,
            muted=state.muted_at is not None,
            archived=state.archived_at is not None,
            muted_at=state.muted_at,
            archived_at=state.archived_at,
            last_read_at=state.last_read_at,
            last_read_message_id=state.last_read_message_id,
            unread_count=state.unread_count,
        )


class RoutingResponse(BaseModel):
    routed: bool
    recruiter_user_id: str | None = None
    candidate_id: str | None = None

    @classmethod
    def from_domain(cls, route: RepresentationRoute) -> "RoutingResponse":
        return cls(
            routed=route.routed,
            recruiter_user_id=route.recruiter_user_id,
            candidate_id=route.candidate_id,
        )


class CreateConversationResponse(BaseModel):
    conversation: ConversationResponse
    created: bool
    routing: RoutingResponse


class ConversationListItemResponse(BaseModel):
    conversation: ConversationResponse
    participant: ParticipantStateResponse

    @classmethod
    def from_domain(cls, item: ConversationListItem) -> "ConversationListItemResponse":
        return cls(
            conversation=ConversationResponse.from_domain(item.conversation),
            participant=ParticipantStateResponse.from_domain(item.participant),
        )


class ConversationListResponse(BaseModel):
    items: list[ConversationListItemResponse]
    total: int
    next_cursor: str | None = Field(
        None, description="Opaque token; pass as `cursor` to fetch the next page"
    )


class MessageResponse(BaseModel):
    id: str
    conversation_id: str
    sender_id: str
    kind: MessageKind
    body: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    client_message_id: str | None = None
    created_at: datetime
    edited_at: datetime | None = None
    redacted: bool = False
    redacted_at: datetime | None = None
    redaction_reason: str | None = None

    @classmethod
    def from_domain(cls, message: Message) -> "MessageResponse":
        return cls(
            id=message.id,
            conversation_id=message.conversation_id,
            sender_id=message.sender_id,
            kind=message.kind,
            body=message.body,
            metadata=message.metadata or {},
            client_message_id=message.client_message_id,
            created_at=message.created_at,
            edited_at=message.edited_at,
            redacted=message.redacted_at is not None,
            redacted_at=message.redacted_at,
            redaction_reason=message.redaction_reason,
        )


class MessageListResponse(BaseModel):
    messages: list[MessageResponse]


class ResyncResponse(BaseModel):
    conversation: ConversationResponse
    participant: ParticipantStateResponse
    messages: list[MessageResponse]
    server_time: datetime


class AttachmentResponse(BaseModel):
    id: str
    conversation_id: str
    uploader_id: str
    file_name: str
    content_type: str
    size_bytes: int
    status: AttachmentStatus
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_domain(cls, attachment: Attachment) -> "AttachmentResponse":
        return cls(
            id=attachment.id,
            conversation_id=attachment.conversation_id,
            uploader_id=attachment.uploader_id,
            file_name=attachment.file_name,
            content_type=attachment.content_type,
            size_bytes=attachment.size_bytes,
            status=attachment.status,
            created_at=attachment.created_at,
            updated_at=attachment.updated_at,
        )


class AttachmentInitResponse(BaseModel):
    attachment: AttachmentResponse
    upload_url: str


class DownloadUrlResponse(BaseModel):
    url: str
    expires_in: int = Field(..., description="Seconds until the URL expires")


class ReportResponse(BaseModel):
    id: str
    reporter_user_id: str
    reported_user_id: str
    conversation_id: str
    category: str
    description: str | None = None
    evidence_message_ids: list[str] = Field(default_factory=list)
    status: ReportStatus
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_domain(cls, report: Report) -> "ReportResponse":
        return cls(
            id=report.id,
            reporter_user_id=report.reporter_user_id,
            reported_user_id=report.reported_user_id,
            conversation_id=report.conversation_id,
            category=report.category,
            description=report.description,
            evidence_message_ids=report.evidence_message_ids(),
            status=report.status,
            created_at=report.created_at,
            updated_at=report.updated_at,
        )


class ReportListResponse(BaseModel):
    reports: list[ReportResponse]
    total: int
    next_cursor: datetime | None = None


class ReportEvidenceResponse(BaseModel):
    report: ReportResponse
    messages: list[MessageResponse]


class ModerationAuditResponse(BaseModel):
    id: str
    actor_user_id: str
    target_user_id: str
    action: ModerationAction
    details: dict[str, Any] | None = None
    created_at: datetime

    @classmethod
    def from_domain(cls, audit: ModerationAudit) -> "ModerationAuditResponse":
        return cls(
            id=audit.id,
            actor_user_id=audit.actor_user_id,
            target_user_id=audit.target_user_id,
            action=audit.action,
            details=audit.details,
            created_at=audit.created_at,
        )


class AuditListResponse(BaseModel):
    entries: list[ModerationAuditResponse]
    total: int
    next_cursor: datetime | None = None


class ReportActionResponse(BaseModel):
    report: ReportResponse
    audit: ModerationAuditResponse
