"""
Domain subpackage for the messaging feature.
"""

from .errors import (
    AccessDenied,
    AdminRequired,
    AttachmentsDisabled,
    AttachmentsNotAllowed,
    AttachmentUnavailable,
    ConversationDeclined,
    DeliveryBlocked,
    InvalidTransition,
    MessagingError,
    NotFound,
    ParticipantMissing,
    RecipientArchived,
    RequestNotAccepted,
    RequestThrottled,
    ValidationFailed,
)
from .models import (
    AccessContext,
    Attachment,
    AttachmentStatus,
    Conversation,
    ConversationContext,
    ConversationCursor,
    ConversationFilter,
    ConversationListItem,
    Message,
    MessageKind,
    ModerationAction,
    ModerationAudit,
    OutboxEvent,
    OutboxStatus,
    ParticipantState,
    Report,
    ReportStatus,
    RepresentationRoute,
    RequestState,
    RetentionConfig,
    RetentionRun,
    RetentionRunStatus,
)

__all__ = [
    "AccessContext",
    "AccessDenied",
    "AdminRequired",
    "Attachment",
    "AttachmentStatus",
    "AttachmentUnavailable",
    "AttachmentsDisabled",
    "AttachmentsNotAllowed",
    "Conversation",
    "ConversationContext",
    "ConversationCursor",
    "ConversationDeclined",
    "ConversationFilter",
    "ConversationListItem",
    "DeliveryBlocked",
    "InvalidTransition",
    "Message",
    "MessageKind",
    "MessagingError",
    "ModerationAction",
    "ModerationAudit",
    "NotFound",
    "OutboxEvent",
    "OutboxStatus",
    "ParticipantMissing",
    "ParticipantState",
    "RecipientArchived",
    "Report",
    "ReportStatus",
    "RepresentationRoute",
    "RequestNotAccepted",
    "RequestState",
    "RequestThrottled",
    "RetentionConfig",
    "RetentionRun",
    "RetentionRunStatus",
    "ValidationFailed",
]
