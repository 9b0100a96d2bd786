"""
Messaging error hierarchy.

Every error carries a stable `code` and the HTTP status the API maps it
to. Messages are terse and user-safe; internals are logged, never returned.
"""


class MessagingError(Exception):
    """Base exception for messaging operations."""

    code = "messaging_error"
    status_code = 400

    def __init__(self, message: str, *, code: str | None = None, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code


class AccessDenied(MessagingError):
    code = "access_denied"
    status_code = 403

    def __init__(self, message: str = "Conversation access denied"):
        super().__init__(message)


class AdminRequired(AccessDenied):
    code = "admin_required"

    def __init__(self):
        super().__init__("Admin privileges required")


class NotFound(MessagingError):
    code = "not_found"
    status_code = 404


class ValidationFailed(MessagingError):
    code = "validation_failed"
    status_code = 422


class RequestNotAccepted(MessagingError):
    code = "request_not_accepted"
    status_code = 409

    def __init__(self, message: str = "Accept this request to reply"):
        super().__init__(message)


class ConversationDeclined(RequestNotAccepted):
    code = "conversation_declined"

    def __init__(self):
        super().__init__("Conversation declined")


class ParticipantMissing(MessagingError):
    code = "participant_missing"
    status_code = 409

    def __init__(self):
        super().__init__("Conversation participant missing")


class RecipientArchived(MessagingError):
    code = "recipient_archived"
    status_code = 409

    def __init__(self):
        super().__init__("Recipient archived this conversation")


class DeliveryBlocked(MessagingError):
    # Same wording regardless of which side blocked
    code = "not_delivered"
    status_code = 403

    def __init__(self):
        super().__init__("Message could not be delivered")


class RequestThrottled(MessagingError):
    code = "request_pending"
    status_code = 429

    def __init__(self):
        super().__init__("Request pending; cannot send additional messages")


class AttachmentsNotAllowed(MessagingError):
    code = "attachments_not_allowed"
    status_code = 409

    def __init__(self):
        super().__init__("Attachments not allowed until request accepted")


class AttachmentsDisabled(MessagingError):
    code = "attachments_disabled"
    status_code = 403

    def __init__(self):
        super().__init__("Attachments are disabled")


class AttachmentUnavailable(MessagingError):
    code = "attachment_unavailable"
    status_code = 409

    def __init__(self, status: str):
        super().__init__(f"Attachment is not available ({status})")


class InvalidTransition(MessagingError):
    code = "invalid_transition"
    status_code = 409

    def __init__(self, field: str, current: str, target: str):
        super().__init__(f"Cannot change {field} from {current} to {target}")
        self.field = field
        self.current = current
        self.target = target
