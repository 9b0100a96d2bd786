"""
Repository subpackage for the messaging feature.
"""

from .access_repository import AccessRepository
from .attachment_repository import AttachmentRepository, AttachmentRepositoryError
from .conversation_repository import ConversationRepository, ConversationRepositoryError
from .message_repository import MessageRepository, MessageRepositoryError
from .moderation_repository import ModerationRepository, ModerationRepositoryError
from .outbox_repository import OutboxRepository, OutboxRepositoryError
from .retention_repository import RetentionRepository, RetentionRepositoryError

__all__ = [
    "AccessRepository",
    "AttachmentRepository",
    "AttachmentRepositoryError",
    "ConversationRepository",
    "ConversationRepositoryError",
    "MessageRepository",
    "MessageRepositoryError",
    "ModerationRepository",
    "ModerationRepositoryError",
    "OutboxRepository",
    "OutboxRepositoryError",
    "RetentionRepository",
    "RetentionRepositoryError",
]
