"""
Service subpackage for the messaging feature.
"""

from .access_resolver import AccessResolver
from .attachment_service import AttachmentService, build_storage_key, sanitize_file_name
from .conversation_service import ConversationService, OpenedConversation, canonical_pair
from .message_pipeline import MessagePipeline
from .moderation_service import ModerationService

__all__ = [
    "AccessResolver",
    "AttachmentService",
    "ConversationService",
    "MessagePipeline",
    "ModerationService",
    "OpenedConversation",
    "build_storage_key",
    "canonical_pair",
    "sanitize_file_name",
]
