"""
Event fan-out: realtime notifications, the transactional outbox and the
Redis-backed topic exchange.
"""

from .exchange import QueueConsumer, TopicExchange, topic_matches
from .notifier import RealtimeNotifier, build_envelope
from .outbox import OutboxPublisher, OutboxWorker, build_event_envelope

# Durable event types
MESSAGE_CREATED = "chat.message.created"
ATTACHMENT_UPLOADED = "chat.attachment.uploaded"

__all__ = [
    "ATTACHMENT_UPLOADED",
    "MESSAGE_CREATED",
    "OutboxPublisher",
    "OutboxWorker",
    "QueueConsumer",
    "RealtimeNotifier",
    "TopicExchange",
    "build_envelope",
    "build_event_envelope",
    "topic_matches",
]
