"""
Burst detector for the moderation queue.

Counts `chat.message.created` events per sender in a fixed window and
flags the message that reaches the threshold. A redelivered event keeps
the count of its first delivery, so replays never inflate the window.
Flagging is advisory: it only annotates message metadata and never
blocks a send.
"""

from datetime import UTC, datetime

from app.config import settings
from app.features.messaging.events import MESSAGE_CREATED, QueueConsumer, RealtimeNotifier, TopicExchange
from app.features.messaging.repository import MessageRepository
from app.infrastructure.observability.logging import get_logger
from app.services.infrastructure.redis_client import RedisClient

from .queue_worker import QueueWorker, parse_event

logger = get_logger(__name__)

BURST_REASON = "burst_send"


def burst_key(sender_id: str) -> str:
    return f"chat:moderation:burst:{sender_id}"


def seen_key(message_id: str) -> str:
    return f"chat:moderation:seen:{message_id}"


class ModerationWorker(QueueWorker):
    binding = MESSAGE_CREATED

    def __init__(
        self,
        exchange: TopicExchange,
        consumer: QueueConsumer,
        redis: RedisClient,
        messages: MessageRepository,
        notifier: RealtimeNotifier,
        threshold: int | None = None,
        window_seconds: int | None = None,
    ):
        super().__init__(exchange, consumer)
        self.queue = consumer.queue
        self.redis = redis
        self.messages = messages
        self.notifier = notifier
        self.threshold = threshold or settings.MODERATION_BURST_THRESHOLD
        self.window_seconds = window_seconds or settings.MODERATION_BURST_WINDOW_SECONDS

    async def handle(self, body: str) -> None:
        payload = parse_event(body, ("message_id", "sender_user_id"))
        message_id = payload["message_id"]
        sender_id = payload["sender_user_id"]

        count = await self.redis.incr_in_window_once(
            burst_key(sender_id),
            seen_key(message_id),
            self.window_seconds,
            settings.MODERATION_SEEN_TTL_SECONDS,
        )
        if count is None:
            raise RuntimeError("Burst counter unavailable")

        if count < self.threshold:
            return

        flag = {
            "flagged": True,
            "reason": BURST_REASON,
            "window_seconds": self.window_seconds,
            "threshold": self.threshold,
            "count": count,
            "flagged_at": datetime.now(UTC).isoformat(),
        }
        message = await self.messages.merge_metadata(message_id, {"moderation": flag})
        if not message:
            logger.warning("Flagged message no longer exists", message_id=message_id)
            return

        logger.warning(
            "Message flagged for burst sending",
            message_id=message_id,
            sender_id=sender_id,
            count=count,
            threshold=self.threshold,
        )
        await self.notifier.publish_to_conversation(
            message.conversation_id, "message.updated", {"message": message}
        )
