"""
Best-effort realtime notifications over Redis pub/sub.

Connected clients subscribe to `conv:<conversation_id>` and `user:<user_id>`
through the realtime gateway. Delivery is at-most-once: a failed publish is
logged and dropped. Clients resync from durable state on reconnect.
"""

import dataclasses
import json
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from app.infrastructure.observability.logging import get_logger
from app.services.infrastructure.redis_client import RedisClient

logger = get_logger(__name__)

EVENT_VERSION = 1


def conversation_channel(conversation_id: str) -> str:
    return f"conv:{conversation_id}"


def user_channel(user_id: str) -> str:
    return f"user:{user_id}"


def json_default(value: Any) -> Any:
    """JSON fallback for domain dataclasses, enums and timestamps."""
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.asdict(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return str(value)


def build_envelope(event_type: str, data: dict[str, Any]) -> dict[str, Any]:
    return {
        "type": event_type,
        "eventVersion": EVENT_VERSION,
        "serverTime": datetime.now(UTC).isoformat(),
        "data": data,
    }


class RealtimeNotifier:
    def __init__(self, redis: RedisClient):
        self.redis = redis

    async def publish_to_conversation(
        self, conversation_id: str, event_type: str, data: dict[str, Any]
    ) -> bool:
        return await self._publish(conversation_channel(conversation_id), event_type, data)

    async def publish_to_user(self, user_id: str, event_type: str, data: dict[str, Any]) -> bool:
        return await self._publish(user_channel(user_id), event_type, data)

    async def _publish(self, channel: str, event_type: str, data: dict[str, Any]) -> bool:
        try:
            message = json.dumps(build_envelope(event_type, data), default=json_default)
        except (TypeError, ValueError) as e:
            logger.error("Notification not serializable", channel=channel, type=event_type, error=str(e))
            return False

        published = await self.redis.publish(channel, message)
        if not published:
            logger.warning("Realtime notification dropped", channel=channel, type=event_type)
        return published
