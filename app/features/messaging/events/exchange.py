"""
Topic exchange and acked queues on Redis.

Durable domain events are routed by event type to every queue whose
binding pattern matches, using AMQP topic rules: words are separated by
dots, `*` matches exactly one word and `#` matches zero or more words.

Each queue is a Redis list. A consumer moves a message into the queue's
in-flight list while it is handled; ack removes it, nack either drops it
or puts it back. Leftovers in the in-flight list from a crashed consumer
are requeued when a consumer starts, which gives at-least-once delivery.
"""

import json

from app.config import settings
from app.infrastructure.observability.logging import get_logger
from app.services.infrastructure.redis_client import RedisClient

logger = get_logger(__name__)


def topic_matches(pattern: str, routing_key: str) -> bool:
    return _match_words(pattern.split("."), routing_key.split("."))


def _match_words(pattern: list[str], words: list[str]) -> bool:
    if not pattern:
        return not words

    head, rest = pattern[0], pattern[1:]
    if head == "#":
        # Zero words, or consume one and stay on '#'
        return _match_words(rest, words) or (bool(words) and _match_words(pattern, words[1:]))
    if not words:
        return False
    if head == "*" or head == words[0]:
        return _match_words(rest, words[1:])
    return False


def queue_key(queue: str) -> str:
    return f"queue:{queue}"


def inflight_key(queue: str) -> str:
    return f"queue:{queue}:inflight"


class TopicExchange:
    def __init__(self, redis: RedisClient, name: str | None = None):
        self.redis = redis
        self.name = name or settings.EVENTS_EXCHANGE

    @property
    def bindings_key(self) -> str:
        return f"exchange:{self.name}:bindings"

    async def bind(self, queue: str, pattern: str) -> bool:
        bound = await self.redis.add_to_set(self.bindings_key, json.dumps([queue, pattern]))
        if bound:
            logger.info("Queue bound", exchange=self.name, queue=queue, pattern=pattern)
        return bound

    async def bindings(self) -> list[tuple[str, str]] | None:
        members = await self.redis.set_members(self.bindings_key)
        if members is None:
            return None

        pairs = []
        for member in members:
            try:
                queue, pattern = json.loads(member)
            except (TypeError, ValueError):
                logger.warning("Ignoring malformed binding", exchange=self.name, binding=member[:60])
                continue
            pairs.append((queue, pattern))
        return pairs

    async def publish(self, routing_key: str, body: str) -> bool:
        """
        Route `body` to every matching queue.

        Returns False when Redis could not be reached or a queue push failed,
        so the caller can retry. A message with no matching binding is
        dropped and counts as published.
        """
        bindings = await self.bindings()
        if bindings is None:
            return False

        queues = sorted({queue for queue, pattern in bindings if topic_matches(pattern, routing_key)})
        if not queues:
            logger.debug("No queue bound for routing key", exchange=self.name, routing_key=routing_key)
            return True

        delivered = True
        for queue in queues:
            if not await self.redis.push_to_list(queue_key(queue), body):
                delivered = False
        return delivered


class QueueConsumer:
    """Acked consumption of a single queue."""

    def __init__(self, redis: RedisClient, queue: str, poll_timeout: int | None = None):
        self.redis = redis
        self.queue = queue
        self.poll_timeout = (
            poll_timeout if poll_timeout is not None else settings.CONSUMER_POLL_TIMEOUT_SECONDS
        )

    async def recover(self) -> int:
        """Requeue everything a previous consumer left in flight."""
        leftovers = await self.redis.list_range(inflight_key(self.queue))
        requeued = 0
        for body in leftovers:
            if await self.redis.requeue_from_inflight(
                inflight_key(self.queue), queue_key(self.queue), body
            ):
                requeued += 1
        if requeued:
            logger.warning("Requeued in-flight messages", queue=self.queue, count=requeued)
        return requeued

    async def get(self) -> str | None:
        """Next message, or None after the poll timeout. Raises ConnectionError on outage."""
        return await self.redis.pop_to_inflight(
            queue_key(self.queue), inflight_key(self.queue), timeout=self.poll_timeout
        )

    async def ack(self, body: str) -> bool:
        return await self.redis.ack_from_inflight(inflight_key(self.queue), body)

    async def nack(self, body: str, requeue: bool = False) -> bool:
        if requeue:
            return await self.redis.requeue_from_inflight(
                inflight_key(self.queue), queue_key(self.queue), body
            )
        return await self.redis.ack_from_inflight(inflight_key(self.queue), body)
