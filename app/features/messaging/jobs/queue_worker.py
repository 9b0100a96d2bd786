"""
Base loop for workers consuming a queue bound to the events exchange.

Each message is acked only after its handler returns. A malformed message
or a handler exception is nacked without requeue so a poison message
cannot loop forever; both cases are logged for follow-up. When Redis is
unreachable the loop backs off exponentially instead of polling hot.
"""

import asyncio
import json
from typing import Any

from app.features.messaging.events import QueueConsumer, TopicExchange
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class MalformedEvent(ValueError):
    """The message body cannot be handled and should be dropped."""


def parse_event(body: str, required: tuple[str, ...]) -> dict[str, Any]:
    """Decode an outbox envelope and return its payload, checking required keys."""
    try:
        envelope = json.loads(body)
    except (TypeError, ValueError) as e:
        raise MalformedEvent("Event body is not JSON") from e

    if not isinstance(envelope, dict):
        raise MalformedEvent("Event body is not an object")

    payload = envelope.get("payload", envelope)
    if not isinstance(payload, dict):
        raise MalformedEvent("Event payload is not an object")

    missing = [key for key in required if not payload.get(key)]
    if missing:
        raise MalformedEvent(f"Event missing {', '.join(missing)}")
    return payload


class QueueWorker:
    queue: str = ""
    binding: str = ""

    RECONNECT_BASE_DELAY = 1.0
    RECONNECT_MAX_DELAY = 30.0

    def __init__(self, exchange: TopicExchange, consumer: QueueConsumer):
        self.exchange = exchange
        self.consumer = consumer
        self._stopping = asyncio.Event()

    async def handle(self, body: str) -> None:
        raise NotImplementedError

    async def start(self) -> None:
        if not await self.exchange.bind(self.queue, self.binding):
            raise ConnectionError(f"Could not bind queue {self.queue}")
        await self.consumer.recover()

    async def process_next(self) -> bool:
        """Handle one message. Returns False when the queue was empty."""
        body = await self.consumer.get()
        if body is None:
            return False

        try:
            await self.handle(body)
        except MalformedEvent as e:
            logger.warning(
                "Dropping malformed event", queue=self.queue, error=str(e), body_preview=body[:120]
            )
            await self.consumer.nack(body, requeue=False)
            return True
        except asyncio.CancelledError:
            # Left in flight; recovered on next start
            raise
        except Exception as e:
            logger.error(
                "Event handler failed, dropping event",
                queue=self.queue,
                error=str(e),
                error_type=type(e).__name__,
                body_preview=body[:120],
            )
            await self.consumer.nack(body, requeue=False)
            return True

        await self.consumer.ack(body)
        return True

    async def run_forever(self) -> None:
        started = False
        delay = self.RECONNECT_BASE_DELAY

        while not self._stopping.is_set():
            try:
                if not started:
                    await self.start()
                    started = True
                    logger.info("Queue worker started", queue=self.queue, binding=self.binding)
                await self.process_next()
                delay = self.RECONNECT_BASE_DELAY
            except asyncio.CancelledError:
                logger.info("Queue worker cancelled", queue=self.queue)
                raise
            except ConnectionError as e:
                logger.warning(
                    "Queue unavailable, backing off",
                    queue=self.queue,
                    delay_seconds=delay,
                    error=str(e),
                )
                await self._wait_before_retry(delay)
                delay = min(delay * 2, self.RECONNECT_MAX_DELAY)

        logger.info("Queue worker stopped", queue=self.queue)

    async def _wait_before_retry(self, delay: float) -> None:
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=delay)
        except TimeoutError:
            pass

    def stop(self) -> None:
        self._stopping.set()
