import json
from dataclasses import replace
from datetime import UTC, datetime
from unittest.mock import AsyncMock

import pytest

from app.features.messaging.domain import OutboxEvent, OutboxStatus
from app.features.messaging.events import (
    MESSAGE_CREATED,
    OutboxPublisher,
    OutboxWorker,
    QueueConsumer,
    RealtimeNotifier,
    TopicExchange,
    build_event_envelope,
    topic_matches,
)
from app.features.messaging.events import outbox as outbox_module
from app.features.messaging.events.exchange import inflight_key, queue_key
from app.features.messaging.events.outbox import retry_delay
from app.features.messaging.repository import OutboxRepository
from app.features.messaging.repository import outbox_repository as outbox_repository_module
from tests.factories import make_message

OUTBOX_MODULE = "app.features.messaging.events.outbox"


@pytest.mark.parametrize(
    ("pattern", "routing_key", "expected"),
    [
        ("chat.message.created", "chat.message.created", True),
        ("chat.message.created", "chat.attachment.uploaded", False),
        ("chat.*.created", "chat.message.created", True),
        ("chat.*", "chat.message.created", False),
        ("chat.#", "chat.message.created", True),
        ("#", "chat.message.created", True),
        ("chat.message.#", "chat.message", True),
        ("#.created", "chat.message.created", True),
        ("*.message.created", "message.created", False),
    ],
)
def test_topic_matching(pattern, routing_key, expected):
    assert topic_matches(pattern, routing_key) is expected


@pytest.mark.asyncio
async def test_exchange_routes_only_to_matching_queues(fake_redis):
    exchange = TopicExchange(fake_redis, name="events")
    await exchange.bind("chat-moderation", "chat.message.created")
    await exchange.bind("chat-attachment-scan", "chat.attachment.uploaded")

    assert await exchange.publish(MESSAGE_CREATED, "body-1") is True

    assert fake_redis.lists[queue_key("chat-moderation")] == ["body-1"]
    assert queue_key("chat-attachment-scan") not in fake_redis.lists


@pytest.mark.asyncio
async def test_exchange_publish_without_binding_is_dropped(fake_redis):
    exchange = TopicExchange(fake_redis, name="events")

    assert await exchange.publish("chat.unknown", "body") is True
    assert fake_redis.lists == {}


@pytest.mark.asyncio
async def test_exchange_reports_failure_when_redis_down(fake_redis):
    exchange = TopicExchange(fake_redis, name="events")
    await exchange.bind("chat-moderation", "chat.#")
    fake_redis.available = False

    assert await exchange.publish(MESSAGE_CREATED, "body") is False


@pytest.mark.asyncio
async def test_consumer_is_fifo_and_acks(fake_redis):
    consumer = QueueConsumer(fake_redis, "q", poll_timeout=0)
    await fake_redis.push_to_list(queue_key("q"), "first")
    await fake_redis.push_to_list(queue_key("q"), "second")

    body = await consumer.get()
    assert body == "first"
    assert fake_redis.lists[inflight_key("q")] == ["first"]

    assert await consumer.ack(body) is True
    assert fake_redis.lists[inflight_key("q")] == []
    assert await consumer.get() == "second"


@pytest.mark.asyncio
async def test_consumer_nack_requeue_puts_message_back(fake_redis):
    consumer = QueueConsumer(fake_redis, "q", poll_timeout=0)
    await fake_redis.push_to_list(queue_key("q"), "only")

    body = await consumer.get()
    await consumer.nack(body, requeue=True)

    assert await consumer.get() == "only"


@pytest.mark.asyncio
async def test_consumer_recovers_in_flight_leftovers(fake_redis):
    fake_redis.lists[inflight_key("q")] = ["stale-1", "stale-2"]
    consumer = QueueConsumer(fake_redis, "q", poll_timeout=0)

    assert await consumer.recover() == 2
    assert fake_redis.lists[inflight_key("q")] == []
    assert sorted(fake_redis.lists[queue_key("q")]) == ["stale-1", "stale-2"]


@pytest.mark.asyncio
async def test_notifier_envelope_shape(fake_redis):
    notifier = RealtimeNotifier(fake_redis)
    message = make_message("msg-1")

    assert await notifier.publish_to_conversation("conv-1", "message.created", {"message": message})

    [envelope] = fake_redis.events("conv:conv-1")
    assert envelope["type"] == "message.created"
    assert envelope["eventVersion"] == 1
    assert "serverTime" in envelope
    assert envelope["data"]["message"]["id"] == "msg-1"
    assert envelope["data"]["message"]["kind"] == "user"
    assert envelope["data"]["message"]["created_at"].startswith("2026-03-01")


@pytest.mark.asyncio
async def test_notifier_failure_is_dropped_not_raised(fake_redis):
    notifier = RealtimeNotifier(fake_redis)
    fake_redis.available = False

    assert await notifier.publish_to_user("user-a", "conversation.updated", {}) is False


def make_event(event_id="evt-1", attempts=0):
    return OutboxEvent(
        id=event_id,
        event_type=MESSAGE_CREATED,
        payload={"message_id": "msg-1"},
        source_service="chat-service",
        status=OutboxStatus.PENDING,
        attempts=attempts,
        created_at=datetime(2026, 3, 1, tzinfo=UTC),
    )


def test_event_envelope_carries_outbox_id():
    envelope = build_event_envelope(make_event("evt-9"))

    assert envelope == {
        "event_id": "evt-9",
        "event_type": MESSAGE_CREATED,
        "timestamp": "2026-03-01T00:00:00+00:00",
        "source_service": "chat-service",
        "payload": {"message_id": "msg-1"},
    }


@pytest.mark.asyncio
async def test_publisher_writes_on_given_connection():
    repository = AsyncMock()
    repository.add_event.return_value = make_event()
    connection = object()

    await OutboxPublisher(repository, source_service="chat-service").publish(
        MESSAGE_CREATED, {"message_id": "msg-1"}, connection=connection
    )

    repository.add_event.assert_awaited_once_with(
        MESSAGE_CREATED, {"message_id": "msg-1"}, "chat-service", connection=connection
    )


@pytest.mark.asyncio
async def test_outbox_worker_publishes_and_marks_rows(patch_transaction, fake_redis):
    tx = patch_transaction(OUTBOX_MODULE)
    repository = AsyncMock()
    repository.claim_pending.return_value = [make_event("evt-1"), make_event("evt-2")]
    exchange = TopicExchange(fake_redis, name="events")
    await exchange.bind("chat-moderation", "chat.message.created")

    stats = await OutboxWorker(repository, exchange, batch_size=10).run_once()

    assert stats == {"claimed": 2, "published": 2, "retried": 0, "failed": 0}
    assert repository.mark_published.await_count == 2
    repository.mark_published.assert_any_await("evt-1", connection=tx.connection)

    delivered = [json.loads(body) for body in fake_redis.lists[queue_key("chat-moderation")]]
    assert {event["event_id"] for event in delivered} == {"evt-1", "evt-2"}



class InMemoryOutbox:
    """Outbox rows kept in a dict; enough to drive OutboxWorker across runs."""

    def __init__(self, *events):
        self.rows = {event.id: event for event in events}
        self.delays = []

    async def claim_pending(self, source_service, batch_size, *, connection):
        pending = [row for row in self.rows.values() if row.status == OutboxStatus.PENDING]
        return pending[:batch_size]

    async def mark_published(self, event_id, *, connection=None):
        self.rows[event_id] = replace(self.rows[event_id], status=OutboxStatus.PUBLISHED)

    async def defer_attempt(self, event_id, error, delay_seconds, *, connection=None):
        row = self.rows[event_id]
        self.rows[event_id] = replace(row, attempts=row.attempts + 1)
        self.delays.append(delay_seconds)

    async def mark_failed(self, event_id, error, *, connection=None):
        row = self.rows[event_id]
        self.rows[event_id] = replace(row, status=OutboxStatus.FAILED, attempts=row.attempts + 1)


@pytest.mark.asyncio
async def test_outbox_rows_survive_exchange_outage(patch_transaction, fake_redis):
    patch_transaction(OUTBOX_MODULE)
    outbox = InMemoryOutbox(make_event("evt-1"))
    exchange = TopicExchange(fake_redis, name="events")
    await exchange.bind("chat-moderation", "chat.message.created")
    worker = OutboxWorker(outbox, exchange, batch_size=10)

    fake_redis.available = False
    for _ in range(8):
        stats = await worker.run_once()
        assert stats == {"claimed": 1, "published": 0, "retried": 1, "failed": 0}

    assert outbox.rows["evt-1"].status == OutboxStatus.PENDING
    assert outbox.rows["evt-1"].attempts == 8
    assert outbox.delays == sorted(outbox.delays)

    fake_redis.available = True
    stats = await worker.run_once()

    assert stats["published"] == 1
    assert outbox.rows["evt-1"].status == OutboxStatus.PUBLISHED
    [body] = fake_redis.lists[queue_key("chat-moderation")]
    assert json.loads(body)["event_id"] == "evt-1"


@pytest.mark.asyncio
async def test_unserializable_event_is_parked_as_failed(patch_transaction):
    patch_transaction(OUTBOX_MODULE)
    broken = replace(make_event("evt-bad"), payload={"when": object()})
    outbox = InMemoryOutbox(broken, make_event("evt-ok"))
    exchange = AsyncMock()
    exchange.publish.return_value = True

    stats = await OutboxWorker(outbox, exchange, batch_size=10).run_once()

    assert stats == {"claimed": 2, "published": 1, "retried": 0, "failed": 1}
    assert outbox.rows["evt-bad"].status == OutboxStatus.FAILED
    assert outbox.rows["evt-ok"].status == OutboxStatus.PUBLISHED
    exchange.publish.assert_awaited_once()


def test_retry_delay_doubles_and_caps(monkeypatch):
    monkeypatch.setattr(outbox_module.settings, "OUTBOX_RETRY_BASE_SECONDS", 5.0)
    monkeypatch.setattr(outbox_module.settings, "OUTBOX_RETRY_MAX_SECONDS", 300.0)

    assert [retry_delay(n) for n in range(8)] == [5, 10, 20, 40, 80, 160, 300, 300]
    assert retry_delay(500) == 300


@pytest.mark.asyncio
async def test_claim_skips_rows_not_yet_due(monkeypatch):
    fetch_all = AsyncMock(return_value=[])
    monkeypatch.setattr(outbox_repository_module, "fetch_all", fetch_all)

    await OutboxRepository().claim_pending("chat-service", 50, connection=object())

    query, params = fetch_all.await_args.args
    assert "status = 'pending'" in query
    assert "next_attempt_at IS NULL OR next_attempt_at <= NOW()" in query
    assert "FOR UPDATE SKIP LOCKED" in query
    assert params == ("chat-service", 50)


@pytest.mark.asyncio
async def test_deferred_attempt_keeps_row_pending(monkeypatch):
    execute_query = AsyncMock(return_value=1)
    monkeypatch.setattr(outbox_repository_module, "execute_query", execute_query)

    await OutboxRepository().defer_attempt("evt-1", "exchange publish failed", 40.0)

    query, params = execute_query.await_args.args
    assert "'failed'" not in query
    assert "next_attempt_at = NOW() + make_interval(secs => %s)" in query
    assert params == ("exchange publish failed", 40.0, "evt-1")
