"""
Domain factories and in-memory fakes shared by the unit tests.
"""

import json
from datetime import UTC, datetime

from app.features.messaging.domain import (
    AccessContext,
    Attachment,
    AttachmentStatus,
    Conversation,
    Message,
    MessageKind,
    ParticipantState,
    Report,
    ReportStatus,
    RequestState,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)

# Canonical ids for requests that cross the HTTP edge
USER_A_ID = "a0000000-0000-4000-8000-000000000001"
USER_B_ID = "b0000000-0000-4000-8000-000000000002"
CONVERSATION_ID = "c0000000-0000-4000-8000-000000000003"
MESSAGE_ID = "d0000000-0000-4000-8000-000000000004"
ATTACHMENT_ID = "e0000000-0000-4000-8000-000000000005"
REPORT_ID = "f0000000-0000-4000-8000-000000000006"
JOB_ID = "10000000-0000-4000-8000-000000000007"


# Domain factories


def make_access(user_id: str = "user-a", **kwargs) -> AccessContext:
    return AccessContext(user_id=user_id, **kwargs)


def make_conversation(
    conversation_id: str = "conv-1",
    participant_a_id: str = "user-a",
    participant_b_id: str = "user-b",
    **kwargs,
) -> Conversation:
    fields = {
        "application_id": None,
        "job_id": None,
        "company_id": None,
        "candidate_id": None,
        "last_message_id": None,
        "last_message_at": None,
        "created_at": NOW,
        "updated_at": NOW,
    }
    fields.update(kwargs)
    return Conversation(
        id=conversation_id,
        participant_a_id=participant_a_id,
        participant_b_id=participant_b_id,
        **fields,
    )


def make_participant(
    user_id: str = "user-a",
    request_state: RequestState = RequestState.ACCEPTED,
    conversation_id: str = "conv-1",
    **kwargs,
) -> ParticipantState:
    return ParticipantState(
        conversation_id=conversation_id, user_id=user_id, request_state=request_state, **kwargs
    )


def make_message(
    message_id: str = "msg-1",
    conversation_id: str = "conv-1",
    sender_id: str = "user-a",
    body: str | None = "hello",
    **kwargs,
) -> Message:
    fields = {
        "kind": MessageKind.USER,
        "metadata": {},
        "client_message_id": None,
        "created_at": NOW,
    }
    fields.update(kwargs)
    return Message(
        id=message_id, conversation_id=conversation_id, sender_id=sender_id, body=body, **fields
    )


def make_attachment(
    attachment_id: str = "att-1",
    status: AttachmentStatus = AttachmentStatus.PENDING_UPLOAD,
    uploader_id: str = "user-a",
    content_type: str = "image/png",
    **kwargs,
) -> Attachment:
    fields = {
        "conversation_id": "conv-1",
        "file_name": "photo.png",
        "size_bytes": 1024,
        "storage_key": f"conversations/conv-1/{attachment_id}/photo.png",
        "scan_result": None,
        "created_at": NOW,
        "updated_at": NOW,
    }
    fields.update(kwargs)
    return Attachment(
        id=attachment_id,
        uploader_id=uploader_id,
        content_type=content_type,
        status=status,
        **fields,
    )


def make_report(report_id: str = "report-1", **kwargs) -> Report:
    fields = {
        "reporter_user_id": "user-a",
        "reported_user_id": "user-b",
        "conversation_id": "conv-1",
        "category": "spam",
        "description": None,
        "evidence_pointer": {"message_ids": ["msg-1", "msg-2"]},
        "status": ReportStatus.OPEN,
        "created_at": NOW,
        "updated_at": NOW,
    }
    fields.update(kwargs)
    return Report(id=report_id, **fields)


# Infrastructure fakes


class FakeTransaction:
    """Stands in for the context manager returned by get_db_transaction()."""

    def __init__(self):
        self.connection = object()
        self.entered = 0
        self.exit_exc_type = None

    async def __aenter__(self):
        self.entered += 1
        return self.connection

    async def __aexit__(self, exc_type, exc, tb):
        self.exit_exc_type = exc_type
        return False


class FakeRedis:
    """In-memory subset of RedisClient: pub/sub, counters, sets and lists."""

    def __init__(self):
        self.available = True
        self.published: list[tuple[str, str]] = []
        self.counters: dict[str, int] = {}
        self.windows: dict[str, int] = {}
        self.markers: dict[str, int] = {}
        self.sets: dict[str, set[str]] = {}
        self.lists: dict[str, list[str]] = {}

    async def publish(self, channel: str, message: str) -> bool:
        if not self.available:
            return False
        self.published.append((channel, message))
        return True

    async def incr_in_window_once(
        self, counter_key: str, marker_key: str, window_s: int, marker_ttl_s: int
    ) -> int | None:
        if not self.available:
            return None
        if marker_key in self.markers:
            return self.markers[marker_key]
        self.windows.setdefault(counter_key, window_s)
        self.counters[counter_key] = self.counters.get(counter_key, 0) + 1
        self.markers[marker_key] = self.counters[counter_key]
        return self.counters[counter_key]

    async def add_to_set(self, key: str, value: str) -> bool:
        if not self.available:
            return False
        self.sets.setdefault(key, set()).add(value)
        return True

    async def set_members(self, key: str) -> set[str] | None:
        if not self.available:
            return None
        return set(self.sets.get(key, set()))

    async def push_to_list(self, key: str, value: str, left: bool = True) -> bool:
        if not self.available:
            return False
        items = self.lists.setdefault(key, [])
        if left:
            items.insert(0, value)
        else:
            items.append(value)
        return True

    async def pop_to_inflight(self, source_key: str, inflight_key: str, timeout: int = 0):
        if not self.available:
            raise ConnectionError("Redis inflight pop failed")
        items = self.lists.get(source_key)
        if not items:
            return None
        value = items.pop()
        self.lists.setdefault(inflight_key, []).insert(0, value)
        return value

    async def ack_from_inflight(self, inflight_key: str, value: str) -> bool:
        items = self.lists.get(inflight_key, [])
        if value in items:
            items.remove(value)
            return True
        return False

    async def requeue_from_inflight(self, inflight_key: str, destination_key: str, value: str) -> bool:
        items = self.lists.get(inflight_key, [])
        if value in items:
            items.remove(value)
        self.lists.setdefault(destination_key, []).append(value)
        return True

    async def list_range(self, key: str, start: int = 0, end: int = -1) -> list[str]:
        items = self.lists.get(key, [])
        stop = None if end == -1 else end + 1
        return list(items[start:stop])

    def events(self, channel: str) -> list[dict]:
        """Decoded envelopes published on a channel, oldest first."""
        return [json.loads(message) for name, message in self.published if name == channel]

