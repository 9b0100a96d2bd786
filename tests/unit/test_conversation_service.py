from datetime import timedelta
from unittest.mock import AsyncMock
from uuid import UUID

import pytest

from app.db.helpers import DatabaseError
from app.features.messaging.domain import (
    AccessDenied,
    ConversationContext,
    ConversationCursor,
    ConversationFilter,
    ConversationListItem,
    InvalidTransition,
    MessageKind,
    NotFound,
    RepresentationRoute,
    RequestState,
    ValidationFailed,
)
from app.features.messaging.services.conversation_service import (
    ConversationService,
    canonical_pair,
    routing_notice,
)
from tests.factories import (
    NOW,
    FakeTransaction,
    make_access,
    make_conversation,
    make_message,
    make_participant,
)

REPRESENTED = RepresentationRoute(
    routed=True,
    recruiter_user_id="user-r",
    candidate_id="cand-1",
    candidate_name="Casey",
    recruiter_name="Riley",
)


def build_service(route=None, existing=None, created=True):
    conversations = AsyncMock()
    conversations.find_conversation.return_value = existing
    conversations.transaction = FakeTransaction()

    async def create_conversation(
        participant_a, participant_b, context, participants, on_created=None
    ):
        conversation = make_conversation(
            "conv-new",
            participant_a,
            participant_b,
            application_id=context.application_id,
            job_id=context.job_id,
            company_id=context.company_id,
            candidate_id=context.candidate_id,
        )
        async with conversations.transaction as connection:
            if created and on_created:
                await on_created(conversation, connection)
        return conversation, created

    conversations.create_conversation.side_effect = create_conversation

    messages = AsyncMock()
    messages.insert_message.return_value = make_message(
        "msg-system", "conv-new", kind=MessageKind.SYSTEM
    )

    access_resolver = AsyncMock(unsafe=True)
    access_resolver.resolve_representation.return_value = route or RepresentationRoute.none()

    return ConversationService(conversations, messages, access_resolver, AsyncMock())


def test_canonical_pair_orders_ids():
    assert canonical_pair("user-b", "user-a") == ("user-a", "user-b")
    assert canonical_pair("user-a", "user-b") == ("user-a", "user-b")


@pytest.mark.asyncio
async def test_recruiter_opens_job_conversation_with_candidate():
    service = build_service()
    context = ConversationContext(job_id="job-1")

    opened = await service.create_or_find(make_access("user-r"), "user-c", context)

    assert opened.created is True
    assert opened.route.routed is False
    assert opened.conversation.job_id == "job-1"
    assert service.access_resolver.assert_context_access.await_args.args[1] == context

    participant_a, participant_b, _, participants = (
        service.conversations.create_conversation.await_args.args
    )
    assert (participant_a, participant_b) == ("user-c", "user-r")
    assert dict(participants) == {
        "user-r": RequestState.ACCEPTED,
        "user-c": RequestState.PENDING,
    }
    service.notifier.publish_to_user.assert_awaited_once_with(
        "user-c",
        "conversation.requested",
        {"conversationId": "conv-new", "requestedBy": "user-r"},
    )


@pytest.mark.asyncio
async def test_existing_conversation_returned_without_create():
    existing = make_conversation("conv-1", "user-a", "user-b")
    service = build_service(existing=existing)

    opened = await service.create_or_find(make_access("user-b"), "user-a")

    assert opened.conversation is existing
    assert opened.created is False
    service.conversations.create_conversation.assert_not_awaited()
    service.notifier.publish_to_user.assert_not_awaited()


@pytest.mark.asyncio
async def test_lost_creation_race_reports_not_created():
    service = build_service(created=False)

    opened = await service.create_or_find(make_access("user-a"), "user-b")

    assert opened.created is False
    service.notifier.publish_to_user.assert_not_awaited()


@pytest.mark.asyncio
async def test_represented_candidate_routes_to_recruiter():
    service = build_service(route=REPRESENTED)

    opened = await service.create_or_find(make_access("user-co"), "user-c")

    assert opened.route.routed is True
    assert opened.conversation.candidate_id == "cand-1"
    assert {opened.conversation.participant_a_id, opened.conversation.participant_b_id} == {
        "user-co",
        "user-r",
    }

    args = service.messages.insert_message.await_args
    assert args.args[0] == "conv-new"
    assert args.kwargs["kind"] == MessageKind.SYSTEM
    assert args.kwargs["metadata"]["routing"]["candidate_user_id"] == "user-c"
    assert args.kwargs["metadata"]["routing"]["recruiter_user_id"] == "user-r"

    notified = [call.args[0] for call in service.notifier.publish_to_user.await_args_list]
    assert "user-c" not in notified
    assert "user-r" in notified


@pytest.mark.asyncio
async def test_routing_notice_is_written_in_creating_transaction():
    service = build_service(route=REPRESENTED)

    await service.create_or_find(make_access("user-co"), "user-c")

    transaction = service.conversations.transaction
    assert service.messages.insert_message.await_args.kwargs["connection"] is transaction.connection
    assert transaction.exit_exc_type is None


@pytest.mark.asyncio
async def test_failed_routing_notice_rolls_back_and_stays_silent():
    service = build_service(route=REPRESENTED)
    service.messages.insert_message.side_effect = DatabaseError("insert failed", "insert_message")

    with pytest.raises(DatabaseError):
        await service.create_or_find(make_access("user-co"), "user-c")

    assert service.conversations.transaction.exit_exc_type is DatabaseError
    service.notifier.publish_to_user.assert_not_awaited()
    service.notifier.publish_to_conversation.assert_not_awaited()


@pytest.mark.asyncio
async def test_unrouted_conversation_seeds_nothing():
    service = build_service()

    await service.create_or_find(make_access("user-a"), "user-b")

    assert service.conversations.create_conversation.await_args.kwargs["on_created"] is None
    service.messages.insert_message.assert_not_awaited()


@pytest.mark.asyncio
async def test_swapped_callers_look_up_the_same_pair():
    service = build_service()
    context = ConversationContext(job_id="job-1")

    await service.create_or_find(make_access("user-b"), "user-a", context)
    await service.create_or_find(make_access("user-a"), "user-b", context)

    first, second = service.conversations.find_conversation.await_args_list
    assert first.args == second.args == ("user-a", "user-b", context)
    created = [call.args[:2] for call in service.conversations.create_conversation.await_args_list]
    assert created == [("user-a", "user-b"), ("user-a", "user-b")]


def test_routing_notice_names_both_parties():
    route = RepresentationRoute(
        routed=True, recruiter_user_id="r", candidate_name="Casey", recruiter_name="Riley"
    )

    notice = routing_notice(route)

    assert "Casey" in notice
    assert "Riley" in notice


@pytest.mark.asyncio
async def test_cannot_open_conversation_with_self():
    service = build_service()

    with pytest.raises(ValidationFailed):
        await service.create_or_find(make_access("user-a"), "user-a")


@pytest.mark.asyncio
async def test_context_access_denied_propagates():
    service = build_service()
    service.access_resolver.assert_context_access.side_effect = AccessDenied()

    with pytest.raises(AccessDenied):
        await service.create_or_find(
            make_access("user-a"), "user-b", ConversationContext(application_id="app-1")
        )

    service.conversations.create_conversation.assert_not_awaited()


@pytest.mark.asyncio
async def test_ensure_participant_distinguishes_missing_and_foreign():
    service = build_service()
    service.conversations.get_participant_state.return_value = None

    service.conversations.get_conversation.return_value = None
    with pytest.raises(NotFound):
        await service.ensure_participant("conv-404", "user-a")

    service.conversations.get_conversation.return_value = make_conversation()
    with pytest.raises(AccessDenied):
        await service.ensure_participant("conv-1", "user-x")


@pytest.mark.asyncio
async def test_accept_pending_request_notifies_sender():
    service = build_service()
    service.conversations.get_participant_state.return_value = make_participant(
        "user-b", RequestState.PENDING
    )
    accepted = make_participant("user-b", RequestState.ACCEPTED)
    service.conversations.update_participant_state.return_value = accepted
    service.conversations.get_other_participant.return_value = make_participant("user-a")

    result = await service.accept(make_access("user-b"), "conv-1")

    assert result is accepted
    service.conversations.update_participant_state.assert_awaited_once_with(
        "conv-1", "user-b", request_state=RequestState.ACCEPTED
    )
    service.notifier.publish_to_user.assert_any_await(
        "user-a", "conversation.accepted", {"conversationId": "conv-1", "userId": "user-b"}
    )


@pytest.mark.asyncio
async def test_decline_also_archives_for_decliner():
    service = build_service()
    service.conversations.get_participant_state.return_value = make_participant(
        "user-b", RequestState.PENDING
    )
    service.conversations.get_other_participant.return_value = make_participant("user-a")

    await service.decline(make_access("user-b"), "conv-1")

    updates = service.conversations.update_participant_state.await_args.kwargs
    assert updates["request_state"] == RequestState.DECLINED
    assert updates["archived_at"] is not None


@pytest.mark.asyncio
async def test_accept_twice_is_a_no_op():
    service = build_service()
    current = make_participant("user-b", RequestState.ACCEPTED)
    service.conversations.get_participant_state.return_value = current

    result = await service.accept(make_access("user-b"), "conv-1")

    assert result is current
    service.conversations.update_participant_state.assert_not_awaited()


@pytest.mark.asyncio
async def test_illegal_request_transition_rejected():
    service = build_service()
    service.conversations.get_participant_state.return_value = make_participant(
        "user-a", RequestState.NONE
    )

    with pytest.raises(InvalidTransition):
        await service.decline(make_access("user-a"), "conv-1")


@pytest.mark.asyncio
async def test_unarchive_clears_timestamp():
    service = build_service()
    service.conversations.get_participant_state.return_value = make_participant("user-a")

    await service.unarchive(make_access("user-a"), "conv-1")

    service.conversations.update_participant_state.assert_awaited_once_with(
        "conv-1", "user-a", archived_at=None
    )


@pytest.mark.asyncio
async def test_mark_read_publishes_receipt_on_conversation_channel():
    service = build_service()
    service.conversations.get_participant_state.return_value = make_participant("user-a")
    service.conversations.set_read_receipt.return_value = make_participant(
        "user-a", last_read_message_id="msg-9", unread_count=0
    )

    result = await service.mark_read(make_access("user-a"), "conv-1", "msg-9")

    assert result.unread_count == 0
    channel_id, event_type, data = service.notifier.publish_to_conversation.await_args.args
    assert (channel_id, event_type) == ("conv-1", "read.receipt")
    assert data["lastReadMessageId"] == "msg-9"


@pytest.mark.asyncio
async def test_list_conversations_clamps_limit():
    service = build_service()
    service.conversations.list_conversations.return_value = ([], 0)

    await service.list_conversations(make_access("user-a"), ConversationFilter.REQUESTS, limit=1000)

    service.conversations.list_conversations.assert_awaited_once_with(
        "user-a", ConversationFilter.REQUESTS, 100, None
    )


class InMemoryConversationList:
    """Orders and filters like the repository's keyset query."""

    def __init__(self, conversations):
        self.conversations = conversations

    async def list_conversations(self, user_id, conversation_filter, limit, cursor=None):
        def position(conversation):
            return (conversation.last_message_at or conversation.created_at, conversation.id)

        ordered = sorted(self.conversations, key=position, reverse=True)
        if cursor:
            boundary = (cursor.activity_at, cursor.conversation_id)
            ordered = [c for c in ordered if position(c) < boundary]
        items = [
            ConversationListItem(c, make_participant(user_id, conversation_id=c.id))
            for c in ordered[:limit]
        ]
        return items, len(self.conversations)


def conversation_uuid(n: int) -> str:
    return str(UUID(int=n))


@pytest.mark.asyncio
async def test_conversation_pages_cover_ties_and_quiet_conversations():
    hour = timedelta(hours=1)
    conversations = [
        make_conversation(conversation_uuid(1), last_message_at=NOW),
        make_conversation(conversation_uuid(2), last_message_at=NOW),
        make_conversation(conversation_uuid(3), created_at=NOW - hour),
        make_conversation(conversation_uuid(4), last_message_at=NOW - 2 * hour),
        make_conversation(conversation_uuid(5), created_at=NOW - 3 * hour),
    ]
    service = ConversationService(
        InMemoryConversationList(conversations), AsyncMock(), AsyncMock(), AsyncMock()
    )

    seen = []
    cursor = None
    while True:
        items, total = await service.list_conversations(
            make_access("user-a"), ConversationFilter.INBOX, limit=2, cursor=cursor
        )
        seen.extend(item.conversation.id for item in items)
        if len(items) < 2:
            break
        cursor = ConversationCursor.after(items[-1].conversation).encode()

    assert total == 5
    assert seen == [conversation_uuid(n) for n in (2, 1, 3, 4, 5)]


def test_cursor_falls_back_to_creation_time():
    conversation = make_conversation(conversation_uuid(7), created_at=NOW - timedelta(days=1))

    cursor = ConversationCursor.decode(ConversationCursor.after(conversation).encode())

    assert cursor == ConversationCursor(NOW - timedelta(days=1), conversation_uuid(7))


@pytest.mark.parametrize(
    "token",
    [
        "not-a-cursor",
        "e30",  # {}
        ConversationCursor(NOW, "conv-1").encode(),
        ConversationCursor(NOW.replace(tzinfo=None), conversation_uuid(1)).encode(),
    ],
)
@pytest.mark.asyncio
async def test_malformed_cursor_is_rejected(token):
    service = build_service()

    with pytest.raises(ValidationFailed):
        await service.list_conversations(make_access("user-a"), cursor=token)

    service.conversations.list_conversations.assert_not_awaited()


@pytest.mark.asyncio
async def test_resync_returns_snapshot():
    service = build_service()
    participant = make_participant("user-a", unread_count=2)
    conversation = make_conversation()
    service.conversations.get_participant_state.return_value = participant
    service.conversations.get_conversation.return_value = conversation
    service.messages.list_messages.return_value = [make_message("msg-1")]

    snapshot = await service.resync(make_access("user-a"), "conv-1", after="msg-0")

    assert snapshot["conversation"] is conversation
    assert snapshot["participant"] is participant
    assert [m.id for m in snapshot["messages"]] == ["msg-1"]
    service.messages.list_messages.assert_awaited_once_with(
        "conv-1", 50, after_id="msg-0", before_id=None
    )
