"""
Conversation store operations: create-or-find, listing, resync and the
per-participant state changes (accept, decline, mute, archive, read).
"""

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from app.config import settings
from app.features.messaging.domain import (
    AccessContext,
    AccessDenied,
    Conversation,
    ConversationContext,
    ConversationCursor,
    ConversationFilter,
    ConversationListItem,
    Message,
    MessageKind,
    NotFound,
    ParticipantState,
    RepresentationRoute,
    RequestState,
    ValidationFailed,
)
from app.features.messaging.events import RealtimeNotifier
from app.features.messaging.repository import ConversationRepository, MessageRepository
from app.infrastructure.observability.logging import get_logger

from .access_resolver import AccessResolver

logger = get_logger(__name__)


@dataclass(slots=True)
class OpenedConversation:
    conversation: Conversation
    created: bool
    route: RepresentationRoute


def canonical_pair(user_a: str, user_b: str) -> tuple[str, str]:
    return (user_a, user_b) if user_a < user_b else (user_b, user_a)


def routing_notice(route: RepresentationRoute) -> str:
    candidate = route.candidate_name or "This candidate"
    recruiter = route.recruiter_name or "their recruiter"
    return f"{candidate} is represented by {recruiter}. This conversation has been routed to {recruiter}."


def clamp_limit(limit: int | None, default: int) -> int:
    if not limit:
        return default
    return max(1, min(int(limit), settings.PAGE_LIMIT_MAX))


class ConversationService:
    def __init__(
        self,
        conversations: ConversationRepository,
        messages: MessageRepository,
        access_resolver: AccessResolver,
        notifier: RealtimeNotifier,
    ):
        self.conversations = conversations
        self.messages = messages
        self.access_resolver = access_resolver
        self.notifier = notifier

    async def create_or_find(
        self,
        access: AccessContext,
        participant_user_id: str,
        context: ConversationContext | None = None,
    ) -> OpenedConversation:
        caller_id = access.user_id
        if not participant_user_id or participant_user_id == caller_id:
            raise ValidationFailed("Invalid participant user id")

        context = context or ConversationContext()
        await self.access_resolver.assert_context_access(access, context)

        route = await self.access_resolver.resolve_representation(participant_user_id, caller_id)
        counterpart_id = participant_user_id
        if route.routed and route.recruiter_user_id:
            counterpart_id = route.recruiter_user_id
            context = ConversationContext(
                application_id=context.application_id,
                job_id=context.job_id,
                company_id=context.company_id,
                candidate_id=route.candidate_id,
            )

        participant_a, participant_b = canonical_pair(caller_id, counterpart_id)
        existing = await self.conversations.find_conversation(participant_a, participant_b, context)
        if existing:
            return OpenedConversation(conversation=existing, created=False, route=route)

        seeded: list[Message] = []

        async def seed_routing_notice(conversation: Conversation, connection) -> None:
            seeded.append(
                await self._insert_routing_notice(
                    conversation, caller_id, counterpart_id, participant_user_id, route, connection
                )
            )

        conversation, created = await self.conversations.create_conversation(
            participant_a,
            participant_b,
            context,
            [(caller_id, RequestState.ACCEPTED), (counterpart_id, RequestState.PENDING)],
            on_created=seed_routing_notice if route.routed else None,
        )
        if not created:
            return OpenedConversation(conversation=conversation, created=False, route=route)

        for message in seeded:
            await self.notifier.publish_to_conversation(
                conversation.id, "message.created", {"message": message}
            )
            await self.notifier.publish_to_user(
                counterpart_id,
                "conversation.updated",
                {"conversationId": conversation.id, "messageId": message.id},
            )

        await self.notifier.publish_to_user(
            counterpart_id,
            "conversation.requested",
            {"conversationId": conversation.id, "requestedBy": caller_id},
        )
        return OpenedConversation(conversation=conversation, created=True, route=route)

    async def _insert_routing_notice(
        self,
        conversation: Conversation,
        caller_id: str,
        recruiter_user_id: str,
        candidate_user_id: str,
        route: RepresentationRoute,
        connection,
    ) -> Message:
        """Seed the system message inside the creating transaction."""
        return await self.messages.insert_message(
            conversation.id,
            caller_id,
            recruiter_user_id,
            routing_notice(route),
            kind=MessageKind.SYSTEM,
            metadata={
                "routing": {
                    "candidate_id": route.candidate_id,
                    "candidate_user_id": candidate_user_id,
                    "recruiter_user_id": recruiter_user_id,
                    "candidate_name": route.candidate_name,
                    "recruiter_name": route.recruiter_name,
                }
            },
            connection=connection,
        )

    async def ensure_participant(self, conversation_id: str, user_id: str) -> ParticipantState:
        participant = await self.conversations.get_participant_state(conversation_id, user_id)
        if participant:
            return participant

        if not await self.conversations.get_conversation(conversation_id):
            raise NotFound("Conversation not found")
        raise AccessDenied("Not a conversation participant")

    async def list_conversations(
        self,
        access: AccessContext,
        conversation_filter: ConversationFilter = ConversationFilter.INBOX,
        limit: int | None = None,
        cursor: str | None = None,
    ) -> tuple[list[ConversationListItem], int]:
        """List the caller's conversations; `cursor` is the token from the previous page."""
        return await self.conversations.list_conversations(
            access.user_id,
            conversation_filter,
            clamp_limit(limit, settings.MESSAGE_PAGE_DEFAULT),
            ConversationCursor.decode(cursor) if cursor else None,
        )

    async def list_messages(
        self,
        access: AccessContext,
        conversation_id: str,
        after: str | None = None,
        before: str | None = None,
        limit: int | None = None,
    ) -> list[Message]:
        await self.ensure_participant(conversation_id, access.user_id)
        return await self.messages.list_messages(
            conversation_id,
            clamp_limit(limit, settings.MESSAGE_PAGE_DEFAULT),
            after_id=after,
            before_id=before,
        )

    async def resync(
        self,
        access: AccessContext,
        conversation_id: str,
        after: str | None = None,
        before: str | None = None,
        limit: int | None = None,
    ) -> dict[str, Any]:
        """Conversation, caller state and a message page in one snapshot."""
        participant = await self.ensure_participant(conversation_id, access.user_id)
        conversation = await self.conversations.get_conversation(conversation_id)
        if not conversation:
            raise NotFound("Conversation not found")

        messages = await self.messages.list_messages(
            conversation_id,
            clamp_limit(limit, settings.MESSAGE_PAGE_DEFAULT),
            after_id=after,
            before_id=before,
        )
        return {"conversation": conversation, "participant": participant, "messages": messages}

    # Participant state

    async def accept(self, access: AccessContext, conversation_id: str) -> ParticipantState:
        return await self._change_request_state(access, conversation_id, RequestState.ACCEPTED)

    async def decline(self, access: AccessContext, conversation_id: str) -> ParticipantState:
        return await self._change_request_state(access, conversation_id, RequestState.DECLINED)

    async def _change_request_state(
        self, access: AccessContext, conversation_id: str, target: RequestState
    ) -> ParticipantState:
        participant = await self.ensure_participant(conversation_id, access.user_id)
        current = participant.request_state
        current.transition_to(target)
        if current == target:
            return participant

        updates: dict[str, Any] = {"request_state": target}
        if target == RequestState.DECLINED:
            updates["archived_at"] = datetime.now(UTC)

        updated = await self.conversations.update_participant_state(
            conversation_id, access.user_id, **updates
        )
        logger.info(
            "Request state changed",
            conversation_id=conversation_id,
            user_id=access.user_id,
            from_state=current.value,
            to_state=target.value,
        )

        other = await self.conversations.get_other_participant(conversation_id, access.user_id)
        if other:
            await self.notifier.publish_to_user(
                other.user_id,
                f"conversation.{target.value}",
                {"conversationId": conversation_id, "userId": access.user_id},
            )
        await self._notify_updated(access.user_id, conversation_id, updated)
        return updated

    async def mute(self, access: AccessContext, conversation_id: str) -> ParticipantState:
        return await self._set_flag(access, conversation_id, muted_at=datetime.now(UTC))

    async def unmute(self, access: AccessContext, conversation_id: str) -> ParticipantState:
        return await self._set_flag(access, conversation_id, muted_at=None)

    async def archive(self, access: AccessContext, conversation_id: str) -> ParticipantState:
        return await self._set_flag(access, conversation_id, archived_at=datetime.now(UTC))

    async def unarchive(self, access: AccessContext, conversation_id: str) -> ParticipantState:
        return await self._set_flag(access, conversation_id, archived_at=None)

    async def _set_flag(
        self, access: AccessContext, conversation_id: str, **updates: Any
    ) -> ParticipantState:
        await self.ensure_participant(conversation_id, access.user_id)
        updated = await self.conversations.update_participant_state(
            conversation_id, access.user_id, **updates
        )
        await self._notify_updated(access.user_id, conversation_id, updated)
        return updated

    async def mark_read(
        self, access: AccessContext, conversation_id: str, last_read_message_id: str | None
    ) -> ParticipantState:
        await self.ensure_participant(conversation_id, access.user_id)
        updated = await self.conversations.set_read_receipt(
            conversation_id, access.user_id, last_read_message_id
        )
        await self.notifier.publish_to_conversation(
            conversation_id,
            "read.receipt",
            {
                "conversationId": conversation_id,
                "userId": access.user_id,
                "lastReadMessageId": last_read_message_id,
                "lastReadAt": updated.last_read_at if updated else datetime.now(UTC),
            },
        )
        return updated

    async def _notify_updated(
        self, user_id: str, conversation_id: str, participant: ParticipantState | None
    ) -> None:
        await self.notifier.publish_to_user(
            user_id,
            "conversation.updated",
            {"conversationId": conversation_id, "participant": participant},
        )
