"""
Message pipeline: validates send preconditions, performs the idempotent
atomic insert and fans the result out.

Check order for a send:
    sender state -> replay of a known client_message_id ->
    counterpart present -> counterpart archived -> block (either direction) ->
    first-contact throttle -> counterpart declined -> attachment gating -> insert
"""

from typing import Any

from app.config import settings
from app.db.helpers import UniqueViolationError
from app.db.pool import get_db_transaction
from app.features.messaging.domain import (
    AccessContext,
    AccessDenied,
    AdminRequired,
    AttachmentsNotAllowed,
    AttachmentStatus,
    AttachmentUnavailable,
    ConversationDeclined,
    DeliveryBlocked,
    Message,
    MessageKind,
    NotFound,
    ParticipantMissing,
    RecipientArchived,
    RequestNotAccepted,
    RequestState,
    RequestThrottled,
    ValidationFailed,
)
from app.features.messaging.events import MESSAGE_CREATED, OutboxPublisher, RealtimeNotifier
from app.features.messaging.repository import (
    AttachmentRepository,
    ConversationRepository,
    MessageRepository,
    ModerationRepository,
)
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

SENDABLE_ATTACHMENT_STATUSES = frozenset({AttachmentStatus.PENDING_SCAN, AttachmentStatus.AVAILABLE})


def preview(body: str | None, length: int | None = None) -> str:
    length = length or settings.MESSAGE_PREVIEW_LENGTH
    if not body:
        return ""
    return body if len(body) <= length else body[: length - 1] + "…"


class MessagePipeline:
    def __init__(
        self,
        conversations: ConversationRepository,
        messages: MessageRepository,
        attachments: AttachmentRepository,
        moderation: ModerationRepository,
        outbox: OutboxPublisher,
        notifier: RealtimeNotifier,
    ):
        self.conversations = conversations
        self.messages = messages
        self.attachments = attachments
        self.moderation = moderation
        self.outbox = outbox
        self.notifier = notifier

    async def send(
        self,
        access: AccessContext,
        conversation_id: str,
        body: str | None = None,
        client_message_id: str | None = None,
        attachment_ids: list[str] | None = None,
    ) -> Message:
        sender_id = access.user_id
        body = (body or "").strip()
        attachment_ids = list(dict.fromkeys(attachment_ids or []))

        if not body and not attachment_ids:
            raise ValidationFailed("Message body or attachment required")
        if len(body) > settings.MESSAGE_MAX_BODY_LENGTH:
            raise ValidationFailed(
                f"Message body exceeds {settings.MESSAGE_MAX_BODY_LENGTH} characters"
            )

        sender = await self.conversations.get_participant_state(conversation_id, sender_id)
        if not sender:
            if not await self.conversations.get_conversation(conversation_id):
                raise NotFound("Conversation not found")
            raise AccessDenied("Not a conversation participant")

        if sender.request_state == RequestState.PENDING:
            raise RequestNotAccepted()
        if sender.request_state == RequestState.DECLINED:
            raise ConversationDeclined()

        # A retried send returns the stored message before any gate can reject it
        if client_message_id:
            existing = await self._find_duplicate(sender_id, client_message_id, conversation_id)
            if existing:
                logger.info(
                    "Duplicate send resolved to existing message",
                    message_id=existing.id,
                    conversation_id=conversation_id,
                )
                return existing

        recipient = await self.conversations.get_other_participant(conversation_id, sender_id)
        if not recipient:
            raise ParticipantMissing()
        if recipient.archived_at is not None:
            raise RecipientArchived()

        if await self.moderation.is_blocked(sender_id, recipient.user_id):
            logger.info(
                "Send refused by block",
                conversation_id=conversation_id,
                sender_id=sender_id,
            )
            raise DeliveryBlocked()

        if recipient.request_state == RequestState.PENDING:
            if await self.messages.count_user_messages(conversation_id) >= 1:
                raise RequestThrottled()
        if recipient.request_state == RequestState.DECLINED:
            raise ConversationDeclined()
        if attachment_ids and recipient.request_state == RequestState.PENDING:
            raise AttachmentsNotAllowed()

        metadata: dict[str, Any] = {}
        if attachment_ids:
            await self._check_attachments(conversation_id, sender_id, attachment_ids)
            metadata["attachment_ids"] = attachment_ids

        try:
            async with await get_db_transaction() as conn:
                message = await self.messages.insert_message(
                    conversation_id,
                    sender_id,
                    recipient.user_id,
                    body or None,
                    kind=MessageKind.USER,
                    metadata=metadata,
                    client_message_id=client_message_id,
                    connection=conn,
                )
                await self.outbox.publish(
                    MESSAGE_CREATED,
                    {
                        "message_id": message.id,
                        "conversation_id": conversation_id,
                        "sender_user_id": sender_id,
                        "recipient_user_id": recipient.user_id,
                        "body_preview": preview(message.body),
                        "attachment_ids": attachment_ids,
                        "created_at": message.created_at.isoformat(),
                    },
                    connection=conn,
                )
        except UniqueViolationError:
            if not client_message_id:
                raise
            existing = await self._find_duplicate(sender_id, client_message_id, conversation_id)
            if not existing:
                raise
            logger.info(
                "Concurrent duplicate send resolved to existing message",
                message_id=existing.id,
                conversation_id=conversation_id,
            )
            return existing

        logger.info(
            "Message sent",
            message_id=message.id,
            conversation_id=conversation_id,
            sender_id=sender_id,
            attachments=len(attachment_ids),
        )

        await self.notifier.publish_to_conversation(
            conversation_id, "message.created", {"message": message}
        )
        await self.notifier.publish_to_user(
            recipient.user_id,
            "conversation.updated",
            {"conversationId": conversation_id, "messageId": message.id},
        )
        return message

    async def _find_duplicate(
        self, sender_id: str, client_message_id: str, conversation_id: str
    ) -> Message | None:
        """
        Return the sender's stored message for this token, if any.

        A token is scoped to one conversation; finding it on another
        conversation is a client error, never a duplicate.
        """
        existing = await self.messages.find_by_client_message_id(sender_id, client_message_id)
        if existing and existing.conversation_id != conversation_id:
            logger.warning(
                "Idempotency token reused across conversations",
                sender_id=sender_id,
                conversation_id=conversation_id,
                existing_conversation_id=existing.conversation_id,
            )
            raise ValidationFailed("client_message_id already used in another conversation")
        return existing

    async def _check_attachments(
        self, conversation_id: str, sender_id: str, attachment_ids: list[str]
    ) -> None:
        found = {
            attachment.id: attachment
            for attachment in await self.attachments.list_attachments(conversation_id, attachment_ids)
        }
        for attachment_id in attachment_ids:
            attachment = found.get(attachment_id)
            if not attachment or attachment.uploader_id != sender_id:
                raise ValidationFailed(f"Unknown attachment {attachment_id}")
            if attachment.status not in SENDABLE_ATTACHMENT_STATUSES:
                raise AttachmentUnavailable(attachment.status.value)

    async def moderate_message(
        self,
        access: AccessContext,
        message_id: str,
        *,
        redacted: bool = False,
        reason: str | None = None,
        edited_body: str | None = None,
    ) -> Message:
        """Admin redaction or edit of a stored message."""
        if not access.is_platform_admin:
            raise AdminRequired()

        message = await self.messages.get_message(message_id)
        if not message:
            raise NotFound("Message not found")

        if redacted:
            updated = await self.messages.update_message(
                message_id, redact=True, redaction_reason=reason or "moderation"
            )
        elif edited_body is not None:
            edited_body = edited_body.strip()
            if not edited_body:
                raise ValidationFailed("Edited body cannot be empty")
            if len(edited_body) > settings.MESSAGE_MAX_BODY_LENGTH:
                raise ValidationFailed(
                    f"Message body exceeds {settings.MESSAGE_MAX_BODY_LENGTH} characters"
                )
            updated = await self.messages.update_message(message_id, body=edited_body)
        else:
            raise ValidationFailed("Nothing to change")

        if not updated:
            raise ValidationFailed("Redacted messages cannot be edited")

        logger.info(
            "Message moderated",
            message_id=message_id,
            actor_user_id=access.user_id,
            redacted=redacted,
        )
        await self.notifier.publish_to_conversation(
            updated.conversation_id, "message.updated", {"message": updated}
        )
        return updated
