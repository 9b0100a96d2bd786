"""
Wiring for the messaging feature.

Repositories, the notifier, the exchange and the services are built once
per process from the shared Redis client and storage client, then handed
to the API (via app.state) or to a worker.
"""

from dataclasses import dataclass

from app.features.messaging.events import OutboxPublisher, RealtimeNotifier, TopicExchange
from app.features.messaging.repository import (
    AccessRepository,
    AttachmentRepository,
    ConversationRepository,
    MessageRepository,
    ModerationRepository,
    OutboxRepository,
    RetentionRepository,
)
from app.features.messaging.services import (
    AccessResolver,
    AttachmentService,
    ConversationService,
    MessagePipeline,
    ModerationService,
)
from app.services.infrastructure.redis_client import RedisClient
from app.services.infrastructure.storage_client import StorageClient


@dataclass(slots=True)
class MessagingServices:
    access_resolver: AccessResolver
    conversations: ConversationService
    pipeline: MessagePipeline
    moderation: ModerationService
    attachments: AttachmentService
    notifier: RealtimeNotifier
    exchange: TopicExchange
    outbox_repository: OutboxRepository
    message_repository: MessageRepository
    attachment_repository: AttachmentRepository
    moderation_repository: ModerationRepository
    retention_repository: RetentionRepository
    storage: StorageClient


def build_messaging_services(redis: RedisClient, storage: StorageClient) -> MessagingServices:
    access_repository = AccessRepository()
    conversation_repository = ConversationRepository()
    message_repository = MessageRepository()
    attachment_repository = AttachmentRepository()
    moderation_repository = ModerationRepository()
    outbox_repository = OutboxRepository()
    retention_repository = RetentionRepository()

    notifier = RealtimeNotifier(redis)
    exchange = TopicExchange(redis)
    outbox = OutboxPublisher(outbox_repository)

    access_resolver = AccessResolver(access_repository)
    conversations = ConversationService(
        conversation_repository, message_repository, access_resolver, notifier
    )
    pipeline = MessagePipeline(
        conversation_repository,
        message_repository,
        attachment_repository,
        moderation_repository,
        outbox,
        notifier,
    )
    moderation = ModerationService(
        moderation_repository, message_repository, retention_repository, conversations, notifier
    )
    attachments = AttachmentService(attachment_repository, conversations, storage, outbox, notifier)

    return MessagingServices(
        access_resolver=access_resolver,
        conversations=conversations,
        pipeline=pipeline,
        moderation=moderation,
        attachments=attachments,
        notifier=notifier,
        exchange=exchange,
        outbox_repository=outbox_repository,
        message_repository=message_repository,
        attachment_repository=attachment_repository,
        moderation_repository=moderation_repository,
        retention_repository=retention_repository,
        storage=storage,
    )
