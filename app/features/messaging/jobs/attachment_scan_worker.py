"""
Attachment scan worker: consumes `chat.attachment.uploaded` and settles
each pending_scan attachment as available or blocked.
"""

from app.features.messaging.events import ATTACHMENT_UPLOADED, QueueConsumer, TopicExchange
from app.features.messaging.services import AttachmentService

from .queue_worker import QueueWorker, parse_event


class AttachmentScanWorker(QueueWorker):
    binding = ATTACHMENT_UPLOADED

    def __init__(
        self,
        exchange: TopicExchange,
        consumer: QueueConsumer,
        attachment_service: AttachmentService,
    ):
        super().__init__(exchange, consumer)
        self.queue = consumer.queue
        self.attachment_service = attachment_service

    async def handle(self, body: str) -> None:
        payload = parse_event(body, ("attachment_id",))
        await self.attachment_service.apply_scan_result(payload["attachment_id"])
