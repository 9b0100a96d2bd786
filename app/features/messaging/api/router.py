"""
Messaging routes.

Architecture:
    - API layer: HTTP concerns, request validation, caller resolution
    - Service layer: returns domain dataclasses or raises MessagingError
    - API layer: converts domain dataclasses → response models

Ids are parsed as UUIDs at the edge (a malformed id is a 422) and handed
to services as canonical lowercase strings.

Domain errors are not caught here; the application-level handler in
app/main.py maps them to `{"error": {"code", "message"}}` responses.
"""

from datetime import UTC, datetime
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status

from app.config import settings
from app.features.messaging.container import MessagingServices
from app.features.messaging.domain.models import (
    AccessContext,
    ConversationCursor,
    ConversationFilter,
)
from app.features.messaging.services.conversation_service import clamp_limit

from .dependencies import get_access_context, get_messaging
from .schemas import (
    AttachmentInitRequest,
    AttachmentInitResponse,
    AttachmentResponse,
    AuditListResponse,
    BlockRequest,
    ConversationListItemResponse,
    ConversationListResponse,
    ConversationResponse,
    CreateConversationRequest,
    CreateConversationResponse,
    DownloadUrlResponse,
    MessageListResponse,
    MessageModerationRequest,
    MessageResponse,
    ModerationAuditResponse,
    ParticipantStateResponse,
    ReadReceiptRequest,
    ReportActionRequest,
    ReportActionResponse,
    ReportEvidenceResponse,
    ReportListResponse,
    ReportRequest,
    ReportResponse,
    ResyncResponse,
    RoutingResponse,
    SendMessageRequest,
    SuccessResponse,
    id_str,
)

router = APIRouter(tags=["messaging"])
admin_router = APIRouter(tags=["messaging-admin"])


def _page_size(limit: int | None) -> int:
    return clamp_limit(limit, settings.MESSAGE_PAGE_DEFAULT)


# Conversations


@router.post(
    "/conversations",
    response_model=CreateConversationResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_conversation(
    request: CreateConversationRequest,
    access: AccessContext = Depends(get_access_context),
    services: MessagingServices = Depends(get_messaging),
):
    """
    Create a conversation with another user, or return the existing one.

    Messages addressed to a represented candidate are routed to their
    recruiter; `routing` tells the client when that happened.
    """
    context = request.context.to_domain() if request.context else None
    opened = await services.conversations.create_or_find(
        access, str(request.participant_user_id), context
    )
    return CreateConversationResponse(
        conversation=ConversationResponse.from_domain(opened.conversation),
        created=opened.created,
        routing=RoutingResponse.from_domain(opened.route),
    )


@router.get("/conversations", response_model=ConversationListResponse)
async def list_conversations(
    filter: ConversationFilter = Query(ConversationFilter.INBOX),
    limit: int | None = Query(None, ge=1),
    cursor: str | None = Query(None, max_length=200),
    access: AccessContext = Depends(get_access_context),
    services: MessagingServices = Depends(get_messaging),
):
    items, total = await services.conversations.list_conversations(access, filter, limit, cursor)

    next_cursor = None
    if items and len(items) >= _page_size(limit):
        next_cursor = ConversationCursor.after(items[-1].conversation).encode()

    return ConversationListResponse(
        items=[ConversationListItemResponse.from_domain(item) for item in items],
        total=total,
        next_cursor=next_cursor,
    )


@router.get("/conversations/{conversation_id}/messages", response_model=MessageListResponse)
async def list_messages(
    conversation_id: UUID,
    after: UUID | None = Query(None),
    before: UUID | None = Query(None),
    limit: int | None = Query(None, ge=1),
    access: AccessContext = Depends(get_access_context),
    services: MessagingServices = Depends(get_messaging),
):
    messages = await services.conversations.list_messages(
        access, str(conversation_id), after=id_str(after), before=id_str(before), limit=limit
    )
    return MessageListResponse(messages=[MessageResponse.from_domain(m) for m in messages])


@router.get("/conversations/{conversation_id}/resync", response_model=ResyncResponse)
async def resync_conversation(
    conversation_id: UUID,
    after: UUID | None = Query(None),
    before: UUID | None = Query(None),
    limit: int | None = Query(None, ge=1),
    access: AccessContext = Depends(get_access_context),
    services: MessagingServices = Depends(get_messaging),
):
    """Snapshot for a reconnecting client: conversation, caller state, messages."""
    snapshot = await services.conversations.resync(
        access, str(conversation_id), after=id_str(after), before=id_str(before), limit=limit
    )
    return ResyncResponse(
        conversation=ConversationResponse.from_domain(snapshot["conversation"]),
        participant=ParticipantStateResponse.from_domain(snapshot["participant"]),
        messages=[MessageResponse.from_domain(m) for m in snapshot["messages"]],
        server_time=datetime.now(UTC),
    )


@router.post(
    "/conversations/{conversation_id}/messages",
    response_model=MessageResponse,
    status_code=status.HTTP_201_CREATED,
)
async def send_message(
    conversation_id: UUID,
    request: SendMessageRequest,
    access: AccessContext = Depends(get_access_context),
    services: MessagingServices = Depends(get_messaging),
):
    message = await services.pipeline.send(
        access,
        str(conversation_id),
        body=request.body,
        client_message_id=request.client_message_id,
        attachment_ids=[str(a) for a in request.attachment_ids],
    )
    return MessageResponse.from_domain(message)


# Participant state


@router.post("/conversations/{conversation_id}/accept", response_model=ParticipantStateResponse)
async def accept_request(
    conversation_id: UUID,
    access: AccessContext = Depends(get_access_context),
    services: MessagingServices = Depends(get_messaging),
):
    state = await services.conversations.accept(access, str(conversation_id))
    return ParticipantStateResponse.from_domain(state)


@router.post("/conversations/{conversation_id}/decline", response_model=ParticipantStateResponse)
async def decline_request(
    conversation_id: UUID,
    access: AccessContext = Depends(get_access_context),
    services: MessagingServices = Depends(get_messaging),
):
    state = await services.conversations.decline(access, str(conversation_id))
    return ParticipantStateResponse.from_domain(state)


@router.post("/conversations/{conversation_id}/mute", response_model=ParticipantStateResponse)
async def mute_conversation(
    conversation_id: UUID,
    access: AccessContext = Depends(get_access_context),
    services: MessagingServices = Depends(get_messaging),
):
    state = await services.conversations.mute(access, str(conversation_id))
    return ParticipantStateResponse.from_domain(state)


@router.delete("/conversations/{conversation_id}/mute", response_model=ParticipantStateResponse)
async def unmute_conversation(
    conversation_id: UUID,
    access: AccessContext = Depends(get_access_context),
    services: MessagingServices = Depends(get_messaging),
):
    state = await services.conversations.unmute(access, str(conversation_id))
    return ParticipantStateResponse.from_domain(state)


@router.post("/conversations/{conversation_id}/archive", response_model=ParticipantStateResponse)
async def archive_conversation(
    conversation_id: UUID,
    access: AccessContext = Depends(get_access_context),
    services: MessagingServices = Depends(get_messaging),
):
    state = await services.conversations.archive(access, str(conversation_id))
    return ParticipantStateResponse.from_domain(state)


@router.delete("/conversations/{conversation_id}/archive", response_model=ParticipantStateResponse)
async def unarchive_conversation(
    conversation_id: UUID,
    access: AccessContext = Depends(get_access_context),
    services: MessagingServices = Depends(get_messaging),
):
    state = await services.conversations.unarchive(access, str(conversation_id))
    return ParticipantStateResponse.from_domain(state)


@router.post(
    "/conversations/{conversation_id}/read-receipt", response_model=ParticipantStateResponse
)
async def mark_read(
    conversation_id: UUID,
    request: ReadReceiptRequest,
    access: AccessContext = Depends(get_access_context),
    services: MessagingServices = Depends(get_messaging),
):
    state = await services.conversations.mark_read(
        access, str(conversation_id), id_str(request.last_read_message_id)
    )
    return ParticipantStateResponse.from_domain(state)


# Blocks and reports


@router.post("/blocks", response_model=SuccessResponse, status_code=status.HTTP_201_CREATED)
async def block_user(
    request: BlockRequest,
    access: AccessContext = Depends(get_access_context),
    services: MessagingServices = Depends(get_messaging),
):
    await services.moderation.block(access, str(request.blocked_user_id), request.reason)
    return SuccessResponse()


@router.delete("/blocks", response_model=SuccessResponse)
async def unblock_user(
    blocked_user_id: UUID = Query(...),
    access: AccessContext = Depends(get_access_context),
    services: MessagingServices = Depends(get_messaging),
):
    await services.moderation.unblock(access, str(blocked_user_id))
    return SuccessResponse()


@router.post("/reports", response_model=ReportResponse, status_code=status.HTTP_201_CREATED)
async def report_conversation(
    request: ReportRequest,
    access: AccessContext = Depends(get_access_context),
    services: MessagingServices = Depends(get_messaging),
):
    report = await services.moderation.report(
        access,
        str(request.conversation_id),
        str(request.reported_user_id),
        request.category,
        request.description,
    )
    return ReportResponse.from_domain(report)


# Attachments


@router.post(
    "/attachments/init",
    response_model=AttachmentInitResponse,
    status_code=status.HTTP_201_CREATED,
)
async def init_attachment(
    request: AttachmentInitRequest,
    access: AccessContext = Depends(get_access_context),
    services: MessagingServices = Depends(get_messaging),
):
    attachment, upload_url = await services.attachments.init(
        access,
        str(request.conversation_id),
        request.file_name,
        request.content_type,
        request.size_bytes,
    )
    return AttachmentInitResponse(
        attachment=AttachmentResponse.from_domain(attachment), upload_url=upload_url
    )


@router.post("/attachments/{attachment_id}/complete", response_model=AttachmentResponse)
async def complete_attachment(
    attachment_id: UUID,
    access: AccessContext = Depends(get_access_context),
    services: MessagingServices = Depends(get_messaging),
):
    attachment = await services.attachments.complete(access, str(attachment_id))
    return AttachmentResponse.from_domain(attachment)


@router.get("/attachments/{attachment_id}/download-url", response_model=DownloadUrlResponse)
async def attachment_download_url(
    attachment_id: UUID,
    access: AccessContext = Depends(get_access_context),
    services: MessagingServices = Depends(get_messaging),
):
    url, expires_in = await services.attachments.download_url(access, str(attachment_id))
    return DownloadUrlResponse(url=url, expires_in=expires_in)


# Admin


@admin_router.get("/admin/chat/reports", response_model=ReportListResponse)
async def admin_list_reports(
    limit: int | None = Query(None, ge=1),
    cursor: datetime | None = Query(None),
    access: AccessContext = Depends(get_access_context),
    services: MessagingServices = Depends(get_messaging),
):
    reports, total = await services.moderation.list_reports(access, limit, cursor)
    next_cursor = reports[-1].created_at if reports and len(reports) >= _page_size(limit) else None
    return ReportListResponse(
        reports=[ReportResponse.from_domain(r) for r in reports],
        total=total,
        next_cursor=next_cursor,
    )


@admin_router.get("/admin/chat/reports/{report_id}/evidence", response_model=ReportEvidenceResponse)
async def admin_report_evidence(
    report_id: UUID,
    access: AccessContext = Depends(get_access_context),
    services: MessagingServices = Depends(get_messaging),
):
    report, messages = await services.moderation.get_report_evidence(access, str(report_id))
    return ReportEvidenceResponse(
        report=ReportResponse.from_domain(report),
        messages=[MessageResponse.from_domain(m) for m in messages],
    )


@admin_router.post("/admin/chat/reports/{report_id}/action", response_model=ReportActionResponse)
async def admin_report_action(
    report_id: UUID,
    request: ReportActionRequest,
    access: AccessContext = Depends(get_access_context),
    services: MessagingServices = Depends(get_messaging),
):
    report, audit = await services.moderation.take_report_action(
        access, str(report_id), request.action, request.status, request.details
    )
    return ReportActionResponse(
        report=ReportResponse.from_domain(report),
        audit=ModerationAuditResponse.from_domain(audit),
    )


@admin_router.get("/admin/chat/audit", response_model=AuditListResponse)
async def admin_audit_log(
    limit: int | None = Query(None, ge=1),
    cursor: datetime | None = Query(None),
    access: AccessContext = Depends(get_access_context),
    services: MessagingServices = Depends(get_messaging),
):
    entries, total = await services.moderation.list_moderation_audit(access, limit, cursor)
    next_cursor = entries[-1].created_at if entries and len(entries) >= _page_size(limit) else None
    return AuditListResponse(
        entries=[ModerationAuditResponse.from_domain(e) for e in entries],
        total=total,
        next_cursor=next_cursor,
    )


@admin_router.get("/admin/chat/metrics")
async def admin_metrics(
    range_days: int | None = Query(None, alias="rangeDays", ge=1, le=365),
    access: AccessContext = Depends(get_access_context),
    services: MessagingServices = Depends(get_messaging),
) -> dict:
    return await services.moderation.get_admin_metrics(access, range_days)


@admin_router.patch("/chat/messages/{message_id}", response_model=MessageResponse)
async def admin_moderate_message(
    message_id: UUID,
    request: MessageModerationRequest,
    access: AccessContext = Depends(get_access_context),
    services: MessagingServices = Depends(get_messaging),
):
    message = await services.pipeline.moderate_message(
        access,
        str(message_id),
        redacted=request.redacted,
        reason=request.reason,
        edited_body=request.body,
    )
    return MessageResponse.from_domain(message)
