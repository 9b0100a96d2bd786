"""
Repository query tests.

The database helpers are replaced so the SQL and parameters each method
sends can be checked without a live Postgres.
"""

from datetime import timedelta
from unittest.mock import AsyncMock
from uuid import UUID

import pytest

from app.features.messaging.domain import ConversationCursor, ConversationFilter
from app.features.messaging.repository import (
    AccessRepository,
    ConversationRepository,
    MessageRepository,
    ModerationRepository,
)
from app.features.messaging.repository import access_repository as access_module
from app.features.messaging.repository import conversation_repository as conversation_module
from app.features.messaging.repository import message_repository as message_module
from app.features.messaging.repository import moderation_repository as moderation_module
from tests.factories import NOW

BLOCKS = {("user-a", "user-b")}


async def fetch_block(query, params):
    """Evaluates the two (blocker, blocked) pairs of the block lookup against BLOCKS."""
    first, second = params[:2], params[2:]
    return 1 if first in BLOCKS or second in BLOCKS else None


@pytest.mark.asyncio
async def test_block_lookup_checks_both_directions(monkeypatch):
    fetch_val = AsyncMock(side_effect=fetch_block)
    monkeypatch.setattr(moderation_module, "fetch_val", fetch_val)
    repository = ModerationRepository()

    assert await repository.is_blocked("user-a", "user-b") is True
    assert await repository.is_blocked("user-b", "user-a") is True
    assert await repository.is_blocked("user-a", "user-c") is False

    query, params = fetch_val.await_args_list[1].args
    assert "(blocker_user_id = %s AND blocked_user_id = %s)" in query
    assert "OR (blocker_user_id = %s AND blocked_user_id = %s)" in query
    assert params == ("user-b", "user-a", "user-a", "user-b")


@pytest.mark.asyncio
async def test_redaction_batch_skips_redacted_and_recent_messages(monkeypatch):
    fetch_all = AsyncMock(
        return_value=[{"id": UUID(int=1), "conversation_id": UUID(int=2)}]
    )
    monkeypatch.setattr(message_module, "fetch_all", fetch_all)
    cutoff = NOW - timedelta(days=365)

    redacted = await MessageRepository().redact_expired_batch(cutoff, 500, "retention")

    query, params = fetch_all.await_args.args
    assert "WHERE redacted_at IS NULL AND created_at < %s" in query
    assert "FOR UPDATE SKIP LOCKED" in query
    assert params == ("retention", cutoff, 500)
    assert redacted == [{"id": str(UUID(int=1)), "conversation_id": str(UUID(int=2))}]


@pytest.mark.asyncio
async def test_first_conversation_page_has_no_cursor_predicate(monkeypatch):
    fetch_all = AsyncMock(return_value=[])
    monkeypatch.setattr(conversation_module, "fetch_val", AsyncMock(return_value=0))
    monkeypatch.setattr(conversation_module, "fetch_all", fetch_all)

    await ConversationRepository().list_conversations("user-a", ConversationFilter.INBOX, 20)

    query, params = fetch_all.await_args.args
    assert "COALESCE(c.last_message_at, c.created_at), c.id) <" not in query
    assert "ORDER BY COALESCE(c.last_message_at, c.created_at) DESC, c.id DESC" in query
    assert params == ("user-a", 20)


@pytest.mark.asyncio
async def test_conversation_page_continues_after_cursor(monkeypatch):
    fetch_all = AsyncMock(return_value=[])
    monkeypatch.setattr(conversation_module, "fetch_val", AsyncMock(return_value=0))
    monkeypatch.setattr(conversation_module, "fetch_all", fetch_all)
    cursor = ConversationCursor(NOW, str(UUID(int=9)))

    await ConversationRepository().list_conversations(
        "user-a", ConversationFilter.INBOX, 20, cursor
    )

    query, params = fetch_all.await_args.args
    assert "(COALESCE(c.last_message_at, c.created_at), c.id) < (%s, %s::uuid)" in query
    assert "ORDER BY COALESCE(c.last_message_at, c.created_at) DESC, c.id DESC" in query
    assert "NULLS LAST" not in query
    assert params == ("user-a", NOW, str(UUID(int=9)), 20)


@pytest.mark.asyncio
async def test_platform_admin_comes_from_memberships(monkeypatch):
    fetch_one = AsyncMock(
        return_value={
            "user_id": UUID(int=1),
            "candidate_id": None,
            "recruiter_id": None,
            "organization_ids": [UUID(int=5)],
            "is_platform_admin": True,
        }
    )
    monkeypatch.setattr(access_module, "fetch_one", fetch_one)

    access = await AccessRepository().load_access_context(str(UUID(int=1)))

    query, params = fetch_one.await_args.args
    assert "SELECT 1 FROM memberships m" in query
    assert "m.role = %s" in query
    assert "role_assignments" not in query
    assert params == ("platform_admin", str(UUID(int=1)))
    assert access.is_platform_admin is True
    assert access.organization_ids == [str(UUID(int=5))]
