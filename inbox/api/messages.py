"""Inbox endpoints for agents and admins.

Every conversation route checks that the current user has access to the
conversation's page.
"""

import logging
from typing import Annotated, Any

from fastapi import APIRouter, HTTPException, Query

from inbox.api.deps import (
    AccessibleConversation,
    Connections,
    CurrentUser,
    DbSession,
    Graph,
    ensure_page_access,
)
from inbox.models.conversation import Conversation
from inbox.schemas.console import ConversationResponse, RenameRequest, ReplyRequest
from inbox.services.identity import IdentityResolver
from inbox.services.ledger import DEFAULT_PAGE_SIZE, ConversationLedger
from inbox.services.messenger import PlatformSendError
from inbox.services.outbound import OutboundSender
from inbox.services.pages import PageRegistry
from inbox.services.retention import cleanup_period_days

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/messages", tags=["Messages"])


def _conversation_response(conversation: Conversation) -> ConversationResponse:
    return ConversationResponse(
        id=conversation.id,
        user_id=conversation.user_id,
        page_id=conversation.page_id,
        page_name=conversation.page.name if conversation.page else None,
        user_name=conversation.user_name,
        last_message_text=conversation.last_message_text,
        last_message_time=conversation.last_message_time,
        unread_count=conversation.unread_count,
    )


# ============================================================================
# Pages and Conversations
# ============================================================================


@router.get("/pages")
async def list_my_pages(db: DbSession, user: CurrentUser) -> list[dict[str, str]]:
    """Pages the current user can work on."""
    pages = await PageRegistry(db).pages_for(user)
    return [{"id": page.id, "name": page.name} for page in pages]


@router.get("/conversations", response_model=list[ConversationResponse])
async def list_conversations(
    db: DbSession,
    user: CurrentUser,
    page_id: Annotated[str, Query()] = "all",
) -> list[ConversationResponse]:
    """Conversations of one page, or of every visible page with ``page_id=all``."""
    if page_id == "all":
        page_ids = await PageRegistry(db).visible_page_ids(user)
    else:
        await ensure_page_access(db, user, page_id)
        page_ids = [page_id]

    conversations = await ConversationLedger(db).list_conversations(page_ids)
    return [_conversation_response(c) for c in conversations]


@router.get("/{conversation_id}")
async def get_messages(
    conversation: AccessibleConversation,
    db: DbSession,
    limit: Annotated[int, Query(ge=1)] = DEFAULT_PAGE_SIZE,
    before: Annotated[int | None, Query()] = None,
    after: Annotated[int | None, Query()] = None,
) -> dict[str, Any]:
    """Page through a conversation's messages (at most 100 per request)."""
    page = await ConversationLedger(db).list_messages(
        conversation.id, limit=limit, before_id=before, after_id=after
    )
    return page.to_dict()


# ============================================================================
# Replies
# ============================================================================


@router.post("/{conversation_id}/reply")
async def reply(
    conversation: AccessibleConversation,
    body: ReplyRequest,
    db: DbSession,
    user: CurrentUser,
    graph_client: Graph,
) -> dict[str, Any]:
    """Send a reply to the customer.

    Raises:
        HTTPException: 400 without text or image, 502 when Meta rejects the message.
    """
    if not body.message and not body.image_url:
        raise HTTPException(status_code=400, detail="Message or image required")

    sender = OutboundSender(db, graph_client)
    try:
        return await sender.reply(
            conversation.id, body.message, image_url=body.image_url, agent_id=user.id
        )
    except PlatformSendError as e:
        logger.warning(
            f"Reply in conversation {conversation.id} rejected: kind={e.kind.value}, code={e.code}"
        )
        raise HTTPException(status_code=502, detail=e.to_dict())


# ============================================================================
# Conversation Maintenance
# ============================================================================


@router.put("/{conversation_id}/name")
async def rename_conversation(
    conversation: AccessibleConversation,
    body: RenameRequest,
    db: DbSession,
    graph_client: Graph,
) -> dict[str, Any]:
    """Rename the customer everywhere; profile syncs no longer override it."""
    name = await IdentityResolver(db, graph_client).rename_customer(conversation.id, body.name)
    return {"success": True, "name": name}


@router.put("/{conversation_id}/read")
async def mark_read(conversation: AccessibleConversation, db: DbSession) -> dict[str, Any]:
    marked = await ConversationLedger(db).mark_read(conversation.id)
    return {"success": True, "marked": marked}


@router.delete("/{conversation_id}/conversation")
async def clear_conversation(
    conversation: AccessibleConversation,
    db: DbSession,
    manager: Connections,
) -> dict[str, Any]:
    """Delete the conversation's history; the customer link and name stay."""
    conversation_id, page_id = conversation.id, conversation.page_id
    deleted = await ConversationLedger(db).clear_conversation(conversation_id)
    await db.commit()

    await manager.conversation_deleted(conversation_id, page_id)
    return {"success": True, "deleted_count": deleted}


@router.delete("/{conversation_id}/cleanup")
async def delete_older_messages(
    conversation: AccessibleConversation,
    db: DbSession,
    period: Annotated[str, Query()],
) -> dict[str, Any]:
    """Permanently delete messages older than ``period`` (7d, 15d, 1m or 3m)."""
    try:
        days = cleanup_period_days(period)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    deleted = await ConversationLedger(db).hard_delete_older_than(conversation.id, days)
    return {"success": True, "deleted_count": deleted}


@router.delete("/{conversation_id}/latest")
async def delete_latest_message(conversation: AccessibleConversation, db: DbSession) -> dict[str, Any]:
    message_id = await ConversationLedger(db).hard_delete_latest(conversation.id)
    if message_id is None:
        raise HTTPException(status_code=404, detail="No messages found in this conversation")
    return {"success": True, "message_id": message_id}


@router.delete("/message/{message_id}")
async def delete_message(message_id: int, db: DbSession, user: CurrentUser) -> dict[str, Any]:
    """Hide a message from the console; the row is kept."""
    ledger = ConversationLedger(db)
    message = await ledger.get_message(message_id)
    if message is None:
        raise HTTPException(status_code=404, detail="Message not found")

    conversation = await ledger.get_conversation(message.conversation_id)
    await ensure_page_access(db, user, conversation.page_id)

    await ledger.soft_delete(message_id)
    return {"success": True}
