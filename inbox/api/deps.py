"""API dependencies for dependency injection."""

import logging
from typing import Annotated

import redis.asyncio as redis
from fastapi import Depends, HTTPException, Request
from slowapi import Limiter
from slowapi.util import get_remote_address
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from inbox.config import get_settings
from inbox.db.session import async_session_maker, get_db
from inbox.models.conversation import Conversation
from inbox.models.user import User
from inbox.services.fanout import ConnectionManager
from inbox.services.ledger import ConversationLedger, ConversationNotFound
from inbox.services.messenger import GraphClient, get_graph_client
from inbox.services.pages import PageRegistry
from inbox.services.push import PushNotifier, get_push_notifier

logger = logging.getLogger(__name__)
settings = get_settings()

# Rate limiter - uses client IP address
limiter = Limiter(key_func=get_remote_address, enabled=settings.rate_limit_enabled)

SESSION_USER_KEY = "user_id"


async def get_redis(request: Request) -> redis.Redis:
    """Get Redis client from app state."""
    return request.app.state.redis


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Session factory for work that outlives the request (background tasks, sockets)."""
    return async_session_maker


def get_graph() -> GraphClient:
    return get_graph_client()


def get_push() -> PushNotifier:
    return get_push_notifier()


async def get_connection_manager(request: Request) -> ConnectionManager:
    """Get the socket registry from app state."""
    return request.app.state.connection_manager


# =============================================================================
# Authentication Dependencies
# =============================================================================


async def get_current_user(request: Request, db: Annotated[AsyncSession, Depends(get_db)]) -> User:
    """Load the user of the session cookie.

    Raises:
        HTTPException: 401 when not logged in or the user no longer exists.
    """
    user_id = request.session.get(SESSION_USER_KEY)
    if user_id is None:
        raise HTTPException(status_code=401, detail="Not authenticated")

    user = await db.get(User, user_id)
    if user is None:
        logger.warning(f"Session refers to deleted user {user_id}")
        request.session.clear()
        raise HTTPException(status_code=401, detail="Not authenticated")

    return user


async def require_admin(user: Annotated[User, Depends(get_current_user)]) -> User:
    """Ensure the current user is an admin."""
    if not user.is_admin:
        raise HTTPException(status_code=403, detail="Admin access required")
    return user


# =============================================================================
# Authorization Helpers
# =============================================================================


async def ensure_page_access(db: AsyncSession, user: User, page_id: str) -> None:
    """Raise 403 unless the user may see the page."""
    if not await PageRegistry(db).has_page_access(user, page_id):
        logger.warning(f"User {user.username} denied access to page {page_id}")
        raise HTTPException(status_code=403, detail="Access denied")


async def get_accessible_conversation(
    conversation_id: int,
    db: Annotated[AsyncSession, Depends(get_db)],
    user: Annotated[User, Depends(get_current_user)],
) -> Conversation:
    """Load a conversation the current user has access to.

    Raises:
        HTTPException: 404 for unknown conversations, 403 without page access.
    """
    try:
        conversation = await ConversationLedger(db).get_conversation(conversation_id)
    except ConversationNotFound:
        raise HTTPException(status_code=404, detail="Conversation not found")

    await ensure_page_access(db, user, conversation.page_id)
    return conversation


# =============================================================================
# Type Aliases
# =============================================================================

DbSession = Annotated[AsyncSession, Depends(get_db)]
RedisClient = Annotated[redis.Redis, Depends(get_redis)]
SessionFactory = Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)]
Graph = Annotated[GraphClient, Depends(get_graph)]
Push = Annotated[PushNotifier, Depends(get_push)]
Connections = Annotated[ConnectionManager, Depends(get_connection_manager)]
CurrentUser = Annotated[User, Depends(get_current_user)]
AdminUser = Annotated[User, Depends(require_admin)]
AccessibleConversation = Annotated[Conversation, Depends(get_accessible_conversation)]
