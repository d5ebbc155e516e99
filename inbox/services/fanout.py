"""Authorization-scoped real-time fanout.

Manages WebSocket connections for console clients. Every connection
carries the scopes it was authorized for when it connected:
- ``page:<id>`` for each page assigned to the user
- ``admin`` for admins, who receive events of every page

An event for a page is delivered to each connection whose scopes
contain that page or ``admin``, at most once per connection.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from fastapi import WebSocket

from inbox.models.user import UserRole

logger = logging.getLogger(__name__)

ADMIN_SCOPE = "admin"

# Event types
NEW_MESSAGE = "new_message"
CONVERSATION_UPDATED = "conversation_updated"
CONVERSATION_DELETED = "conversation_deleted"


def page_scope(page_id: str) -> str:
    return f"page:{page_id}"


def compute_scopes(role: UserRole | str, assigned_page_ids: list[str]) -> frozenset[str]:
    """Scopes a connection subscribes to.

    Args:
        role: The user's console role
        assigned_page_ids: Pages assigned to the user

    Returns:
        One ``page:<id>`` scope per assigned page, plus ``admin`` for admins.
    """
    scopes = {page_scope(page_id) for page_id in assigned_page_ids}
    if UserRole(role) == UserRole.ADMIN:
        scopes.add(ADMIN_SCOPE)
    return frozenset(scopes)


def envelope(event_type: str, data: dict[str, Any]) -> dict[str, Any]:
    """Wrap event data in the wire envelope sent to clients."""
    return {
        "type": event_type,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "data": data,
    }


@dataclass
class Connection:
    """Metadata of one live socket."""

    user_id: int
    username: str
    scopes: set[str] = field(default_factory=set)
    connected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class ConnectionManager:
    """Live console sockets and their scopes.

    One instance per application, kept on ``app.state``.
    """

    def __init__(self, send_timeout: float = 5.0) -> None:
        """Initialize the registry.

        Args:
            send_timeout: Seconds a socket gets to accept one event before
                it is dropped
        """
        self._connections: dict[WebSocket, Connection] = {}
        self._send_timeout = send_timeout

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    def connect(
        self,
        websocket: WebSocket,
        user_id: int,
        username: str,
        scopes: frozenset[str],
    ) -> None:
        """Register an accepted socket with the scopes computed for its user."""
        self._connections[websocket] = Connection(
            user_id=user_id, username=username, scopes=set(scopes)
        )
        logger.info(
            f"Socket connected: user={username}, scopes={sorted(scopes)}, "
            f"total_connections={self.connection_count}"
        )

    def disconnect(self, websocket: WebSocket) -> None:
        """Forget a socket; unknown sockets are ignored."""
        connection = self._connections.pop(websocket, None)
        if connection:
            logger.info(
                f"Socket disconnected: user={connection.username}, "
                f"remaining_connections={self.connection_count}"
            )

    def scopes_of(self, websocket: WebSocket) -> frozenset[str]:
        connection = self._connections.get(websocket)
        return frozenset(connection.scopes) if connection else frozenset()

    def join_page(self, websocket: WebSocket, page_id: str) -> bool:
        """Add a page scope to a connection.

        The caller checks the user's access to the page first.

        Returns:
            False when the socket is not registered.
        """
        connection = self._connections.get(websocket)
        if connection is None:
            return False
        connection.scopes.add(page_scope(page_id))
        logger.debug(f"Socket of {connection.username} joined page {page_id}")
        return True

    def recipients(self, page_id: str) -> list[WebSocket]:
        """Sockets entitled to events of a page."""
        wanted = {page_scope(page_id), ADMIN_SCOPE}
        return [ws for ws, conn in self._connections.items() if conn.scopes & wanted]

    async def broadcast(self, event_type: str, data: dict[str, Any], page_id: str) -> int:
        """Deliver an event to every connection scoped to the page.

        Sends run concurrently and each is bounded by the send timeout.
        A socket that fails or times out is dropped; the others still
        receive the event.

        Returns:
            Number of sockets the event was sent to.
        """
        message = envelope(event_type, data)
        recipients = self.recipients(page_id)
        if not recipients:
            return 0

        results = await asyncio.gather(
            *(self._send(websocket, message) for websocket in recipients),
            return_exceptions=True,
        )

        failed = []
        for websocket, result in zip(recipients, results):
            if isinstance(result, BaseException):
                logger.warning(f"Dropping socket after failed send: {result.__class__.__name__}")
                failed.append(websocket)

        for websocket in failed:
            self.disconnect(websocket)

        sent = len(recipients) - len(failed)
        logger.debug(f"Broadcast {event_type} for page {page_id}: sent={sent}, failed={len(failed)}")
        return sent

    async def _send(self, websocket: WebSocket, message: dict[str, Any]) -> None:
        await asyncio.wait_for(websocket.send_json(message), timeout=self._send_timeout)

    # ========================================================================
    # Event helpers
    # ========================================================================

    async def new_message(self, message: dict[str, Any], conversation_id: int, page_id: str) -> int:
        data = {**message, "conversation_id": conversation_id, "page_id": page_id}
        return await self.broadcast(NEW_MESSAGE, data, page_id)

    async def conversation_updated(
        self,
        conversation_id: int,
        page_id: str,
        last_message_text: str | None,
        last_message_time: datetime | None,
        user_name: str | None,
    ) -> int:
        data = {
            "id": conversation_id,
            "last_message_text": last_message_text,
            "last_message_time": last_message_time.isoformat() if last_message_time else None,
            "page_id": page_id,
            "user_name": user_name,
        }
        return await self.broadcast(CONVERSATION_UPDATED, data, page_id)

    async def conversation_deleted(self, conversation_id: int, page_id: str) -> int:
        return await self.broadcast(CONVERSATION_DELETED, {"id": conversation_id}, page_id)
