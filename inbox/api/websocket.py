"""WebSocket endpoint for real-time inbox updates.

Clients connect to ``/ws`` with the session cookie of a logged-in user.
The scopes of the connection are computed once from the user's role and
page assignments. Messages the client may send:

- ``{"type": "join_page", "page_id": "..."}``: subscribe to one more page
  the user has access to
- ``{"type": "ping"}``: answered with ``{"type": "pong"}``
"""

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status

from inbox.api.deps import SESSION_USER_KEY, SessionFactory
from inbox.models.user import User
from inbox.services.fanout import ConnectionManager, compute_scopes
from inbox.services.pages import PageRegistry

logger = logging.getLogger(__name__)

router = APIRouter(tags=["WebSocket"])


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket, session_factory: SessionFactory) -> None:
    manager: ConnectionManager = websocket.app.state.connection_manager

    user_id = websocket.session.get(SESSION_USER_KEY)
    if user_id is None:
        logger.warning("Unauthenticated socket connection attempt")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    async with session_factory() as db:
        user = await db.get(User, user_id)
        if user is None:
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
            return
        username, role = user.username, user.role
        assigned = await PageRegistry(db).pages_assigned_to(user.id)

    await websocket.accept()
    manager.connect(websocket, user_id, username, compute_scopes(role, assigned))

    try:
        while True:
            data = await websocket.receive_json()
            message_type = data.get("type") if isinstance(data, dict) else None

            if message_type == "join_page":
                await _join_page(websocket, manager, session_factory, user_id, data.get("page_id"))
            elif message_type == "ping":
                await websocket.send_json(
                    {"type": "pong", "timestamp": datetime.now(timezone.utc).isoformat()}
                )
            else:
                logger.debug(f"Ignoring socket message of type {message_type!r} from {username}")
    except WebSocketDisconnect:
        logger.debug(f"Socket client {username} disconnected")
    except ValueError:
        logger.warning(f"Closing socket of {username} after malformed message")
        await websocket.close(code=status.WS_1003_UNSUPPORTED_DATA)
    finally:
        manager.disconnect(websocket)


async def _join_page(
    websocket: WebSocket,
    manager: ConnectionManager,
    session_factory: SessionFactory,
    user_id: int,
    page_id: object,
) -> None:
    """Fallback join; only pages the user has access to are added."""
    if not page_id:
        return
    page_id = str(page_id)

    async with session_factory() as db:
        user = await db.get(User, user_id)
        allowed = user is not None and await PageRegistry(db).has_page_access(user, page_id)

    if not allowed:
        logger.warning(f"User {user_id} denied join of page {page_id}")
        await websocket.send_json({"type": "error", "data": {"message": "Access denied", "page_id": page_id}})
        return

    manager.join_page(websocket, page_id)
    await websocket.send_json({"type": "joined", "data": {"page_id": page_id}})
