"""Session login for the console."""

import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Request

from inbox.api.deps import SESSION_USER_KEY, CurrentUser, DbSession, limiter
from inbox.config import get_settings
from inbox.schemas.console import LoginRequest, PushTokenRequest, UserResponse
from inbox.services.pages import PageRegistry

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["Auth"])


@router.post("/login", response_model=UserResponse)
@limiter.limit(get_settings().login_rate_limit)
async def login(request: Request, body: LoginRequest, db: DbSession) -> UserResponse:
    """Check credentials and start a session.

    Raises:
        HTTPException: 401 for unknown users or wrong passwords.
    """
    user = await PageRegistry(db).authenticate(body.username, body.password)
    if user is None:
        raise HTTPException(status_code=401, detail="Invalid credentials")

    request.session.clear()
    request.session[SESSION_USER_KEY] = user.id
    logger.info(f"User {user.username} logged in")
    return UserResponse.model_validate(user)


@router.post("/logout")
async def logout(request: Request, db: DbSession) -> dict[str, bool]:
    """End the session and stop pushes to this user's device."""
    user_id = request.session.get(SESSION_USER_KEY)
    if user_id is not None:
        await PageRegistry(db).set_push_token(user_id, None)
    request.session.clear()
    return {"success": True}


@router.get("/me", response_model=UserResponse)
async def me(user: CurrentUser) -> UserResponse:
    return UserResponse.model_validate(user)


@router.put("/fcm-token")
async def update_push_token(body: PushTokenRequest, user: CurrentUser, db: DbSession) -> dict[str, Any]:
    """Register the device token for push notifications; null clears it."""
    await PageRegistry(db).set_push_token(user.id, body.fcm_token)
    return {"success": True, "message": "FCM Token updated"}

