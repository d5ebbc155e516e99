"""Admin endpoints for pages, users, assignments and retention.

Provides:
1. Page registration with access tokens
2. Console user management
3. Page assignments (the agents' authorization scopes)
4. Message retention statistics and manual cleanup
"""

import logging
from typing import Annotated, Any

from fastapi import APIRouter, HTTPException, Query

from inbox.api.deps import AdminUser, CurrentUser, DbSession
from inbox.schemas.console import (
    AssignPagesRequest,
    PageUpsertRequest,
    UserCreateRequest,
    UserResponse,
)
from inbox.services.pages import (
    PageNotFound,
    PageRegistry,
    ProtectedUser,
    UsernameTaken,
    UserNotFound,
)
from inbox.services.retention import RetentionService

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/admin", tags=["Admin"])


# =============================================================================
# Pages
# =============================================================================


@router.post("/pages")
async def upsert_page(body: PageUpsertRequest, db: DbSession, _admin: AdminUser) -> dict[str, Any]:
    await PageRegistry(db).upsert_page(body.id, body.name, body.access_token)
    return {"success": True, "message": "Page added/updated"}


@router.get("/pages")
async def list_pages(db: DbSession, _admin: AdminUser) -> dict[str, Any]:
    return {"pages": await PageRegistry(db).list_pages()}


@router.delete("/pages/{page_id}")
async def delete_page(page_id: str, db: DbSession, _admin: AdminUser) -> dict[str, Any]:
    if not await PageRegistry(db).delete_page(page_id):
        raise HTTPException(status_code=404, detail="Page not found")
    return {"success": True, "message": "Page deleted"}


# =============================================================================
# Users
# =============================================================================


@router.post("/users", response_model=UserResponse)
async def create_user(body: UserCreateRequest, db: DbSession, _admin: AdminUser) -> UserResponse:
    try:
        user = await PageRegistry(db).create_user(body.username, body.password, body.role)
    except UsernameTaken:
        raise HTTPException(status_code=400, detail="Username taken")
    return UserResponse.model_validate(user)


@router.get("/users")
async def list_users(db: DbSession, _admin: AdminUser) -> dict[str, Any]:
    return {"users": await PageRegistry(db).list_users()}


@router.delete("/users/{user_id}")
async def delete_user(user_id: int, db: DbSession, _admin: AdminUser) -> dict[str, Any]:
    try:
        deleted = await PageRegistry(db).delete_user(user_id)
    except ProtectedUser as e:
        raise HTTPException(status_code=403, detail=str(e))
    if not deleted:
        raise HTTPException(status_code=404, detail="User not found")
    return {"success": True, "message": "User deleted"}


# =============================================================================
# Assignments
# =============================================================================


@router.get("/assignments")
async def list_assignments(db: DbSession, _admin: AdminUser) -> dict[str, Any]:
    return {"assignments": await PageRegistry(db).list_assignments()}


@router.post("/assignments")
async def assign_pages(body: AssignPagesRequest, db: DbSession, _admin: AdminUser) -> dict[str, Any]:
    """Replace every page assignment of a user."""
    try:
        count = await PageRegistry(db).assign_pages(body.user_id, body.page_ids)
    except UserNotFound:
        raise HTTPException(status_code=404, detail="User not found")
    except PageNotFound as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"success": True, "message": f"{count} pages assigned to user"}


@router.get("/assignments/user/{user_id}")
async def get_user_assignments(user_id: int, db: DbSession, user: CurrentUser) -> dict[str, Any]:
    """Pages visible to a user. Agents may only look up themselves."""
    if not user.is_admin and user.id != user_id:
        raise HTTPException(status_code=403, detail="You can only view your own assignments")

    registry = PageRegistry(db)
    target = await registry.get_user(user_id)
    if target is None:
        raise HTTPException(status_code=404, detail="User not found")

    pages = await registry.pages_for(target)
    return {"pages": [{"id": page.id, "name": page.name} for page in pages]}


# =============================================================================
# Retention Management
# =============================================================================


@router.get("/retention/stats")
async def get_retention_stats(db: DbSession, _admin: AdminUser) -> dict[str, Any]:
    """Get retention statistics and configuration.

    Returns:
    - config: Current retention settings
    - messages: Count of messages total, soft-deleted, due for cleanup, archived
    - age_distribution: Breakdown by age brackets
    """
    service = RetentionService(db)
    return await service.get_retention_stats()


@router.post("/retention/cleanup")
async def run_cleanup(
    db: DbSession,
    _admin: AdminUser,
    dry_run: Annotated[bool, Query(description="If true, only preview what would be deleted")] = True,
    days: Annotated[int | None, Query(ge=1, description="Override retention days")] = None,
) -> dict[str, Any]:
    """Run retention cleanup manually.

    By default runs in dry_run mode to preview deletions.
    Set dry_run=false to permanently delete old messages.
    """
    service = RetentionService(db)
    try:
        return await service.cleanup_old_messages(dry_run=dry_run, days_override=days)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
