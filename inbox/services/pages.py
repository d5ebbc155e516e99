"""Page registry, console users and page assignments.

Admins register pages with their access tokens, create agents and
assign pages to them. Admins have access to every page; agents only
to the pages assigned to them.
"""

import logging
from datetime import datetime, timezone
from typing import Any

from passlib.context import CryptContext
from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from inbox.db.upsert import insert_for
from inbox.models.page import Page
from inbox.models.user import User, UserPage, UserRole

logger = logging.getLogger(__name__)

# The first account is the superadmin and cannot be deleted
PROTECTED_USER_ID = 1

pwd_context = CryptContext(schemes=["argon2"], deprecated="auto")


class PageRegistryError(Exception):
    """Base exception for registry errors."""
    pass


class PageNotFound(PageRegistryError):
    """Raised when a page is not registered."""
    pass


class UserNotFound(PageRegistryError):
    """Raised when a console user does not exist."""
    pass


class UsernameTaken(PageRegistryError):
    """Raised when creating a user with an existing username."""
    pass


class ProtectedUser(PageRegistryError):
    """Raised when deleting the superadmin."""
    pass


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return pwd_context.verify(password, password_hash)
    except ValueError:
        # Unrecognized hash format
        return False


class PageRegistry:
    """Pages, users and who may see which page."""

    def __init__(self, db: AsyncSession) -> None:
        """Initialize the registry.

        Args:
            db: Async database session
        """
        self._db = db

    # ========================================================================
    # Pages
    # ========================================================================

    async def upsert_page(self, page_id: str, name: str, access_token: str) -> None:
        """Register a page or replace its name and token."""
        insert = insert_for(self._db)
        stmt = insert(Page).values(
            id=page_id,
            name=name,
            access_token=access_token,
            added_at=datetime.now(timezone.utc),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[Page.id],
            set_={"name": stmt.excluded.name, "access_token": stmt.excluded.access_token},
        )
        await self._db.execute(stmt)
        logger.info(f"Page {page_id} registered as {name!r}")

    async def get_page(self, page_id: str) -> Page:
        """Load a registered page.

        Raises:
            PageNotFound: The page is not registered.
        """
        page = await self._db.get(Page, page_id)
        if page is None:
            raise PageNotFound(f"Page {page_id} not found")
        return page

    async def list_pages(self) -> list[dict[str, Any]]:
        """All pages with the number of users assigned to each, newest first.

        Access tokens are not included.
        """
        result = await self._db.execute(
            select(Page.id, Page.name, Page.added_at, func.count(UserPage.user_id).label("users"))
            .outerjoin(UserPage, UserPage.page_id == Page.id)
            .group_by(Page.id, Page.name, Page.added_at)
            .order_by(Page.added_at.desc())
        )
        return [
            {
                "id": row.id,
                "name": row.name,
                "added_at": row.added_at.isoformat() if row.added_at else None,
                "assigned_users_count": row.users,
            }
            for row in result
        ]

    async def delete_page(self, page_id: str) -> bool:
        await self._db.execute(delete(UserPage).where(UserPage.page_id == page_id))
        result = await self._db.execute(delete(Page).where(Page.id == page_id))
        if result.rowcount:
            logger.info(f"Page {page_id} deleted")
        return bool(result.rowcount)

    # ========================================================================
    # Assignments
    # ========================================================================

    async def pages_assigned_to(self, user_id: int) -> list[str]:
        result = await self._db.execute(
            select(UserPage.page_id).where(UserPage.user_id == user_id).order_by(UserPage.page_id)
        )
        return list(result.scalars().all())

    async def visible_page_ids(self, user: User) -> list[str] | None:
        """Pages a user may see; None means every page."""
        if user.is_admin:
            return None
        return await self.pages_assigned_to(user.id)

    async def has_page_access(self, user: User, page_id: str) -> bool:
        """Admins see every page; agents only their assigned ones."""
        if user.is_admin:
            return True
        found = await self._db.scalar(
            select(UserPage.page_id).where(
                UserPage.user_id == user.id, UserPage.page_id == page_id
            )
        )
        return found is not None

    async def pages_for(self, user: User) -> list[Page]:
        """Pages shown in a user's inbox, by name."""
        query = select(Page).order_by(Page.name)
        if not user.is_admin:
            query = query.join(UserPage, UserPage.page_id == Page.id).where(
                UserPage.user_id == user.id
            )
        result = await self._db.execute(query)
        return list(result.scalars().all())

    async def assign_pages(self, user_id: int, page_ids: list[str]) -> int:
        """Replace a user's assigned pages.

        Raises:
            UserNotFound: No such user.
            PageNotFound: One of the pages is not registered.

        Returns:
            Number of pages assigned.
        """
        if await self._db.get(User, user_id) is None:
            raise UserNotFound(f"User {user_id} not found")

        unique_ids = list(dict.fromkeys(page_ids))
        if unique_ids:
            known = set(
                (await self._db.execute(select(Page.id).where(Page.id.in_(unique_ids)))).scalars()
            )
            missing = [page_id for page_id in unique_ids if page_id not in known]
            if missing:
                raise PageNotFound(f"Pages not found: {', '.join(missing)}")

        await self._db.execute(delete(UserPage).where(UserPage.user_id == user_id))
        self._db.add_all([UserPage(user_id=user_id, page_id=page_id) for page_id in unique_ids])
        await self._db.flush()

        logger.info(f"Assigned {len(unique_ids)} page(s) to user {user_id}")
        return len(unique_ids)

    async def list_assignments(self) -> list[dict[str, Any]]:
        """Agents with the pages assigned to them."""
        users = (
            await self._db.execute(
                select(User).where(User.role == UserRole.AGENT).order_by(User.username)
            )
        ).scalars().all()
        rows = await self._db.execute(
            select(UserPage.user_id, Page.id, Page.name)
            .join(Page, Page.id == UserPage.page_id)
            .order_by(Page.name)
        )

        pages_by_user: dict[int, list[dict[str, str]]] = {}
        for row in rows:
            pages_by_user.setdefault(row.user_id, []).append(
                {"page_id": row.id, "page_name": row.name}
            )

        return [
            {
                "user_id": user.id,
                "username": user.username,
                "role": user.role.value,
                "pages": pages_by_user.get(user.id, []),
                "pages_count": len(pages_by_user.get(user.id, [])),
            }
            for user in users
        ]

    # ========================================================================
    # Users
    # ========================================================================

    async def create_user(self, username: str, password: str, role: UserRole = UserRole.AGENT) -> User:
        """Create a console user.

        Raises:
            UsernameTaken: The username already exists.
        """
        user = User(username=username, password_hash=hash_password(password), role=role)
        self._db.add(user)
        try:
            await self._db.flush()
        except IntegrityError as e:
            await self._db.rollback()
            raise UsernameTaken(f"Username {username!r} is taken") from e

        logger.info(f"Created {role.value} user {username} (id={user.id})")
        return user

    async def get_user(self, user_id: int) -> User | None:
        return await self._db.get(User, user_id)

    async def list_users(self) -> list[dict[str, Any]]:
        """Users other than the superadmin, newest first."""
        result = await self._db.execute(
            select(
                User.id,
                User.username,
                User.role,
                User.created_at,
                func.count(UserPage.page_id).label("pages"),
            )
            .outerjoin(UserPage, UserPage.user_id == User.id)
            .where(User.id != PROTECTED_USER_ID)
            .group_by(User.id, User.username, User.role, User.created_at)
            .order_by(User.created_at.desc(), User.id.desc())
        )
        return [
            {
                "id": row.id,
                "username": row.username,
                "role": row.role.value,
                "created_at": row.created_at.isoformat() if row.created_at else None,
                "assigned_pages_count": row.pages,
            }
            for row in result
        ]

    async def delete_user(self, user_id: int) -> bool:
        """Delete a user and their assignments.

        Raises:
            ProtectedUser: Attempt to delete the superadmin.
        """
        if user_id == PROTECTED_USER_ID:
            raise ProtectedUser("Cannot delete superadmin user")

        username = await self._db.scalar(select(User.username).where(User.id == user_id))
        if username is None:
            return False
        await self._db.execute(delete(UserPage).where(UserPage.user_id == user_id))
        await self._db.execute(delete(User).where(User.id == user_id))
        logger.info(f"Deleted user {username} (id={user_id})")
        return True

    async def authenticate(self, username: str, password: str) -> User | None:
        """Check credentials.

        Returns:
            The user, or None when the username or password is wrong.
        """
        user = await self._db.scalar(select(User).where(User.username == username))
        if user is None or not verify_password(password, user.password_hash):
            logger.warning(f"Failed login for {username!r}")
            return None
        return user

    # ========================================================================
    # Push tokens
    # ========================================================================

    async def set_push_token(self, user_id: int, token: str | None) -> None:
        """Store the device token of a user; None or empty clears it."""
        await self._db.execute(
            update(User)
            .where(User.id == user_id)
            .values(fcm_token=token or None)
            .execution_options(synchronize_session=False)
        )
        logger.info(f"{'Updated' if token else 'Cleared'} push token of user {user_id}")

    async def push_tokens_for_page(self, page_id: str) -> list[str]:
        """Device tokens of the users assigned to a page."""
        result = await self._db.execute(
            select(User.fcm_token)
            .join(UserPage, UserPage.user_id == User.id)
            .where(UserPage.page_id == page_id, User.fcm_token.is_not(None), User.fcm_token != "")
            .order_by(User.id)
        )
        return list(result.scalars().all())
