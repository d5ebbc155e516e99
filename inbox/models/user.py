"""Console user and page assignment models."""

import enum
from datetime import datetime, timezone

from sqlalchemy import String, DateTime, Enum, ForeignKey, Integer, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from inbox.db.base import Base


class UserRole(str, enum.Enum):
    """Console role."""

    ADMIN = "admin"
    AGENT = "agent"


class User(Base):
    """An admin or agent who logs into the console.

    Admins implicitly see every page. Agents see only the pages listed
    for them in ``user_pages``.
    """

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[UserRole] = mapped_column(
        Enum(UserRole, values_callable=lambda e: [m.value for m in e]),
        default=UserRole.AGENT,
        nullable=False,
    )
    fcm_token: Mapped[str | None] = mapped_column(Text, nullable=True)  # Device push token
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    # Relationships
    assignments: Mapped[list["UserPage"]] = relationship(
        "UserPage", back_populates="user", cascade="all, delete-orphan", lazy="selectin"
    )

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


class UserPage(Base):
    """Assignment of a user to a page (authorization scope)."""

    __tablename__ = "user_pages"

    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )
    page_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("pages.id", ondelete="CASCADE"), primary_key=True, index=True
    )

    # Relationships
    user: Mapped["User"] = relationship("User", back_populates="assignments")
