"""Customer identity and customer note models."""

from datetime import datetime, timezone

from sqlalchemy import String, Text, DateTime, ForeignKey, Integer
from sqlalchemy.orm import Mapped, mapped_column

from inbox.db.base import Base


class Customer(Base):
    """Process-wide identity of a platform user (page-scoped ID).

    One row per external identifier, independent of which page the
    customer wrote to. The name starts as a placeholder and is only
    ever upgraded.
    """

    __tablename__ = "customers"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    profile_pic: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )


class CustomerNote(Base):
    """Free-form note agents keep about a customer."""

    __tablename__ = "customer_notes"

    customer_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("customers.id", ondelete="CASCADE"), primary_key=True
    )
    content: Mapped[str] = mapped_column(Text, nullable=False, default="")
    last_edited_by: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    def to_dict(self) -> dict:
        return {
            "customer_id": self.customer_id,
            "content": self.content,
            "last_edited_by": self.last_edited_by,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
