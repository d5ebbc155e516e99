"""Facebook Page model."""

from datetime import datetime, timezone

from sqlalchemy import String, Text, DateTime
from sqlalchemy.orm import Mapped, mapped_column

from inbox.db.base import Base


class Page(Base):
    """A Facebook Page and the token used for every Graph API call on its behalf."""

    __tablename__ = "pages"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)  # Platform page ID
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    access_token: Mapped[str] = mapped_column(Text, nullable=False)
    added_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
