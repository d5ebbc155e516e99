"""Database utilities."""

from inbox.db.base import Base
from inbox.db.session import get_db, engine, async_session_maker

__all__ = ["Base", "get_db", "engine", "async_session_maker"]
