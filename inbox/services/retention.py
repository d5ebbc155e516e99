"""Message retention and cleanup service.

Provides:
1. Configurable retention policy for message history
2. Scheduled archiving of old messages into ``messages_archive``
3. Manual permanent cleanup and per-conversation cleanup periods
4. Retention statistics
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import and_, case, delete, func, insert, literal, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from inbox.config import get_settings
from inbox.models.conversation import Message, MessageArchive

logger = logging.getLogger(__name__)

# Periods agents can pick when clearing old history of one conversation
CLEANUP_PERIODS = {
    "7d": 7,
    "15d": 15,
    "1m": 30,
    "3m": 90,
}

# (label, maximum age in days) for the stats age distribution
AGE_BRACKETS = [
    ("0-7 days", 7),
    ("8-30 days", 30),
    ("31-90 days", 90),
    ("90+ days", None),
]


def cleanup_period_days(period: str) -> int:
    """Translate a cleanup period like ``"15d"`` into days.

    Raises:
        ValueError: Unknown period.
    """
    try:
        return CLEANUP_PERIODS[period]
    except KeyError:
        raise ValueError(
            f"Invalid period {period!r}, expected one of {', '.join(CLEANUP_PERIODS)}"
        ) from None


class RetentionService:
    """Service for managing message retention and cleanup."""

    def __init__(self, db: AsyncSession) -> None:
        """Initialize the retention service.

        Args:
            db: Async database session
        """
        self._db = db
        self._settings = get_settings()

    @property
    def retention_days(self) -> int:
        """Get configured retention period in days."""
        return self._settings.message_retention_days

    @property
    def cleanup_enabled(self) -> bool:
        """Check if automatic cleanup is enabled."""
        return self._settings.message_cleanup_enabled

    def get_cutoff_date(self, days: int | None = None) -> datetime:
        """Calculate cutoff date for retention.

        Args:
            days: Optional override for retention days

        Returns:
            datetime before which messages should be deleted
        """
        retention = days if days is not None else self.retention_days
        return datetime.now(timezone.utc) - timedelta(days=retention)

    async def get_retention_stats(self) -> dict[str, Any]:
        """Message counts, age distribution and the active retention config."""
        now = datetime.now(timezone.utc)
        cutoff = self.get_cutoff_date()
        keeps_forever = self.retention_days <= 0

        columns = [
            func.count(Message.id).label("total"),
            func.count(case((Message.is_deleted.is_(True), 1))).label("soft_deleted"),
        ]
        if not keeps_forever:
            columns.append(func.count(case((Message.timestamp < cutoff, 1))).label("due"))

        # Brackets are contiguous: each starts where the younger one ends
        newer_than = now
        for i, (_, max_age) in enumerate(AGE_BRACKETS):
            bound = Message.timestamp < newer_than
            if max_age is not None:
                older_than = now - timedelta(days=max_age)
                bound = and_(bound, Message.timestamp >= older_than)
                newer_than = older_than
            columns.append(func.count(case((bound, 1))).label(f"bracket_{i}"))

        row = (await self._db.execute(select(*columns))).one()
        archived = await self._db.scalar(select(func.count(MessageArchive.id))) or 0

        return {
            "config": {
                "retention_days": self.retention_days,
                "cleanup_enabled": self.cleanup_enabled,
                "cutoff_date": None if keeps_forever else cutoff.strftime("%Y-%m-%d"),
            },
            "messages": {
                "total": row.total,
                "soft_deleted": row.soft_deleted,
                "due_for_cleanup": 0 if keeps_forever else row.due,
                "archived": archived,
            },
            "age_distribution": [
                {"label": label, "count": getattr(row, f"bracket_{i}")}
                for i, (label, _) in enumerate(AGE_BRACKETS)
            ],
        }

    async def cleanup_old_messages(
        self,
        dry_run: bool = False,
        days_override: int | None = None,
    ) -> dict[str, Any]:
        """Permanently delete messages older than the retention period.

        Used by the admin-triggered cleanup. Conversations are kept; only
        their message history shrinks.

        Args:
            dry_run: If True, only report what would be deleted
            days_override: Optional override for retention days

        Returns:
            Dict with cleanup results
        """
        retention_days = days_override if days_override is not None else self.retention_days
        if retention_days <= 0:
            raise ValueError("Retention days must be positive")

        cutoff = self.get_cutoff_date(retention_days)

        if dry_run:
            count = await self._db.scalar(
                select(func.count(Message.id)).where(Message.timestamp < cutoff)
            ) or 0
            return {
                "dry_run": True,
                "would_delete": {"messages": count},
                "cutoff_date": cutoff.strftime("%Y-%m-%d %H:%M:%S UTC"),
                "retention_days": retention_days,
            }

        result = await self._db.execute(
            delete(Message)
            .where(Message.timestamp < cutoff)
            .execution_options(synchronize_session=False)
        )
        await self._db.commit()
        deleted = result.rowcount or 0

        logger.info(f"Retention cleanup completed: {deleted} messages deleted")

        return {
            "dry_run": False,
            "deleted": {"messages": deleted},
            "cutoff_date": cutoff.strftime("%Y-%m-%d %H:%M:%S UTC"),
            "retention_days": retention_days,
        }

    async def archive_old_messages(self, days_override: int | None = None) -> dict[str, Any]:
        """Move messages older than the retention period into the archive.

        The copy and the delete commit together. Only rows copied in
        this run are deleted, so a message stored meanwhile is never
        lost.

        Args:
            days_override: Optional override for retention days

        Returns:
            Dict with archive results
        """
        retention_days = days_override if days_override is not None else self.retention_days
        if retention_days <= 0:
            raise ValueError("Retention days must be positive")

        cutoff = self.get_cutoff_date(retention_days)
        archived_at = datetime.now(timezone.utc)
        columns = [
            "id",
            "conversation_id",
            "sender_id",
            "recipient_id",
            "text",
            "image_url",
            "is_from_page",
            "is_read",
            "is_deleted",
            "agent_id",
            "timestamp",
        ]

        try:
            await self._db.execute(
                insert(MessageArchive).from_select(
                    [*columns, "archived_at"],
                    select(
                        *(getattr(Message, name) for name in columns),
                        literal(archived_at, MessageArchive.archived_at.type),
                    ).where(Message.timestamp < cutoff),
                )
            )
            result = await self._db.execute(
                delete(Message)
                .where(
                    Message.id.in_(
                        select(MessageArchive.id).where(MessageArchive.archived_at == archived_at)
                    )
                )
                .execution_options(synchronize_session=False)
            )
            await self._db.commit()
        except Exception:
            await self._db.rollback()
            raise
        archived = result.rowcount or 0

        logger.info(f"Retention archive completed: {archived} messages archived")

        return {
            "dry_run": False,
            "archived": {"messages": archived},
            "cutoff_date": cutoff.strftime("%Y-%m-%d %H:%M:%S UTC"),
            "retention_days": retention_days,
        }


async def run_scheduled_cleanup(db: AsyncSession) -> dict[str, Any]:
    """Run the scheduled retention task, which archives old messages.

    Args:
        db: Async database session

    Returns:
        Cleanup results
    """
    settings = get_settings()

    if not settings.message_cleanup_enabled:
        logger.info("Message cleanup is disabled, skipping")
        return {"skipped": True, "reason": "cleanup_disabled"}

    if settings.message_retention_days <= 0:
        logger.info("Retention days is 0 (forever), skipping cleanup")
        return {"skipped": True, "reason": "retention_forever"}

    service = RetentionService(db)
    result = await service.archive_old_messages()

    logger.info(f"Scheduled cleanup completed: {result}")
    return result


async def cleanup_loop(session_factory: async_sessionmaker[AsyncSession]) -> None:
    """Archive old messages every ``message_cleanup_interval_hours``.

    Started and cancelled by the application lifespan.
    """
    interval = get_settings().message_cleanup_interval_hours * 3600
    while True:
        try:
            async with session_factory() as db:
                await run_scheduled_cleanup(db)
        except Exception as e:
            logger.exception(f"Scheduled message cleanup failed: {e}")
        await asyncio.sleep(interval)
