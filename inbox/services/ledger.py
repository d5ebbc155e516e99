"""Conversation ledger.

Durable state of conversations and messages:
- One conversation per (customer, page), created by atomic upsert
- Append-only messages; only ``is_read`` and ``is_deleted`` change later
- Preview text and unread counters updated with relative SQL expressions
- Soft delete for agents, hard delete only for explicit cleanup
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import and_, case, delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from inbox.db.upsert import insert_for
from inbox.models.conversation import Conversation, Message

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100
DEFAULT_PAGE_SIZE = 50
IMAGE_PREVIEW_TEXT = "📷 Image"


class LedgerError(Exception):
    """Base exception for ledger errors."""
    pass


class ConversationNotFound(LedgerError):
    """Raised when a conversation does not exist."""
    pass


class LedgerConstraintViolation(LedgerError):
    """Raised when a conversation cannot be created or re-read."""
    pass


@dataclass
class MessagePage:
    """One page of messages in chronological order."""

    messages: list[Message]
    total: int
    has_more: bool
    oldest_id: int | None = None
    newest_id: int | None = None

    def to_dict(self) -> dict:
        return {
            "messages": [m.to_dict() for m in self.messages],
            "pagination": {
                "total": self.total,
                "has_more": self.has_more,
                "oldest_id": self.oldest_id,
                "newest_id": self.newest_id,
            },
        }


def preview_text_for(text: str | None, image_url: str | None) -> str:
    """Sidebar preview for a message."""
    if text:
        return text
    return IMAGE_PREVIEW_TEXT if image_url else ""


def _advance_time(observed):
    """SQL expression keeping ``last_message_time`` monotonic.

    A NULL (cleared) value is always replaced; otherwise only a newer
    observation moves the clock.
    """
    return case(
        (Conversation.last_message_time.is_(None), observed),
        (observed > Conversation.last_message_time, observed),
        else_=Conversation.last_message_time,
    )


class ConversationLedger:
    """Persisted conversations and messages.

    Methods flush but never commit; the caller owns the transaction.
    """

    def __init__(self, db: AsyncSession) -> None:
        """Initialize the ledger.

        Args:
            db: Async database session
        """
        self._db = db

    # ========================================================================
    # Conversations
    # ========================================================================

    async def ensure_conversation(
        self,
        customer_id: str,
        page_id: str,
        observed_at: datetime,
    ) -> tuple[int, str | None]:
        """Create or touch the conversation for (customer, page).

        Runs as one INSERT ... ON CONFLICT statement so concurrent first
        contacts cannot create two rows. ``last_message_time`` only moves
        forward. Work done earlier in the session must be committed first:
        a constraint failure rolls the session back before re-reading.

        Returns:
            (conversation id, denormalized user_name)
        """
        insert = insert_for(self._db)
        stmt = insert(Conversation).values(
            user_id=customer_id,
            page_id=page_id,
            last_message_time=observed_at,
            unread_count=0,
            name_is_manual=False,
            created_at=datetime.now(timezone.utc),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[Conversation.user_id, Conversation.page_id],
            set_={"last_message_time": _advance_time(stmt.excluded.last_message_time)},
        ).returning(Conversation.id, Conversation.user_name)

        try:
            row = (await self._db.execute(stmt)).one()
        except IntegrityError as e:
            logger.warning(
                f"Conversation upsert conflict for customer={customer_id}, page={page_id}: "
                f"{e.orig.__class__.__name__}; re-reading"
            )
            await self._db.rollback()
            result = await self._db.execute(
                select(Conversation.id, Conversation.user_name).where(
                    Conversation.user_id == customer_id,
                    Conversation.page_id == page_id,
                )
            )
            row = result.one_or_none()
            if row is None:
                raise LedgerConstraintViolation(
                    f"Could not create conversation for customer={customer_id}, page={page_id}"
                ) from e

        return row.id, row.user_name

    async def get_conversation(self, conversation_id: int) -> Conversation:
        """Load a conversation with fresh column values.

        Raises:
            ConversationNotFound: No such conversation.
        """
        result = await self._db.execute(
            select(Conversation)
            .where(Conversation.id == conversation_id)
            .execution_options(populate_existing=True)
        )
        conversation = result.scalar_one_or_none()
        if conversation is None:
            raise ConversationNotFound(f"Conversation {conversation_id} not found")
        return conversation

    async def list_conversations(self, page_ids: list[str] | None = None) -> list[Conversation]:
        """List visible conversations, newest first.

        Args:
            page_ids: Restrict to these pages; None means every page

        Cleared conversations (NULL last_message_time) are omitted.
        """
        query = select(Conversation).where(Conversation.last_message_time.isnot(None))
        if page_ids is not None:
            if not page_ids:
                return []
            query = query.where(Conversation.page_id.in_(page_ids))

        result = await self._db.execute(
            query.order_by(Conversation.last_message_time.desc(), Conversation.id.desc())
        )
        return list(result.scalars().unique().all())

    async def update_preview_and_unread(
        self,
        conversation_id: int,
        preview_text: str,
        is_inbound: bool,
        message_time: datetime | None = None,
        sent_at: datetime | None = None,
    ) -> None:
        """Set the preview text and bump unread for inbound messages.

        The increment is evaluated by the database so concurrent
        deliveries cannot lose updates. Outbound messages pass
        ``message_time`` so the conversation sorts by its latest reply.
        Inbound messages pass ``sent_at``; a message older than the
        conversation's ``last_message_time`` leaves the preview alone.
        """
        preview = preview_text
        if sent_at is not None:
            preview = case(
                (Conversation.last_message_time > sent_at, Conversation.last_message_text),
                else_=preview_text,
            )
        values: dict = {"last_message_text": preview}
        if is_inbound:
            values["unread_count"] = Conversation.unread_count + 1
        if message_time is not None:
            values["last_message_time"] = _advance_time(message_time)

        await self._db.execute(
            update(Conversation)
            .where(Conversation.id == conversation_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )

    async def mark_read(self, conversation_id: int) -> int:
        """Mark inbound messages read and reset the unread counter.

        Both statements run in the caller's transaction.

        Returns:
            Number of messages flagged as read.
        """
        result = await self._db.execute(
            update(Message)
            .where(
                Message.conversation_id == conversation_id,
                Message.is_read.is_(False),
                Message.is_from_page.is_(False),
            )
            .values(is_read=True)
            .execution_options(synchronize_session=False)
        )
        await self._db.execute(
            update(Conversation)
            .where(Conversation.id == conversation_id)
            .values(unread_count=0)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    async def clear_conversation(self, conversation_id: int) -> int:
        """Purge all messages and hide the conversation until the next message.

        The conversation row (and with it the customer link and name) is kept.

        Returns:
            Number of messages removed.
        """
        result = await self._db.execute(
            delete(Message)
            .where(Message.conversation_id == conversation_id)
            .execution_options(synchronize_session=False)
        )
        await self._db.execute(
            update(Conversation)
            .where(Conversation.id == conversation_id)
            .values(last_message_time=None, last_message_text=None, unread_count=0)
            .execution_options(synchronize_session=False)
        )
        logger.info(f"Cleared conversation {conversation_id}: {result.rowcount} messages removed")
        return result.rowcount or 0

    # ========================================================================
    # Messages
    # ========================================================================

    async def append_message(
        self,
        conversation_id: int,
        *,
        is_from_page: bool,
        sender_id: str,
        recipient_id: str,
        text: str | None,
        image_url: str | None = None,
        timestamp: datetime,
        agent_id: int | None = None,
    ) -> Message:
        """Insert one message row.

        Inbound messages carry the platform timestamp, outbound ones the
        local clock. Preview and unread are updated separately.
        """
        message = Message(
            conversation_id=conversation_id,
            sender_id=sender_id,
            recipient_id=recipient_id,
            text=text or "",
            image_url=image_url,
            is_from_page=is_from_page,
            is_read=False,
            is_deleted=False,
            agent_id=agent_id if is_from_page else None,
            timestamp=timestamp,
        )
        self._db.add(message)
        await self._db.flush()
        return message

    async def get_message(self, message_id: int) -> Message | None:
        """Load a message, including soft-deleted ones."""
        return await self._db.get(Message, message_id)

    async def list_messages(
        self,
        conversation_id: int,
        limit: int = DEFAULT_PAGE_SIZE,
        before_id: int | None = None,
        after_id: int | None = None,
    ) -> MessagePage:
        """Page through visible messages by id.

        ``before_id`` loads older history, ``after_id`` newer messages,
        neither returns the latest page. The page size is capped at
        MAX_PAGE_SIZE whatever the caller asks for.
        """
        page_size = max(1, min(limit, MAX_PAGE_SIZE))
        visible = and_(Message.conversation_id == conversation_id, Message.is_deleted.is_(False))

        query = select(Message).where(visible)
        if before_id is not None:
            query = query.where(Message.id < before_id).order_by(Message.id.desc())
        elif after_id is not None:
            query = query.where(Message.id > after_id).order_by(Message.id.asc())
        else:
            query = query.order_by(Message.id.desc())

        result = await self._db.execute(query.limit(page_size))
        messages = list(result.scalars().all())
        if after_id is None:
            messages.reverse()

        total = await self._db.scalar(select(func.count(Message.id)).where(visible)) or 0

        return MessagePage(
            messages=messages,
            total=total,
            has_more=len(messages) == page_size,
            oldest_id=messages[0].id if messages else None,
            newest_id=messages[-1].id if messages else None,
        )

    async def soft_delete(self, message_id: int) -> bool:
        """Hide a message from agents while keeping the row."""
        result = await self._db.execute(
            update(Message)
            .where(Message.id == message_id)
            .values(is_deleted=True)
            .execution_options(synchronize_session=False)
        )
        return bool(result.rowcount)

    async def hard_delete_older_than(self, conversation_id: int, days: int) -> int:
        """Permanently delete messages older than ``days`` days.

        Returns:
            Number of messages deleted.
        """
        cutoff = datetime.now(timezone.utc) - timedelta(days=days)
        result = await self._db.execute(
            delete(Message)
            .where(Message.conversation_id == conversation_id, Message.timestamp < cutoff)
            .execution_options(synchronize_session=False)
        )
        logger.info(
            f"Deleted {result.rowcount} messages older than {days} days "
            f"from conversation {conversation_id}"
        )
        return result.rowcount or 0

    async def hard_delete_latest(self, conversation_id: int) -> int | None:
        """Permanently delete the most recent message.

        Returns:
            The deleted message id, or None when the conversation is empty.
        """
        latest_id = await self._db.scalar(
            select(Message.id)
            .where(Message.conversation_id == conversation_id)
            .order_by(Message.timestamp.desc(), Message.id.desc())
            .limit(1)
        )
        if latest_id is None:
            return None

        await self._db.execute(
            delete(Message)
            .where(Message.id == latest_id)
            .execution_options(synchronize_session=False)
        )
        return latest_id

    async def count_unread(self, conversation_id: int) -> int:
        """Count unread, visible inbound messages."""
        return await self._db.scalar(
            select(func.count(Message.id)).where(
                Message.conversation_id == conversation_id,
                Message.is_from_page.is_(False),
                Message.is_read.is_(False),
                Message.is_deleted.is_(False),
            )
        ) or 0
