"""Customer notes kept by agents."""

import logging
from datetime import datetime, timezone

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession

from inbox.db.upsert import insert_for
from inbox.models.customer import Customer, CustomerNote

logger = logging.getLogger(__name__)


class NoteService:
    """One shared note per customer."""

    def __init__(self, db: AsyncSession) -> None:
        self._db = db

    async def get_note(self, customer_id: str) -> CustomerNote | None:
        return await self._db.get(CustomerNote, customer_id)

    async def save_note(self, customer_id: str, content: str, edited_by: int | None) -> CustomerNote:
        """Create or replace the customer's note.

        Raises:
            LookupError: The customer is unknown.
        """
        if await self._db.get(Customer, customer_id) is None:
            raise LookupError(f"Customer {customer_id} not found")

        now = datetime.now(timezone.utc)
        insert = insert_for(self._db)
        stmt = insert(CustomerNote).values(
            customer_id=customer_id, content=content, last_edited_by=edited_by, updated_at=now
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[CustomerNote.customer_id],
            set_={"content": content, "last_edited_by": edited_by, "updated_at": now},
        )
        await self._db.execute(stmt)

        note = await self._db.get(CustomerNote, customer_id, populate_existing=True)
        logger.info(f"Note for customer {customer_id} saved by user {edited_by}")
        return note

    async def delete_note(self, customer_id: str) -> bool:
        result = await self._db.execute(
            delete(CustomerNote).where(CustomerNote.customer_id == customer_id)
        )
        return bool(result.rowcount)
