"""Customer identity resolution.

Keeps one display name and profile picture per customer ID:
- A customer row exists from the first message on, with a placeholder name
- The placeholder is replaced by the Graph profile name once a lookup succeeds
- A resolved name is never replaced by the placeholder again
- Names are copied onto conversations, except ones an agent renamed by hand
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from inbox.config import get_settings
from inbox.db.upsert import insert_for
from inbox.models.conversation import Conversation
from inbox.models.customer import Customer
from inbox.services.ledger import ConversationNotFound
from inbox.services.messenger import GraphClient

logger = logging.getLogger(__name__)


class IdentityResolver:
    """Reconciles customer names across profile lookups and conversations."""

    def __init__(self, db: AsyncSession, graph_client: GraphClient) -> None:
        """Initialize the resolver.

        Args:
            db: Async database session
            graph_client: Client used for profile lookups
        """
        self._db = db
        self._graph = graph_client
        self._placeholder = get_settings().customer_placeholder_name

    def is_placeholder(self, name: str | None) -> bool:
        """Check whether a name still needs to be resolved."""
        return not name or not name.strip() or name == self._placeholder

    async def ensure_customer(self, customer_id: str) -> None:
        """Create the customer with a placeholder name, or touch ``updated_at``.

        A single upsert statement; an existing name is left untouched.
        """
        insert = insert_for(self._db)
        now = datetime.now(timezone.utc)
        stmt = insert(Customer).values(id=customer_id, name=self._placeholder, updated_at=now)
        stmt = stmt.on_conflict_do_update(
            index_elements=[Customer.id],
            set_={"updated_at": now},
        )
        await self._db.execute(stmt)

    async def get_customer_name(self, customer_id: str) -> str | None:
        """Current best-known name for a customer."""
        return await self._db.scalar(select(Customer.name).where(Customer.id == customer_id))

    async def resolve(
        self,
        customer_id: str,
        conversation_id: int,
        access_token: str | None,
    ) -> str | None:
        """Resolve the customer's name and sync it onto one conversation.

        Args:
            customer_id: Page-scoped customer ID
            conversation_id: Conversation the triggering message belongs to
            access_token: Page token for the profile lookup, if any

        Returns:
            The name shown for the conversation after the sync.
        """
        name = await self.get_customer_name(customer_id)

        if self.is_placeholder(name) and access_token:
            fetched = await self._fetch_name(customer_id, access_token)
            if fetched:
                name = fetched

        result = await self._db.execute(
            select(Conversation.user_name, Conversation.name_is_manual).where(
                Conversation.id == conversation_id
            )
        )
        row = result.one_or_none()
        if row is None:
            return name

        if row.name_is_manual:
            logger.debug(f"Conversation {conversation_id} was renamed manually, keeping its name")
            return row.user_name

        if name and name != row.user_name:
            # A conversation that already shows a real name is not downgraded
            if self.is_placeholder(name) and not self.is_placeholder(row.user_name):
                return row.user_name
            await self._db.execute(
                update(Conversation)
                .where(Conversation.id == conversation_id)
                .values(user_name=name)
                .execution_options(synchronize_session=False)
            )
            logger.info(f"Synced name for conversation {conversation_id}: {name}")
            return name

        return row.user_name or name

    async def _fetch_name(self, customer_id: str, access_token: str) -> str | None:
        """Look up the profile and store a non-empty name on the customer."""
        profile = await self._graph.fetch_profile(access_token, customer_id)
        if profile is None:
            return None

        full_name = profile.full_name
        if not full_name:
            logger.info(f"Profile for {customer_id} has no name, keeping placeholder")
            return None

        await self._db.execute(
            update(Customer)
            .where(Customer.id == customer_id)
            .values(name=full_name, profile_pic=profile.profile_pic)
            .execution_options(synchronize_session=False)
        )
        logger.info(f"Resolved customer {customer_id} name from profile")
        return full_name

    async def rename_customer(self, conversation_id: int, name: str) -> str:
        """Apply an agent-chosen name to a conversation's customer.

        The customer and every conversation of that customer are updated.
        Conversations are flagged as manually named so later profile syncs
        leave them alone.

        Raises:
            ConversationNotFound: No such conversation.
            ValueError: The name is blank.

        Returns:
            The stored name.
        """
        name = name.strip()
        if not name:
            raise ValueError("Name must not be empty")

        customer_id = await self._db.scalar(
            select(Conversation.user_id).where(Conversation.id == conversation_id)
        )
        if customer_id is None:
            raise ConversationNotFound(f"Conversation {conversation_id} not found")

        insert = insert_for(self._db)
        stmt = insert(Customer).values(
            id=customer_id, name=name, updated_at=datetime.now(timezone.utc)
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[Customer.id],
            set_={"name": name, "updated_at": datetime.now(timezone.utc)},
        )
        await self._db.execute(stmt)

        await self._db.execute(
            update(Conversation)
            .where(Conversation.user_id == customer_id)
            .values(user_name=name, name_is_manual=True)
            .execution_options(synchronize_session=False)
        )
        logger.info(f"Customer {customer_id} renamed manually")
        return name
