"""Webhook ingestion pipeline.

Turns each normalized inbound event into durable state and live
updates, in order:
1. Verify the page is registered
2. Drop echoes and redelivered message IDs
3. Record customer, conversation and message
4. Update the conversation preview and unread counter
5. Resolve the customer's display name
6. Notify connected consoles (customer messages only)
7. Push a notification to the page's assigned agents (customer messages only)

Steps 4 to 7 are best-effort: their failures are logged and never undo
the stored message.
"""

import enum
import logging
from typing import Any

import redis.asyncio as redis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from inbox.config import get_settings
from inbox.models.page import Page
from inbox.schemas.messenger import InboundEvent
from inbox.services.fanout import ConnectionManager
from inbox.services.identity import IdentityResolver
from inbox.services.ledger import ConversationLedger, preview_text_for
from inbox.services.messenger import GraphClient, normalize_event
from inbox.services.pages import PageRegistry
from inbox.services.push import PushNotifier, new_message_notification

logger = logging.getLogger(__name__)


class EventOutcome(str, enum.Enum):
    """What the pipeline did with an event."""

    STORED = "stored"
    ECHO = "echo"
    DUPLICATE = "duplicate"
    UNKNOWN_PAGE = "unknown_page"
    FAILED = "failed"


class IngestionPipeline:
    """Processes inbound webhook events.

    Each event runs in its own database session so one failing event
    does not affect the others in the same delivery.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        graph_client: GraphClient,
        redis_client: redis.Redis | None = None,
        manager: ConnectionManager | None = None,
        push: PushNotifier | None = None,
    ) -> None:
        """Initialize the pipeline.

        Args:
            session_factory: Factory for per-event database sessions
            graph_client: Client used for profile lookups
            redis_client: Redis client for message deduplication
            manager: Live socket registry; None disables fanout
            push: Device push sender; None disables push notifications
        """
        self._session_factory = session_factory
        self._graph = graph_client
        self._redis = redis_client
        self._manager = manager
        self._push = push
        self._settings = get_settings()

    async def handle_payload(self, raw_body: Any) -> list[EventOutcome]:
        """Normalize a webhook body and process every event in it."""
        events = normalize_event(raw_body)
        if not events:
            return []

        logger.info(f"Webhook carries {len(events)} message event(s)")
        outcomes = []
        for event in events:
            try:
                outcomes.append(await self.process_event(event))
            except Exception as e:
                logger.exception(
                    f"Error processing event for page {event.page_id} "
                    f"(mid={event.message_id}): {e}"
                )
                outcomes.append(EventOutcome.FAILED)
        return outcomes

    # ========================================================================
    # Deduplication
    # ========================================================================

    def _dedup_key(self, message_id: str) -> str:
        return f"fb:msg:processed:{message_id}"

    async def _claim_message(self, message_id: str | None) -> bool:
        """Claim a message ID for processing.

        Returns:
            False when the ID was already claimed within the TTL.
        """
        if not message_id or self._redis is None:
            return True
        try:
            claimed = await self._redis.set(
                self._dedup_key(message_id),
                "1",
                nx=True,
                ex=self._settings.inbound_dedup_ttl_seconds,
            )
        except redis.RedisError as e:
            logger.warning(f"Dedup check unavailable, processing {message_id}: {e}")
            return True
        return bool(claimed)

    async def _release_message(self, message_id: str | None) -> None:
        """Allow a redelivery to retry a message that failed to store."""
        if not message_id or self._redis is None:
            return
        try:
            await self._redis.delete(self._dedup_key(message_id))
        except redis.RedisError as e:
            logger.warning(f"Could not release dedup key for {message_id}: {e}")

    # ========================================================================
    # Processing
    # ========================================================================

    async def process_event(self, event: InboundEvent) -> EventOutcome:
        """Run one event through the pipeline."""
        async with self._session_factory() as db:
            page = await db.get(Page, event.page_id)
            if page is None:
                logger.warning(f"Dropping message for unknown page {event.page_id}")
                return EventOutcome.UNKNOWN_PAGE
            page_id, access_token = page.id, page.access_token

            if event.is_echo:
                logger.debug(f"Ignoring echo for page {page_id}")
                return EventOutcome.ECHO

            if not await self._claim_message(event.message_id):
                logger.info(f"Skipping duplicate message: {event.message_id}")
                return EventOutcome.DUPLICATE

            is_from_page = event.sender_id == page_id
            if is_from_page:
                logger.warning(
                    f"Non-echo message sent by page {page_id} itself, storing as page message"
                )
            customer_id = event.recipient_id if is_from_page else event.sender_id

            ledger = ConversationLedger(db)
            identity = IdentityResolver(db, self._graph)
            text = event.text
            image_url = event.image_url

            try:
                await identity.ensure_customer(customer_id)
                await db.commit()

                conversation_id, user_name = await ledger.ensure_conversation(
                    customer_id, page_id, event.external_timestamp
                )
                message = await ledger.append_message(
                    conversation_id,
                    is_from_page=is_from_page,
                    sender_id=event.sender_id,
                    recipient_id=event.recipient_id,
                    text=text,
                    image_url=image_url,
                    timestamp=event.external_timestamp,
                )
                await db.commit()
            except Exception:
                await db.rollback()
                await self._release_message(event.message_id)
                raise

            payload = message.to_dict()
            logger.info(
                f"Stored message {payload['id']} in conversation {conversation_id} "
                f"(page={page_id}, from_page={is_from_page})"
            )

            try:
                await ledger.update_preview_and_unread(
                    conversation_id,
                    preview_text_for(text, image_url),
                    is_inbound=not is_from_page,
                    sent_at=event.external_timestamp,
                )
                await db.commit()
            except Exception as e:
                logger.exception(f"Preview update failed for conversation {conversation_id}: {e}")
                await db.rollback()

            try:
                user_name = await identity.resolve(customer_id, conversation_id, access_token)
                await db.commit()
            except Exception as e:
                logger.exception(f"Identity resolution failed for customer {customer_id}: {e}")
                await db.rollback()

            if not is_from_page and self._manager is not None:
                await self._notify(ledger, conversation_id, page_id, payload, user_name)

            if not is_from_page and self._push is not None:
                await self._push_to_agents(db, conversation_id, page_id, user_name, text)

        return EventOutcome.STORED

    async def _notify(
        self,
        ledger: ConversationLedger,
        conversation_id: int,
        page_id: str,
        payload: dict[str, Any],
        user_name: str | None,
    ) -> None:
        try:
            conversation = await ledger.get_conversation(conversation_id)
            await self._manager.new_message(payload, conversation_id, page_id)
            await self._manager.conversation_updated(
                conversation_id,
                page_id,
                last_message_text=conversation.last_message_text,
                last_message_time=conversation.last_message_time,
                user_name=conversation.user_name or user_name,
            )
        except Exception as e:
            logger.exception(f"Fanout failed for conversation {conversation_id}: {e}")

    async def _push_to_agents(
        self,
        db: AsyncSession,
        conversation_id: int,
        page_id: str,
        user_name: str | None,
        text: str | None,
    ) -> None:
        try:
            tokens = await PageRegistry(db).push_tokens_for_page(page_id)
            if not tokens:
                return
            notification = new_message_notification(user_name, text, conversation_id, page_id)
            await self._push.send(tokens, **notification)
        except Exception as e:
            logger.exception(f"Push notification failed for conversation {conversation_id}: {e}")
