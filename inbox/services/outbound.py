"""Outbound replies from agents to customers.

A reply is recorded only after the platform accepted it. When the
customer's messaging window has closed, the send is retried once with
the HUMAN_AGENT tag; every other failure is returned to the agent
unchanged.
"""

import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from inbox.config import get_settings
from inbox.schemas.messenger import HUMAN_AGENT_TAG
from inbox.services.ledger import ConversationLedger, preview_text_for
from inbox.services.messenger import GraphClient, PlatformSendError, SendErrorKind

logger = logging.getLogger(__name__)

UPLOADS_PREFIX = "/uploads/"


def public_image_url(image_url: str) -> str:
    """Make an uploaded image path absolute so the platform can fetch it."""
    if image_url.startswith(UPLOADS_PREFIX):
        base_url = get_settings().public_base_url.rstrip("/")
        if base_url:
            return f"{base_url}{image_url}"
        logger.warning("public_base_url is not set; sending relative image path")
    return image_url


class OutboundSender:
    """Sends agent replies and records them in the ledger."""

    def __init__(self, db: AsyncSession, graph_client: GraphClient) -> None:
        """Initialize the sender.

        Args:
            db: Async database session
            graph_client: Client for the Send API
        """
        self._db = db
        self._graph = graph_client
        self._ledger = ConversationLedger(db)

    async def _attempt(
        self,
        access_token: str,
        recipient_id: str,
        text: str | None,
        image_url: str | None,
        tag: str | None = None,
    ) -> dict[str, Any]:
        if image_url:
            return await self._graph.send_image(
                access_token, recipient_id, public_image_url(image_url), tag=tag
            )
        return await self._graph.send_text(access_token, recipient_id, text or "", tag=tag)

    async def deliver(
        self,
        access_token: str,
        recipient_id: str,
        text: str | None,
        image_url: str | None,
    ) -> dict[str, Any]:
        """Send with at most one tagged retry.

        Raises:
            PlatformSendError: Both attempts failed, or the first failure
                was not a closed messaging window.
        """
        try:
            return await self._attempt(access_token, recipient_id, text, image_url)
        except PlatformSendError as e:
            if e.kind != SendErrorKind.WINDOW_CLOSED:
                raise
            logger.info(f"Messaging window closed for {recipient_id}, retrying with {HUMAN_AGENT_TAG} tag")

        return await self._attempt(access_token, recipient_id, text, image_url, tag=HUMAN_AGENT_TAG)

    async def reply(
        self,
        conversation_id: int,
        text: str | None,
        image_url: str | None = None,
        agent_id: int | None = None,
    ) -> dict[str, Any]:
        """Send a reply in a conversation and record it.

        Nothing is written when the send fails. The unread counter is not
        touched; the conversation's preview and time move to the reply.

        Args:
            conversation_id: Conversation to reply in
            text: Reply text
            image_url: Image to send instead of the text
            agent_id: Console user sending the reply

        Returns:
            The stored message payload.

        Raises:
            ConversationNotFound: No such conversation.
            PlatformSendError: The platform did not accept the message.
        """
        if not text and not image_url:
            raise ValueError("Message or image required")

        conversation = await self._ledger.get_conversation(conversation_id)
        page = conversation.page

        await self.deliver(page.access_token, conversation.user_id, text, image_url)

        now = datetime.now(timezone.utc)
        message = await self._ledger.append_message(
            conversation_id,
            is_from_page=True,
            sender_id=page.id,
            recipient_id=conversation.user_id,
            text=text,
            image_url=image_url,
            timestamp=now,
            agent_id=agent_id,
        )
        await self._ledger.update_preview_and_unread(
            conversation_id,
            preview_text_for(text, image_url),
            is_inbound=False,
            message_time=now,
        )
        logger.info(f"Reply sent in conversation {conversation_id} by agent {agent_id}")
        return message.to_dict()
