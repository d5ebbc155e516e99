"""Pydantic schemas for Messenger webhook payloads and Send API requests.

Meta delivers page messages in more than one envelope. This module
models each envelope explicitly and defines ``InboundEvent``, the single
internal shape every envelope is normalized into.

Reference: https://developers.facebook.com/docs/messenger-platform/webhooks
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


# ============================================================================
# Webhook Building Blocks
# ============================================================================

class Party(BaseModel):
    """Sender or recipient reference."""
    id: str

    model_config = ConfigDict(coerce_numbers_to_str=True)


class AttachmentPayload(BaseModel):
    """Attachment payload (only the URL is used)."""
    url: str | None = None

    model_config = ConfigDict(extra="allow")


class Attachment(BaseModel):
    """Message attachment."""
    type: str
    payload: AttachmentPayload | None = None

    @property
    def url(self) -> str | None:
        return self.payload.url if self.payload else None


class Command(BaseModel):
    """Bot command invoked by the customer."""
    name: str


class MessageBody(BaseModel):
    """The ``message`` object of a messaging event."""
    mid: str | None = None
    text: str | None = None
    attachments: list[Attachment] | None = None
    commands: list[Command] | None = None
    is_echo: bool = False


class MessagingEvent(BaseModel):
    """One messaging item (also the ``value`` of the change-based shapes).

    Items without ``message`` are delivery/read receipts or postbacks.
    """
    sender: Party | None = None
    recipient: Party | None = None
    timestamp: int | float | str | None = None
    message: MessageBody | None = None


# ============================================================================
# Envelopes
# ============================================================================

class Change(BaseModel):
    """Change notification inside a page entry."""
    field: str
    value: MessagingEvent | None = None


class Entry(BaseModel):
    """Entry in a page webhook payload."""
    id: str  # Page ID
    time: int | None = None
    messaging: list[MessagingEvent] | None = None
    changes: list[Change] | None = None

    model_config = ConfigDict(coerce_numbers_to_str=True)


class PageWebhookPayload(BaseModel):
    """``{"object": "page", "entry": [...]}`` envelope.

    Entries carry either a ``messaging`` array (Messenger) or a
    ``changes`` array (field/value notifications).
    """
    object: str
    entry: list[Entry] = Field(default_factory=list)


class FlatWebhookPayload(BaseModel):
    """``{"field": "messages", "value": {...}}`` envelope.

    Sent by the dashboard "Test" button and some subscriptions. The
    page has to be inferred from the value itself.
    """
    field: str
    value: MessagingEvent


# ============================================================================
# Internal Event
# ============================================================================

class InboundEvent(BaseModel):
    """A normalized inbound message, independent of the envelope it came in."""
    page_id: str
    sender_id: str
    recipient_id: str
    message_text: str | None = None
    attachments: list[Attachment] = Field(default_factory=list)
    is_echo: bool = False
    external_timestamp: datetime
    command_names: list[str] = Field(default_factory=list)
    message_id: str | None = None

    @property
    def image_url(self) -> str | None:
        """URL of the first image attachment."""
        for attachment in self.attachments:
            if attachment.type == "image" and attachment.url:
                return attachment.url
        return None

    @property
    def text(self) -> str | None:
        """Message text with invoked commands appended."""
        if not self.command_names:
            return self.message_text
        commands = f"[Commands: {', '.join(self.command_names)}]"
        return f"{self.message_text}\n{commands}" if self.message_text else commands


# ============================================================================
# Send API
# ============================================================================

class MessagingType(str, Enum):
    """Send API messaging types used by the console."""
    RESPONSE = "RESPONSE"
    MESSAGE_TAG = "MESSAGE_TAG"


HUMAN_AGENT_TAG = "HUMAN_AGENT"


class OutboundMessage(BaseModel):
    """Schema for a Send API request."""
    messaging_type: MessagingType = MessagingType.RESPONSE
    recipient: dict[str, str]
    message: dict[str, Any]
    tag: str | None = None

    @classmethod
    def text(cls, recipient_id: str, text: str, tag: str | None = None) -> "OutboundMessage":
        """Create a text message payload.

        Args:
            recipient_id: Page-scoped ID of the customer
            text: Message text content
            tag: Message tag; switches messaging_type to MESSAGE_TAG

        Returns:
            OutboundMessage instance ready for API call.
        """
        return cls._build(recipient_id, {"text": text}, tag)

    @classmethod
    def image(cls, recipient_id: str, url: str, tag: str | None = None) -> "OutboundMessage":
        """Create an image attachment payload fetched by Meta from ``url``."""
        message = {
            "attachment": {
                "type": "image",
                "payload": {"url": url, "is_reusable": True},
            }
        }
        return cls._build(recipient_id, message, tag)

    @classmethod
    def _build(cls, recipient_id: str, message: dict[str, Any], tag: str | None) -> "OutboundMessage":
        return cls(
            messaging_type=MessagingType.MESSAGE_TAG if tag else MessagingType.RESPONSE,
            recipient={"id": recipient_id},
            message=message,
            tag=tag,
        )

    def to_request(self) -> dict[str, Any]:
        """Request body; ``tag`` is only present when set."""
        return self.model_dump(mode="json", exclude_none=True)


class GraphError(BaseModel):
    """Error object returned by the Graph API."""
    message: str = ""
    type: str | None = None
    code: int | None = None
    error_subcode: int | None = None
    fbtrace_id: str | None = None


class Profile(BaseModel):
    """User profile fields readable with a page token."""
    first_name: str | None = None
    last_name: str | None = None
    profile_pic: str | None = None

    @property
    def full_name(self) -> str:
        """Display name; empty when the profile carries no name."""
        parts = [p.strip() for p in (self.first_name, self.last_name) if p and p.strip()]
        return " ".join(parts)
