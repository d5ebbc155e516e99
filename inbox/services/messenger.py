"""Messenger platform adapter.

This module isolates everything that is specific to the Meta Graph API:
- Webhook verification (subscribe challenge and payload signature)
- Normalizing the known webhook envelopes into ``InboundEvent``
- Sending text and image messages through the Send API
- Reading customer profiles

Send failures are always translated into ``PlatformSendError``. Retry
policy for sends belongs to the caller.

Reference: https://developers.facebook.com/docs/messenger-platform/reference/send-api
"""

import enum
import hashlib
import hmac
import logging
from datetime import datetime, timezone
from typing import Any

import httpx
from pydantic import ValidationError
from tenacity import (
    RetryError,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from inbox.config import get_settings
from inbox.schemas.messenger import (
    FlatWebhookPayload,
    GraphError,
    InboundEvent,
    MessagingEvent,
    OutboundMessage,
    PageWebhookPayload,
    Profile,
)

logger = logging.getLogger(__name__)

# Constants
SUBSCRIBE_MODE = "subscribe"
WINDOW_CLOSED_SUBCODE = 2018278
PERMISSION_ERROR_CODES = {3, 10, 200, 230}
SECONDS_TIMESTAMP_LIMIT = 10_000_000_000  # Smaller values are seconds, larger are ms


class MessengerError(Exception):
    """Base exception for Messenger adapter errors."""
    pass


class VerificationFailed(MessengerError):
    """Raised when the webhook subscribe challenge does not verify."""
    pass


class UnresolvablePageId(MessengerError):
    """Raised when no page ID can be derived from a webhook payload."""
    pass


class SendErrorKind(str, enum.Enum):
    """Why a send was rejected."""

    WINDOW_CLOSED = "window_closed"
    APPROVAL_MISSING = "approval_missing"
    OTHER = "other"


class PlatformSendError(MessengerError):
    """Raised when the Send API does not accept a message."""

    def __init__(
        self,
        kind: SendErrorKind,
        message: str,
        code: int | None = None,
        subcode: int | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.code = code
        self.subcode = subcode

    @property
    def user_message(self) -> str:
        """Explanation an agent can act on."""
        if self.kind == SendErrorKind.WINDOW_CLOSED:
            return (
                "The customer's 24-hour messaging window has closed and the "
                "message could not be delivered."
            )
        if self.kind == SendErrorKind.APPROVAL_MISSING:
            return (
                "This page is not approved for the requested messaging feature. "
                "Request the Human Agent permission for the app in the Meta dashboard."
            )
        return f"Meta rejected the message: {self.message}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.kind.value,
            "message": self.user_message,
            "details": self.message,
            "code": self.code,
        }


# ============================================================================
# Webhook Verification
# ============================================================================


def verify_inbound_challenge(
    mode: str | None,
    token: str | None,
    challenge: str | None,
    expected_token: str,
) -> str:
    """Verify the subscribe handshake and return the challenge.

    Raises:
        VerificationFailed: mode is not "subscribe", the token differs from
            ``expected_token`` or no token is configured.
    """
    if mode != SUBSCRIBE_MODE or not expected_token or token is None:
        raise VerificationFailed("Invalid verification request")

    if not hmac.compare_digest(token.encode("utf-8"), expected_token.encode("utf-8")):
        raise VerificationFailed("Verification token mismatch")

    return challenge or ""


def verify_signature(payload: bytes, signature: str, app_secret: str) -> bool:
    """Verify the X-Hub-Signature-256 header of a webhook delivery.

    Args:
        payload: Raw request body bytes
        signature: X-Hub-Signature-256 header value
        app_secret: Meta app secret

    Returns:
        True if signature is valid, False otherwise
    """
    if not signature or not signature.startswith("sha256="):
        logger.warning("Invalid signature format")
        return False

    expected_signature = signature[7:]  # Remove "sha256=" prefix

    computed_signature = hmac.new(
        key=app_secret.encode("utf-8"),
        msg=payload,
        digestmod=hashlib.sha256,
    ).hexdigest()

    return hmac.compare_digest(computed_signature, expected_signature)


# ============================================================================
# Normalization
# ============================================================================


def parse_platform_timestamp(value: int | float | str | None) -> datetime:
    """Convert a webhook timestamp to an aware UTC datetime.

    Meta sends milliseconds; the flat test envelope sends seconds.
    Missing or unreadable values fall back to the local clock.
    """
    if value is None or value == "":
        return datetime.now(timezone.utc)

    try:
        number = float(value)
    except (TypeError, ValueError):
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            logger.warning(f"Unreadable webhook timestamp: {value!r}")
            return datetime.now(timezone.utc)
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)

    if number < SECONDS_TIMESTAMP_LIMIT:
        return datetime.fromtimestamp(number, tz=timezone.utc)
    return datetime.fromtimestamp(number / 1000, tz=timezone.utc)


def _to_event(page_id: str, item: MessagingEvent) -> InboundEvent | None:
    """Build an InboundEvent from one messaging item, or None to skip it."""
    if item.message is None:
        return None

    if item.sender is None or item.recipient is None:
        logger.warning(f"Skipping message without sender/recipient for page {page_id}")
        return None

    message = item.message
    return InboundEvent(
        page_id=page_id,
        sender_id=item.sender.id,
        recipient_id=item.recipient.id,
        message_text=message.text,
        attachments=message.attachments or [],
        is_echo=message.is_echo,
        external_timestamp=parse_platform_timestamp(item.timestamp),
        command_names=[c.name for c in message.commands or []],
        message_id=message.mid,
    )


def _from_messaging_entries(payload: PageWebhookPayload) -> list[InboundEvent]:
    events: list[InboundEvent] = []
    for entry in payload.entry:
        if entry.messaging:
            for item in entry.messaging:
                event = _to_event(entry.id, item)
                if event:
                    events.append(event)
        elif entry.changes:
            for change in entry.changes:
                if change.field != "messages" or change.value is None:
                    logger.debug(f"Ignoring change field={change.field} for page {entry.id}")
                    continue
                event = _to_event(entry.id, change.value)
                if event:
                    events.append(event)
        else:
            logger.debug(f"Entry for page {entry.id} carries no messaging or changes")
    return events


def _from_flat_payload(payload: FlatWebhookPayload) -> list[InboundEvent]:
    value = payload.value
    page_id = value.recipient.id if value.recipient else None
    if not page_id and value.sender:
        logger.info("Flat webhook without recipient.id, using sender.id as page ID")
        page_id = value.sender.id

    if not page_id:
        raise UnresolvablePageId("Flat webhook payload carries neither recipient.id nor sender.id")

    event = _to_event(page_id, value)
    return [event] if event else []


def normalize_event(raw_body: Any) -> list[InboundEvent]:
    """Normalize a webhook body into zero or more InboundEvents.

    Known envelopes:
        1. ``{"object": "page", "entry": [{"id", "messaging": [...]}]}``
        2. ``{"object": "page", "entry": [{"id", "changes": [{"field": "messages", "value"}]}]}``
        3. ``{"field": "messages", "value": {...}}``

    Anything else (including a flat payload whose page cannot be
    determined) is dropped with a log line. Never raises.
    """
    if not isinstance(raw_body, dict):
        logger.warning(f"Dropping webhook body of type {type(raw_body).__name__}")
        return []

    try:
        if raw_body.get("object") == "page":
            return _from_messaging_entries(PageWebhookPayload.model_validate(raw_body))

        if raw_body.get("field") == "messages" and isinstance(raw_body.get("value"), dict):
            return _from_flat_payload(FlatWebhookPayload.model_validate(raw_body))
    except UnresolvablePageId as e:
        logger.warning(f"Dropping webhook payload: {e}")
        return []
    except ValidationError as e:
        logger.warning(f"Dropping malformed webhook payload: {e.error_count()} validation errors")
        return []

    logger.warning(
        f"Dropping webhook payload of unknown shape: object={raw_body.get('object')!r}, "
        f"field={raw_body.get('field')!r}"
    )
    return []


# ============================================================================
# Send API Errors
# ============================================================================


def classify_send_error(error: GraphError) -> SendErrorKind:
    """Map a Graph API error to the kind of send failure."""
    if error.error_subcode == WINDOW_CLOSED_SUBCODE:
        return SendErrorKind.WINDOW_CLOSED
    if error.code == 10 and "window" in error.message.lower():
        return SendErrorKind.WINDOW_CLOSED
    if error.code in PERMISSION_ERROR_CODES:
        return SendErrorKind.APPROVAL_MISSING
    return SendErrorKind.OTHER


def send_error_from_response(response: httpx.Response) -> PlatformSendError:
    """Build a PlatformSendError from a failed Send API response."""
    try:
        body = response.json()
        error = GraphError.model_validate(body.get("error") or {})
    except (ValueError, AttributeError, ValidationError):
        error = GraphError(message=response.text[:500])

    if not error.message:
        error.message = f"HTTP {response.status_code}"

    return PlatformSendError(
        kind=classify_send_error(error),
        message=error.message,
        code=error.code,
        subcode=error.error_subcode,
    )


# ============================================================================
# Graph Client
# ============================================================================


class GraphClient:
    """Async client for the Messenger Send API and profile lookups.

    Every call carries the page access token of the page it acts for.
    """

    def __init__(self, http_client: httpx.AsyncClient | None = None) -> None:
        """Initialize the Graph client.

        Args:
            http_client: Optional pre-built client (used by tests)
        """
        self._settings = get_settings()
        self._base_url = self._settings.graph_api_url.rstrip("/")
        self._client = http_client

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client for API calls."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self._settings.graph_timeout_seconds,
                headers={"Content-Type": "application/json"},
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def _send(self, access_token: str, message: OutboundMessage) -> dict[str, Any]:
        """POST one message to the Send API."""
        client = await self._get_client()

        try:
            response = await client.post(
                f"{self._base_url}/me/messages",
                params={"access_token": access_token},
                json=message.to_request(),
            )
        except httpx.RequestError as e:
            logger.error(f"Send API request error: {e.__class__.__name__}")
            raise PlatformSendError(
                kind=SendErrorKind.OTHER,
                message=f"Failed to connect to Meta: {e.__class__.__name__}",
            ) from e

        if response.is_error:
            error = send_error_from_response(response)
            logger.error(
                f"Send API error: status={response.status_code}, kind={error.kind.value}, "
                f"code={error.code}, subcode={error.subcode}, message={error.message}"
            )
            raise error

        return response.json()

    async def send_text(
        self,
        access_token: str,
        recipient_id: str,
        text: str,
        tag: str | None = None,
    ) -> dict[str, Any]:
        """Send a text message.

        Raises:
            PlatformSendError: The platform did not accept the message.
        """
        return await self._send(access_token, OutboundMessage.text(recipient_id, text, tag))

    async def send_image(
        self,
        access_token: str,
        recipient_id: str,
        url: str,
        tag: str | None = None,
    ) -> dict[str, Any]:
        """Send an image that Meta downloads from ``url``.

        Raises:
            PlatformSendError: The platform did not accept the message.
        """
        return await self._send(access_token, OutboundMessage.image(recipient_id, url, tag))

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
    )
    async def _get_profile(self, access_token: str, user_id: str) -> httpx.Response:
        client = await self._get_client()
        return await client.get(
            f"{self._base_url}/{user_id}",
            params={
                "fields": "first_name,last_name,profile_pic",
                "access_token": access_token,
            },
        )

    async def fetch_profile(self, access_token: str, user_id: str) -> Profile | None:
        """Read a customer's name and picture.

        Returns:
            The profile, or None on any failure.
        """
        try:
            response = await self._get_profile(access_token, user_id)
        except (RetryError, httpx.TransportError) as e:
            logger.warning(f"Profile request failed for {user_id}: {e.__class__.__name__}")
            return None

        if response.is_error:
            logger.warning(f"Profile lookup failed for {user_id}: status={response.status_code}")
            return None

        try:
            return Profile.model_validate(response.json())
        except (ValueError, ValidationError):
            logger.warning(f"Unreadable profile response for {user_id}")
            return None


# Singleton instance
_client_instance: GraphClient | None = None


def get_graph_client() -> GraphClient:
    """Get or create the global Graph client."""
    global _client_instance
    if _client_instance is None:
        _client_instance = GraphClient()
    return _client_instance


async def shutdown_graph_client() -> None:
    """Shutdown the global Graph client."""
    global _client_instance
    if _client_instance is not None:
        await _client_instance.close()
        _client_instance = None
