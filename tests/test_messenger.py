"""Tests for the Messenger platform adapter."""

import hashlib
import hmac
import json
from datetime import datetime, timezone

import httpx
import pytest
from hypothesis import given, strategies as st

from conftest import messaging_payload
from inbox.schemas.messenger import GraphError, OutboundMessage
from inbox.services.messenger import (
    GraphClient,
    PlatformSendError,
    SendErrorKind,
    VerificationFailed,
    classify_send_error,
    normalize_event,
    parse_platform_timestamp,
    verify_inbound_challenge,
    verify_signature,
)


# ============================================================================
# Verification
# ============================================================================


class TestVerifyInboundChallenge:
    def test_returns_challenge_for_matching_token(self):
        assert verify_inbound_challenge("subscribe", "secret", "12345", "secret") == "12345"

    @pytest.mark.parametrize(
        "mode, token",
        [
            ("subscribe", "wrong"),
            ("unsubscribe", "secret"),
            (None, "secret"),
            ("subscribe", None),
            ("subscribe", "secret "),
        ],
    )
    def test_rejects_anything_else(self, mode, token):
        with pytest.raises(VerificationFailed):
            verify_inbound_challenge(mode, token, "12345", "secret")

    def test_empty_configured_token_never_verifies(self):
        with pytest.raises(VerificationFailed):
            verify_inbound_challenge("subscribe", "", "12345", "")


def test_verify_signature():
    body = b'{"object":"page"}'
    digest = hmac.new(b"app-secret", body, hashlib.sha256).hexdigest()

    assert verify_signature(body, f"sha256={digest}", "app-secret")
    assert not verify_signature(body, f"sha256={digest}", "other-secret")
    assert not verify_signature(body, digest, "app-secret")
    assert not verify_signature(body, "", "app-secret")


# ============================================================================
# Normalization
# ============================================================================


class TestNormalizeEvent:
    def test_messaging_entry(self):
        events = normalize_event(messaging_payload("P1", "U1", text="hi", mid="m.1"))

        assert len(events) == 1
        event = events[0]
        assert event.page_id == "P1"
        assert event.sender_id == "U1"
        assert event.recipient_id == "P1"
        assert event.text == "hi"
        assert event.message_id == "m.1"
        assert event.is_echo is False
        assert event.external_timestamp == datetime.fromtimestamp(1_700_000_000, tz=timezone.utc)

    def test_changes_entry(self):
        payload = {
            "object": "page",
            "entry": [
                {
                    "id": "P1",
                    "changes": [
                        {"field": "feed", "value": {"item": "post"}},
                        {
                            "field": "messages",
                            "value": {
                                "sender": {"id": "U1"},
                                "recipient": {"id": "P1"},
                                "timestamp": 1_700_000_000_000,
                                "message": {"mid": "m.2", "text": "from changes"},
                            },
                        },
                    ],
                }
            ],
        }

        events = normalize_event(payload)

        assert [(e.page_id, e.sender_id, e.text) for e in events] == [("P1", "U1", "from changes")]

    def test_flat_payload_uses_recipient_as_page(self):
        payload = {
            "field": "messages",
            "value": {
                "sender": {"id": "U1"},
                "recipient": {"id": "P1"},
                "timestamp": "1527459824",
                "message": {"mid": "test_mid", "text": "test"},
            },
        }

        [event] = normalize_event(payload)

        assert event.page_id == "P1"
        # Values below 10^10 are seconds
        assert event.external_timestamp == datetime.fromtimestamp(1527459824, tz=timezone.utc)

    def test_flat_payload_falls_back_to_sender(self):
        payload = {
            "field": "messages",
            "value": {"sender": {"id": "P9"}, "message": {"text": "x"}},
        }

        # Without a recipient the item cannot become an event, but the page
        # ID resolution itself must not raise
        assert normalize_event(payload) == []

    def test_flat_payload_without_any_id_is_dropped(self):
        payload = {"field": "messages", "value": {"message": {"text": "orphan"}}}

        assert normalize_event(payload) == []

    @pytest.mark.parametrize(
        "body",
        [
            {"object": "instagram", "entry": []},
            {"field": "feed", "value": {}},
            {"hello": "world"},
            [],
            "text",
            None,
            {"object": "page", "entry": "not-a-list"},
        ],
    )
    def test_unknown_shapes_produce_no_events(self, body):
        assert normalize_event(body) == []

    def test_receipts_are_skipped(self):
        payload = {
            "object": "page",
            "entry": [
                {
                    "id": "P1",
                    "messaging": [
                        {"sender": {"id": "U1"}, "recipient": {"id": "P1"}, "delivery": {"mids": ["m"]}},
                        {"sender": {"id": "U1"}, "recipient": {"id": "P1"}, "read": {"watermark": 1}},
                    ],
                }
            ],
        }

        assert normalize_event(payload) == []

    def test_echo_flag_is_kept(self):
        [event] = normalize_event(messaging_payload("P1", "U1", is_echo=True))

        assert event.is_echo is True
        assert event.sender_id == "P1"

    def test_commands_are_appended_to_text(self):
        payload = messaging_payload("P1", "U1", text="help me")
        payload["entry"][0]["messaging"][0]["message"]["commands"] = [
            {"name": "start"},
            {"name": "menu"},
        ]

        [event] = normalize_event(payload)

        assert event.text == "help me\n[Commands: start, menu]"

    def test_first_image_attachment_is_used(self):
        payload = messaging_payload(
            "P1",
            "U1",
            text=None,
            attachments=[
                {"type": "image", "payload": {"url": "https://cdn.example.com/a.jpg"}},
                {"type": "image", "payload": {"url": "https://cdn.example.com/b.jpg"}},
            ],
        )

        [event] = normalize_event(payload)

        assert event.image_url == "https://cdn.example.com/a.jpg"
        assert event.text is None

    def test_numeric_ids_are_strings(self):
        payload = messaging_payload("P1", "U1")
        payload["entry"][0]["id"] = 111
        payload["entry"][0]["messaging"][0]["sender"]["id"] = 222

        [event] = normalize_event(payload)

        assert event.page_id == "111"
        assert event.sender_id == "222"


@given(st.integers(min_value=0, max_value=9_999_999_999))
def test_small_timestamps_are_seconds(value):
    assert parse_platform_timestamp(value) == datetime.fromtimestamp(value, tz=timezone.utc)


@given(st.integers(min_value=10_000_000_000, max_value=4_102_444_800_000))
def test_large_timestamps_are_milliseconds(value):
    assert parse_platform_timestamp(value) == datetime.fromtimestamp(value / 1000, tz=timezone.utc)


def test_missing_timestamp_uses_local_clock():
    before = datetime.now(timezone.utc)
    parsed = parse_platform_timestamp(None)
    assert before <= parsed <= datetime.now(timezone.utc)


# ============================================================================
# Send errors
# ============================================================================


@pytest.mark.parametrize(
    "error, kind",
    [
        (GraphError(message="outside window", code=10, error_subcode=2018278), SendErrorKind.WINDOW_CLOSED),
        (
            GraphError(message="This message is sent outside of allowed window.", code=10),
            SendErrorKind.WINDOW_CLOSED,
        ),
        (GraphError(message="Permission denied", code=10), SendErrorKind.APPROVAL_MISSING),
        (GraphError(message="Requires pages_messaging", code=200), SendErrorKind.APPROVAL_MISSING),
        (GraphError(message="Not approved", code=230), SendErrorKind.APPROVAL_MISSING),
        (GraphError(message="App capability", code=3), SendErrorKind.APPROVAL_MISSING),
        (GraphError(message="Invalid OAuth access token", code=190), SendErrorKind.OTHER),
        (GraphError(message="Unknown"), SendErrorKind.OTHER),
    ],
)
def test_classify_send_error(error, kind):
    assert classify_send_error(error) == kind


def test_outbound_message_payloads():
    assert OutboundMessage.text("U1", "hi").to_request() == {
        "messaging_type": "RESPONSE",
        "recipient": {"id": "U1"},
        "message": {"text": "hi"},
    }
    tagged = OutboundMessage.image("U1", "https://x/y.png", tag="HUMAN_AGENT").to_request()
    assert tagged["messaging_type"] == "MESSAGE_TAG"
    assert tagged["tag"] == "HUMAN_AGENT"
    assert tagged["message"]["attachment"]["payload"] == {"url": "https://x/y.png", "is_reusable": True}


# ============================================================================
# Graph client
# ============================================================================


def _client(handler) -> GraphClient:
    return GraphClient(http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))


async def test_send_text_posts_to_send_api():
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json={"recipient_id": "U1", "message_id": "m.1"})

    client = _client(handler)
    result = await client.send_text("page-token", "U1", "hello")
    await client.close()

    assert result["message_id"] == "m.1"
    [request] = requests
    assert request.method == "POST"
    assert request.url.path.endswith("/me/messages")
    assert request.url.params["access_token"] == "page-token"
    assert json.loads(request.content) == {
        "messaging_type": "RESPONSE",
        "recipient": {"id": "U1"},
        "message": {"text": "hello"},
    }


async def test_send_error_is_classified():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            400,
            json={
                "error": {
                    "message": "(#10) This message is sent outside of allowed window.",
                    "type": "OAuthException",
                    "code": 10,
                    "error_subcode": 2018278,
                }
            },
        )

    client = _client(handler)
    with pytest.raises(PlatformSendError) as exc_info:
        await client.send_text("page-token", "U1", "hello")
    await client.close()

    error = exc_info.value
    assert error.kind == SendErrorKind.WINDOW_CLOSED
    assert error.code == 10
    assert error.subcode == 2018278
    assert error.to_dict()["error"] == "window_closed"


async def test_unparseable_error_body_is_other():
    client = _client(lambda request: httpx.Response(502, text="Bad gateway"))
    with pytest.raises(PlatformSendError) as exc_info:
        await client.send_image("page-token", "U1", "https://x/y.png")
    await client.close()

    assert exc_info.value.kind == SendErrorKind.OTHER
    assert "Bad gateway" in exc_info.value.message


async def test_transport_error_becomes_platform_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    client = _client(handler)
    with pytest.raises(PlatformSendError) as exc_info:
        await client.send_text("page-token", "U1", "hello")
    await client.close()

    assert exc_info.value.kind == SendErrorKind.OTHER


async def test_fetch_profile():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params["fields"] == "first_name,last_name,profile_pic"
        return httpx.Response(
            200, json={"first_name": "Ada", "last_name": "Lovelace", "profile_pic": "https://p/1.jpg"}
        )

    client = _client(handler)
    profile = await client.fetch_profile("page-token", "U1")
    await client.close()

    assert profile.full_name == "Ada Lovelace"
    assert profile.profile_pic == "https://p/1.jpg"


async def test_fetch_profile_failure_returns_none():
    client = _client(lambda request: httpx.Response(400, json={"error": {"message": "no"}}))
    assert await client.fetch_profile("page-token", "U1") is None
    await client.close()
