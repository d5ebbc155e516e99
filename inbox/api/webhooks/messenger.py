"""Messenger webhook endpoint for the Meta Graph API.

This module handles:
- GET: Webhook verification from Meta during setup
- POST: Receiving page messages

Reference: https://developers.facebook.com/docs/messenger-platform/webhooks
"""

import json
import logging
from typing import Annotated

from fastapi import APIRouter, BackgroundTasks, Depends, Header, Query, Request, Response
from fastapi.responses import PlainTextResponse

from inbox.api.deps import Connections, Graph, Push, RedisClient, SessionFactory
from inbox.config import get_settings
from inbox.services.ingestion import IngestionPipeline
from inbox.services.messenger import VerificationFailed, verify_inbound_challenge, verify_signature

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhook", tags=["Messenger"])

ACK_BODY = "EVENT_RECEIVED"


def get_pipeline(
    session_factory: SessionFactory,
    graph_client: Graph,
    redis_client: RedisClient,
    manager: Connections,
    push: Push,
) -> IngestionPipeline:
    return IngestionPipeline(
        session_factory=session_factory,
        graph_client=graph_client,
        redis_client=redis_client,
        manager=manager,
        push=push,
    )


Pipeline = Annotated[IngestionPipeline, Depends(get_pipeline)]


# ============================================================================
# GET - Webhook Verification
# ============================================================================


@router.get("", response_class=PlainTextResponse)
async def verify_webhook(
    hub_mode: Annotated[str | None, Query(alias="hub.mode")] = None,
    hub_verify_token: Annotated[str | None, Query(alias="hub.verify_token")] = None,
    hub_challenge: Annotated[str | None, Query(alias="hub.challenge")] = None,
) -> Response:
    """Verify the webhook with Meta.

    Meta sends a GET request with:
    - hub.mode: Should be "subscribe"
    - hub.verify_token: Must match MESSENGER_VERIFY_TOKEN
    - hub.challenge: A random string we must echo back

    Returns:
        The challenge as text/plain, or an empty 403.
    """
    settings = get_settings()

    logger.info(
        f"Webhook verification request: mode={hub_mode}, "
        f"token_provided={bool(hub_verify_token)}"
    )

    try:
        challenge = verify_inbound_challenge(
            hub_mode, hub_verify_token, hub_challenge, settings.messenger_verify_token
        )
    except VerificationFailed as e:
        logger.warning(f"Webhook verification failed: {e}")
        return Response(status_code=403)

    logger.info("Webhook verification successful")
    return PlainTextResponse(challenge)


# ============================================================================
# POST - Receive Messages
# ============================================================================


@router.post("", response_class=PlainTextResponse)
async def receive_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    pipeline: Pipeline,
    x_hub_signature_256: Annotated[str | None, Header()] = None,
) -> Response:
    """Receive Messenger webhook events.

    The delivery is acknowledged immediately; events are processed after
    the response has been sent. Payloads of unknown shape are
    acknowledged too, so Meta does not retry them.

    Security:
    - Verifies X-Hub-Signature-256 when MESSENGER_APP_SECRET is set
    """
    settings = get_settings()

    # Read raw body for signature verification
    raw_body = await request.body()

    if settings.messenger_app_secret:
        if not verify_signature(raw_body, x_hub_signature_256 or "", settings.messenger_app_secret):
            logger.warning("Webhook signature verification failed")
            return Response(status_code=403)

    try:
        payload = json.loads(raw_body)
    except ValueError:
        logger.warning(f"Dropping webhook with unparseable body ({len(raw_body)} bytes)")
        return PlainTextResponse(ACK_BODY)

    background_tasks.add_task(pipeline.handle_payload, payload)
    return PlainTextResponse(ACK_BODY)
