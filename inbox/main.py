"""FastAPI application entry point."""

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from collections.abc import AsyncIterator

import redis.asyncio as redis
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from starlette.middleware.sessions import SessionMiddleware

from inbox.api import auth, messages, notes, websocket
from inbox.api.admin import health, pages
from inbox.api.deps import limiter
from inbox.api.webhooks import messenger
from inbox.config import get_settings
from inbox.db.session import async_session_maker, dispose_engine
from inbox.services.fanout import ConnectionManager
from inbox.services.messenger import shutdown_graph_client
from inbox.services.retention import cleanup_loop

settings = get_settings()

logging.basicConfig(
    level=logging.DEBUG if settings.app_debug else logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan manager for startup/shutdown events."""
    # Startup: Initialize Redis connection pool
    app.state.redis = redis.from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
    )
    app.state.connection_manager = ConnectionManager(
        send_timeout=settings.socket_send_timeout_seconds
    )

    if not settings.messenger_verify_token:
        logger.warning("MESSENGER_VERIFY_TOKEN is not set; webhook verification will fail")

    cleanup_task = None
    if settings.message_cleanup_enabled and settings.message_retention_days > 0:
        cleanup_task = asyncio.create_task(cleanup_loop(async_session_maker))
        logger.info(
            f"Message cleanup scheduled every {settings.message_cleanup_interval_hours}h "
            f"(retention {settings.message_retention_days} days)"
        )

    yield

    # Shutdown: Stop background work and close connections
    if cleanup_task is not None:
        cleanup_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await cleanup_task
    await shutdown_graph_client()
    await app.state.redis.aclose()
    await dispose_engine()


app = FastAPI(
    title="Page Inbox",
    description="Shared Messenger inbox for Facebook Pages",
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/docs" if settings.is_development else None,
    redoc_url="/redoc" if settings.is_development else None,
)

# Add rate limiter to app state
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Signed session cookie, shared by HTTP routes and the socket endpoint
app.add_middleware(
    SessionMiddleware,
    secret_key=settings.app_secret_key,
    session_cookie=settings.session_cookie_name,
    max_age=settings.session_max_age_seconds,
    same_site="lax",
    https_only=settings.is_production,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health.router)
app.include_router(messenger.router)
app.include_router(auth.router)
app.include_router(messages.router)
app.include_router(pages.router)
app.include_router(notes.router)
app.include_router(websocket.router)
