"""Shared fixtures: in-memory database, fake Redis, fake Graph client and sockets."""

import os

# Settings are cached on first use, so the environment is prepared before
# anything from the application is imported.
os.environ.update(
    {
        "APP_ENV": "test",
        "DATABASE_URL": "sqlite+aiosqlite://",
        "MESSENGER_VERIFY_TOKEN": "test-verify-token",
        "MESSENGER_APP_SECRET": "",
        "PUBLIC_BASE_URL": "https://inbox.example.com",
        "RATE_LIMIT_ENABLED": "false",
        "APP_SECRET_KEY": "test-session-secret",
    }
)

import asyncio  # noqa: E402
from datetime import datetime, timezone  # noqa: E402
from typing import Any  # noqa: E402

import pytest  # noqa: E402
from fakeredis import aioredis as fake_aioredis  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from inbox.db.base import Base  # noqa: E402
import inbox.models  # noqa: E402,F401
from inbox.models.page import Page  # noqa: E402
from inbox.models.user import UserRole  # noqa: E402
from inbox.schemas.messenger import Profile  # noqa: E402
from inbox.services.fanout import ConnectionManager  # noqa: E402
from inbox.services.messenger import PlatformSendError  # noqa: E402
from inbox.services.pages import PageRegistry  # noqa: E402

PAGE_A = "111111"
PAGE_B = "222222"
PASSWORD = "secret-password"


# ============================================================================
# Fakes
# ============================================================================


class FakeGraphClient:
    """Records Send API and profile calls.

    ``send_errors`` are raised by successive sends, one per call, before
    sends start succeeding.
    """

    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []
        self.send_errors: list[PlatformSendError] = []
        self.profiles: dict[str, Profile | None] = {}
        self.profile_calls: list[str] = []

    async def _send(self, kind: str, access_token: str, recipient_id: str, body: str, tag: str | None):
        self.sent.append(
            {
                "kind": kind,
                "access_token": access_token,
                "recipient_id": recipient_id,
                "body": body,
                "tag": tag,
            }
        )
        if self.send_errors:
            raise self.send_errors.pop(0)
        return {"recipient_id": recipient_id, "message_id": f"m_{len(self.sent)}"}

    async def send_text(self, access_token: str, recipient_id: str, text: str, tag: str | None = None):
        return await self._send("text", access_token, recipient_id, text, tag)

    async def send_image(self, access_token: str, recipient_id: str, url: str, tag: str | None = None):
        return await self._send("image", access_token, recipient_id, url, tag)

    async def fetch_profile(self, access_token: str, user_id: str) -> Profile | None:
        self.profile_calls.append(user_id)
        return self.profiles.get(user_id)

    async def close(self) -> None:
        pass


class FakeSocket:
    """Stands in for a WebSocket in ConnectionManager tests."""

    def __init__(self, fail: bool = False) -> None:
        self.sent: list[dict[str, Any]] = []
        self.fail = fail

    async def send_json(self, data: dict[str, Any]) -> None:
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(data)

    def types(self) -> list[str]:
        return [event["type"] for event in self.sent]


class FakePushNotifier:
    """Records push notifications instead of calling Firebase."""

    def __init__(self, fail: bool = False) -> None:
        self.sent: list[dict[str, Any]] = []
        self.fail = fail

    async def send(self, tokens: list[str], title: str, body: str, data: dict[str, str] | None = None) -> int:
        if self.fail:
            raise RuntimeError("push unavailable")
        self.sent.append({"tokens": tokens, "title": title, "body": body, "data": data})
        return len(tokens)


class StalledSocket(FakeSocket):
    """A client that never finishes receiving."""

    async def send_json(self, data: dict[str, Any]) -> None:
        await asyncio.sleep(3600)


# ============================================================================
# Infrastructure
# ============================================================================


@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
async def redis_client():
    client = fake_aioredis.FakeRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def graph() -> FakeGraphClient:
    return FakeGraphClient()


@pytest.fixture
def push() -> FakePushNotifier:
    return FakePushNotifier()


@pytest.fixture
def manager() -> ConnectionManager:
    return ConnectionManager(send_timeout=0.2)


# ============================================================================
# Data
# ============================================================================


@pytest.fixture
async def pages(db) -> list[Page]:
    """Two registered pages."""
    registry = PageRegistry(db)
    await registry.upsert_page(PAGE_A, "Page A", "token-a")
    await registry.upsert_page(PAGE_B, "Page B", "token-b")
    await db.commit()
    return [await registry.get_page(PAGE_A), await registry.get_page(PAGE_B)]


@pytest.fixture
async def users(db, pages) -> dict[str, Any]:
    """Superadmin (id 1), an agent on page A and an agent on page B."""
    registry = PageRegistry(db)
    admin = await registry.create_user("admin", PASSWORD, UserRole.ADMIN)
    agent_a = await registry.create_user("agent-a", PASSWORD)
    agent_b = await registry.create_user("agent-b", PASSWORD)
    await registry.assign_pages(agent_a.id, [PAGE_A])
    await registry.assign_pages(agent_b.id, [PAGE_B])
    await db.commit()
    return {"admin": admin, "agent_a": agent_a, "agent_b": agent_b}


def messaging_payload(
    page_id: str,
    sender_id: str,
    text: str | None = "hello",
    mid: str = "mid.1",
    timestamp: int = 1_700_000_000_000,
    is_echo: bool = False,
    attachments: list[dict[str, Any]] | None = None,
) -> dict[str, Any]:
    """``object: page`` delivery with one messaging item."""
    message: dict[str, Any] = {"mid": mid}
    if text is not None:
        message["text"] = text
    if is_echo:
        message["is_echo"] = True
    if attachments:
        message["attachments"] = attachments

    recipient_id = sender_id if is_echo else page_id
    return {
        "object": "page",
        "entry": [
            {
                "id": page_id,
                "time": timestamp,
                "messaging": [
                    {
                        "sender": {"id": page_id if is_echo else sender_id},
                        "recipient": {"id": recipient_id},
                        "timestamp": timestamp,
                        "message": message,
                    }
                ],
            }
        ],
    }


def utc_naive(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; compare in naive UTC."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


# ============================================================================
# API client
# ============================================================================


@pytest.fixture
async def app(session_factory, graph, redis_client, manager, push):
    from inbox.api.deps import get_graph, get_push, get_redis, get_session_factory
    from inbox.db.session import get_db
    from inbox.main import app as fastapi_app

    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    fastapi_app.dependency_overrides[get_db] = override_get_db
    fastapi_app.dependency_overrides[get_session_factory] = lambda: session_factory
    fastapi_app.dependency_overrides[get_graph] = lambda: graph
    fastapi_app.dependency_overrides[get_push] = lambda: push
    fastapi_app.dependency_overrides[get_redis] = lambda: redis_client
    fastapi_app.state.connection_manager = manager
    fastapi_app.state.redis = redis_client

    yield fastapi_app

    fastapi_app.dependency_overrides.clear()


@pytest.fixture
async def client(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as client:
        yield client


async def login(client: AsyncClient, username: str) -> None:
    response = await client.post("/api/auth/login", json={"username": username, "password": PASSWORD})
    assert response.status_code == 200, response.text
