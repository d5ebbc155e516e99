"""Health check endpoints."""

import time
from datetime import datetime, timezone

from fastapi import APIRouter
from pydantic import BaseModel
from sqlalchemy import text

from inbox.api.deps import Connections, DbSession, RedisClient

router = APIRouter(tags=["Health"])


class HealthResponse(BaseModel):
    status: str
    timestamp: str


class ServiceHealth(BaseModel):
    """Status of one backing service."""

    status: str
    latency_ms: float | None = None
    error: str | None = None


class DetailedHealthResponse(BaseModel):
    status: str
    timestamp: str
    services: dict[str, ServiceHealth]
    socket_connections: int


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Liveness probe."""
    return HealthResponse(status="healthy", timestamp=_now())


@router.get("/health/detailed", response_model=DetailedHealthResponse)
async def detailed_health_check(
    db: DbSession,
    redis_client: RedisClient,
    manager: Connections,
) -> DetailedHealthResponse:
    """Database and Redis reachability plus the number of live sockets.

    Redis only backs inbound deduplication, so an unreachable Redis
    degrades the service instead of failing it.
    """
    services: dict[str, ServiceHealth] = {}

    started = time.perf_counter()
    try:
        await db.execute(text("SELECT 1"))
        services["database"] = ServiceHealth(
            status="healthy", latency_ms=round((time.perf_counter() - started) * 1000, 2)
        )
    except Exception as e:
        services["database"] = ServiceHealth(status="unhealthy", error=e.__class__.__name__)

    started = time.perf_counter()
    try:
        await redis_client.ping()
        services["redis"] = ServiceHealth(
            status="healthy", latency_ms=round((time.perf_counter() - started) * 1000, 2)
        )
    except Exception as e:
        services["redis"] = ServiceHealth(status="unhealthy", error=e.__class__.__name__)

    if services["database"].status != "healthy":
        overall = "unhealthy"
    elif services["redis"].status != "healthy":
        overall = "degraded"
    else:
        overall = "healthy"

    return DetailedHealthResponse(
        status=overall,
        timestamp=_now(),
        services=services,
        socket_connections=manager.connection_count,
    )
