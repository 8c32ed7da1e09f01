"""System health endpoint — checks connectivity to the database and Redis."""

import time

from fastapi import APIRouter
from pydantic import BaseModel
from redis.asyncio import from_url
from sqlalchemy import text

from analyst.api.deps import Session
from analyst.core.config import get_settings

router = APIRouter(prefix="/system", tags=["system"])

settings = get_settings()


class ServiceHealth(BaseModel):
    status: str  # "ok", "error" or "skipped"
    detail: str | None = None
    latency_ms: int | None = None


class HealthResponse(BaseModel):
    status: str
    database: ServiceHealth
    redis: ServiceHealth
    dispatch_mode: str
    event_bus_backend: str


def _redis_required() -> bool:
    return settings.dispatch_mode == "arq" or settings.event_bus_backend == "redis"


@router.get("/health", response_model=HealthResponse)
async def system_health(session: Session) -> HealthResponse:
    """Check connectivity to the database and, when used, Redis."""
    db = await _check_database(session)
    rd = await _check_redis() if _redis_required() else ServiceHealth(status="skipped")

    overall = "ok" if all(s.status in ("ok", "skipped") for s in (db, rd)) else "degraded"
    return HealthResponse(
        status=overall,
        database=db,
        redis=rd,
        dispatch_mode=settings.dispatch_mode,
        event_bus_backend=settings.event_bus_backend,
    )


async def _check_database(session) -> ServiceHealth:
    try:
        t0 = time.monotonic()
        await session.execute(text("SELECT 1"))
        return ServiceHealth(status="ok", latency_ms=int((time.monotonic() - t0) * 1000))
    except Exception as exc:
        return ServiceHealth(status="error", detail=str(exc)[:200])


async def _check_redis() -> ServiceHealth:
    try:
        t0 = time.monotonic()
        redis = from_url(settings.redis_url, decode_responses=True)
        try:
            pong = await redis.ping()
        finally:
            await redis.aclose()
        return ServiceHealth(
            status="ok" if pong else "error",
            latency_ms=int((time.monotonic() - t0) * 1000),
        )
    except Exception as exc:
        return ServiceHealth(status="error", detail=str(exc)[:200])
