"""Liveness and dependency health.

``/health`` always answers 200 so a load balancer can tell "process up" from
"process down"; the body says which backend is degraded.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable

from fastapi import APIRouter

from judicature_escrow.infrastructure.database.engine import ping_db
from judicature_escrow.infrastructure.redis_client import get_redis
from judicature_escrow.logging_config import get_logger
from judicature_escrow.schemas.common import HealthResponse

router = APIRouter(tags=["Health"])
logger = get_logger(__name__)

HEALTHY = "healthy"


async def _ping_redis() -> None:
    await get_redis().ping()


async def _probe(name: str, check: Callable[[], Awaitable[object]]) -> str:
    try:
        await check()
    except Exception as exc:
        logger.error("health.check_failed", backend=name, error=str(exc))
        return f"unhealthy: {exc}"
    return HEALTHY


@router.get("/health", response_model=HealthResponse, summary="Service and backend health")
async def health_check() -> HealthResponse:
    database = await _probe("database", ping_db)
    redis = await _probe("redis", _ping_redis)
    return HealthResponse(
        status="ok" if database == HEALTHY and redis == HEALTHY else "degraded",
        database=database,
        redis=redis,
    )
