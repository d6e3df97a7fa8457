"""ASGI entry point.

    uvicorn judicature_escrow.main:app --host 0.0.0.0 --port 8000

Startup connects the database (creating tables in development) and Redis.
Redis is optional at startup: without it notifications fall back to the log
sink, but the webhook endpoint cannot deduplicate and will fail.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

import redis.exceptions
from fastapi import FastAPI

from judicature_escrow.api.middleware import setup_middleware
from judicature_escrow.api.routes import health, orders, payment_requests, webhooks
from judicature_escrow.config import get_settings
from judicature_escrow.infrastructure.database.engine import close_db, init_db
from judicature_escrow.infrastructure.redis_client import close_redis, init_redis
from judicature_escrow.logging_config import get_logger, setup_logging

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

logger = get_logger(__name__)

API_VERSION = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    settings = get_settings()
    setup_logging(log_level=settings.app_log_level, json_logs=not settings.is_development)
    logger.info(
        "app.starting",
        env=settings.app_env,
        stripe_simulated=settings.stripe_simulate,
        fee_percent=settings.platform_fee_percent,
    )
    if not settings.stripe_webhook_secret:
        logger.warning("app.webhook_secret_missing", detail="all webhooks will be rejected")

    await init_db()
    try:
        await init_redis()
    except (redis.exceptions.ConnectionError, OSError) as exc:
        logger.warning("app.redis_unavailable", error=str(exc))

    logger.info("app.started", host=settings.app_host, port=settings.app_port)
    try:
        yield
    finally:
        await close_db()
        await close_redis()
        logger.info("app.stopped")


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(
        title="Judicature Escrow",
        summary="Escrow payments for legal services",
        version=API_VERSION,
        lifespan=lifespan,
        debug=settings.app_debug,
        docs_url="/docs" if settings.is_development else None,
        redoc_url=None,
    )
    setup_middleware(app)
    for module in (health, orders, payment_requests, webhooks):
        app.include_router(module.router)
    return app


app = create_app()
