"""Redis client for webhook deduplication and notification fan-out.

Usage:
    from judicature_escrow.infrastructure.redis_client import get_redis, close_redis

    redis = get_redis()
    store = WebhookDedupStore(redis, processed_ttl=30 * 86400, inflight_ttl=300)
"""

from __future__ import annotations

import enum
from typing import TYPE_CHECKING

import redis.asyncio as aioredis

from judicature_escrow.config import get_settings
from judicature_escrow.logging_config import get_logger

if TYPE_CHECKING:
    from judicature_escrow.config import Settings

logger = get_logger(__name__)

_redis_client: aioredis.Redis | None = None


async def init_redis() -> aioredis.Redis:
    """Initialize and return the Redis client. Called during app startup."""
    global _redis_client
    settings = get_settings()
    _redis_client = aioredis.from_url(
        settings.redis_url,
        decode_responses=True,
    )
    await _redis_client.ping()
    logger.info("redis.connected", url=settings.redis_url)
    return _redis_client


def get_redis() -> aioredis.Redis:
    """Return the Redis client singleton. Must call init_redis() first."""
    if _redis_client is None:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return _redis_client


async def close_redis() -> None:
    """Close the Redis connection. Called during app shutdown."""
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        logger.info("redis.disconnected")
        _redis_client = None


# --- Webhook Deduplication ---


class ClaimResult(enum.StrEnum):
    CLAIMED = "claimed"
    PROCESSED = "processed"
    IN_FLIGHT = "in_flight"


_INFLIGHT = "inflight"
_PROCESSED = "processed"


class WebhookDedupStore:
    """Exactly-once bookkeeping for gateway event ids.

    A claim is an atomic ``SET NX`` with a short TTL, so an event whose
    handler crashed becomes claimable again once the TTL lapses. A processed
    marker replaces the claim and is kept for the dedup window.
    """

    def __init__(
        self,
        redis: aioredis.Redis,
        processed_ttl: int = 30 * 86400,
        inflight_ttl: int = 300,
        prefix: str = "webhook:event",
    ) -> None:
        self._redis = redis
        self._processed_ttl = processed_ttl
        self._inflight_ttl = inflight_ttl
        self._prefix = prefix

    @classmethod
    def from_settings(cls, redis: aioredis.Redis, settings: Settings) -> WebhookDedupStore:
        return cls(
            redis,
            processed_ttl=settings.webhook_dedup_ttl_seconds,
            inflight_ttl=settings.webhook_inflight_ttl_seconds,
        )

    def _key(self, event_id: str) -> str:
        return f"{self._prefix}:{event_id}"

    async def claim(self, event_id: str) -> ClaimResult:
        """Try to take ownership of ``event_id``."""
        key = self._key(event_id)
        acquired = await self._redis.set(key, _INFLIGHT, nx=True, ex=self._inflight_ttl)
        if acquired:
            return ClaimResult.CLAIMED
        current = await self._redis.get(key)
        if current == _PROCESSED:
            return ClaimResult.PROCESSED
        if current is None:
            # The claim expired between SET and GET; one more attempt.
            acquired = await self._redis.set(key, _INFLIGHT, nx=True, ex=self._inflight_ttl)
            return ClaimResult.CLAIMED if acquired else ClaimResult.IN_FLIGHT
        return ClaimResult.IN_FLIGHT

    async def mark_processed(self, event_id: str) -> None:
        await self._redis.set(self._key(event_id), _PROCESSED, ex=self._processed_ttl)

    async def release(self, event_id: str) -> None:
        """Drop an in-flight claim so the gateway's redelivery can retry."""
        await self._redis.delete(self._key(event_id))

    async def is_processed(self, event_id: str) -> bool:
        return await self._redis.get(self._key(event_id)) == _PROCESSED
