"""Notification sinks and the best-effort dispatcher.

Notifications are user-facing side effects ("order paid", "funds released").
They are emitted after the financial state has been committed and can never
roll it back: a sink failure is logged and swallowed by the dispatcher.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from judicature_escrow.logging_config import get_logger

if TYPE_CHECKING:
    import redis.asyncio as aioredis

    from judicature_escrow.domain.collaborators import NotificationSink

logger = get_logger(__name__)


class RedisNotificationSink:
    """Publish notifications on a Redis pub/sub channel for the fan-out service."""

    def __init__(self, redis: aioredis.Redis, channel: str = "judicature.notifications") -> None:
        self._redis = redis
        self._channel = channel

    async def emit(self, event_name: str, payload: dict[str, Any]) -> None:
        message = json.dumps(
            {
                "event": event_name,
                "payload": payload,
                "emitted_at": datetime.now(UTC).isoformat(),
            },
            default=str,
        )
        receivers = await self._redis.publish(self._channel, message)
        logger.debug("notification.published", notification=event_name, receivers=receivers)


class LogNotificationSink:
    """Write notifications to the log. Used in development and simulation."""

    async def emit(self, event_name: str, payload: dict[str, Any]) -> None:
        logger.info("notification.emitted", notification=event_name, **payload)


class NotificationDispatcher:
    """Wraps a sink so that delivery failures never propagate."""

    def __init__(self, sink: NotificationSink) -> None:
        self._sink = sink

    async def notify(self, event_name: str, **payload: Any) -> bool:
        """Emit ``event_name``; return False (and log) if the sink failed."""
        try:
            await self._sink.emit(event_name, payload)
        except Exception as exc:
            logger.warning(
                "notification.failed",
                notification=event_name,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return False
        return True
