"""FastAPI dependency injection providers.

These are used with Depends() in route handlers to inject the caller's
identity, database sessions, collaborators, and the services built on them.
Tests replace any of them through ``app.dependency_overrides``.
"""

from __future__ import annotations

from functools import lru_cache
from typing import TYPE_CHECKING

from fastapi import Depends, Header

from judicature_escrow.config import Settings, get_settings
from judicature_escrow.domain.collaborators import Actor
from judicature_escrow.domain.enums import Role
from judicature_escrow.domain.exceptions import ValidationError
from judicature_escrow.infrastructure.database.engine import get_async_session
from judicature_escrow.infrastructure.notifications import (
    LogNotificationSink,
    NotificationDispatcher,
    RedisNotificationSink,
)
from judicature_escrow.infrastructure.redis_client import WebhookDedupStore, get_redis
from judicature_escrow.infrastructure.user_directory import HttpUserDirectory
from judicature_escrow.services.escrow_service import EscrowService
from judicature_escrow.services.payment_gateway import StripeGateway
from judicature_escrow.services.payment_request_service import PaymentRequestService
from judicature_escrow.services.webhook_service import WebhookService

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from sqlalchemy.ext.asyncio import AsyncSession

    from judicature_escrow.domain.collaborators import UserDirectory
    from judicature_escrow.domain.gateway_protocol import PaymentGateway


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an async database session for a request."""
    async for session in get_async_session():
        yield session


def get_app_settings() -> Settings:
    """Provide the application settings."""
    return get_settings()


async def get_actor(
    x_user_id: str = Header(..., min_length=1, max_length=64),
    x_user_role: str = Header(...),
) -> Actor:
    """Caller identity as asserted by the upstream auth layer."""
    try:
        role = Role(x_user_role.lower())
    except ValueError:
        raise ValidationError({"X-User-Role": "unknown role"}) from None
    return Actor(user_id=x_user_id, role=role)


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------


@lru_cache(maxsize=1)
def get_gateway() -> PaymentGateway:
    """One gateway per process; in simulation it holds the idempotency cache."""
    settings = get_settings()
    return StripeGateway(
        secret_key=settings.stripe_secret_key,
        simulate=settings.stripe_simulate,
        webhook_tolerance=settings.stripe_webhook_tolerance_seconds,
    )


def get_user_directory() -> UserDirectory:
    settings = get_settings()
    return HttpUserDirectory(
        settings.user_directory_url,
        timeout=settings.user_directory_timeout_seconds,
    )


def get_notifier() -> NotificationDispatcher:
    """Publish on Redis when it is up; the log sink keeps dev setups working without it."""
    settings = get_settings()
    try:
        redis = get_redis()
    except RuntimeError:
        return NotificationDispatcher(LogNotificationSink())
    return NotificationDispatcher(RedisNotificationSink(redis, settings.notifications_channel))


def get_dedup_store() -> WebhookDedupStore:
    return WebhookDedupStore.from_settings(get_redis(), get_settings())


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------


async def get_escrow_service(
    session: AsyncSession = Depends(get_db_session),
    gateway: PaymentGateway = Depends(get_gateway),
    users: UserDirectory = Depends(get_user_directory),
    notifier: NotificationDispatcher = Depends(get_notifier),
    settings: Settings = Depends(get_app_settings),
) -> EscrowService:
    """Provide an EscrowService bound to the current session."""
    return EscrowService(
        session,
        gateway=gateway,
        users=users,
        notifications=notifier,
        policy=settings.escrow_policy(),
    )


async def get_payment_request_service(
    escrow: EscrowService = Depends(get_escrow_service),
    users: UserDirectory = Depends(get_user_directory),
    notifier: NotificationDispatcher = Depends(get_notifier),
    session: AsyncSession = Depends(get_db_session),
) -> PaymentRequestService:
    return PaymentRequestService(session, escrow=escrow, users=users, notifications=notifier)


async def get_webhook_service(
    escrow: EscrowService = Depends(get_escrow_service),
    gateway: PaymentGateway = Depends(get_gateway),
    dedup: WebhookDedupStore = Depends(get_dedup_store),
    settings: Settings = Depends(get_app_settings),
) -> WebhookService:
    return WebhookService(gateway, dedup, escrow, settings.stripe_webhook_secret)
