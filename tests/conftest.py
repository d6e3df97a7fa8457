"""Shared test fixtures for the Judicature escrow test suite.

Provides:
    - An in-memory SQLite database (aiosqlite) with the full schema
    - Recording fakes for the payment gateway, notification sink and Redis
    - Services wired to those fakes
    - Order factories that drive an order to a given lifecycle stage
"""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING, Any

import pytest

from judicature_escrow.domain.collaborators import Actor, UserIdentity
from judicature_escrow.domain.commands import CreateOrder, ReviewDeliverable, SubmitDeliverable
from judicature_escrow.domain.enums import ReviewDecision, Role
from judicature_escrow.domain.exceptions import GatewayError, GatewayOutcomeUnknownError
from judicature_escrow.domain.gateway_protocol import (
    GatewayEvent,
    IntentResult,
    RefundResult,
    TransferResult,
)
from judicature_escrow.domain.policy import EscrowPolicy
from judicature_escrow.infrastructure.database.engine import build_engine, make_session_factory
from judicature_escrow.infrastructure.database.orm_models import Base
from judicature_escrow.infrastructure.user_directory import StaticUserDirectory
from judicature_escrow.services.escrow_service import EscrowService
from judicature_escrow.services.payment_gateway import StripeGateway
from judicature_escrow.services.payment_request_service import PaymentRequestService

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from sqlalchemy.ext.asyncio import AsyncSession

    from judicature_escrow.infrastructure.database.orm_models import Order

CLIENT_ID = "client-1"
LAWYER_ID = "lawyer-1"
UNPAID_LAWYER_ID = "lawyer-2"
ADMIN_ID = "admin-1"
PAYOUT_ACCOUNT = "acct_lawyer_1"
WEBHOOK_SECRET = "whsec_test_secret"


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeGateway:
    """Records every call; honours idempotency keys like the real gateway.

    Set ``decline`` to a reason code to reject the next charge, or add an
    operation name to ``unknown`` to make it time out.
    """

    def __init__(self) -> None:
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.decline: str | None = None
        self.intent_status = "succeeded"
        self.refund_status = "succeeded"
        self.transfer_error: str | None = None
        self.unknown: set[str] = set()
        self._results: dict[str, Any] = {}
        self._counter = 0

    def calls_to(self, operation: str) -> list[dict[str, Any]]:
        return [kwargs for name, kwargs in self.calls if name == operation]

    def _next_id(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}_{self._counter}"

    async def create_and_confirm_intent(self, **kwargs: Any) -> IntentResult:
        self.calls.append(("intent", kwargs))
        if "intent" in self.unknown:
            raise GatewayOutcomeUnknownError("payment: timed out")
        key = kwargs["idempotency_key"]
        if key in self._results:
            return self._results[key]
        if self.decline:
            reason, self.decline = self.decline, None
            raise GatewayError("Your card was declined.", reason_code=reason)
        result = IntentResult(intent_id=self._next_id("pi"), status=self.intent_status)
        self._results[key] = result
        return result

    async def create_transfer(self, **kwargs: Any) -> TransferResult:
        self.calls.append(("transfer", kwargs))
        if "transfer" in self.unknown:
            raise GatewayOutcomeUnknownError("transfer: timed out")
        if self.transfer_error:
            raise GatewayError("transfer failed", reason_code=self.transfer_error)
        key = kwargs["idempotency_key"]
        if key not in self._results:
            self._results[key] = TransferResult(transfer_id=self._next_id("tr"))
        return self._results[key]

    async def refund(self, **kwargs: Any) -> RefundResult:
        self.calls.append(("refund", kwargs))
        if "refund" in self.unknown:
            raise GatewayOutcomeUnknownError("refund: timed out")
        key = kwargs["idempotency_key"]
        if key not in self._results:
            self._results[key] = RefundResult(
                refund_id=self._next_id("re"), status=self.refund_status
            )
        return self._results[key]

    def verify_webhook_signature(self, raw_body: bytes, signature: str, secret: str) -> GatewayEvent:
        # Real verification lives in StripeGateway and has its own tests.
        return StripeGateway(simulate=True).verify_webhook_signature(raw_body, signature, secret)


class FakeNotificationSink:
    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []
        self.fail = False

    async def emit(self, event_name: str, payload: dict[str, Any]) -> None:
        if self.fail:
            raise ConnectionError("notification service down")
        self.events.append((event_name, payload))

    def names(self) -> list[str]:
        return [name for name, _ in self.events]


class FakeRedis:
    """The handful of redis.asyncio calls the app makes, backed by a dict."""

    def __init__(self) -> None:
        self.store: dict[str, str] = {}
        self.expiries: dict[str, int | None] = {}
        self.published: list[tuple[str, str]] = []

    async def set(self, key: str, value: str, nx: bool = False, ex: int | None = None) -> bool | None:
        if nx and key in self.store:
            return None
        self.store[key] = value
        self.expiries[key] = ex
        return True

    async def get(self, key: str) -> str | None:
        return self.store.get(key)

    async def delete(self, key: str) -> int:
        return 1 if self.store.pop(key, None) is not None else 0

    async def publish(self, channel: str, message: str) -> int:
        self.published.append((channel, message))
        return 1

    async def ping(self) -> bool:
        return True


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest.fixture
async def engine() -> AsyncGenerator[Any, None]:
    engine = build_engine("sqlite+aiosqlite:///:memory:")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def session(engine: Any) -> AsyncGenerator[AsyncSession, None]:
    factory = make_session_factory(engine)
    async with factory() as session:
        yield session


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def sink() -> FakeNotificationSink:
    return FakeNotificationSink()


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def users() -> StaticUserDirectory:
    return StaticUserDirectory(
        [
            UserIdentity(id=CLIENT_ID, role=Role.CLIENT, email="client@example.com"),
            UserIdentity(id=LAWYER_ID, role=Role.LAWYER, payout_account_ref=PAYOUT_ACCOUNT),
            UserIdentity(id=UNPAID_LAWYER_ID, role=Role.LAWYER),
            UserIdentity(id=ADMIN_ID, role=Role.ADMIN),
        ]
    )


@pytest.fixture
def policy() -> EscrowPolicy:
    return EscrowPolicy()


@pytest.fixture
def client() -> Actor:
    return Actor(CLIENT_ID, Role.CLIENT)


@pytest.fixture
def lawyer() -> Actor:
    return Actor(LAWYER_ID, Role.LAWYER)


@pytest.fixture
def admin() -> Actor:
    return Actor(ADMIN_ID, Role.ADMIN)


@pytest.fixture
def stranger() -> Actor:
    return Actor("someone-else", Role.CLIENT)


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------


@pytest.fixture
def escrow(
    session: AsyncSession,
    gateway: FakeGateway,
    users: StaticUserDirectory,
    sink: FakeNotificationSink,
    policy: EscrowPolicy,
) -> EscrowService:
    return EscrowService(session, gateway=gateway, users=users, notifications=sink, policy=policy)


@pytest.fixture
def requests_service(
    session: AsyncSession,
    escrow: EscrowService,
    users: StaticUserDirectory,
    sink: FakeNotificationSink,
) -> PaymentRequestService:
    return PaymentRequestService(session, escrow=escrow, users=users, notifications=sink)


# ---------------------------------------------------------------------------
# Order factories
# ---------------------------------------------------------------------------


@pytest.fixture
def make_order(escrow: EscrowService, client: Actor, lawyer: Actor) -> Any:
    """Create an order and drive it to ``stage``.

    Stages: pending, paid, in_progress, completed.
    """

    async def _make(
        stage: str = "pending",
        amount: int = 10000,
        payee_id: str = LAWYER_ID,
    ) -> Order:
        order = await escrow.create_order(
            CreateOrder(
                actor=client,
                payer_id=CLIENT_ID,
                payee_id=payee_id,
                amount=amount,
                description="Review of a tenancy agreement",
            )
        )
        if stage == "pending":
            return order
        order = await escrow.capture_payment(order.order_id, client, "pm_card_visa")
        if stage == "paid":
            return order
        payee = Actor(payee_id, Role.LAWYER)
        deliverable = await escrow.submit_deliverable(
            SubmitDeliverable(
                actor=payee,
                order_id=order.order_id,
                file_ref=f"blob://{uuid.uuid4().hex}",
                file_name="opinion.pdf",
            )
        )
        if stage == "in_progress":
            return await escrow.get_order(order.order_id)
        await escrow.review_deliverable(
            ReviewDeliverable(
                actor=client,
                order_id=order.order_id,
                deliverable_id=str(deliverable.id),
                decision=ReviewDecision.ACCEPT,
            )
        )
        return await escrow.get_order(order.order_id)

    return _make
