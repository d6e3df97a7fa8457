#!/usr/bin/env python3
"""Judicature Escrow — End-to-End Simulation.

Drives three scenarios with ClientBot, LawyerBot and AdminBot against the
real services, a simulated Stripe gateway and a log notification sink:

    Scenario 1: Happy Path
        - Lawyer proposes a payment request, client accepts and pays
        - Lawyer submits a deliverable, client accepts it
        - Client releases funds -> completed / released (fee 10%)

    Scenario 2: Decline, Retry, Rejected Deliverable
        - Client's first card is declined, order stays pending
        - Second card succeeds
        - Client rejects the first deliverable, lawyer resubmits, client accepts

    Scenario 3: Dispute and Refund
        - Client disputes a paid order; release is refused while disputed
        - Admin resolves for the client -> refunded / refunded

Usage:
    # Option A: PostgreSQL from DATABASE_URL:
    python simulation.py

    # Option B: SQLite in-memory (no Docker needed):
    python simulation.py --sqlite

    # Run a specific scenario:
    python simulation.py --sqlite --scenario 2
"""

from __future__ import annotations

import argparse
import asyncio
from dataclasses import dataclass
from typing import Any

# ---------------------------------------------------------------------------
# Configure structured logging BEFORE importing app modules
# ---------------------------------------------------------------------------
from judicature_escrow.logging_config import get_logger, setup_logging

setup_logging(log_level="INFO", json_logs=False)
logger = get_logger("simulation")

from judicature_escrow.domain.collaborators import Actor, UserIdentity  # noqa: E402
from judicature_escrow.domain.commands import (  # noqa: E402
    CreatePaymentRequest,
    ProceedWithPayment,
    RaiseDispute,
    ResolveDispute,
    RespondToRequest,
    ReviewDeliverable,
    SubmitDeliverable,
)
from judicature_escrow.domain.enums import (  # noqa: E402
    DisputeOutcome,
    RequestAction,
    ReviewDecision,
    Role,
    ServiceType,
)
from judicature_escrow.domain.exceptions import EscrowError, GatewayError  # noqa: E402
from judicature_escrow.domain.policy import EscrowPolicy  # noqa: E402
from judicature_escrow.infrastructure.notifications import LogNotificationSink  # noqa: E402
from judicature_escrow.infrastructure.user_directory import StaticUserDirectory  # noqa: E402
from judicature_escrow.services.escrow_service import EscrowService  # noqa: E402
from judicature_escrow.services.payment_gateway import StripeGateway  # noqa: E402
from judicature_escrow.services.payment_request_service import (  # noqa: E402
    PaymentRequestService,
)

# Module-level state
_engine = None
_session_factory = None
_gateway = StripeGateway(simulate=True)
_users = StaticUserDirectory(
    [
        UserIdentity(id="client-asha", role=Role.CLIENT, display_name="Asha"),
        UserIdentity(
            id="lawyer-vikram",
            role=Role.LAWYER,
            payout_account_ref="acct_sim_vikram",
            display_name="Vikram",
        ),
    ]
)
_policy = EscrowPolicy()


# ---------------------------------------------------------------------------
# Database lifecycle helpers
# ---------------------------------------------------------------------------
async def init_database(use_sqlite: bool = False) -> None:
    """Initialize database engine and create tables."""
    global _engine, _session_factory

    from judicature_escrow.infrastructure.database.engine import (
        build_engine,
        make_session_factory,
    )
    from judicature_escrow.infrastructure.database.orm_models import Base

    if use_sqlite:
        _engine = build_engine("sqlite+aiosqlite:///:memory:")
    else:
        from judicature_escrow.config import get_settings

        _engine = build_engine(get_settings().database_url)
    _session_factory = make_session_factory(_engine)

    async with _engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database.initialized", backend=_engine.dialect.name)


def get_session() -> Any:
    """Get a fresh database session."""
    if _session_factory is None:
        raise RuntimeError("Call init_database() first")
    return _session_factory()


async def shutdown_database() -> None:
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def services(session: Any) -> tuple[EscrowService, PaymentRequestService]:
    sink = LogNotificationSink()
    escrow = EscrowService(
        session, gateway=_gateway, users=_users, notifications=sink, policy=_policy
    )
    requests = PaymentRequestService(session, escrow=escrow, users=_users, notifications=sink)
    return escrow, requests


# ---------------------------------------------------------------------------
# Bots
# ---------------------------------------------------------------------------
@dataclass
class LawyerBot:
    """Simulated lawyer who proposes fees and delivers work."""

    user_id: str = "lawyer-vikram"

    @property
    def actor(self) -> Actor:
        return Actor(self.user_id, Role.LAWYER)

    async def propose(self, session: Any, client_id: str, amount: int) -> str:
        _, requests = services(session)
        request = await requests.create_request(
            CreatePaymentRequest(
                actor=self.actor,
                counterparty_id=client_id,
                amount=amount,
                service_type=ServiceType.CONTRACT_DRAFTING,
                description="Draft a commercial lease agreement for a retail unit.",
            )
        )
        logger.info("🟢 LAWYER: Payment request sent", request_id=request.request_id)
        return request.request_id

    async def deliver(self, session: Any, order_id: str, file_name: str) -> str:
        escrow, _ = services(session)
        deliverable = await escrow.submit_deliverable(
            SubmitDeliverable(
                actor=self.actor,
                order_id=order_id,
                file_ref=f"blob://deliverables/{order_id}/{file_name}",
                file_name=file_name,
            )
        )
        logger.info("🟢 LAWYER: Deliverable submitted", version=deliverable.version)
        return str(deliverable.id)


@dataclass
class ClientBot:
    """Simulated client who accepts terms, pays, reviews and releases."""

    user_id: str = "client-asha"

    @property
    def actor(self) -> Actor:
        return Actor(self.user_id, Role.CLIENT)

    async def accept(self, session: Any, request_id: str) -> None:
        _, requests = services(session)
        await requests.respond(
            RespondToRequest(actor=self.actor, request_id=request_id, action=RequestAction.ACCEPT)
        )
        logger.info("🔵 CLIENT: Request accepted", request_id=request_id)

    async def pay(self, session: Any, request_id: str, card: str) -> str | None:
        _, requests = services(session)
        try:
            order = await requests.proceed_with_payment(
                ProceedWithPayment(actor=self.actor, request_id=request_id, payment_method_ref=card)
            )
        except GatewayError as exc:
            logger.info("🔵 CLIENT: Card declined", reason_code=exc.reason_code)
            return None
        logger.info("🔵 CLIENT: Paid", order_id=order.order_id, status=order.status)
        return order.order_id

    async def review(
        self, session: Any, order_id: str, deliverable_id: str, accept: bool, notes: str | None = None
    ) -> None:
        escrow, _ = services(session)
        await escrow.review_deliverable(
            ReviewDeliverable(
                actor=self.actor,
                order_id=order_id,
                deliverable_id=deliverable_id,
                decision=ReviewDecision.ACCEPT if accept else ReviewDecision.REJECT,
                notes=notes,
            )
        )
        logger.info("🔵 CLIENT: Deliverable reviewed", accepted=accept)

    async def release(self, session: Any, order_id: str) -> None:
        escrow, _ = services(session)
        order = await escrow.release_funds(order_id, self.actor)
        logger.info("🔵 CLIENT: Funds released", transfer_id=order.transfer_id)

    async def dispute(self, session: Any, order_id: str, reason: str) -> None:
        escrow, _ = services(session)
        await escrow.raise_dispute(RaiseDispute(actor=self.actor, order_id=order_id, reason=reason))
        logger.info("🔵 CLIENT: Dispute raised", order_id=order_id)


@dataclass
class AdminBot:
    user_id: str = "admin-ops"

    async def resolve(self, session: Any, order_id: str, outcome: DisputeOutcome) -> None:
        escrow, _ = services(session)
        await escrow.resolve_dispute(
            ResolveDispute(
                actor=Actor(self.user_id, Role.ADMIN),
                order_id=order_id,
                outcome=outcome,
                notes="Reviewed both parties' evidence.",
            )
        )
        logger.info("🟣 ADMIN: Dispute resolved", outcome=str(outcome))


# ---------------------------------------------------------------------------
# Print helpers
# ---------------------------------------------------------------------------
def banner(text: str) -> None:
    """Print a prominent banner."""
    width = 70
    print("\n" + "=" * width)
    print(f"  {text}")
    print("=" * width + "\n")


def section(text: str) -> None:
    print(f"\n--- {text} ---\n")


async def print_order(session: Any, order_id: str) -> dict:
    escrow, _ = services(session)
    order = await escrow.get_order(order_id)
    status = await escrow.get_status(order_id)
    print(f"  Order {order.order_id}: {order.status} / {order.escrow_status}")
    print(
        f"  Amount {order.amount} {order.currency.upper()} = fee {order.platform_fee}"
        f" + lawyer {order.payee_net_amount}"
    )
    print(f"  Allowed next: {', '.join(status['allowed_events']) or '(terminal)'}")
    return status


async def print_audit_trail(session: Any, order_id: str) -> None:
    """Print the full audit trail for an order."""
    escrow, _ = services(session)
    events = await escrow.get_events(order_id)
    print("\n  📜 Audit Trail:")
    for i, evt in enumerate(events, 1):
        old = evt.old_status or "-"
        print(
            f"    {i}. [{evt.event_type}] {old} → {evt.new_status}"
            f" ({evt.escrow_status}) by {evt.actor}"
        )
    print()


# ===========================================================================
# Scenario 1: Happy Path
# ===========================================================================
async def scenario_1_happy_path() -> None:
    banner("SCENARIO 1: Happy Path — Request, Pay, Deliver, Release")
    lawyer, client = LawyerBot(), ClientBot()

    async with get_session() as session:
        section("Step 1: Lawyer proposes, client accepts")
        request_id = await lawyer.propose(session, client.user_id, amount=10000)
        await client.accept(session, request_id)

        section("Step 2: Client pays")
        order_id = await client.pay(session, request_id, card="pm_card_visa")
        assert order_id is not None

        section("Step 3: Lawyer delivers, client accepts")
        deliverable_id = await lawyer.deliver(session, order_id, "lease-agreement-v1.pdf")
        await client.review(session, order_id, deliverable_id, accept=True)

        section("Step 4: Client releases funds")
        await client.release(session, order_id)
        await client.release(session, order_id)  # no-op

        section("Final status")
        status = await print_order(session, order_id)
        assert status["status"] == "completed" and status["escrow_status"] == "released"
        await print_audit_trail(session, order_id)


# ===========================================================================
# Scenario 2: Decline, Retry, Rejected Deliverable
# ===========================================================================
async def scenario_2_decline_and_retry() -> None:
    banner("SCENARIO 2: Declined Card, Retry, Rejected Deliverable")
    lawyer, client = LawyerBot(), ClientBot()

    async with get_session() as session:
        section("Step 1: Setup (Propose -> Accept)")
        request_id = await lawyer.propose(session, client.user_id, amount=25000)
        await client.accept(session, request_id)

        section("Step 2: First card is declined")
        assert await client.pay(session, request_id, card="pm_card_chargeDeclined") is None

        section("Step 3: Client retries with another card")
        order_id = await client.pay(session, request_id, card="pm_card_mastercard")
        assert order_id is not None

        section("Step 4: First draft rejected, second accepted")
        first = await lawyer.deliver(session, order_id, "lease-draft-v1.pdf")
        await client.review(session, order_id, first, accept=False, notes="Missing rent escalation clause")
        second = await lawyer.deliver(session, order_id, "lease-draft-v2.pdf")
        await client.review(session, order_id, second, accept=True)
        await client.release(session, order_id)

        section("Final status")
        await print_order(session, order_id)
        await print_audit_trail(session, order_id)


# ===========================================================================
# Scenario 3: Dispute and Refund
# ===========================================================================
async def scenario_3_dispute_refund() -> None:
    banner("SCENARIO 3: Dispute Freezes Release, Admin Refunds Client")
    lawyer, client, admin = LawyerBot(), ClientBot(), AdminBot()

    async with get_session() as session:
        section("Step 1: Setup (Propose -> Accept -> Pay)")
        request_id = await lawyer.propose(session, client.user_id, amount=50000)
        await client.accept(session, request_id)
        order_id = await client.pay(session, request_id, card="pm_card_visa")
        assert order_id is not None

        section("Step 2: Client disputes")
        await client.dispute(session, order_id, "Lawyer unreachable for two weeks.")

        section("Step 3: Release is refused while disputed")
        try:
            await client.release(session, order_id)
        except EscrowError as exc:
            print(f"  🛡️  Release refused: {exc.code}")

        section("Step 4: Admin resolves for the client")
        await admin.resolve(session, order_id, DisputeOutcome.PAYER)

        section("Final status")
        status = await print_order(session, order_id)
        assert status["status"] == "refunded"
        await print_audit_trail(session, order_id)


# ===========================================================================
# Main
# ===========================================================================
SCENARIOS = {
    1: scenario_1_happy_path,
    2: scenario_2_decline_and_retry,
    3: scenario_3_dispute_refund,
}


async def run(scenario: int = 0, use_sqlite: bool = False) -> None:
    """Run one scenario, or all of them when ``scenario`` is 0."""
    await init_database(use_sqlite=use_sqlite)
    try:
        print("\n" + "⚖️ " * 35)
        print("  JUDICATURE ESCROW — SIMULATION")
        print(f"  Database: {'SQLite (in-memory)' if use_sqlite else 'PostgreSQL'}")
        print("  Gateway: Stripe (simulated)")
        print("⚖️ " * 35 + "\n")

        if scenario:
            if scenario not in SCENARIOS:
                print(f"Unknown scenario {scenario}. Available: 1, 2, 3")
                return
            await SCENARIOS[scenario]()
        else:
            for fn in SCENARIOS.values():
                await fn()

        print("\n" + "=" * 70)
        print("  ✅ SIMULATION COMPLETED")
        print("=" * 70 + "\n")
    finally:
        await shutdown_database()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Judicature Escrow Simulation")
    parser.add_argument(
        "--scenario",
        type=int,
        default=0,
        help="Run a specific scenario (1, 2, or 3). Default: run all.",
    )
    parser.add_argument(
        "--sqlite",
        action="store_true",
        help="Use SQLite in-memory instead of PostgreSQL (no Docker needed).",
    )
    args = parser.parse_args()
    asyncio.run(run(args.scenario, use_sqlite=args.sqlite))
