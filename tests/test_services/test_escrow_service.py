"""Tests for the EscrowService order lifecycle.

Runs against an in-memory SQLite database with a recording fake gateway.
Each class covers one stage of the lifecycle; money movement tests assert
both the stored custody and the exact gateway calls that were made.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import pytest

from judicature_escrow.domain.collaborators import Actor
from judicature_escrow.domain.commands import (
    CreateOrder,
    RaiseDispute,
    RefundOrder,
    ResolveDispute,
    ReviewDeliverable,
    SubmitDeliverable,
)
from judicature_escrow.domain.enums import (
    DisputeOutcome,
    EventType,
    ReviewDecision,
    Role,
)
from judicature_escrow.domain.exceptions import (
    CaptureInProgressError,
    DeliverableNotFoundError,
    DuplicateOperationError,
    GatewayError,
    GatewayOutcomeUnknownError,
    InvalidStateTransitionError,
    OrderNotFoundError,
    PayoutAccountMissingError,
    PermissionDeniedError,
    ValidationError,
)

if TYPE_CHECKING:
    from judicature_escrow.services.escrow_service import EscrowService

CLIENT_ID = "client-1"
LAWYER_ID = "lawyer-1"
UNPAID_LAWYER_ID = "lawyer-2"
PAYOUT_ACCOUNT = "acct_lawyer_1"
SYSTEM = Actor.system("stripe")


async def _event_types(escrow: EscrowService, order_id: str) -> list[str]:
    return [e.event_type for e in await escrow.get_events(order_id)]


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------


class TestCreateOrder:
    @pytest.mark.asyncio
    async def test_new_order_is_pending_and_unfunded(
        self, escrow: EscrowService, client: Actor, sink: Any
    ) -> None:
        order = await escrow.create_order(
            CreateOrder(actor=client, payer_id=CLIENT_ID, payee_id=LAWYER_ID, amount=10000)
        )

        assert order.status == "pending"
        assert order.escrow_status == "unfunded"
        assert order.order_id.startswith("ORD-")
        assert order.platform_fee == 1000
        assert order.payee_net_amount == 9000
        assert await _event_types(escrow, order.order_id) == [EventType.ORDER_CREATED]
        assert sink.names() == ["order.created"]

    @pytest.mark.asyncio
    async def test_cannot_create_for_another_payer(
        self, escrow: EscrowService, stranger: Actor
    ) -> None:
        with pytest.raises(PermissionDeniedError):
            await escrow.create_order(
                CreateOrder(actor=stranger, payer_id=CLIENT_ID, payee_id=LAWYER_ID, amount=10000)
            )

    @pytest.mark.asyncio
    async def test_invalid_amount_is_rejected(self, escrow: EscrowService, client: Actor) -> None:
        with pytest.raises(ValidationError):
            await escrow.create_order(
                CreateOrder(actor=client, payer_id=CLIENT_ID, payee_id=LAWYER_ID, amount=10)
            )

    @pytest.mark.asyncio
    async def test_notification_failure_does_not_undo_order(
        self, escrow: EscrowService, client: Actor, sink: Any
    ) -> None:
        sink.fail = True
        order = await escrow.create_order(
            CreateOrder(actor=client, payer_id=CLIENT_ID, payee_id=LAWYER_ID, amount=10000)
        )
        stored = await escrow.get_order(order.order_id)
        assert stored.status == "pending"

    @pytest.mark.asyncio
    async def test_unknown_order(self, escrow: EscrowService) -> None:
        with pytest.raises(OrderNotFoundError):
            await escrow.get_order("ORD-NOPE-000000")


# ---------------------------------------------------------------------------
# Capture
# ---------------------------------------------------------------------------


class TestCapturePayment:
    @pytest.mark.asyncio
    async def test_successful_capture_holds_funds(
        self, escrow: EscrowService, make_order: Any, client: Actor, gateway: Any
    ) -> None:
        order = await make_order("pending")
        order = await escrow.capture_payment(order.order_id, client, "pm_card_visa")

        assert order.status == "paid"
        assert order.escrow_status == "held"
        assert order.payment_intent_id is not None
        call = gateway.calls_to("intent")[0]
        assert call["amount"] == 10000
        assert call["idempotency_key"] == f"{order.order_id}:capture:pm_card_visa"
        assert call["metadata"]["order_id"] == order.order_id

    @pytest.mark.asyncio
    async def test_second_capture_is_a_noop(
        self, escrow: EscrowService, make_order: Any, client: Actor, gateway: Any
    ) -> None:
        order = await make_order("paid")
        again = await escrow.capture_payment(order.order_id, client, "pm_card_visa")

        assert again.status == "paid"
        assert len(gateway.calls_to("intent")) == 1

    @pytest.mark.asyncio
    async def test_decline_keeps_order_pending(
        self, escrow: EscrowService, make_order: Any, client: Actor, gateway: Any, sink: Any
    ) -> None:
        order = await make_order("pending")
        gateway.decline = "card_declined"

        with pytest.raises(GatewayError) as exc_info:
            await escrow.capture_payment(order.order_id, client, "pm_card_chargeDeclined")

        assert exc_info.value.reason_code == "card_declined"
        assert exc_info.value.is_decline
        stored = await escrow.get_order(order.order_id)
        assert stored.status == "pending"
        assert stored.escrow_status == "unfunded"
        assert EventType.PAYMENT_FAILED in await _event_types(escrow, order.order_id)
        assert "payment.failed" in sink.names()

    @pytest.mark.asyncio
    async def test_retry_with_another_card_after_decline(
        self, escrow: EscrowService, make_order: Any, client: Actor, gateway: Any
    ) -> None:
        order = await make_order("pending")
        gateway.decline = "insufficient_funds"
        with pytest.raises(GatewayError):
            await escrow.capture_payment(order.order_id, client, "pm_card_chargeDeclined")

        order = await escrow.capture_payment(order.order_id, client, "pm_card_mastercard")

        assert order.status == "paid"
        keys = [c["idempotency_key"] for c in gateway.calls_to("intent")]
        assert keys[0] != keys[1]

    @pytest.mark.asyncio
    async def test_outcome_unknown_leaves_order_pending(
        self, escrow: EscrowService, make_order: Any, client: Actor, gateway: Any
    ) -> None:
        order = await make_order("pending")
        gateway.unknown.add("intent")

        with pytest.raises(GatewayOutcomeUnknownError):
            await escrow.capture_payment(order.order_id, client, "pm_card_visa")

        stored = await escrow.get_order(order.order_id)
        assert stored.status == "pending"
        assert EventType.PAYMENT_FAILED not in await _event_types(escrow, order.order_id)

    @pytest.mark.asyncio
    async def test_new_order_has_no_capture_key_until_charged(
        self, escrow: EscrowService, make_order: Any, client: Actor
    ) -> None:
        order = await make_order("pending")
        assert order.capture_idempotency_key is None

        order = await escrow.capture_payment(order.order_id, client, "pm_card_visa")
        assert order.capture_idempotency_key == f"{order.order_id}:capture:pm_card_visa"

    @pytest.mark.asyncio
    async def test_unknown_outcome_blocks_another_card(
        self, escrow: EscrowService, make_order: Any, client: Actor, gateway: Any
    ) -> None:
        order = await make_order("pending")
        gateway.unknown.add("intent")
        with pytest.raises(GatewayOutcomeUnknownError):
            await escrow.capture_payment(order.order_id, client, "pm_card_visa")
        key = f"{order.order_id}:capture:pm_card_visa"
        assert (await escrow.get_order(order.order_id)).capture_idempotency_key == key

        gateway.unknown.clear()
        with pytest.raises(CaptureInProgressError):
            await escrow.capture_payment(order.order_id, client, "pm_card_mastercard")
        assert len(gateway.calls_to("intent")) == 1

        # The same card replays the original attempt.
        order = await escrow.capture_payment(order.order_id, client, "pm_card_visa")
        assert order.status == "paid"
        assert {c["idempotency_key"] for c in gateway.calls_to("intent")} == {key}

    @pytest.mark.asyncio
    async def test_failed_intent_webhook_closes_the_attempt(
        self, escrow: EscrowService, make_order: Any, client: Actor, gateway: Any
    ) -> None:
        order = await make_order("pending")
        gateway.unknown.add("intent")
        with pytest.raises(GatewayOutcomeUnknownError):
            await escrow.capture_payment(order.order_id, client, "pm_card_visa")
        gateway.unknown.clear()

        # A failure for some other attempt leaves the open one in place.
        await escrow.record_payment_failure(
            order.order_id, "card_declined", SYSTEM, capture_key="something-else"
        )
        with pytest.raises(CaptureInProgressError):
            await escrow.capture_payment(order.order_id, client, "pm_card_mastercard")

        await escrow.record_payment_failure(
            order.order_id,
            "card_declined",
            SYSTEM,
            capture_key=f"{order.order_id}:capture:pm_card_visa",
        )
        order = await escrow.capture_payment(order.order_id, client, "pm_card_mastercard")

        assert order.status == "paid"
        assert order.capture_idempotency_key == f"{order.order_id}:capture:pm_card_mastercard"

    @pytest.mark.asyncio
    async def test_processing_intent_blocks_another_card(
        self, escrow: EscrowService, make_order: Any, client: Actor, gateway: Any
    ) -> None:
        order = await make_order("pending")
        gateway.intent_status = "processing"
        await escrow.capture_payment(order.order_id, client, "pm_card_visa")

        with pytest.raises(CaptureInProgressError):
            await escrow.capture_payment(order.order_id, client, "pm_card_mastercard")

    @pytest.mark.asyncio
    async def test_pending_intent_is_completed_by_webhook(
        self, escrow: EscrowService, make_order: Any, client: Actor, gateway: Any
    ) -> None:
        order = await make_order("pending")
        gateway.intent_status = "requires_action"

        order = await escrow.capture_payment(order.order_id, client, "pm_card_threeDSecure2Required")
        assert order.status == "pending"
        intent_id = order.payment_intent_id
        assert intent_id is not None

        order = await escrow.confirm_capture(order.order_id, intent_id, SYSTEM)
        assert order.status == "paid"
        assert order.escrow_status == "held"

        # Redelivery of the same event changes nothing.
        order = await escrow.confirm_capture(order.order_id, intent_id, SYSTEM)
        assert (await _event_types(escrow, order.order_id)).count(EventType.PAYMENT_CAPTURED) == 1

    @pytest.mark.asyncio
    async def test_only_the_payer_can_pay(
        self, escrow: EscrowService, make_order: Any, stranger: Actor
    ) -> None:
        order = await make_order("pending")
        with pytest.raises(PermissionDeniedError):
            await escrow.capture_payment(order.order_id, stranger, "pm_card_visa")

    @pytest.mark.asyncio
    async def test_cannot_pay_cancelled_order(
        self, escrow: EscrowService, make_order: Any, client: Actor, gateway: Any
    ) -> None:
        order = await make_order("pending")
        await escrow.cancel_order(order.order_id, client)

        with pytest.raises(InvalidStateTransitionError):
            await escrow.capture_payment(order.order_id, client, "pm_card_visa")
        assert gateway.calls_to("intent") == []


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


class TestCancelOrder:
    @pytest.mark.asyncio
    async def test_cancel_pending_order(
        self, escrow: EscrowService, make_order: Any, client: Actor
    ) -> None:
        order = await make_order("pending")
        order = await escrow.cancel_order(order.order_id, client, "Found another lawyer")

        assert order.status == "cancelled"
        assert order.escrow_status == "unfunded"
        assert order.cancellation_reason == "Found another lawyer"

    @pytest.mark.asyncio
    async def test_cancel_twice_is_a_noop(
        self, escrow: EscrowService, make_order: Any, client: Actor
    ) -> None:
        order = await make_order("pending")
        await escrow.cancel_order(order.order_id, client)
        await escrow.cancel_order(order.order_id, client)

        events = await _event_types(escrow, order.order_id)
        assert events.count(EventType.ORDER_CANCELLED) == 1

    @pytest.mark.asyncio
    async def test_paid_order_cannot_be_cancelled(
        self, escrow: EscrowService, make_order: Any, client: Actor
    ) -> None:
        order = await make_order("paid")
        with pytest.raises(InvalidStateTransitionError):
            await escrow.cancel_order(order.order_id, client)

    @pytest.mark.asyncio
    async def test_payee_cannot_cancel(
        self, escrow: EscrowService, make_order: Any, lawyer: Actor
    ) -> None:
        order = await make_order("pending")
        with pytest.raises(PermissionDeniedError):
            await escrow.cancel_order(order.order_id, lawyer)

    @pytest.mark.asyncio
    async def test_late_capture_on_cancelled_order_is_flagged(
        self, escrow: EscrowService, make_order: Any, client: Actor, sink: Any
    ) -> None:
        order = await make_order("pending")
        await escrow.cancel_order(order.order_id, client)

        order = await escrow.confirm_capture(order.order_id, "pi_late", SYSTEM)

        assert order.status == "cancelled"
        assert order.needs_attention
        assert "pi_late" in order.attention_reason
        assert "payment.orphaned" in sink.names()


# ---------------------------------------------------------------------------
# Work and deliverables
# ---------------------------------------------------------------------------


class TestDeliverables:
    @pytest.mark.asyncio
    async def test_start_work(self, escrow: EscrowService, make_order: Any, lawyer: Actor) -> None:
        order = await make_order("paid")
        order = await escrow.start_work(order.order_id, lawyer)
        assert order.status == "in_progress"
        assert order.escrow_status == "held"

    @pytest.mark.asyncio
    async def test_only_payee_starts_work(
        self, escrow: EscrowService, make_order: Any, client: Actor
    ) -> None:
        order = await make_order("paid")
        with pytest.raises(PermissionDeniedError):
            await escrow.start_work(order.order_id, client)

    @pytest.mark.asyncio
    async def test_cannot_deliver_before_payment(
        self, escrow: EscrowService, make_order: Any, lawyer: Actor
    ) -> None:
        order = await make_order("pending")
        with pytest.raises(InvalidStateTransitionError):
            await escrow.submit_deliverable(
                SubmitDeliverable(
                    actor=lawyer, order_id=order.order_id, file_ref="blob://a", file_name="a.pdf"
                )
            )

    @pytest.mark.asyncio
    async def test_versions_increase_and_rejection_keeps_work_open(
        self, escrow: EscrowService, make_order: Any, lawyer: Actor, client: Actor
    ) -> None:
        order = await make_order("paid")
        first = await escrow.submit_deliverable(
            SubmitDeliverable(
                actor=lawyer, order_id=order.order_id, file_ref="blob://1", file_name="v1.pdf"
            )
        )
        rejected = await escrow.review_deliverable(
            ReviewDeliverable(
                actor=client,
                order_id=order.order_id,
                deliverable_id=str(first.id),
                decision=ReviewDecision.REJECT,
                notes="Please cite the 2023 amendment",
            )
        )
        second = await escrow.submit_deliverable(
            SubmitDeliverable(
                actor=lawyer, order_id=order.order_id, file_ref="blob://2", file_name="v2.pdf"
            )
        )

        assert first.version == 1
        assert second.version == 2
        assert rejected.status == "rejected"
        assert rejected.review_notes == "Please cite the 2023 amendment"
        assert (await escrow.get_order(order.order_id)).status == "in_progress"

    @pytest.mark.asyncio
    async def test_accepting_completes_the_order_but_keeps_funds(
        self, escrow: EscrowService, make_order: Any
    ) -> None:
        order = await make_order("completed")
        assert order.status == "completed"
        assert order.escrow_status == "held"
        assert order.completed_at is not None

    @pytest.mark.asyncio
    async def test_reviewed_deliverable_cannot_be_reviewed_again(
        self, escrow: EscrowService, make_order: Any, client: Actor, lawyer: Actor
    ) -> None:
        order = await make_order("completed")
        [deliverable] = await escrow.list_deliverables(order.order_id, lawyer)
        with pytest.raises(InvalidStateTransitionError):
            await escrow.review_deliverable(
                ReviewDeliverable(
                    actor=client,
                    order_id=order.order_id,
                    deliverable_id=str(deliverable.id),
                    decision=ReviewDecision.ACCEPT,
                )
            )

    @pytest.mark.asyncio
    async def test_only_payer_reviews(
        self, escrow: EscrowService, make_order: Any, lawyer: Actor
    ) -> None:
        order = await make_order("in_progress")
        [deliverable] = await escrow.list_deliverables(order.order_id, lawyer)
        with pytest.raises(PermissionDeniedError):
            await escrow.review_deliverable(
                ReviewDeliverable(
                    actor=lawyer,
                    order_id=order.order_id,
                    deliverable_id=str(deliverable.id),
                    decision=ReviewDecision.ACCEPT,
                )
            )

    @pytest.mark.asyncio
    async def test_unknown_deliverable(
        self, escrow: EscrowService, make_order: Any, client: Actor
    ) -> None:
        order = await make_order("in_progress")
        with pytest.raises(DeliverableNotFoundError):
            await escrow.review_deliverable(
                ReviewDeliverable(
                    actor=client,
                    order_id=order.order_id,
                    deliverable_id="not-a-uuid",
                    decision=ReviewDecision.ACCEPT,
                )
            )

    @pytest.mark.asyncio
    async def test_payee_withdraws_pending_deliverable(
        self, escrow: EscrowService, make_order: Any, lawyer: Actor
    ) -> None:
        order = await make_order("in_progress")
        [deliverable] = await escrow.list_deliverables(order.order_id, lawyer)

        await escrow.delete_deliverable(order.order_id, str(deliverable.id), lawyer)

        assert await escrow.list_deliverables(order.order_id, lawyer) == []
        assert EventType.DELIVERABLE_DELETED in await _event_types(escrow, order.order_id)


# ---------------------------------------------------------------------------
# Release
# ---------------------------------------------------------------------------


class TestReleaseFunds:
    @pytest.mark.asyncio
    async def test_release_transfers_payee_share(
        self, escrow: EscrowService, make_order: Any, client: Actor, gateway: Any, sink: Any
    ) -> None:
        order = await make_order("completed")
        order = await escrow.release_funds(order.order_id, client)

        assert order.status == "completed"
        assert order.escrow_status == "released"
        assert order.transfer_id is not None
        [call] = gateway.calls_to("transfer")
        assert call["amount"] == 9000
        assert call["destination_account"] == PAYOUT_ACCOUNT
        assert call["idempotency_key"] == f"{order.order_id}:release:1"
        assert "funds.released" in sink.names()

    @pytest.mark.asyncio
    async def test_second_release_is_a_noop(
        self, escrow: EscrowService, make_order: Any, client: Actor, gateway: Any
    ) -> None:
        order = await make_order("completed")
        await escrow.release_funds(order.order_id, client)
        await escrow.release_funds(order.order_id, client)

        assert len(gateway.calls_to("transfer")) == 1
        events = await _event_types(escrow, order.order_id)
        assert events.count(EventType.FUNDS_RELEASED) == 1

    @pytest.mark.asyncio
    async def test_full_audit_trail(
        self, escrow: EscrowService, make_order: Any, client: Actor
    ) -> None:
        order = await make_order("completed")
        await escrow.release_funds(order.order_id, client)

        assert await _event_types(escrow, order.order_id) == [
            EventType.ORDER_CREATED,
            EventType.PAYMENT_CAPTURED,
            EventType.DELIVERABLE_SUBMITTED,
            EventType.DELIVERABLE_ACCEPTED,
            EventType.RELEASE_INITIATED,
            EventType.FUNDS_RELEASED,
        ]

    @pytest.mark.asyncio
    async def test_cannot_release_before_completion(
        self, escrow: EscrowService, make_order: Any, client: Actor, gateway: Any
    ) -> None:
        order = await make_order("in_progress")
        with pytest.raises(InvalidStateTransitionError):
            await escrow.release_funds(order.order_id, client)
        assert gateway.calls_to("transfer") == []

    @pytest.mark.asyncio
    async def test_payee_cannot_release(
        self, escrow: EscrowService, make_order: Any, lawyer: Actor
    ) -> None:
        order = await make_order("completed")
        with pytest.raises(PermissionDeniedError):
            await escrow.release_funds(order.order_id, lawyer)

    @pytest.mark.asyncio
    async def test_missing_payout_account(
        self, escrow: EscrowService, make_order: Any, client: Actor, gateway: Any
    ) -> None:
        order = await make_order("completed", payee_id=UNPAID_LAWYER_ID)
        with pytest.raises(PayoutAccountMissingError):
            await escrow.release_funds(order.order_id, client)

        stored = await escrow.get_order(order.order_id)
        assert stored.escrow_status == "held"
        assert gateway.calls_to("transfer") == []

    @pytest.mark.asyncio
    async def test_rejected_transfer_returns_funds_to_custody(
        self, escrow: EscrowService, make_order: Any, client: Actor, gateway: Any
    ) -> None:
        order = await make_order("completed")
        gateway.transfer_error = "insufficient_capabilities_for_transfer"

        with pytest.raises(GatewayError):
            await escrow.release_funds(order.order_id, client)

        stored = await escrow.get_order(order.order_id)
        assert stored.status == "completed"
        assert stored.escrow_status == "held"
        assert EventType.RELEASE_FAILED in await _event_types(escrow, order.order_id)

    @pytest.mark.asyncio
    async def test_unknown_transfer_outcome_settled_by_webhook(
        self, escrow: EscrowService, make_order: Any, client: Actor, gateway: Any
    ) -> None:
        order = await make_order("completed")
        gateway.unknown.add("transfer")

        with pytest.raises(GatewayOutcomeUnknownError):
            await escrow.release_funds(order.order_id, client)
        assert (await escrow.get_order(order.order_id)).escrow_status == "releasing"

        with pytest.raises(DuplicateOperationError):
            await escrow.release_funds(order.order_id, client)

        order = await escrow.reconcile_transfer_paid(order.order_id, "tr_webhook", SYSTEM)
        assert order.escrow_status == "released"
        assert order.transfer_id == "tr_webhook"

    @pytest.mark.asyncio
    async def test_admin_redrives_stuck_release(
        self, escrow: EscrowService, make_order: Any, client: Actor, admin: Actor, gateway: Any
    ) -> None:
        order = await make_order("completed")
        gateway.unknown.add("transfer")
        with pytest.raises(GatewayOutcomeUnknownError):
            await escrow.release_funds(order.order_id, client)

        gateway.unknown.clear()
        order = await escrow.release_funds(order.order_id, admin)

        assert order.escrow_status == "released"
        keys = {c["idempotency_key"] for c in gateway.calls_to("transfer")}
        assert keys == {f"{order.order_id}:release:1"}

    @pytest.mark.asyncio
    async def test_reversed_transfer_flags_order(
        self, escrow: EscrowService, make_order: Any, client: Actor
    ) -> None:
        order = await make_order("completed")
        order = await escrow.release_funds(order.order_id, client)

        order = await escrow.reconcile_transfer_failed(
            order.order_id, order.transfer_id, "reversed", SYSTEM
        )

        assert order.escrow_status == "held"
        assert order.needs_attention

    @pytest.mark.asyncio
    async def test_release_after_reversal_makes_a_new_transfer(
        self, escrow: EscrowService, make_order: Any, client: Actor, gateway: Any
    ) -> None:
        order = await make_order("completed")
        order = await escrow.release_funds(order.order_id, client)
        first_transfer, first_released_at = order.transfer_id, order.released_at

        await escrow.reconcile_transfer_failed(order.order_id, first_transfer, "reversed", SYSTEM)
        order = await escrow.release_funds(order.order_id, client)

        assert order.escrow_status == "released"
        assert order.transfer_id != first_transfer
        assert order.released_at == first_released_at
        keys = [c["idempotency_key"] for c in gateway.calls_to("transfer")]
        assert keys == [f"{order.order_id}:release:1", f"{order.order_id}:release:2"]

    @pytest.mark.asyncio
    async def test_release_after_rejected_transfer_uses_a_fresh_key(
        self, escrow: EscrowService, make_order: Any, client: Actor, gateway: Any
    ) -> None:
        order = await make_order("completed")
        gateway.transfer_error = "account_closed"
        with pytest.raises(GatewayError):
            await escrow.release_funds(order.order_id, client)

        gateway.transfer_error = None
        order = await escrow.release_funds(order.order_id, client)

        assert order.escrow_status == "released"
        keys = [c["idempotency_key"] for c in gateway.calls_to("transfer")]
        assert keys == [f"{order.order_id}:release:1", f"{order.order_id}:release:2"]

    @pytest.mark.asyncio
    async def test_events_for_an_earlier_attempt_are_ignored(
        self, escrow: EscrowService, make_order: Any, client: Actor, gateway: Any
    ) -> None:
        order = await make_order("completed")
        gateway.transfer_error = "account_closed"
        with pytest.raises(GatewayError):
            await escrow.release_funds(order.order_id, client)

        order = await escrow.reconcile_transfer_paid(order.order_id, "tr_old", SYSTEM, attempt=1)

        assert order.escrow_status == "held"
        assert order.transfer_id is None
        assert order.release_attempt == 2


# ---------------------------------------------------------------------------
# Disputes
# ---------------------------------------------------------------------------


class TestDisputes:
    @pytest.mark.asyncio
    async def test_dispute_freezes_funds(
        self, escrow: EscrowService, make_order: Any, client: Actor
    ) -> None:
        order = await make_order("paid")
        order = await escrow.raise_dispute(
            RaiseDispute(actor=client, order_id=order.order_id, reason="No response in two weeks")
        )

        assert order.status == "disputed"
        assert order.escrow_status == "disputed"
        assert order.disputed_by == CLIENT_ID

        with pytest.raises(InvalidStateTransitionError):
            await escrow.release_funds(order.order_id, client)

    @pytest.mark.asyncio
    async def test_payee_can_dispute_completed_order(
        self, escrow: EscrowService, make_order: Any, lawyer: Actor
    ) -> None:
        order = await make_order("completed")
        order = await escrow.raise_dispute(
            RaiseDispute(actor=lawyer, order_id=order.order_id, reason="Client refuses to release")
        )
        assert order.status == "disputed"

    @pytest.mark.asyncio
    async def test_cannot_dispute_released_order(
        self, escrow: EscrowService, make_order: Any, client: Actor
    ) -> None:
        order = await make_order("completed")
        await escrow.release_funds(order.order_id, client)
        with pytest.raises(InvalidStateTransitionError):
            await escrow.raise_dispute(
                RaiseDispute(actor=client, order_id=order.order_id, reason="Changed my mind")
            )

    @pytest.mark.asyncio
    async def test_stranger_cannot_dispute(
        self, escrow: EscrowService, make_order: Any, stranger: Actor
    ) -> None:
        order = await make_order("paid")
        with pytest.raises(PermissionDeniedError):
            await escrow.raise_dispute(
                RaiseDispute(actor=stranger, order_id=order.order_id, reason="Just because")
            )

    @pytest.mark.asyncio
    async def test_resolve_for_payer_refunds(
        self,
        escrow: EscrowService,
        make_order: Any,
        client: Actor,
        admin: Actor,
        gateway: Any,
    ) -> None:
        order = await make_order("in_progress")
        await escrow.raise_dispute(
            RaiseDispute(actor=client, order_id=order.order_id, reason="Work never arrived")
        )

        order = await escrow.resolve_dispute(
            ResolveDispute(
                actor=admin, order_id=order.order_id, outcome=DisputeOutcome.PAYER, notes="Agreed"
            )
        )

        assert order.status == "refunded"
        assert order.escrow_status == "refunded"
        assert order.resolution == "payer"
        assert order.resolved_by == admin.user_id
        [call] = gateway.calls_to("refund")
        assert call["amount"] == 10000
        assert call["idempotency_key"] == f"{order.order_id}:refund:1"
        assert gateway.calls_to("transfer") == []

    @pytest.mark.asyncio
    async def test_resolve_for_payee_releases(
        self,
        escrow: EscrowService,
        make_order: Any,
        client: Actor,
        admin: Actor,
        gateway: Any,
        sink: Any,
    ) -> None:
        order = await make_order("completed")
        await escrow.raise_dispute(
            RaiseDispute(actor=client, order_id=order.order_id, reason="Quality concerns")
        )

        order = await escrow.resolve_dispute(
            ResolveDispute(actor=admin, order_id=order.order_id, outcome=DisputeOutcome.PAYEE)
        )

        assert order.status == "completed"
        assert order.escrow_status == "released"
        assert order.resolution == "payee"
        [call] = gateway.calls_to("transfer")
        assert call["amount"] == 9000
        assert "dispute.resolved" in sink.names()
        events = await _event_types(escrow, order.order_id)
        assert EventType.DISPUTE_RESOLVED_PAYEE in events
        assert events[-1] == EventType.FUNDS_RELEASED

    @pytest.mark.asyncio
    async def test_only_admin_resolves(
        self, escrow: EscrowService, make_order: Any, client: Actor
    ) -> None:
        order = await make_order("paid")
        await escrow.raise_dispute(
            RaiseDispute(actor=client, order_id=order.order_id, reason="Quality concerns")
        )
        with pytest.raises(PermissionDeniedError):
            await escrow.resolve_dispute(
                ResolveDispute(actor=client, order_id=order.order_id, outcome=DisputeOutcome.PAYER)
            )

    @pytest.mark.asyncio
    async def test_resolve_requires_dispute(
        self, escrow: EscrowService, make_order: Any, admin: Actor
    ) -> None:
        order = await make_order("paid")
        with pytest.raises(InvalidStateTransitionError):
            await escrow.resolve_dispute(
                ResolveDispute(actor=admin, order_id=order.order_id, outcome=DisputeOutcome.PAYEE)
            )

    @pytest.mark.asyncio
    async def test_chargeback_disputes_held_order(
        self, escrow: EscrowService, make_order: Any
    ) -> None:
        order = await make_order("paid")
        order = await escrow.handle_chargeback(order.order_id, "dp_1", "fraudulent")

        assert order.status == "disputed"
        assert order.disputed_by == "stripe"

    @pytest.mark.asyncio
    async def test_chargeback_after_release_needs_attention(
        self, escrow: EscrowService, make_order: Any, client: Actor
    ) -> None:
        order = await make_order("completed")
        await escrow.release_funds(order.order_id, client)

        order = await escrow.handle_chargeback(order.order_id, "dp_2", "product_not_received")

        assert order.status == "completed"
        assert order.escrow_status == "released"
        assert order.needs_attention

    @pytest.mark.asyncio
    async def test_won_chargeback_releases_to_payee(
        self, escrow: EscrowService, make_order: Any, gateway: Any
    ) -> None:
        order = await make_order("paid")
        await escrow.handle_chargeback(order.order_id, "dp_3", "fraudulent")

        order = await escrow.settle_chargeback(order.order_id, "dp_3", "won")

        assert order.status == "completed"
        assert order.escrow_status == "released"
        assert order.resolution == "payee"
        assert len(gateway.calls_to("transfer")) == 1

    @pytest.mark.asyncio
    async def test_lost_chargeback_ends_refunded_without_gateway_refund(
        self, escrow: EscrowService, make_order: Any, gateway: Any, client: Actor
    ) -> None:
        order = await make_order("paid")
        await escrow.handle_chargeback(order.order_id, "dp_4", "fraudulent")

        order = await escrow.settle_chargeback(order.order_id, "dp_4", "lost")

        assert order.status == "refunded"
        assert order.escrow_status == "refunded"
        assert order.resolution == "payer"
        assert gateway.calls_to("refund") == []
        with pytest.raises(InvalidStateTransitionError):
            await escrow.release_funds(order.order_id, client)

    @pytest.mark.asyncio
    async def test_inconclusive_chargeback_is_flagged(
        self, escrow: EscrowService, make_order: Any
    ) -> None:
        order = await make_order("paid")
        await escrow.handle_chargeback(order.order_id, "dp_5", "fraudulent")

        order = await escrow.settle_chargeback(order.order_id, "dp_5", "warning_closed")

        assert order.status == "disputed"
        assert order.escrow_status == "disputed"
        assert order.needs_attention

    @pytest.mark.asyncio
    async def test_chargeback_closing_on_undisputed_order_is_flagged(
        self, escrow: EscrowService, make_order: Any, gateway: Any
    ) -> None:
        order = await make_order("paid")

        order = await escrow.settle_chargeback(order.order_id, "dp_6", "won")

        assert order.escrow_status == "held"
        assert order.needs_attention
        assert gateway.calls_to("transfer") == []


# ---------------------------------------------------------------------------
# Refunds
# ---------------------------------------------------------------------------


class TestRefunds:
    @pytest.mark.asyncio
    async def test_admin_refunds_paid_order(
        self, escrow: EscrowService, make_order: Any, admin: Actor, sink: Any
    ) -> None:
        order = await make_order("paid")
        order = await escrow.refund_order(RefundOrder(actor=admin, order_id=order.order_id))

        assert order.status == "refunded"
        assert order.escrow_status == "refunded"
        assert order.refund_id is not None
        assert "order.refunded" in sink.names()

    @pytest.mark.asyncio
    async def test_refund_twice_is_a_noop(
        self, escrow: EscrowService, make_order: Any, admin: Actor, gateway: Any
    ) -> None:
        order = await make_order("paid")
        await escrow.refund_order(RefundOrder(actor=admin, order_id=order.order_id))
        await escrow.refund_order(RefundOrder(actor=admin, order_id=order.order_id))
        assert len(gateway.calls_to("refund")) == 1

    @pytest.mark.asyncio
    async def test_non_admin_cannot_refund(
        self, escrow: EscrowService, make_order: Any, client: Actor
    ) -> None:
        order = await make_order("paid")
        with pytest.raises(PermissionDeniedError):
            await escrow.refund_order(RefundOrder(actor=client, order_id=order.order_id))

    @pytest.mark.asyncio
    async def test_no_refund_after_release(
        self, escrow: EscrowService, make_order: Any, client: Actor, admin: Actor, gateway: Any
    ) -> None:
        order = await make_order("completed")
        await escrow.release_funds(order.order_id, client)

        with pytest.raises(InvalidStateTransitionError):
            await escrow.refund_order(RefundOrder(actor=admin, order_id=order.order_id))
        assert gateway.calls_to("refund") == []

    @pytest.mark.asyncio
    async def test_no_refund_before_capture(
        self, escrow: EscrowService, make_order: Any, admin: Actor
    ) -> None:
        order = await make_order("pending")
        with pytest.raises(InvalidStateTransitionError):
            await escrow.refund_order(RefundOrder(actor=admin, order_id=order.order_id))

    @pytest.mark.asyncio
    async def test_slow_refund_settled_by_webhook(
        self, escrow: EscrowService, make_order: Any, admin: Actor, gateway: Any
    ) -> None:
        order = await make_order("paid")
        gateway.refund_status = "requires_action"

        order = await escrow.refund_order(RefundOrder(actor=admin, order_id=order.order_id))
        assert order.status == "paid"
        assert order.escrow_status == "refunding"

        order = await escrow.reconcile_refund(order.order_id, "re_webhook", SYSTEM)
        assert order.status == "refunded"
        assert order.refund_id == "re_webhook"

    @pytest.mark.asyncio
    async def test_failed_refund_returns_funds_to_custody(
        self, escrow: EscrowService, make_order: Any, admin: Actor, gateway: Any
    ) -> None:
        order = await make_order("paid")
        gateway.refund_status = "failed"

        with pytest.raises(GatewayError):
            await escrow.refund_order(RefundOrder(actor=admin, order_id=order.order_id))

        stored = await escrow.get_order(order.order_id)
        assert stored.status == "paid"
        assert stored.escrow_status == "held"
        assert EventType.REFUND_FAILED in await _event_types(escrow, order.order_id)

    @pytest.mark.asyncio
    async def test_retry_after_failed_refund_uses_a_fresh_key(
        self, escrow: EscrowService, make_order: Any, admin: Actor, gateway: Any
    ) -> None:
        order = await make_order("paid")
        gateway.refund_status = "failed"
        with pytest.raises(GatewayError):
            await escrow.refund_order(RefundOrder(actor=admin, order_id=order.order_id))

        gateway.refund_status = "succeeded"
        order = await escrow.refund_order(RefundOrder(actor=admin, order_id=order.order_id))

        assert order.escrow_status == "refunded"
        keys = [c["idempotency_key"] for c in gateway.calls_to("refund")]
        assert keys == [f"{order.order_id}:refund:1", f"{order.order_id}:refund:2"]

    @pytest.mark.asyncio
    async def test_refund_made_outside_platform_ends_custody(
        self, escrow: EscrowService, make_order: Any, client: Actor, gateway: Any
    ) -> None:
        order = await make_order("paid")

        order = await escrow.reconcile_refund(
            order.order_id, "re_dashboard", SYSTEM, amount_refunded=10000
        )

        assert order.status == "refunded"
        assert order.escrow_status == "refunded"
        assert order.refund_id == "re_dashboard"
        assert gateway.calls_to("refund") == []

        with pytest.raises(InvalidStateTransitionError):
            await escrow.release_funds(order.order_id, client)

    @pytest.mark.asyncio
    async def test_partial_refund_outside_platform_is_flagged(
        self, escrow: EscrowService, make_order: Any
    ) -> None:
        order = await make_order("paid")

        order = await escrow.reconcile_refund(
            order.order_id, "re_partial", SYSTEM, amount_refunded=2500
        )

        assert order.status == "paid"
        assert order.escrow_status == "held"
        assert order.needs_attention


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


class TestReads:
    @pytest.mark.asyncio
    async def test_status_lists_allowed_events(
        self, escrow: EscrowService, make_order: Any, client: Actor
    ) -> None:
        order = await make_order("pending")
        status = await escrow.get_status(order.order_id, client)

        assert status["status"] == "pending"
        assert status["escrow_status"] == "unfunded"
        assert set(status["allowed_events"]) == {"capture_succeeded", "cancel"}

    @pytest.mark.asyncio
    async def test_strangers_cannot_read(
        self, escrow: EscrowService, make_order: Any, stranger: Actor, admin: Actor
    ) -> None:
        order = await make_order("pending")
        with pytest.raises(PermissionDeniedError):
            await escrow.get_order_for_actor(order.order_id, stranger)
        assert (await escrow.get_order_for_actor(order.order_id, admin)).order_id == order.order_id

    @pytest.mark.asyncio
    async def test_list_orders_by_role_and_status(
        self, escrow: EscrowService, make_order: Any, client: Actor, lawyer: Actor
    ) -> None:
        await make_order("pending")
        await make_order("paid")

        orders, total = await escrow.list_orders(client, role="payer")
        assert total == 2
        assert {o.payer_id for o in orders} == {CLIENT_ID}

        _, total = await escrow.list_orders(lawyer, role="payer")
        assert total == 0

        paid, total = await escrow.list_orders(lawyer, role="payee", status="paid")
        assert total == 1
        assert paid[0].status == "paid"

    @pytest.mark.asyncio
    async def test_list_orders_rejects_unknown_status(
        self, escrow: EscrowService, client: Actor
    ) -> None:
        with pytest.raises(ValidationError):
            await escrow.list_orders(client, status="lost")

    @pytest.mark.asyncio
    async def test_find_order_by_intent(self, escrow: EscrowService, make_order: Any) -> None:
        order = await make_order("paid")
        found = await escrow.find_order(None, order.payment_intent_id)
        assert found is not None
        assert found.order_id == order.order_id
        assert await escrow.find_order("ORD-MISSING", None) is None

    @pytest.mark.asyncio
    async def test_attention_queue_is_admin_only(
        self, escrow: EscrowService, make_order: Any, client: Actor, admin: Actor
    ) -> None:
        order = await make_order("paid")
        await make_order("paid")
        await escrow.flag_attention(order, "transfer reversed", admin)

        flagged = await escrow.list_needing_attention(admin)
        assert [o.order_id for o in flagged] == [order.order_id]
        with pytest.raises(PermissionDeniedError):
            await escrow.list_needing_attention(client)


class TestSystemActor:
    def test_system_actor(self) -> None:
        actor = Actor.system("stripe")
        assert actor.is_system
        assert actor.role == Role.SYSTEM
        assert not actor.is_admin
