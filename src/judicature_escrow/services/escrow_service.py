"""Escrow Service — core business logic for the order lifecycle.

This is the application layer that coordinates between:
    - Domain state machine (transition guard) and custody table
    - Repositories (data access, atomic conditional updates)
    - Payment gateway (charges, transfers, refunds)
    - Event log (audit trail) and notifications

It is the only component that changes an order's status. REST routes, the
webhook reconciler and the payment request service all call into it.

Money movement follows one pattern: validate, commit a claim
(``releasing`` / ``refunding``, or the capture key for a charge), call the
gateway with a deterministic idempotency key, then commit the outcome. A
rejected gateway call reverts the claim; a call whose outcome is unknown
leaves it for the webhook. Release and refund keys carry an attempt number
that is bumped whenever funds come back to custody.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from judicature_escrow.domain.collaborators import Actor, UserIdentity
from judicature_escrow.domain.commands import RaiseDispute
from judicature_escrow.domain.enums import (
    ChargebackStatus,
    DeliverableStatus,
    DisputeOutcome,
    EscrowStatus,
    EventType,
    NotificationEvent,
    OrderStatus,
    PaymentRequestStatus,
    RefundReason,
    ReviewDecision,
    SubjectType,
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
    StaleStateError,
    ValidationError,
)
from judicature_escrow.domain.policy import (
    EscrowPolicy,
    calculate_amounts,
    generate_order_id,
    is_legal_combination,
)
from judicature_escrow.domain.state_machine import (
    OrderStateMachine,
    validate_request_transition,
    validate_transition,
)
from judicature_escrow.infrastructure.database.orm_models import Deliverable, Order
from judicature_escrow.infrastructure.database.repositories import (
    AuditRepository,
    DeliverableRepository,
    OrderRepository,
    PaymentRequestRepository,
)
from judicature_escrow.infrastructure.notifications import NotificationDispatcher
from judicature_escrow.logging_config import get_logger

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from judicature_escrow.domain.collaborators import NotificationSink, UserDirectory
    from judicature_escrow.domain.commands import (
        CreateOrder,
        RefundOrder,
        ResolveDispute,
        ReviewDeliverable,
        SubmitDeliverable,
    )
    from judicature_escrow.domain.gateway_protocol import PaymentGateway
    from judicature_escrow.infrastructure.database.orm_models import AuditEvent

logger = get_logger(__name__)

DISPUTABLE_STATUSES = (OrderStatus.PAID, OrderStatus.IN_PROGRESS, OrderStatus.COMPLETED)
REFUNDABLE_CUSTODY = (EscrowStatus.HELD, EscrowStatus.DISPUTED)


def _now() -> datetime:
    return datetime.now(UTC)


class EscrowService:
    """Manages the escrow order lifecycle."""

    def __init__(
        self,
        session: AsyncSession,
        *,
        gateway: PaymentGateway,
        users: UserDirectory,
        notifications: NotificationSink | NotificationDispatcher,
        policy: EscrowPolicy | None = None,
    ) -> None:
        self._session = session
        self._gateway = gateway
        self._users = users
        self._policy = policy or EscrowPolicy()
        if isinstance(notifications, NotificationDispatcher):
            self._notifier = notifications
        else:
            self._notifier = NotificationDispatcher(notifications)
        self._orders = OrderRepository(session)
        self._deliverables = DeliverableRepository(session)
        self._requests = PaymentRequestRepository(session)
        self._audit = AuditRepository(session)

    @property
    def policy(self) -> EscrowPolicy:
        return self._policy

    # ------------------------------------------------------------------
    # Order Creation
    # ------------------------------------------------------------------

    async def create_order(self, cmd: CreateOrder, *, commit: bool = True) -> Order:
        """Create a new order in ``pending``/``unfunded``. No money moves."""
        cmd.validate(self._policy)
        actor = cmd.actor
        if not (actor.user_id == cmd.payer_id or actor.is_admin or actor.is_system):
            raise PermissionDeniedError(actor.user_id, "create an order for another payer")

        split = calculate_amounts(cmd.amount, self._policy.platform_fee_percent)
        order_id = generate_order_id()
        order = Order(
            order_id=order_id,
            payer_id=cmd.payer_id,
            payee_id=cmd.payee_id,
            payment_request_id=cmd.payment_request_id,
            amount=split.amount,
            currency=cmd.currency,
            platform_fee=split.platform_fee,
            payee_net_amount=split.payee_net_amount,
            status=OrderStatus.PENDING.value,
            escrow_status=EscrowStatus.UNFUNDED.value,
            description=cmd.description,
            deliverables=[],
        )
        order = await self._orders.create(order)

        await self._record(
            order,
            EventType.ORDER_CREATED,
            old_status=None,
            actor=actor,
            metadata={
                "amount": order.amount,
                "platform_fee": order.platform_fee,
                "payee_net_amount": order.payee_net_amount,
                "currency": order.currency,
            },
        )

        logger.info(
            "order.created",
            order_id=order.order_id,
            amount=order.amount,
            platform_fee=order.platform_fee,
            currency=order.currency,
        )
        if commit:
            await self._session.commit()
            await self._notify(NotificationEvent.ORDER_CREATED, order, recipients=[order.payee_id])
        return order

    # ------------------------------------------------------------------
    # Payment Capture
    # ------------------------------------------------------------------

    async def capture_payment(
        self,
        order_id: str,
        actor: Actor,
        payment_method_ref: str,
    ) -> Order:
        """Charge the payer for the stored amount and hold the funds.

        The idempotency key is derived from the order and the payment method
        and is written to the order before the gateway is called. While that
        attempt is open (succeeded, processing, or outcome unknown) the same
        card replays it and any other card is refused with
        CaptureInProgressError. A decline, or a ``payment_intent.payment_failed``
        webhook for the attempt, closes it so another card can be tried.
        """
        order = await self._get_order_or_raise(order_id)
        if not (actor.user_id == order.payer_id or actor.is_system):
            raise PermissionDeniedError(actor.user_id, f"pay for order {order_id}")
        if not payment_method_ref:
            raise ValidationError({"payment_method_ref": "is required"})

        if order.status == OrderStatus.CANCELLED:
            raise InvalidStateTransitionError(order.status, "capture_succeeded")
        if order.status != OrderStatus.PENDING:
            logger.info("order.capture_noop", order_id=order_id, status=order.status)
            return order

        key = f"{order.order_id}:capture:{payment_method_ref}"
        order = await self._open_capture_attempt(order, key)
        if order.status != OrderStatus.PENDING:
            return order

        try:
            result = await self._gateway.create_and_confirm_intent(
                amount=order.amount,
                currency=order.currency,
                idempotency_key=key,
                payment_method_ref=payment_method_ref,
                metadata={**self._gateway_metadata(order), "capture_key": key},
            )
        except GatewayOutcomeUnknownError:
            logger.warning("order.capture_outcome_unknown", order_id=order_id, capture_key=key)
            raise
        except GatewayError as exc:
            await self._close_capture_attempt(order, key)
            await self._record_payment_failure(order, exc.reason_code, actor)
            raise

        if result.succeeded:
            return await self._mark_paid(order, result.intent_id, actor)

        if result.pending:
            updated = await self._orders.conditional_update(
                order,
                OrderStatus.PENDING,
                EscrowStatus.UNFUNDED,
                payment_intent_id=result.intent_id,
            )
            if not updated:
                await self._session.rollback()
                raise StaleStateError(order_id, OrderStatus.PENDING)
            await self._record(
                order,
                EventType.PAYMENT_PENDING,
                old_status=OrderStatus.PENDING,
                actor=actor,
                metadata={"intent_id": result.intent_id, "intent_status": result.status},
            )
            await self._session.commit()
            logger.info(
                "order.capture_pending",
                order_id=order_id,
                intent_id=result.intent_id,
                intent_status=result.status,
            )
            return order

        await self._close_capture_attempt(order, key)
        await self._record_payment_failure(order, result.status, actor)
        raise GatewayError(
            f"Payment did not complete (intent status {result.status})",
            reason_code=result.status,
        )

    async def confirm_capture(self, order_id: str, intent_id: str, actor: Actor) -> Order:
        """Webhook path of a successful capture.

        A capture that lands on a cancelled order is flagged for a manual
        refund instead of raising, so the gateway stops redelivering.
        """
        order = await self._get_order_or_raise(order_id)
        if order.status != OrderStatus.PENDING:
            if order.payment_intent_id == intent_id:
                logger.info("order.capture_already_confirmed", order_id=order_id)
                return order
            if order.status == OrderStatus.CANCELLED:
                return await self._flag_orphaned_charge(order, intent_id, actor)
            return await self.flag_attention(
                order,
                f"Second successful charge {intent_id}; order already paid by "
                f"{order.payment_intent_id}",
                actor,
            )
        return await self._mark_paid(order, intent_id, actor, raise_on_orphan=False)

    async def record_payment_failure(
        self,
        order_id: str,
        reason_code: str,
        actor: Actor,
        *,
        capture_key: str | None = None,
    ) -> Order:
        """Webhook path of a failed capture: audit and notify, order stays pending.

        ``capture_key`` is the key the failed intent was created with. If it
        is the order's open attempt, the attempt is closed.
        """
        order = await self._get_order_or_raise(order_id)
        if (
            capture_key is not None
            and order.status == OrderStatus.PENDING
            and order.capture_idempotency_key == capture_key
        ):
            await self._close_capture_attempt(order, capture_key)
        await self._record_payment_failure(order, reason_code, actor)
        return order

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    async def cancel_order(self, order_id: str, actor: Actor, reason: str | None = None) -> Order:
        """Cancel an order that has not been paid. Already cancelled is a no-op."""
        order = await self._get_order_or_raise(order_id)
        if not (actor.user_id == order.payer_id or actor.is_admin or actor.is_system):
            raise PermissionDeniedError(actor.user_id, f"cancel order {order_id}")
        if order.status == OrderStatus.CANCELLED:
            return order

        validate_transition(order.status, "cancel")
        updated = await self._orders.conditional_update(
            order,
            OrderStatus.PENDING,
            EscrowStatus.UNFUNDED,
            status=OrderStatus.CANCELLED,
            cancelled_at=_now(),
            cancellation_reason=reason,
        )
        if not updated:
            order = await self._reload(order_id)
            if order.status == OrderStatus.CANCELLED:
                return order
            raise StaleStateError(order_id, OrderStatus.PENDING)

        await self._record(
            order,
            EventType.ORDER_CANCELLED,
            old_status=OrderStatus.PENDING,
            actor=actor,
            metadata={"reason": reason} if reason else None,
        )
        await self._session.commit()
        logger.info("order.cancelled", order_id=order_id, by=actor.user_id)
        await self._notify(
            NotificationEvent.ORDER_CANCELLED,
            order,
            recipients=[order.payer_id, order.payee_id],
            reason=reason,
        )
        return order

    # ------------------------------------------------------------------
    # Work and Deliverables
    # ------------------------------------------------------------------

    async def start_work(self, order_id: str, actor: Actor) -> Order:
        """Payee acknowledges a paid order and starts work."""
        order = await self._get_order_or_raise(order_id)
        self._require_payee(order, actor, "start work on")
        await self._transition(order, "start_work", expected_escrow=EscrowStatus.HELD)
        await self._record(order, EventType.WORK_STARTED, old_status=OrderStatus.PAID, actor=actor)
        await self._session.commit()
        logger.info("order.work_started", order_id=order_id)
        return order

    async def submit_deliverable(self, cmd: SubmitDeliverable) -> Deliverable:
        """Append a pending deliverable; the first one moves the order to in_progress."""
        cmd.validate(self._policy)
        order = await self._get_order_or_raise(cmd.order_id)
        self._require_payee(order, cmd.actor, "submit deliverables for")

        old_status = order.status
        await self._transition(order, "deliverable_submitted", expected_escrow=EscrowStatus.HELD)

        deliverable = Deliverable(
            order=order,
            file_ref=cmd.file_ref,
            file_name=cmd.file_name,
            description=cmd.description,
            version=await self._deliverables.next_version(order.id),
            uploaded_by=cmd.actor.user_id,
            status=DeliverableStatus.PENDING.value,
        )
        deliverable = await self._deliverables.create(deliverable)

        await self._record(
            order,
            EventType.DELIVERABLE_SUBMITTED,
            old_status=old_status,
            actor=cmd.actor,
            metadata={
                "deliverable_id": str(deliverable.id),
                "version": deliverable.version,
                "file_name": deliverable.file_name,
            },
        )
        await self._session.commit()
        await self._session.refresh(order)

        logger.info(
            "order.deliverable_submitted",
            order_id=order.order_id,
            deliverable_id=str(deliverable.id),
            version=deliverable.version,
        )
        await self._notify(
            NotificationEvent.DELIVERABLE_SUBMITTED,
            order,
            recipients=[order.payer_id],
            deliverable_id=str(deliverable.id),
            version=deliverable.version,
        )
        return deliverable

    async def review_deliverable(self, cmd: ReviewDeliverable) -> Deliverable:
        """Payer accepts (order -> completed) or rejects (order stays in_progress)."""
        cmd.validate(self._policy)
        order = await self._get_order_or_raise(cmd.order_id)
        if cmd.actor.user_id != order.payer_id:
            raise PermissionDeniedError(cmd.actor.user_id, f"review deliverables of {order.order_id}")
        deliverable = await self._get_deliverable_or_raise(order, cmd.deliverable_id)
        if deliverable.status != DeliverableStatus.PENDING:
            raise InvalidStateTransitionError(deliverable.status, f"deliverable_{cmd.decision}ed")

        accept = cmd.decision == ReviewDecision.ACCEPT
        if accept:
            await self._transition(
                order,
                "deliverable_accepted",
                expected_escrow=EscrowStatus.HELD,
                completed_at=_now(),
            )
        else:
            await self._transition(order, "deliverable_rejected", expected_escrow=EscrowStatus.HELD)

        new_deliverable_status = DeliverableStatus.ACCEPTED if accept else DeliverableStatus.REJECTED
        reviewed = await self._deliverables.conditional_update(
            deliverable,
            DeliverableStatus.PENDING,
            status=new_deliverable_status,
            reviewed_by=cmd.actor.user_id,
            review_notes=cmd.notes,
            reviewed_at=_now(),
        )
        if not reviewed:
            deliverable_id = str(deliverable.id)
            await self._session.rollback()
            raise StaleStateError(deliverable_id, DeliverableStatus.PENDING)

        await self._record(
            order,
            EventType.DELIVERABLE_ACCEPTED if accept else EventType.DELIVERABLE_REJECTED,
            old_status=OrderStatus.IN_PROGRESS,
            actor=cmd.actor,
            metadata={"deliverable_id": str(deliverable.id), "notes": cmd.notes},
        )
        await self._session.commit()

        logger.info(
            "order.deliverable_reviewed",
            order_id=order.order_id,
            deliverable_id=str(deliverable.id),
            decision=str(cmd.decision),
        )
        await self._notify(
            NotificationEvent.DELIVERABLE_REVIEWED,
            order,
            recipients=[order.payee_id],
            deliverable_id=str(deliverable.id),
            decision=str(cmd.decision),
            notes=cmd.notes,
        )
        return deliverable

    async def delete_deliverable(self, order_id: str, deliverable_id: str, actor: Actor) -> None:
        """Payee withdraws a deliverable that has not been reviewed yet."""
        order = await self._get_order_or_raise(order_id)
        self._require_payee(order, actor, "delete deliverables of")
        deliverable = await self._get_deliverable_or_raise(order, deliverable_id)
        if deliverable.status != DeliverableStatus.PENDING:
            raise InvalidStateTransitionError(deliverable.status, "delete")
        if (
            order.status not in (OrderStatus.PAID, OrderStatus.IN_PROGRESS)
            or order.escrow_status != EscrowStatus.HELD
        ):
            raise InvalidStateTransitionError(
                f"{order.status}/{order.escrow_status}", "delete_deliverable"
            )

        await self._deliverables.delete(deliverable)
        await self._record(
            order,
            EventType.DELIVERABLE_DELETED,
            old_status=order.status,
            actor=actor,
            metadata={"deliverable_id": deliverable_id, "version": deliverable.version},
        )
        await self._session.commit()
        await self._session.refresh(order)
        logger.info("order.deliverable_deleted", order_id=order_id, deliverable_id=deliverable_id)

    # ------------------------------------------------------------------
    # Release
    # ------------------------------------------------------------------

    async def release_funds(self, order_id: str, actor: Actor) -> Order:
        """Transfer the payee's share of a completed order.

        Already released is a no-op. A release still in flight is a conflict
        for the payer; an admin may re-drive it with the same idempotency key.
        """
        order = await self._get_order_or_raise(order_id)
        if not (actor.user_id == order.payer_id or actor.is_admin):
            raise PermissionDeniedError(actor.user_id, f"release funds of {order_id}")

        if order.escrow_status == EscrowStatus.RELEASED:
            logger.info("order.release_noop", order_id=order_id)
            return order
        if order.escrow_status == EscrowStatus.RELEASING:
            if not actor.is_admin:
                raise DuplicateOperationError(f"{order_id}:release")
            payee = await self._resolve_payee(order)
            return await self._transfer(order, payee.payout_account_ref, actor)

        validate_transition(order.status, "funds_released")
        if order.escrow_status != EscrowStatus.HELD:
            raise InvalidStateTransitionError(
                f"{order.status}/{order.escrow_status}", "funds_released"
            )
        payee = await self._resolve_payee(order)

        await self._claim_custody(order, EscrowStatus.HELD, EscrowStatus.RELEASING)
        await self._record(
            order,
            EventType.RELEASE_INITIATED,
            old_status=order.status,
            actor=actor,
            metadata={"amount": order.payee_net_amount},
        )
        await self._session.commit()
        logger.info("order.release_initiated", order_id=order_id, amount=order.payee_net_amount)

        return await self._transfer(order, payee.payout_account_ref, actor)

    async def reconcile_transfer_paid(
        self,
        order_id: str,
        transfer_id: str,
        actor: Actor,
        *,
        attempt: int | None = None,
    ) -> Order:
        """Webhook confirmation of a transfer whose outcome was unknown.

        ``attempt`` is the release attempt the transfer was created for;
        events from an earlier, already failed attempt are ignored.
        """
        order = await self._get_order_or_raise(order_id)
        if self._is_stale_attempt(order, attempt, transfer_id):
            return order
        if order.escrow_status == EscrowStatus.RELEASED:
            return order
        if order.escrow_status != EscrowStatus.RELEASING:
            logger.warning(
                "order.transfer_event_unexpected",
                order_id=order_id,
                escrow_status=order.escrow_status,
            )
            return await self.flag_attention(
                order, f"Transfer {transfer_id} confirmed while escrow {order.escrow_status}", actor
            )
        return await self._finalize_release(order, transfer_id, actor)

    async def reconcile_transfer_failed(
        self,
        order_id: str,
        transfer_id: str,
        reason: str,
        actor: Actor,
        *,
        attempt: int | None = None,
    ) -> Order:
        """A transfer failed or was reversed: funds are back in custody.

        The release attempt is bumped so the next release creates a new
        transfer instead of replaying the failed one.
        """
        order = await self._get_order_or_raise(order_id)
        if self._is_stale_attempt(order, attempt, transfer_id):
            return order
        if order.escrow_status not in (EscrowStatus.RELEASING, EscrowStatus.RELEASED):
            return order

        held = self._custody_at_rest(order)
        old_escrow = order.escrow_status
        updated = await self._orders.conditional_update(
            order,
            order.status,
            old_escrow,
            escrow_status=held,
            release_attempt=order.release_attempt + 1,
            needs_attention=True,
            attention_reason=f"Transfer {transfer_id} {reason}",
        )
        if not updated:
            await self._session.rollback()
            raise StaleStateError(order_id, old_escrow)

        await self._record(
            order,
            EventType.RELEASE_FAILED,
            old_status=order.status,
            actor=actor,
            metadata={"transfer_id": transfer_id, "reason": reason, "previous_escrow": old_escrow},
        )
        await self._session.commit()
        logger.error("order.transfer_failed", order_id=order_id, transfer_id=transfer_id, reason=reason)
        await self._notify(
            NotificationEvent.RELEASE_FAILED, order, recipients=[order.payee_id], reason=reason
        )
        return order

    # ------------------------------------------------------------------
    # Disputes
    # ------------------------------------------------------------------

    async def raise_dispute(self, cmd: RaiseDispute) -> Order:
        """Freeze an order's funds until an admin resolves the dispute."""
        cmd.validate(self._policy)
        order = await self._get_order_or_raise(cmd.order_id)
        actor = cmd.actor
        if not (actor.user_id in (order.payer_id, order.payee_id) or actor.is_system):
            raise PermissionDeniedError(actor.user_id, f"dispute order {order.order_id}")

        old_status = order.status
        if order.escrow_status != EscrowStatus.HELD:
            raise InvalidStateTransitionError(
                f"{order.status}/{order.escrow_status}", "raise_dispute"
            )
        await self._transition(
            order,
            "raise_dispute",
            expected_escrow=EscrowStatus.HELD,
            new_escrow=EscrowStatus.DISPUTED,
            dispute_reason=cmd.reason,
            disputed_by=actor.user_id,
            disputed_at=_now(),
        )
        await self._record(
            order,
            EventType.DISPUTE_RAISED,
            old_status=old_status,
            actor=actor,
            metadata={"reason": cmd.reason},
        )
        await self._session.commit()

        logger.info("order.dispute_raised", order_id=order.order_id, by=actor.user_id)
        await self._notify(
            NotificationEvent.DISPUTE_RAISED,
            order,
            recipients=[order.payer_id, order.payee_id],
            reason=cmd.reason,
        )
        return order

    async def resolve_dispute(self, cmd: ResolveDispute) -> Order:
        """Admin decides a dispute: refund the payer or pay the payee."""
        cmd.validate(self._policy)
        if not cmd.actor.is_admin:
            raise PermissionDeniedError(cmd.actor.user_id, "resolve disputes")
        order = await self._get_order_or_raise(cmd.order_id)
        if order.status != OrderStatus.DISPUTED:
            raise InvalidStateTransitionError(order.status, f"resolve_for_{cmd.outcome}")

        if cmd.outcome == DisputeOutcome.PAYER:
            if order.escrow_status == EscrowStatus.REFUNDING:
                return await self._execute_refund(order, cmd.actor)
            return await self._start_refund(
                order,
                RefundReason.REQUESTED_BY_CUSTOMER,
                cmd.actor,
                resolution=DisputeOutcome.PAYER,
                resolution_notes=cmd.notes,
            )

        if order.escrow_status == EscrowStatus.RELEASING:
            payee = await self._resolve_payee(order)
            return await self._transfer(order, payee.payout_account_ref, cmd.actor)

        return await self._release_disputed(order, cmd.actor, cmd.notes)

    async def handle_chargeback(self, order_id: str, dispute_ref: str, reason: str) -> Order:
        """A payer opened a chargeback with their bank.

        Disputable orders enter ``disputed``; anything else (already released,
        refunded, in flight) is flagged for manual follow-up.
        """
        order = await self._get_order_or_raise(order_id)
        system = Actor.system("stripe")
        if order.status in DISPUTABLE_STATUSES and order.escrow_status == EscrowStatus.HELD:
            return await self.raise_dispute(
                RaiseDispute(actor=system, order_id=order_id, reason=f"Chargeback {dispute_ref}: {reason}")
            )
        return await self.flag_attention(
            order,
            f"Chargeback {dispute_ref} ({reason}) while {order.status}/{order.escrow_status}",
            system,
        )

    async def settle_chargeback(self, order_id: str, dispute_ref: str, status: str) -> Order:
        """The payer's bank closed a chargeback.

        ``won`` releases the frozen funds to the payee. ``lost`` ends the
        order as refunded without a gateway refund, since the bank has
        already returned the money to the payer. Any other outcome, or an
        order whose funds are not frozen in a dispute, is flagged for manual
        follow-up.
        """
        order = await self._get_order_or_raise(order_id)
        system = Actor.system("stripe")
        frozen = (
            order.status == OrderStatus.DISPUTED and order.escrow_status == EscrowStatus.DISPUTED
        )
        if not frozen or status not in (ChargebackStatus.WON, ChargebackStatus.LOST):
            return await self.flag_attention(
                order,
                f"Chargeback {dispute_ref} closed as {status} while "
                f"{order.status}/{order.escrow_status}",
                system,
            )

        if status == ChargebackStatus.LOST:
            return await self._settle_lost_chargeback(order, dispute_ref, system)

        try:
            return await self._release_disputed(order, system, f"Chargeback {dispute_ref} won")
        except GatewayOutcomeUnknownError:
            # Stays releasing; the transfer webhook settles it.
            return await self._reload(order_id)
        except (GatewayError, PayoutAccountMissingError) as exc:
            return await self.flag_attention(
                await self._reload(order_id),
                f"Chargeback {dispute_ref} won but the release failed: {exc.message}",
                system,
            )

    # ------------------------------------------------------------------
    # Refunds
    # ------------------------------------------------------------------

    async def refund_order(self, cmd: RefundOrder) -> Order:
        """Admin refunds the full captured amount. Never after a release."""
        cmd.validate(self._policy)
        if not cmd.actor.is_admin:
            raise PermissionDeniedError(cmd.actor.user_id, "refund orders")
        order = await self._get_order_or_raise(cmd.order_id)

        if order.escrow_status == EscrowStatus.REFUNDED:
            logger.info("order.refund_noop", order_id=order.order_id)
            return order
        if order.escrow_status == EscrowStatus.REFUNDING:
            return await self._execute_refund(order, cmd.actor)
        return await self._start_refund(order, RefundReason(cmd.reason), cmd.actor)

    async def reconcile_refund(
        self,
        order_id: str,
        refund_id: str,
        actor: Actor,
        *,
        amount_refunded: int | None = None,
    ) -> Order:
        """Webhook notice that the order's charge was refunded.

        Settles a refund that was still in flight. A full refund issued
        outside the platform while the funds are still in custody ends the
        order as refunded, so those funds can no longer be released. A
        partial refund, or one that arrives while funds are moving or gone,
        is flagged for manual follow-up.
        """
        order = await self._get_order_or_raise(order_id)
        if order.escrow_status == EscrowStatus.REFUNDED:
            return order
        if order.escrow_status == EscrowStatus.REFUNDING:
            return await self._finalize_refund(order, refund_id, actor)

        full = amount_refunded is None or amount_refunded >= order.amount
        if order.escrow_status in REFUNDABLE_CUSTODY and full:
            logger.warning(
                "order.refunded_outside_platform",
                order_id=order_id,
                refund_id=refund_id,
                escrow_status=order.escrow_status,
            )
            return await self._finalize_refund(
                order, refund_id, actor, expected_escrow=EscrowStatus(order.escrow_status)
            )
        return await self.flag_attention(
            order,
            f"Refund {refund_id} of {amount_refunded} issued while "
            f"{order.status}/{order.escrow_status}",
            actor,
        )

    # ------------------------------------------------------------------
    # Manual follow-up
    # ------------------------------------------------------------------

    async def flag_attention(self, order: Order, reason: str, actor: Actor) -> Order:
        await self._orders.flag_attention(order, reason)
        await self._record(
            order,
            EventType.ATTENTION_REQUIRED,
            old_status=order.status,
            actor=actor,
            metadata={"reason": reason},
        )
        await self._session.commit()
        logger.error("order.needs_attention", order_id=order.order_id, reason=reason)
        return order

    # ------------------------------------------------------------------
    # Read helpers
    # ------------------------------------------------------------------

    async def get_order(self, order_id: str) -> Order:
        """Get an order or raise."""
        return await self._get_order_or_raise(order_id)

    async def get_order_for_actor(self, order_id: str, actor: Actor) -> Order:
        """Get an order visible to ``actor`` (a participant or an admin)."""
        order = await self._get_order_or_raise(order_id)
        self._require_participant(order, actor)
        return order

    async def find_order(self, order_id: str | None, intent_id: str | None) -> Order | None:
        """Locate an order by its id, falling back to the payment intent id."""
        if order_id:
            order = await self._orders.get_by_order_id(order_id)
            if order is not None:
                return order
        if intent_id:
            return await self._orders.get_by_payment_intent(intent_id)
        return None

    async def list_orders(
        self,
        actor: Actor,
        *,
        role: str | None = None,
        status: str | None = None,
        page: int = 1,
        page_size: int = 20,
    ) -> tuple[list[Order], int]:
        """List the caller's orders (all orders for admins), newest first."""
        if status is not None and status not in {s.value for s in OrderStatus}:
            raise ValidationError({"status": "unknown order status"})
        offset = (max(page, 1) - 1) * page_size
        user_id = None if actor.is_admin else actor.user_id
        return await self._orders.list_for_participant(
            user_id,
            as_payer=role in (None, "payer"),
            as_payee=role in (None, "payee"),
            status=status,
            limit=page_size,
            offset=offset,
        )

    async def list_needing_attention(self, actor: Actor) -> list[Order]:
        """Orders flagged for manual follow-up, oldest first. Admins only."""
        if not actor.is_admin:
            raise PermissionDeniedError(actor.user_id, "view the attention queue")
        return await self._orders.list_needing_attention()

    async def list_deliverables(self, order_id: str, actor: Actor) -> list[Deliverable]:
        order = await self.get_order_for_actor(order_id, actor)
        return await self._deliverables.get_by_order(order.id)

    async def get_status(self, order_id: str, actor: Actor | None = None) -> dict[str, Any]:
        """Get order status, custody, and the events that may fire next."""
        order = await self._get_order_or_raise(order_id)
        if actor is not None:
            self._require_participant(order, actor)
        sm = OrderStateMachine(current_status=order.status)
        return {
            "order_id": order.order_id,
            "status": order.status,
            "escrow_status": order.escrow_status,
            "needs_attention": order.needs_attention,
            "allowed_events": sm.get_allowed_events(),
        }

    async def get_events(self, order_id: str, actor: Actor | None = None) -> list[AuditEvent]:
        """Get the order's audit trail."""
        order = await self._get_order_or_raise(order_id)
        if actor is not None:
            self._require_participant(order, actor)
        return await self._audit.get_by_subject(SubjectType.ORDER, order.order_id)

    # ------------------------------------------------------------------
    # Private: capture
    # ------------------------------------------------------------------

    async def _mark_paid(
        self,
        order: Order,
        intent_id: str,
        actor: Actor,
        *,
        raise_on_orphan: bool = True,
    ) -> Order:
        order_id = order.order_id
        validate_transition(OrderStatus.PENDING, "capture_succeeded")
        updated = await self._orders.conditional_update(
            order,
            OrderStatus.PENDING,
            EscrowStatus.UNFUNDED,
            status=OrderStatus.PAID,
            escrow_status=EscrowStatus.HELD,
            payment_intent_id=intent_id,
            paid_at=_now(),
        )
        if not updated:
            order = await self._reload(order_id)
            if order.payment_intent_id == intent_id:
                return order
            if order.status == OrderStatus.CANCELLED:
                await self._flag_orphaned_charge(order, intent_id, actor)
                if raise_on_orphan:
                    raise InvalidStateTransitionError(OrderStatus.CANCELLED, "capture_succeeded")
                return order
            await self.flag_attention(
                order,
                f"Second successful charge {intent_id}; order already paid by "
                f"{order.payment_intent_id}",
                actor,
            )
            raise StaleStateError(order_id, OrderStatus.PENDING)

        await self._record(
            order,
            EventType.PAYMENT_CAPTURED,
            old_status=OrderStatus.PENDING,
            actor=actor,
            metadata={"intent_id": intent_id, "amount": order.amount},
        )
        await self._sync_request(
            order, "mark_paid", PaymentRequestStatus.ACCEPTED, actor, paid_at=_now()
        )
        await self._session.commit()

        logger.info("order.captured", order_id=order_id, intent_id=intent_id, amount=order.amount)
        await self._notify(
            NotificationEvent.ORDER_PAID,
            order,
            recipients=[order.payer_id, order.payee_id],
            amount=order.amount,
        )
        return order

    async def _flag_orphaned_charge(self, order: Order, intent_id: str, actor: Actor) -> Order:
        order = await self.flag_attention(
            order, f"Charge {intent_id} succeeded on a cancelled order; refund manually", actor
        )
        await self._notify(
            NotificationEvent.PAYMENT_ORPHANED,
            order,
            recipients=[order.payer_id],
            intent_id=intent_id,
        )
        return order

    async def _open_capture_attempt(self, order: Order, key: str) -> Order:
        """Commit ``key`` as the order's capture attempt before charging.

        Returns the order, reloaded if a concurrent writer got there first.
        """
        if order.capture_idempotency_key == key:
            return order
        if order.capture_idempotency_key is not None:
            raise CaptureInProgressError(order.order_id, order.capture_idempotency_key)

        order_id = order.order_id
        opened = await self._orders.conditional_update(
            order,
            OrderStatus.PENDING,
            EscrowStatus.UNFUNDED,
            require_no_open_capture=True,
            capture_idempotency_key=key,
        )
        if not opened:
            await self._session.rollback()
            order = await self._reload(order_id)
            if order.status == OrderStatus.CANCELLED:
                raise InvalidStateTransitionError(order.status, "capture_succeeded")
            if order.status != OrderStatus.PENDING or order.capture_idempotency_key == key:
                return order
            raise CaptureInProgressError(order_id, order.capture_idempotency_key or "")

        await self._session.commit()
        logger.info("order.capture_attempt_opened", order_id=order_id, capture_key=key)
        return order

    async def _close_capture_attempt(self, order: Order, key: str) -> None:
        closed = await self._orders.conditional_update(
            order, OrderStatus.PENDING, EscrowStatus.UNFUNDED, capture_idempotency_key=None
        )
        if closed:
            logger.info("order.capture_attempt_closed", order_id=order.order_id, capture_key=key)

    async def _record_payment_failure(self, order: Order, reason_code: str, actor: Actor) -> None:
        await self._record(
            order,
            EventType.PAYMENT_FAILED,
            old_status=order.status,
            actor=actor,
            metadata={"reason_code": reason_code},
        )
        await self._session.commit()
        logger.warning("order.capture_failed", order_id=order.order_id, reason_code=reason_code)
        await self._notify(
            NotificationEvent.PAYMENT_FAILED,
            order,
            recipients=[order.payer_id],
            reason_code=reason_code,
        )

    # ------------------------------------------------------------------
    # Private: release
    # ------------------------------------------------------------------

    async def _resolve_payee(self, order: Order) -> UserIdentity:
        payee = await self._users.resolve(order.payee_id)
        if not payee.payout_account_ref:
            raise PayoutAccountMissingError(order.payee_id)
        return payee

    @staticmethod
    def _is_stale_attempt(order: Order, attempt: int | None, transfer_id: str) -> bool:
        if attempt is None or attempt == order.release_attempt:
            return False
        logger.info(
            "order.transfer_event_stale",
            order_id=order.order_id,
            transfer_id=transfer_id,
            attempt=attempt,
            current_attempt=order.release_attempt,
        )
        return True

    async def _transfer(self, order: Order, destination: str, actor: Actor) -> Order:
        attempt = order.release_attempt
        try:
            transfer = await self._gateway.create_transfer(
                amount=order.payee_net_amount,
                currency=order.currency,
                destination_account=destination,
                idempotency_key=f"{order.order_id}:release:{attempt}",
                metadata={**self._gateway_metadata(order), "release_attempt": str(attempt)},
            )
        except GatewayOutcomeUnknownError:
            logger.warning(
                "order.release_outcome_unknown", order_id=order.order_id, release_attempt=attempt
            )
            raise
        except GatewayError as exc:
            await self._revert_claim(order, EscrowStatus.RELEASING, EventType.RELEASE_FAILED, exc, actor)
            await self._notify(
                NotificationEvent.RELEASE_FAILED,
                order,
                recipients=[order.payer_id, order.payee_id],
                reason_code=exc.reason_code,
            )
            raise
        return await self._finalize_release(order, transfer.transfer_id, actor)

    async def _release_disputed(self, order: Order, actor: Actor, notes: str | None) -> Order:
        validate_transition(order.status, "resolve_for_payee")
        payee = await self._resolve_payee(order)
        await self._claim_custody(
            order,
            EscrowStatus.DISPUTED,
            EscrowStatus.RELEASING,
            resolution=DisputeOutcome.PAYEE.value,
            resolution_notes=notes,
            resolved_by=actor.user_id,
        )
        await self._record(
            order,
            EventType.DISPUTE_RESOLVED_PAYEE,
            old_status=OrderStatus.DISPUTED,
            actor=actor,
            metadata={"notes": notes},
        )
        await self._session.commit()
        logger.info("order.dispute_resolved", order_id=order.order_id, outcome="payee")
        await self._notify(
            NotificationEvent.DISPUTE_RESOLVED,
            order,
            recipients=[order.payer_id, order.payee_id],
            outcome=DisputeOutcome.PAYEE.value,
        )
        return await self._transfer(order, payee.payout_account_ref, actor)

    async def _settle_lost_chargeback(self, order: Order, dispute_ref: str, actor: Actor) -> Order:
        # The card network already pulled the funds back; no gateway refund.
        await self._transition(
            order,
            "refund",
            expected_escrow=EscrowStatus.DISPUTED,
            new_escrow=EscrowStatus.REFUNDED,
            refunded_at=_now(),
            resolution=DisputeOutcome.PAYER.value,
            resolution_notes=f"Chargeback {dispute_ref} lost",
            resolved_by=actor.user_id,
        )
        await self._record(
            order,
            EventType.ORDER_REFUNDED,
            old_status=OrderStatus.DISPUTED,
            actor=actor,
            metadata={"chargeback": dispute_ref, "amount": order.amount},
        )
        await self._session.commit()
        logger.warning("order.chargeback_lost", order_id=order.order_id, dispute_ref=dispute_ref)
        await self._notify(
            NotificationEvent.ORDER_REFUNDED,
            order,
            recipients=[order.payer_id, order.payee_id],
            amount=order.amount,
            chargeback=dispute_ref,
        )
        return order

    async def _finalize_release(self, order: Order, transfer_id: str, actor: Actor) -> Order:
        old_status = order.status
        event_name = "resolve_for_payee" if old_status == OrderStatus.DISPUTED else "funds_released"
        await self._transition(
            order,
            event_name,
            expected_escrow=EscrowStatus.RELEASING,
            new_escrow=EscrowStatus.RELEASED,
            transfer_id=transfer_id,
            released_at=order.released_at or _now(),
            completed_at=order.completed_at or _now(),
        )
        await self._record(
            order,
            EventType.FUNDS_RELEASED,
            old_status=old_status,
            actor=actor,
            metadata={"transfer_id": transfer_id, "amount": order.payee_net_amount},
        )
        await self._sync_request(
            order, "complete", PaymentRequestStatus.PAID, actor, completed_at=_now()
        )
        await self._session.commit()

        logger.info(
            "order.funds_released",
            order_id=order.order_id,
            transfer_id=transfer_id,
            amount=order.payee_net_amount,
        )
        await self._notify(
            NotificationEvent.FUNDS_RELEASED,
            order,
            recipients=[order.payer_id, order.payee_id],
            amount=order.payee_net_amount,
        )
        return order

    # ------------------------------------------------------------------
    # Private: refund
    # ------------------------------------------------------------------

    async def _start_refund(
        self,
        order: Order,
        reason: RefundReason,
        actor: Actor,
        **extra: Any,
    ) -> Order:
        validate_transition(order.status, "refund")
        if order.escrow_status not in REFUNDABLE_CUSTODY:
            raise InvalidStateTransitionError(f"{order.status}/{order.escrow_status}", "refund")
        if extra.get("resolution") is not None:
            extra["resolution"] = str(extra["resolution"])
            extra["resolved_by"] = actor.user_id

        old_escrow = order.escrow_status
        await self._claim_custody(
            order, old_escrow, EscrowStatus.REFUNDING, refund_reason=reason.value, **extra
        )
        await self._record(
            order,
            EventType.DISPUTE_RESOLVED_PAYER if extra.get("resolution") else EventType.REFUND_INITIATED,
            old_status=order.status,
            actor=actor,
            metadata={"reason": reason.value, "amount": order.amount},
        )
        await self._session.commit()
        logger.info("order.refund_initiated", order_id=order.order_id, reason=reason.value)
        if extra.get("resolution"):
            await self._notify(
                NotificationEvent.DISPUTE_RESOLVED,
                order,
                recipients=[order.payer_id, order.payee_id],
                outcome=extra["resolution"],
            )
        return await self._execute_refund(order, actor)

    async def _execute_refund(self, order: Order, actor: Actor) -> Order:
        if not order.payment_intent_id:
            raise InvalidStateTransitionError(order.status, "refund")
        try:
            result = await self._gateway.refund(
                intent_id=order.payment_intent_id,
                amount=order.amount,
                idempotency_key=f"{order.order_id}:refund:{order.refund_attempt}",
                reason=order.refund_reason or RefundReason.REQUESTED_BY_CUSTOMER.value,
            )
        except GatewayOutcomeUnknownError:
            logger.warning("order.refund_outcome_unknown", order_id=order.order_id)
            raise
        except GatewayError as exc:
            await self._revert_claim(order, EscrowStatus.REFUNDING, EventType.REFUND_FAILED, exc, actor)
            raise

        if result.succeeded:
            return await self._finalize_refund(order, result.refund_id, actor)
        if result.status in ("failed", "canceled"):
            error = GatewayError(f"Refund {result.refund_id} {result.status}", reason_code=result.status)
            await self._revert_claim(order, EscrowStatus.REFUNDING, EventType.REFUND_FAILED, error, actor)
            raise error
        logger.info("order.refund_pending", order_id=order.order_id, refund_status=result.status)
        return order

    async def _finalize_refund(
        self,
        order: Order,
        refund_id: str,
        actor: Actor,
        *,
        expected_escrow: EscrowStatus = EscrowStatus.REFUNDING,
    ) -> Order:
        old_status = order.status
        await self._transition(
            order,
            "refund",
            expected_escrow=expected_escrow,
            new_escrow=EscrowStatus.REFUNDED,
            refund_id=refund_id,
            refunded_at=_now(),
        )
        await self._record(
            order,
            EventType.ORDER_REFUNDED,
            old_status=old_status,
            actor=actor,
            metadata={"refund_id": refund_id, "amount": order.amount},
        )
        await self._session.commit()
        logger.info("order.refunded", order_id=order.order_id, refund_id=refund_id)
        await self._notify(
            NotificationEvent.ORDER_REFUNDED,
            order,
            recipients=[order.payer_id, order.payee_id],
            amount=order.amount,
        )
        return order

    # ------------------------------------------------------------------
    # Private: state plumbing
    # ------------------------------------------------------------------

    async def _transition(
        self,
        order: Order,
        event_name: str,
        *,
        expected_escrow: EscrowStatus,
        new_escrow: EscrowStatus | None = None,
        **values: Any,
    ) -> str:
        """Validate and atomically apply a status transition.

        Raises InvalidStateTransitionError if the transition is illegal and
        StaleStateError if the order changed since it was read.
        """
        old_status = order.status
        new_status = validate_transition(old_status, event_name)
        target_escrow = new_escrow or expected_escrow
        if order.escrow_status != expected_escrow or not is_legal_combination(
            new_status, target_escrow
        ):
            raise InvalidStateTransitionError(f"{old_status}/{order.escrow_status}", event_name)

        updated = await self._orders.conditional_update(
            order,
            old_status,
            expected_escrow,
            status=new_status,
            escrow_status=target_escrow,
            **values,
        )
        if not updated:
            order_id = order.order_id
            await self._session.rollback()
            raise StaleStateError(order_id, f"{old_status}/{expected_escrow}")
        return new_status

    async def _claim_custody(
        self,
        order: Order,
        expected: str,
        claimed: EscrowStatus,
        **values: Any,
    ) -> None:
        """Commit-able claim on the funds before a gateway call."""
        if not is_legal_combination(order.status, claimed):
            raise InvalidStateTransitionError(f"{order.status}/{order.escrow_status}", claimed)
        updated = await self._orders.conditional_update(
            order, order.status, expected, escrow_status=claimed, **values
        )
        if not updated:
            order_id = order.order_id
            await self._session.rollback()
            raise StaleStateError(order_id, f"{order.status}/{expected}")

    async def _revert_claim(
        self,
        order: Order,
        claimed: EscrowStatus,
        event_type: EventType,
        exc: GatewayError,
        actor: Actor,
    ) -> None:
        back_to = self._custody_at_rest(order)
        if claimed == EscrowStatus.RELEASING:
            bump = {"release_attempt": order.release_attempt + 1}
        else:
            bump = {"refund_attempt": order.refund_attempt + 1}
        updated = await self._orders.conditional_update(
            order, order.status, claimed, escrow_status=back_to, **bump
        )
        if updated:
            await self._record(
                order,
                event_type,
                old_status=order.status,
                actor=actor,
                metadata={"reason_code": exc.reason_code, "message": exc.message},
            )
        await self._session.commit()
        logger.warning(
            "order.claim_reverted",
            order_id=order.order_id,
            claimed=str(claimed),
            escrow_status=order.escrow_status,
            reason_code=exc.reason_code,
        )

    @staticmethod
    def _custody_at_rest(order: Order) -> EscrowStatus:
        """Where funds sit when no money movement is in flight."""
        if order.status == OrderStatus.DISPUTED:
            return EscrowStatus.DISPUTED
        return EscrowStatus.HELD

    async def _sync_request(
        self,
        order: Order,
        event_name: str,
        expected: PaymentRequestStatus,
        actor: Actor,
        **values: Any,
    ) -> None:
        """Advance the payment request an order was created from, if any."""
        if not order.payment_request_id:
            return
        request = await self._requests.get_by_request_id(order.payment_request_id)
        if request is None or request.status != expected:
            return
        new_status = validate_request_transition(request.status, event_name)
        updated = await self._requests.conditional_update(
            request, expected, status=new_status, **values
        )
        if updated:
            await self._audit.record(
                subject_type=SubjectType.PAYMENT_REQUEST,
                subject_id=request.request_id,
                event_type=(
                    EventType.REQUEST_PAID if new_status == "paid" else EventType.REQUEST_COMPLETED
                ),
                old_status=expected,
                new_status=new_status,
                actor=actor.user_id,
                metadata={"order_id": order.order_id},
            )

    async def _record(
        self,
        order: Order,
        event_type: EventType,
        *,
        old_status: str | None,
        actor: Actor,
        metadata: dict | None = None,
    ) -> None:
        await self._audit.record(
            subject_type=SubjectType.ORDER,
            subject_id=order.order_id,
            event_type=event_type,
            old_status=old_status,
            new_status=order.status,
            escrow_status=order.escrow_status,
            actor=actor.user_id,
            metadata=metadata,
        )

    async def _notify(
        self,
        event: NotificationEvent,
        order: Order,
        *,
        recipients: list[str],
        **payload: Any,
    ) -> None:
        await self._notifier.notify(
            event.value,
            order_id=order.order_id,
            status=order.status,
            escrow_status=order.escrow_status,
            recipients=recipients,
            **payload,
        )

    @staticmethod
    def _gateway_metadata(order: Order) -> dict[str, str]:
        metadata = {
            "order_id": order.order_id,
            "payer_id": order.payer_id,
            "payee_id": order.payee_id,
        }
        if order.payment_request_id:
            metadata["payment_request_id"] = order.payment_request_id
        return metadata

    async def _reload(self, order_id: str) -> Order:
        order = await self._orders.get_by_order_id(order_id, refresh=True)
        if order is None:
            raise OrderNotFoundError(order_id)
        return order

    async def _get_order_or_raise(self, order_id: str) -> Order:
        order = await self._orders.get_by_order_id(order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        return order

    async def _get_deliverable_or_raise(self, order: Order, deliverable_id: str) -> Deliverable:
        try:
            pk = uuid.UUID(str(deliverable_id))
        except ValueError:
            raise DeliverableNotFoundError(str(deliverable_id)) from None
        deliverable = await self._deliverables.get_by_id(pk)
        if deliverable is None or deliverable.order_pk != order.id:
            raise DeliverableNotFoundError(str(deliverable_id))
        return deliverable

    @staticmethod
    def _require_payee(order: Order, actor: Actor, action: str) -> None:
        if actor.user_id != order.payee_id:
            raise PermissionDeniedError(actor.user_id, f"{action} order {order.order_id}")

    @staticmethod
    def _require_participant(order: Order, actor: Actor) -> None:
        if actor.is_admin or actor.is_system:
            return
        if actor.user_id not in (order.payer_id, order.payee_id):
            raise PermissionDeniedError(actor.user_id, f"view order {order.order_id}")

