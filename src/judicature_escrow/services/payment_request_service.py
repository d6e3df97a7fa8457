"""Payment Request Service — the handshake that precedes an order.

A lawyer proposes a price, the client accepts or rejects it, and an accepted
request is paid exactly once: paying creates one escrow order from the
request's terms and captures the client's card through the EscrowService.

Expiry is never written back; a pending request past ``expires_at`` simply
reads as ``expired`` and refuses every response.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING

from judicature_escrow.domain.commands import CreateOrder
from judicature_escrow.domain.enums import (
    EventType,
    NotificationEvent,
    OrderStatus,
    PaymentRequestStatus,
    RequestAction,
    Role,
    SubjectType,
)
from judicature_escrow.domain.exceptions import (
    InvalidStateTransitionError,
    PaymentRequestNotFoundError,
    PermissionDeniedError,
    RequestExpiredError,
    StaleStateError,
    ValidationError,
)
from judicature_escrow.domain.policy import generate_request_id, is_expired
from judicature_escrow.domain.state_machine import validate_request_transition
from judicature_escrow.infrastructure.database.orm_models import PaymentRequest
from judicature_escrow.infrastructure.database.repositories import (
    AuditRepository,
    PaymentRequestRepository,
)
from judicature_escrow.infrastructure.notifications import NotificationDispatcher
from judicature_escrow.logging_config import get_logger

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from judicature_escrow.domain.collaborators import Actor, NotificationSink, UserDirectory
    from judicature_escrow.domain.commands import (
        CreatePaymentRequest,
        ProceedWithPayment,
        RespondToRequest,
    )
    from judicature_escrow.infrastructure.database.orm_models import Order
    from judicature_escrow.services.escrow_service import EscrowService

logger = get_logger(__name__)


def effective_status(request: PaymentRequest, now: datetime | None = None) -> str:
    """The status callers see: stored status, or ``expired`` for a lapsed pending request."""
    if request.status == PaymentRequestStatus.PENDING and is_expired(request.expires_at, now):
        return PaymentRequestStatus.EXPIRED.value
    return request.status


class PaymentRequestService:
    """Manages payment requests from proposal to paid order."""

    def __init__(
        self,
        session: AsyncSession,
        *,
        escrow: EscrowService,
        users: UserDirectory,
        notifications: NotificationSink | NotificationDispatcher,
    ) -> None:
        self._session = session
        self._escrow = escrow
        self._users = users
        self._policy = escrow.policy
        if isinstance(notifications, NotificationDispatcher):
            self._notifier = notifications
        else:
            self._notifier = NotificationDispatcher(notifications)
        self._requests = PaymentRequestRepository(session)
        self._audit = AuditRepository(session)

    # ------------------------------------------------------------------
    # Proposal
    # ------------------------------------------------------------------

    async def create_request(self, cmd: CreatePaymentRequest) -> PaymentRequest:
        """A lawyer proposes terms to a client. The request expires after the policy window."""
        if cmd.actor.role != Role.LAWYER:
            raise PermissionDeniedError(cmd.actor.user_id, "create payment requests")
        cmd.validate(self._policy)
        await self._users.resolve(cmd.counterparty_id)

        now = datetime.now(UTC)
        request = PaymentRequest(
            request_id=generate_request_id(),
            proposer_id=cmd.actor.user_id,
            counterparty_id=cmd.counterparty_id,
            amount=cmd.amount,
            currency=cmd.currency,
            service_type=str(cmd.service_type),
            description=cmd.description.strip(),
            urgency=str(cmd.urgency),
            estimated_delivery_days=cmd.estimated_delivery_days,
            case_id=cmd.case_id,
            status=PaymentRequestStatus.PENDING.value,
            expires_at=now + self._policy.request_expiry,
        )
        request = await self._requests.create(request)
        await self._record(
            request,
            EventType.REQUEST_CREATED,
            old_status=None,
            actor=cmd.actor,
            metadata={"amount": request.amount, "currency": request.currency},
        )
        await self._session.commit()

        logger.info(
            "payment_request.created",
            request_id=request.request_id,
            amount=request.amount,
            counterparty_id=request.counterparty_id,
        )
        await self._notify(
            NotificationEvent.REQUEST_CREATED,
            request,
            recipients=[request.counterparty_id],
            amount=request.amount,
            currency=request.currency,
        )
        return request

    async def respond(self, cmd: RespondToRequest) -> PaymentRequest:
        """The client accepts or rejects a pending request."""
        cmd.validate(self._policy)
        request = await self._get_request_or_raise(cmd.request_id)
        if cmd.actor.user_id != request.counterparty_id:
            raise PermissionDeniedError(cmd.actor.user_id, f"respond to {request.request_id}")
        if is_expired(request.expires_at):
            raise RequestExpiredError(request.request_id)

        event_name = "accept" if cmd.action == RequestAction.ACCEPT else "reject"
        new_status = validate_request_transition(request.status, event_name)
        updated = await self._requests.conditional_update(
            request,
            PaymentRequestStatus.PENDING,
            status=new_status,
            counterparty_notes=cmd.notes,
            responded_at=datetime.now(UTC),
        )
        if not updated:
            request_id = request.request_id
            await self._session.rollback()
            raise StaleStateError(request_id, PaymentRequestStatus.PENDING)

        await self._record(
            request,
            EventType.REQUEST_ACCEPTED if new_status == "accepted" else EventType.REQUEST_REJECTED,
            old_status=PaymentRequestStatus.PENDING,
            actor=cmd.actor,
            metadata={"notes": cmd.notes} if cmd.notes else None,
        )
        await self._session.commit()

        logger.info(
            "payment_request.responded",
            request_id=request.request_id,
            action=str(cmd.action),
        )
        await self._notify(
            NotificationEvent.REQUEST_RESPONDED,
            request,
            recipients=[request.proposer_id],
            action=str(cmd.action),
            notes=cmd.notes,
        )
        return request

    async def cancel_request(self, request_id: str, actor: Actor) -> PaymentRequest:
        """The proposer withdraws a request the client has not answered."""
        request = await self._get_request_or_raise(request_id)
        if actor.user_id != request.proposer_id:
            raise PermissionDeniedError(actor.user_id, f"cancel {request_id}")
        if is_expired(request.expires_at):
            raise RequestExpiredError(request_id)

        new_status = validate_request_transition(request.status, "cancel")
        updated = await self._requests.conditional_update(
            request, PaymentRequestStatus.PENDING, status=new_status
        )
        if not updated:
            await self._session.rollback()
            raise StaleStateError(request_id, PaymentRequestStatus.PENDING)

        await self._record(
            request, EventType.REQUEST_CANCELLED, old_status=PaymentRequestStatus.PENDING, actor=actor
        )
        await self._session.commit()
        logger.info("payment_request.cancelled", request_id=request_id)
        await self._notify(
            NotificationEvent.REQUEST_CANCELLED, request, recipients=[request.counterparty_id]
        )
        return request

    # ------------------------------------------------------------------
    # Payment
    # ------------------------------------------------------------------

    async def proceed_with_payment(self, cmd: ProceedWithPayment) -> Order:
        """Create the request's order and charge the client.

        The request is claimed by writing the new order id onto it in the same
        transaction that inserts the order, so concurrent duplicates produce a
        single order; the loser gets StaleStateError. If the capture fails the
        request stays ``accepted`` with its pending order linked, and calling
        again retries that same order.
        """
        cmd.validate(self._policy)
        request = await self._get_request_or_raise(cmd.request_id)
        if cmd.actor.user_id != request.counterparty_id:
            raise PermissionDeniedError(cmd.actor.user_id, f"pay {request.request_id}")

        if request.order_id is not None:
            if request.status != PaymentRequestStatus.ACCEPTED:
                logger.info("payment_request.already_paid", request_id=request.request_id)
                return await self._escrow.get_order(request.order_id)
            return await self._capture(request, request.order_id, cmd)

        if request.status != PaymentRequestStatus.ACCEPTED:
            raise InvalidStateTransitionError(request.status, "proceed_with_payment")

        request_id = request.request_id
        order = await self._escrow.create_order(
            CreateOrder(
                actor=cmd.actor,
                payer_id=request.counterparty_id,
                payee_id=request.proposer_id,
                amount=request.amount,
                currency=request.currency,
                description=request.description,
                payment_request_id=request_id,
            ),
            commit=False,
        )
        order_id = order.order_id
        claimed = await self._requests.conditional_update(
            request,
            PaymentRequestStatus.ACCEPTED,
            require_unlinked=True,
            order_id=order_id,
        )
        if not claimed:
            await self._session.rollback()
            raise StaleStateError(request_id, "accepted and unpaid")
        await self._session.commit()
        logger.info("payment_request.order_linked", request_id=request_id, order_id=order_id)

        return await self._capture(request, order_id, cmd)

    async def _capture(
        self, request: PaymentRequest, order_id: str, cmd: ProceedWithPayment
    ) -> Order:
        order = await self._escrow.capture_payment(order_id, cmd.actor, cmd.payment_method_ref)
        if order.status == OrderStatus.PAID:
            await self._session.refresh(request)
            await self._notify(
                NotificationEvent.REQUEST_PAID,
                request,
                recipients=[request.proposer_id],
                order_id=order_id,
            )
        return order

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_request_for_actor(self, request_id: str, actor: Actor) -> PaymentRequest:
        request = await self._get_request_or_raise(request_id)
        if not actor.is_admin and actor.user_id not in (
            request.proposer_id,
            request.counterparty_id,
        ):
            raise PermissionDeniedError(actor.user_id, f"view {request_id}")
        return request

    async def list_requests(
        self,
        actor: Actor,
        *,
        role: str | None = None,
        status: str | None = None,
        page: int = 1,
        page_size: int = 20,
    ) -> tuple[list[PaymentRequest], int]:
        """List the caller's requests; ``role`` is ``proposer`` or ``counterparty``."""
        valid = {s.value for s in PaymentRequestStatus}
        if status is not None and status not in valid:
            raise ValidationError({"status": "unknown payment request status"})

        expired: bool | None = None
        stored_status = status
        if status == PaymentRequestStatus.EXPIRED:
            stored_status, expired = PaymentRequestStatus.PENDING.value, True
        elif status == PaymentRequestStatus.PENDING:
            expired = False

        return await self._requests.list_for_participant(
            None if actor.is_admin else actor.user_id,
            as_proposer=role in (None, "proposer"),
            as_counterparty=role in (None, "counterparty"),
            status=stored_status,
            expired=expired,
            limit=page_size,
            offset=(max(page, 1) - 1) * page_size,
        )

    # ------------------------------------------------------------------
    # Private
    # ------------------------------------------------------------------

    async def _get_request_or_raise(self, request_id: str) -> PaymentRequest:
        request = await self._requests.get_by_request_id(request_id)
        if request is None:
            raise PaymentRequestNotFoundError(request_id)
        return request

    async def _record(
        self,
        request: PaymentRequest,
        event_type: EventType,
        *,
        old_status: str | None,
        actor: Actor,
        metadata: dict | None = None,
    ) -> None:
        await self._audit.record(
            subject_type=SubjectType.PAYMENT_REQUEST,
            subject_id=request.request_id,
            event_type=event_type,
            old_status=old_status,
            new_status=request.status,
            actor=actor.user_id,
            metadata=metadata,
        )

    async def _notify(
        self,
        event: NotificationEvent,
        request: PaymentRequest,
        *,
        recipients: list[str],
        **payload: object,
    ) -> None:
        await self._notifier.notify(
            event.value,
            request_id=request.request_id,
            status=request.status,
            recipients=recipients,
            **payload,
        )
