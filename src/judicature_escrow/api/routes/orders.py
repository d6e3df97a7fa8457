"""Escrow order REST API routes.

The caller is identified by the ``X-User-Id`` / ``X-User-Role`` headers;
every permission decision is made by the EscrowService.

Routes:
    POST   /api/v1/orders                                    — Create an order (caller pays)
    GET    /api/v1/orders                                    — List the caller's orders
    GET    /api/v1/orders/attention                          — Admin: orders needing follow-up
    GET    /api/v1/orders/{id}                               — Get order details
    GET    /api/v1/orders/{id}/status                        — Status, custody, allowed events
    GET    /api/v1/orders/{id}/events                        — Audit trail
    POST   /api/v1/orders/{id}/capture                       — Charge the payer
    POST   /api/v1/orders/{id}/start                         — Payee starts work
    POST   /api/v1/orders/{id}/cancel                        — Cancel an unpaid order
    POST   /api/v1/orders/{id}/deliverables                  — Submit a deliverable
    GET    /api/v1/orders/{id}/deliverables                  — List deliverables
    POST   /api/v1/orders/{id}/deliverables/{did}/review     — Accept or reject
    DELETE /api/v1/orders/{id}/deliverables/{did}            — Withdraw a pending deliverable
    POST   /api/v1/orders/{id}/release                       — Release funds to the payee
    POST   /api/v1/orders/{id}/dispute                       — Raise a dispute
    POST   /api/v1/orders/{id}/resolve                       — Admin resolves a dispute
    POST   /api/v1/orders/{id}/refund                        — Admin refunds the payer
"""

from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, Depends, Query

from judicature_escrow.api.deps import get_actor, get_escrow_service
from judicature_escrow.domain.collaborators import Actor  # noqa: TC001
from judicature_escrow.domain.commands import (
    CreateOrder,
    RaiseDispute,
    RefundOrder,
    ResolveDispute,
    ReviewDeliverable,
    SubmitDeliverable,
)
from judicature_escrow.logging_config import get_logger
from judicature_escrow.schemas.common import AuditEventResponse, ErrorResponse, Page
from judicature_escrow.schemas.orders import (
    CancelOrderRequest,
    CapturePaymentRequest,
    CreateOrderRequest,
    DeliverableResponse,
    OrderResponse,
    OrderStatusResponse,
    RaiseDisputeRequest,
    RefundOrderRequest,
    ResolveDisputeRequest,
    ReviewDeliverableRequest,
    SubmitDeliverableRequest,
)
from judicature_escrow.services.escrow_service import EscrowService  # noqa: TC001

router = APIRouter(
    prefix="/api/v1/orders",
    tags=["Orders"],
    responses={
        403: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
    },
)
logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Create & Read
# ---------------------------------------------------------------------------


@router.post("", response_model=OrderResponse, status_code=201, summary="Create an escrow order")
async def create_order(
    body: CreateOrderRequest,
    actor: Actor = Depends(get_actor),
    svc: EscrowService = Depends(get_escrow_service),
) -> OrderResponse:
    """Create an order in ``pending``/``unfunded`` with the caller as payer."""
    order = await svc.create_order(
        CreateOrder(
            actor=actor,
            payer_id=actor.user_id,
            payee_id=body.payee_id,
            amount=body.amount,
            currency=body.currency.lower(),
            description=body.description,
        )
    )
    return OrderResponse.model_validate(order)


@router.get("", response_model=Page[OrderResponse], summary="List orders")
async def list_orders(
    role: Literal["payer", "payee"] | None = None,
    status: str | None = None,
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=100),
    actor: Actor = Depends(get_actor),
    svc: EscrowService = Depends(get_escrow_service),
) -> Page[OrderResponse]:
    orders, total = await svc.list_orders(
        actor, role=role, status=status, page=page, page_size=page_size
    )
    return Page[OrderResponse](
        items=[OrderResponse.model_validate(o) for o in orders],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.get(
    "/attention", response_model=list[OrderResponse], summary="Orders needing follow-up"
)
async def list_attention(
    actor: Actor = Depends(get_actor),
    svc: EscrowService = Depends(get_escrow_service),
) -> list[OrderResponse]:
    """Orphaned charges, failed transfers and chargebacks an admin must handle."""
    return [OrderResponse.model_validate(o) for o in await svc.list_needing_attention(actor)]


@router.get("/{order_id}", response_model=OrderResponse, summary="Get order details")
async def get_order(
    order_id: str,
    actor: Actor = Depends(get_actor),
    svc: EscrowService = Depends(get_escrow_service),
) -> OrderResponse:
    order = await svc.get_order_for_actor(order_id, actor)
    return OrderResponse.model_validate(order)


@router.get("/{order_id}/status", response_model=OrderStatusResponse, summary="Order status")
async def get_status(
    order_id: str,
    actor: Actor = Depends(get_actor),
    svc: EscrowService = Depends(get_escrow_service),
) -> OrderStatusResponse:
    """Lightweight status check with the state machine's allowed events."""
    return OrderStatusResponse(**await svc.get_status(order_id, actor))


@router.get(
    "/{order_id}/events", response_model=list[AuditEventResponse], summary="Order audit trail"
)
async def get_events(
    order_id: str,
    actor: Actor = Depends(get_actor),
    svc: EscrowService = Depends(get_escrow_service),
) -> list[AuditEventResponse]:
    events = await svc.get_events(order_id, actor)
    return [AuditEventResponse.model_validate(e) for e in events]


# ---------------------------------------------------------------------------
# Payment
# ---------------------------------------------------------------------------


@router.post("/{order_id}/capture", response_model=OrderResponse, summary="Charge the payer")
async def capture_payment(
    order_id: str,
    body: CapturePaymentRequest,
    actor: Actor = Depends(get_actor),
    svc: EscrowService = Depends(get_escrow_service),
) -> OrderResponse:
    """Charge the payer's card and hold the funds.

    A pending bank or 3-D Secure step leaves the order ``pending``; the
    gateway's webhook completes it.
    """
    order = await svc.capture_payment(order_id, actor, body.payment_method_ref)
    return OrderResponse.model_validate(order)


@router.post("/{order_id}/cancel", response_model=OrderResponse, summary="Cancel an unpaid order")
async def cancel_order(
    order_id: str,
    body: CancelOrderRequest | None = None,
    actor: Actor = Depends(get_actor),
    svc: EscrowService = Depends(get_escrow_service),
) -> OrderResponse:
    order = await svc.cancel_order(order_id, actor, body.reason if body else None)
    return OrderResponse.model_validate(order)


# ---------------------------------------------------------------------------
# Work
# ---------------------------------------------------------------------------


@router.post("/{order_id}/start", response_model=OrderResponse, summary="Payee starts work")
async def start_work(
    order_id: str,
    actor: Actor = Depends(get_actor),
    svc: EscrowService = Depends(get_escrow_service),
) -> OrderResponse:
    order = await svc.start_work(order_id, actor)
    return OrderResponse.model_validate(order)


@router.post(
    "/{order_id}/deliverables",
    response_model=DeliverableResponse,
    status_code=201,
    summary="Submit a deliverable",
)
async def submit_deliverable(
    order_id: str,
    body: SubmitDeliverableRequest,
    actor: Actor = Depends(get_actor),
    svc: EscrowService = Depends(get_escrow_service),
) -> DeliverableResponse:
    deliverable = await svc.submit_deliverable(
        SubmitDeliverable(
            actor=actor,
            order_id=order_id,
            file_ref=body.file_ref,
            file_name=body.file_name,
            description=body.description,
        )
    )
    return DeliverableResponse.model_validate(deliverable)


@router.get(
    "/{order_id}/deliverables",
    response_model=list[DeliverableResponse],
    summary="List deliverables",
)
async def list_deliverables(
    order_id: str,
    actor: Actor = Depends(get_actor),
    svc: EscrowService = Depends(get_escrow_service),
) -> list[DeliverableResponse]:
    deliverables = await svc.list_deliverables(order_id, actor)
    return [DeliverableResponse.model_validate(d) for d in deliverables]


@router.post(
    "/{order_id}/deliverables/{deliverable_id}/review",
    response_model=DeliverableResponse,
    summary="Accept or reject a deliverable",
)
async def review_deliverable(
    order_id: str,
    deliverable_id: str,
    body: ReviewDeliverableRequest,
    actor: Actor = Depends(get_actor),
    svc: EscrowService = Depends(get_escrow_service),
) -> DeliverableResponse:
    deliverable = await svc.review_deliverable(
        ReviewDeliverable(
            actor=actor,
            order_id=order_id,
            deliverable_id=deliverable_id,
            decision=body.decision,
            notes=body.notes,
        )
    )
    return DeliverableResponse.model_validate(deliverable)


@router.delete(
    "/{order_id}/deliverables/{deliverable_id}",
    status_code=204,
    summary="Withdraw a pending deliverable",
)
async def delete_deliverable(
    order_id: str,
    deliverable_id: str,
    actor: Actor = Depends(get_actor),
    svc: EscrowService = Depends(get_escrow_service),
) -> None:
    await svc.delete_deliverable(order_id, deliverable_id, actor)


# ---------------------------------------------------------------------------
# Settlement & Disputes
# ---------------------------------------------------------------------------


@router.post("/{order_id}/release", response_model=OrderResponse, summary="Release funds")
async def release_funds(
    order_id: str,
    actor: Actor = Depends(get_actor),
    svc: EscrowService = Depends(get_escrow_service),
) -> OrderResponse:
    """Transfer the payee's share of a completed order. Repeating it is a no-op."""
    order = await svc.release_funds(order_id, actor)
    return OrderResponse.model_validate(order)


@router.post("/{order_id}/dispute", response_model=OrderResponse, summary="Raise a dispute")
async def raise_dispute(
    order_id: str,
    body: RaiseDisputeRequest,
    actor: Actor = Depends(get_actor),
    svc: EscrowService = Depends(get_escrow_service),
) -> OrderResponse:
    order = await svc.raise_dispute(RaiseDispute(actor=actor, order_id=order_id, reason=body.reason))
    logger.info("api.dispute_raised", order_id=order_id)
    return OrderResponse.model_validate(order)


@router.post("/{order_id}/resolve", response_model=OrderResponse, summary="Resolve a dispute")
async def resolve_dispute(
    order_id: str,
    body: ResolveDisputeRequest,
    actor: Actor = Depends(get_actor),
    svc: EscrowService = Depends(get_escrow_service),
) -> OrderResponse:
    order = await svc.resolve_dispute(
        ResolveDispute(actor=actor, order_id=order_id, outcome=body.outcome, notes=body.notes)
    )
    return OrderResponse.model_validate(order)


@router.post("/{order_id}/refund", response_model=OrderResponse, summary="Refund the payer")
async def refund_order(
    order_id: str,
    body: RefundOrderRequest | None = None,
    actor: Actor = Depends(get_actor),
    svc: EscrowService = Depends(get_escrow_service),
) -> OrderResponse:
    reason = body.reason if body else RefundOrderRequest().reason
    order = await svc.refund_order(RefundOrder(actor=actor, order_id=order_id, reason=reason))
    return OrderResponse.model_validate(order)
