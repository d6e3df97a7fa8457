"""Payment request REST API routes.

Routes:
    POST   /api/v1/payment-requests                — Lawyer proposes terms
    GET    /api/v1/payment-requests                — List the caller's requests
    GET    /api/v1/payment-requests/{id}           — Get request details
    POST   /api/v1/payment-requests/{id}/respond   — Client accepts or rejects
    POST   /api/v1/payment-requests/{id}/pay       — Client pays (creates the order)
    POST   /api/v1/payment-requests/{id}/cancel    — Lawyer withdraws
"""

from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, Depends, Query

from judicature_escrow.api.deps import get_actor, get_payment_request_service
from judicature_escrow.domain.collaborators import Actor  # noqa: TC001
from judicature_escrow.domain.commands import (
    CreatePaymentRequest,
    ProceedWithPayment,
    RespondToRequest,
)
from judicature_escrow.schemas.common import ErrorResponse, Page
from judicature_escrow.schemas.orders import OrderResponse
from judicature_escrow.schemas.payment_requests import (
    CreatePaymentRequestBody,
    PaymentRequestResponse,
    ProceedWithPaymentBody,
    RespondToRequestBody,
)
from judicature_escrow.services.payment_request_service import (  # noqa: TC001
    PaymentRequestService,
)

router = APIRouter(
    prefix="/api/v1/payment-requests",
    tags=["Payment Requests"],
    responses={403: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)


@router.post(
    "",
    response_model=PaymentRequestResponse,
    status_code=201,
    summary="Propose a payment request",
)
async def create_request(
    body: CreatePaymentRequestBody,
    actor: Actor = Depends(get_actor),
    svc: PaymentRequestService = Depends(get_payment_request_service),
) -> PaymentRequestResponse:
    request = await svc.create_request(
        CreatePaymentRequest(
            actor=actor,
            counterparty_id=body.counterparty_id,
            amount=body.amount,
            currency=body.currency.lower(),
            service_type=body.service_type,
            description=body.description,
            urgency=body.urgency,
            estimated_delivery_days=body.estimated_delivery_days,
            case_id=body.case_id,
        )
    )
    return PaymentRequestResponse.from_request(request)


@router.get("", response_model=Page[PaymentRequestResponse], summary="List payment requests")
async def list_requests(
    role: Literal["proposer", "counterparty"] | None = None,
    status: str | None = None,
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=100),
    actor: Actor = Depends(get_actor),
    svc: PaymentRequestService = Depends(get_payment_request_service),
) -> Page[PaymentRequestResponse]:
    requests, total = await svc.list_requests(
        actor, role=role, status=status, page=page, page_size=page_size
    )
    return Page[PaymentRequestResponse](
        items=[PaymentRequestResponse.from_request(r) for r in requests],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.get("/{request_id}", response_model=PaymentRequestResponse, summary="Get a request")
async def get_request(
    request_id: str,
    actor: Actor = Depends(get_actor),
    svc: PaymentRequestService = Depends(get_payment_request_service),
) -> PaymentRequestResponse:
    request = await svc.get_request_for_actor(request_id, actor)
    return PaymentRequestResponse.from_request(request)


@router.post(
    "/{request_id}/respond",
    response_model=PaymentRequestResponse,
    summary="Accept or reject a request",
)
async def respond(
    request_id: str,
    body: RespondToRequestBody,
    actor: Actor = Depends(get_actor),
    svc: PaymentRequestService = Depends(get_payment_request_service),
) -> PaymentRequestResponse:
    request = await svc.respond(
        RespondToRequest(actor=actor, request_id=request_id, action=body.action, notes=body.notes)
    )
    return PaymentRequestResponse.from_request(request)


@router.post("/{request_id}/pay", response_model=OrderResponse, summary="Pay an accepted request")
async def proceed_with_payment(
    request_id: str,
    body: ProceedWithPaymentBody,
    actor: Actor = Depends(get_actor),
    svc: PaymentRequestService = Depends(get_payment_request_service),
) -> OrderResponse:
    """Create the escrow order for the request and charge the client."""
    order = await svc.proceed_with_payment(
        ProceedWithPayment(
            actor=actor,
            request_id=request_id,
            payment_method_ref=body.payment_method_ref,
        )
    )
    return OrderResponse.model_validate(order)


@router.post(
    "/{request_id}/cancel",
    response_model=PaymentRequestResponse,
    summary="Withdraw a pending request",
)
async def cancel_request(
    request_id: str,
    actor: Actor = Depends(get_actor),
    svc: PaymentRequestService = Depends(get_payment_request_service),
) -> PaymentRequestResponse:
    request = await svc.cancel_request(request_id, actor)
    return PaymentRequestResponse.from_request(request)
