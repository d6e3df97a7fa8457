"""Pydantic schemas for the order endpoints.

Request bodies only carry what the caller chooses; the acting user always
comes from the identity headers, never from the body.
"""

from __future__ import annotations

import uuid  # noqa: TC003
from datetime import datetime  # noqa: TC003

from pydantic import BaseModel, ConfigDict, Field

from judicature_escrow.domain.enums import DisputeOutcome, RefundReason, ReviewDecision

# ---------------------------------------------------------------------------
# Request Schemas
# ---------------------------------------------------------------------------


class CreateOrderRequest(BaseModel):
    """Request body for creating an escrow order. The caller is the payer."""

    payee_id: str = Field(..., min_length=1, max_length=64, description="The lawyer being hired")
    amount: int = Field(
        ...,
        gt=0,
        description="Order amount in minor currency units (paise, cents)",
        examples=[10000],
    )
    currency: str = Field(default="inr", min_length=3, max_length=3, examples=["inr"])
    description: str | None = Field(default=None, max_length=500)


class CapturePaymentRequest(BaseModel):
    payment_method_ref: str = Field(
        ...,
        min_length=1,
        description="Gateway payment method id collected by the client (e.g. pm_...)",
        examples=["pm_card_visa"],
    )


class CancelOrderRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


class SubmitDeliverableRequest(BaseModel):
    """A finished piece of work. ``file_ref`` points at an already-uploaded blob."""

    file_ref: str = Field(..., min_length=1, max_length=1024)
    file_name: str = Field(..., min_length=1, max_length=255)
    description: str | None = Field(default=None, max_length=500)


class ReviewDeliverableRequest(BaseModel):
    decision: ReviewDecision
    notes: str | None = Field(
        default=None,
        max_length=1000,
        description="Required when rejecting a deliverable",
    )


class RaiseDisputeRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=2000)


class ResolveDisputeRequest(BaseModel):
    outcome: DisputeOutcome = Field(..., description="Party the dispute is resolved for")
    notes: str | None = Field(default=None, max_length=1000)


class RefundOrderRequest(BaseModel):
    reason: RefundReason = RefundReason.REQUESTED_BY_CUSTOMER


# ---------------------------------------------------------------------------
# Response Schemas
# ---------------------------------------------------------------------------


class DeliverableResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    file_ref: str
    file_name: str
    description: str | None
    version: int
    uploaded_by: str
    status: str
    reviewed_by: str | None
    review_notes: str | None
    reviewed_at: datetime | None
    uploaded_at: datetime


class OrderResponse(BaseModel):
    """Response schema for an escrow order."""

    model_config = ConfigDict(from_attributes=True)

    order_id: str
    payer_id: str
    payee_id: str
    payment_request_id: str | None
    amount: int
    currency: str
    platform_fee: int
    payee_net_amount: int
    status: str
    escrow_status: str
    description: str | None
    payment_intent_id: str | None
    transfer_id: str | None
    refund_id: str | None
    dispute_reason: str | None
    resolution: str | None
    needs_attention: bool
    version: int
    created_at: datetime
    updated_at: datetime
    paid_at: datetime | None
    completed_at: datetime | None
    released_at: datetime | None
    disputed_at: datetime | None
    refunded_at: datetime | None
    cancelled_at: datetime | None
    deliverables: list[DeliverableResponse] = Field(default_factory=list)


class OrderStatusResponse(BaseModel):
    """Lightweight status check response."""

    order_id: str
    status: str
    escrow_status: str
    needs_attention: bool
    allowed_events: list[str] = Field(
        description="State machine events that can fire from the current status"
    )
