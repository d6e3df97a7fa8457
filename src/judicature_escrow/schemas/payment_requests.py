"""Pydantic schemas for the payment request endpoints."""

from __future__ import annotations

from datetime import datetime  # noqa: TC003
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field

from judicature_escrow.domain.enums import RequestAction, ServiceType, Urgency
from judicature_escrow.services.payment_request_service import effective_status

if TYPE_CHECKING:
    from judicature_escrow.infrastructure.database.orm_models import PaymentRequest


class CreatePaymentRequestBody(BaseModel):
    """A lawyer's price proposal to a client."""

    counterparty_id: str = Field(..., min_length=1, max_length=64, description="The client")
    amount: int = Field(..., gt=0, description="Amount in minor currency units")
    currency: str = Field(default="inr", min_length=3, max_length=3)
    service_type: ServiceType
    description: str = Field(..., min_length=10, max_length=500)
    urgency: Urgency = Urgency.MEDIUM
    estimated_delivery_days: int = Field(default=7, ge=1, le=365)
    case_id: str | None = Field(default=None, max_length=64)


class RespondToRequestBody(BaseModel):
    action: RequestAction
    notes: str | None = Field(default=None, max_length=500)


class ProceedWithPaymentBody(BaseModel):
    payment_method_ref: str = Field(..., min_length=1, examples=["pm_card_visa"])


class PaymentRequestResponse(BaseModel):
    """Response schema for a payment request.

    ``status`` is the effective status: a lapsed pending request reads as
    ``expired``. Build it with ``from_request``.
    """

    model_config = ConfigDict(from_attributes=True)

    request_id: str
    proposer_id: str
    counterparty_id: str
    amount: int
    currency: str
    service_type: str
    description: str
    urgency: str
    estimated_delivery_days: int
    case_id: str | None
    counterparty_notes: str | None
    status: str
    order_id: str | None
    created_at: datetime
    expires_at: datetime
    responded_at: datetime | None
    paid_at: datetime | None
    completed_at: datetime | None

    @classmethod
    def from_request(cls, request: PaymentRequest) -> PaymentRequestResponse:
        response = cls.model_validate(request)
        return response.model_copy(update={"status": effective_status(request)})
