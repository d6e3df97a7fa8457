"""Pydantic API schemas."""

from judicature_escrow.schemas.common import (
    AuditEventResponse,
    ErrorResponse,
    HealthResponse,
    Page,
)
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
from judicature_escrow.schemas.payment_requests import (
    CreatePaymentRequestBody,
    PaymentRequestResponse,
    ProceedWithPaymentBody,
    RespondToRequestBody,
)

__all__ = [
    "AuditEventResponse",
    "CancelOrderRequest",
    "CapturePaymentRequest",
    "CreateOrderRequest",
    "CreatePaymentRequestBody",
    "DeliverableResponse",
    "ErrorResponse",
    "HealthResponse",
    "OrderResponse",
    "OrderStatusResponse",
    "Page",
    "PaymentRequestResponse",
    "ProceedWithPaymentBody",
    "RaiseDisputeRequest",
    "RefundOrderRequest",
    "ResolveDisputeRequest",
    "RespondToRequestBody",
    "ReviewDeliverableRequest",
    "SubmitDeliverableRequest",
]
