"""Application services: escrow orders, payment requests, the gateway and webhooks."""

from judicature_escrow.services.escrow_service import EscrowService
from judicature_escrow.services.payment_gateway import StripeGateway
from judicature_escrow.services.payment_request_service import PaymentRequestService
from judicature_escrow.services.webhook_service import WebhookService

__all__ = ["EscrowService", "PaymentRequestService", "StripeGateway", "WebhookService"]
