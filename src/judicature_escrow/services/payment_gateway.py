"""Payment Gateway — Stripe charges, Connect transfers and refunds.

Provides both a real Stripe integration and a simulated mode for local runs
without a Stripe account.

In simulation mode, ids are generated locally and Stripe's documented test
payment methods (``pm_card_chargeDeclined`` and friends) decline the same
way they would against the live test API. Idempotency keys are honoured in
both modes: repeating a call with the same key returns the first result.

Webhook signatures are always verified with the Stripe library, in both modes.
"""

from __future__ import annotations

import json
import uuid
from typing import Any

import stripe

from judicature_escrow.domain.exceptions import (
    GatewayError,
    GatewayOutcomeUnknownError,
    WebhookSignatureError,
)
from judicature_escrow.domain.gateway_protocol import (
    GatewayEvent,
    IntentResult,
    RefundResult,
    TransferResult,
)
from judicature_escrow.logging_config import get_logger

logger = get_logger(__name__)

# Test payment methods and the decline code Stripe returns for each.
SIMULATED_DECLINES = {
    "pm_card_chargeDeclined": "card_declined",
    "pm_card_visa_chargeDeclined": "card_declined",
    "pm_card_chargeDeclinedInsufficientFunds": "insufficient_funds",
    "pm_card_chargeDeclinedExpiredCard": "expired_card",
    "pm_card_chargeDeclinedProcessingError": "processing_error",
}
SIMULATED_REQUIRES_ACTION = {"pm_card_authenticationRequired", "pm_card_threeDSecure2Required"}


def _translate(exc: stripe.StripeError, operation: str) -> GatewayError:
    """Map a Stripe SDK exception onto the domain taxonomy."""
    if isinstance(exc, stripe.APIConnectionError):
        return GatewayOutcomeUnknownError(f"{operation}: {exc.user_message or exc}")
    reason = getattr(exc, "code", None) or type(exc).__name__
    message = exc.user_message or str(exc)
    return GatewayError(f"{operation} failed: {message}", reason_code=reason)


class StripeGateway:
    """PaymentGateway implementation backed by Stripe."""

    def __init__(
        self,
        secret_key: str = "",
        simulate: bool = True,
        webhook_tolerance: int = 300,
    ) -> None:
        """Initialize the gateway.

        Args:
            secret_key: Stripe secret API key (ignored when simulating).
            simulate: If True, never call Stripe; fabricate ids locally.
            webhook_tolerance: Maximum age in seconds of a signed webhook.
        """
        self._secret_key = secret_key
        self._simulate = simulate
        self._webhook_tolerance = webhook_tolerance
        self._simulated: dict[str, Any] = {}

    @property
    def simulated(self) -> bool:
        return self._simulate

    # ------------------------------------------------------------------
    # Charges
    # ------------------------------------------------------------------

    async def create_and_confirm_intent(
        self,
        amount: int,
        currency: str,
        idempotency_key: str,
        payment_method_ref: str,
        metadata: dict[str, str],
    ) -> IntentResult:
        if self._simulate:
            return self._simulate_intent(idempotency_key, payment_method_ref, metadata)

        try:
            intent = await stripe.PaymentIntent.create_async(
                amount=amount,
                currency=currency,
                payment_method=payment_method_ref,
                confirm=True,
                automatic_payment_methods={"enabled": True, "allow_redirects": "never"},
                metadata=metadata,
                idempotency_key=idempotency_key,
                api_key=self._secret_key,
            )
        except stripe.StripeError as exc:
            error = _translate(exc, "payment")
            logger.warning(
                "gateway.intent_failed",
                order_id=metadata.get("order_id"),
                reason_code=error.reason_code,
            )
            raise error from exc

        logger.info(
            "gateway.intent_created",
            order_id=metadata.get("order_id"),
            intent_id=intent.id,
            intent_status=intent.status,
        )
        return IntentResult(intent_id=intent.id, status=intent.status)

    # ------------------------------------------------------------------
    # Payouts
    # ------------------------------------------------------------------

    async def create_transfer(
        self,
        amount: int,
        currency: str,
        destination_account: str,
        idempotency_key: str,
        metadata: dict[str, str],
    ) -> TransferResult:
        if self._simulate:
            cached = self._simulated.get(idempotency_key)
            if cached is None:
                cached = TransferResult(transfer_id=f"tr_sim_{uuid.uuid4().hex[:24]}")
                self._simulated[idempotency_key] = cached
                logger.info(
                    "gateway.transfer_simulated",
                    order_id=metadata.get("order_id"),
                    transfer_id=cached.transfer_id,
                    amount=amount,
                    destination=destination_account,
                )
            return cached

        try:
            transfer = await stripe.Transfer.create_async(
                amount=amount,
                currency=currency,
                destination=destination_account,
                transfer_group=metadata.get("order_id"),
                metadata=metadata,
                idempotency_key=idempotency_key,
                api_key=self._secret_key,
            )
        except stripe.StripeError as exc:
            error = _translate(exc, "transfer")
            logger.warning(
                "gateway.transfer_failed",
                order_id=metadata.get("order_id"),
                reason_code=error.reason_code,
            )
            raise error from exc

        logger.info(
            "gateway.transfer_created",
            order_id=metadata.get("order_id"),
            transfer_id=transfer.id,
            amount=amount,
        )
        return TransferResult(transfer_id=transfer.id)

    async def refund(
        self,
        intent_id: str,
        amount: int,
        idempotency_key: str,
        reason: str,
    ) -> RefundResult:
        if self._simulate:
            cached = self._simulated.get(idempotency_key)
            if cached is None:
                cached = RefundResult(refund_id=f"re_sim_{uuid.uuid4().hex[:24]}", status="succeeded")
                self._simulated[idempotency_key] = cached
                logger.info(
                    "gateway.refund_simulated",
                    intent_id=intent_id,
                    refund_id=cached.refund_id,
                    amount=amount,
                )
            return cached

        try:
            refund = await stripe.Refund.create_async(
                payment_intent=intent_id,
                amount=amount,
                reason=reason,
                idempotency_key=idempotency_key,
                api_key=self._secret_key,
            )
        except stripe.StripeError as exc:
            error = _translate(exc, "refund")
            logger.warning("gateway.refund_failed", intent_id=intent_id, reason_code=error.reason_code)
            raise error from exc

        logger.info("gateway.refund_created", intent_id=intent_id, refund_id=refund.id)
        return RefundResult(refund_id=refund.id, status=refund.status or "pending")

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def verify_webhook_signature(
        self,
        raw_body: bytes,
        signature: str,
        secret: str,
    ) -> GatewayEvent:
        """Verify a ``Stripe-Signature`` header and parse the event.

        Raises WebhookSignatureError if the secret is unset, the signature is
        missing or wrong, the timestamp is outside the tolerance, or the body
        is not a Stripe event.
        """
        if not secret:
            raise WebhookSignatureError("Webhook secret is not configured")
        if not signature:
            raise WebhookSignatureError("Missing Stripe-Signature header")

        payload = raw_body.decode("utf-8")
        try:
            stripe.WebhookSignature.verify_header(
                payload, signature, secret, tolerance=self._webhook_tolerance
            )
        except stripe.SignatureVerificationError as exc:
            logger.warning("gateway.webhook_signature_invalid", error=str(exc))
            raise WebhookSignatureError() from exc

        try:
            body = json.loads(payload)
            return GatewayEvent(
                event_id=body["id"],
                event_type=body["type"],
                data=body.get("data", {}).get("object") or {},
            )
        except (ValueError, KeyError, AttributeError) as exc:
            raise WebhookSignatureError("Webhook body is not a valid event") from exc

    # ------------------------------------------------------------------
    # Simulation
    # ------------------------------------------------------------------

    def _simulate_intent(
        self,
        idempotency_key: str,
        payment_method_ref: str,
        metadata: dict[str, str],
    ) -> IntentResult:
        cached = self._simulated.get(idempotency_key)
        if isinstance(cached, GatewayError):
            raise cached
        if cached is not None:
            return cached

        decline = SIMULATED_DECLINES.get(payment_method_ref)
        if decline is not None:
            error = GatewayError("Your card was declined.", reason_code=decline)
            self._simulated[idempotency_key] = error
            logger.info(
                "gateway.intent_simulated_decline",
                order_id=metadata.get("order_id"),
                reason_code=decline,
            )
            raise error

        status = "requires_action" if payment_method_ref in SIMULATED_REQUIRES_ACTION else "succeeded"
        result = IntentResult(intent_id=f"pi_sim_{uuid.uuid4().hex[:24]}", status=status)
        self._simulated[idempotency_key] = result
        logger.info(
            "gateway.intent_simulated",
            order_id=metadata.get("order_id"),
            intent_id=result.intent_id,
            intent_status=status,
        )
        return result
