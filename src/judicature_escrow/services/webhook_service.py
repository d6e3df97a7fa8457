"""Webhook Service — applies verified gateway events exactly once.

Flow for every delivery:
    1. Verify the ``Stripe-Signature`` header (fail closed).
    2. Claim the event id in the dedup store (``SET NX``).
    3. Dispatch to the EscrowService method the event type maps to.
    4. Mark the event processed, or release the claim if handling raised so
       the gateway's redelivery can try again.

Events for unknown types or orders that cannot be located are acknowledged
and ignored; the gateway would otherwise redeliver them for days.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from judicature_escrow.domain.collaborators import Actor
from judicature_escrow.domain.exceptions import DuplicateOperationError
from judicature_escrow.infrastructure.redis_client import ClaimResult
from judicature_escrow.logging_config import get_logger

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from judicature_escrow.domain.gateway_protocol import GatewayEvent, PaymentGateway
    from judicature_escrow.infrastructure.database.orm_models import Order
    from judicature_escrow.infrastructure.redis_client import WebhookDedupStore
    from judicature_escrow.services.escrow_service import EscrowService

logger = get_logger(__name__)

PROCESSED = "processed"
DUPLICATE = "duplicate"
IGNORED = "ignored"


class WebhookService:
    """Reconciles order state with events pushed by the payment gateway."""

    def __init__(
        self,
        gateway: PaymentGateway,
        dedup_store: WebhookDedupStore,
        escrow_service: EscrowService,
        webhook_secret: str,
    ) -> None:
        self._gateway = gateway
        self._dedup = dedup_store
        self._escrow = escrow_service
        self._secret = webhook_secret
        self._actor = Actor.system("stripe")
        self._handlers: dict[str, Callable[[GatewayEvent], Awaitable[str]]] = {
            "payment_intent.succeeded": self._on_intent_succeeded,
            "payment_intent.payment_failed": self._on_intent_failed,
            "transfer.created": self._on_transfer_paid,
            "transfer.paid": self._on_transfer_paid,
            "transfer.failed": self._on_transfer_failed,
            "transfer.reversed": self._on_transfer_failed,
            "charge.refunded": self._on_charge_refunded,
            "charge.dispute.created": self._on_dispute_created,
            "charge.dispute.closed": self._on_dispute_closed,
        }

    async def handle_event(self, raw_body: bytes, signature_header: str | None) -> str:
        """Verify, deduplicate and apply one webhook delivery.

        Returns ``processed``, ``duplicate`` or ``ignored``.

        Raises:
            WebhookSignatureError: The signature is missing or invalid.
            DuplicateOperationError: The same event is being applied right now.
        """
        event = self._gateway.verify_webhook_signature(
            raw_body, signature_header or "", self._secret
        )
        log = logger.bind(event_id=event.event_id, event_type=event.event_type)

        claim = await self._dedup.claim(event.event_id)
        if claim == ClaimResult.PROCESSED:
            log.info("webhook.duplicate")
            return DUPLICATE
        if claim == ClaimResult.IN_FLIGHT:
            log.warning("webhook.in_flight")
            raise DuplicateOperationError(event.event_id)

        try:
            outcome = await self._dispatch(event)
        except Exception:
            await self._dedup.release(event.event_id)
            log.exception("webhook.handler_failed")
            raise

        await self._dedup.mark_processed(event.event_id)
        log.info("webhook.handled", outcome=outcome)
        return outcome

    async def _dispatch(self, event: GatewayEvent) -> str:
        handler = self._handlers.get(event.event_type)
        if handler is None:
            logger.debug("webhook.unhandled_type", event_type=event.event_type)
            return IGNORED
        return await handler(event)

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def _on_intent_succeeded(self, event: GatewayEvent) -> str:
        intent_id = event.data.get("id")
        order = await self._locate(event, intent_id)
        if order is None:
            return IGNORED
        await self._escrow.confirm_capture(order.order_id, intent_id, self._actor)
        return PROCESSED

    async def _on_intent_failed(self, event: GatewayEvent) -> str:
        order = await self._locate(event, event.data.get("id"))
        if order is None:
            return IGNORED
        error = event.data.get("last_payment_error") or {}
        reason = error.get("decline_code") or error.get("code") or "payment_failed"
        await self._escrow.record_payment_failure(
            order.order_id, reason, self._actor, capture_key=event.metadata.get("capture_key")
        )
        return PROCESSED

    async def _on_transfer_paid(self, event: GatewayEvent) -> str:
        order = await self._locate(event)
        if order is None:
            return IGNORED
        await self._escrow.reconcile_transfer_paid(
            order.order_id, event.data.get("id", ""), self._actor, attempt=_release_attempt(event)
        )
        return PROCESSED

    async def _on_transfer_failed(self, event: GatewayEvent) -> str:
        order = await self._locate(event)
        if order is None:
            return IGNORED
        reason = "reversed" if event.event_type == "transfer.reversed" else "failed"
        await self._escrow.reconcile_transfer_failed(
            order.order_id,
            event.data.get("id", ""),
            reason,
            self._actor,
            attempt=_release_attempt(event),
        )
        return PROCESSED

    async def _on_charge_refunded(self, event: GatewayEvent) -> str:
        order = await self._locate(event, event.data.get("payment_intent"))
        if order is None:
            return IGNORED
        refunds = (event.data.get("refunds") or {}).get("data") or []
        refund_id = refunds[0].get("id") if refunds else event.data.get("id", "")
        await self._escrow.reconcile_refund(
            order.order_id, refund_id, self._actor, amount_refunded=event.data.get("amount_refunded")
        )
        return PROCESSED

    async def _on_dispute_created(self, event: GatewayEvent) -> str:
        order = await self._locate(event, event.data.get("payment_intent"))
        if order is None:
            return IGNORED
        await self._escrow.handle_chargeback(
            order.order_id,
            event.data.get("id", ""),
            event.data.get("reason") or "unspecified",
        )
        return PROCESSED

    async def _on_dispute_closed(self, event: GatewayEvent) -> str:
        order = await self._locate(event, event.data.get("payment_intent"))
        if order is None:
            return IGNORED
        await self._escrow.settle_chargeback(
            order.order_id,
            event.data.get("id", ""),
            event.data.get("status") or "unknown",
        )
        return PROCESSED

    async def _locate(self, event: GatewayEvent, intent_id: Any = None) -> Order | None:
        order_id = event.metadata.get("order_id") or event.data.get("transfer_group")
        order = await self._escrow.find_order(order_id, intent_id)
        if order is None:
            logger.warning(
                "webhook.order_not_found",
                event_id=event.event_id,
                order_id=order_id,
                intent_id=intent_id,
            )
        return order


def _release_attempt(event: GatewayEvent) -> int | None:
    """The release attempt a transfer event belongs to, from its metadata."""
    raw = event.metadata.get("release_attempt")
    try:
        return int(raw) if raw is not None else None
    except (TypeError, ValueError):
        return None
