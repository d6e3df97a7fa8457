"""Payment gateway contract.

Defines the interface the escrow services use to move money. The production
implementation wraps Stripe (services/payment_gateway.py); tests use a
recording fake. All amounts are integer minor currency units.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class IntentResult:
    """Outcome of creating and confirming a payment intent.

    ``status`` is the processor's intent status: ``succeeded`` means the
    funds are captured; ``processing`` / ``requires_action`` /
    ``requires_capture`` mean the outcome will arrive by webhook.
    """

    intent_id: str
    status: str

    @property
    def succeeded(self) -> bool:
        return self.status == "succeeded"

    @property
    def pending(self) -> bool:
        return self.status in {"processing", "requires_action", "requires_capture"}


@dataclass(frozen=True)
class TransferResult:
    transfer_id: str
    status: str = "paid"


@dataclass(frozen=True)
class RefundResult:
    refund_id: str
    status: str

    @property
    def succeeded(self) -> bool:
        return self.status in {"succeeded", "pending"}


@dataclass(frozen=True)
class GatewayEvent:
    """A verified webhook event.

    ``data`` is the event's ``data.object`` (the intent, transfer, charge or
    dispute the event is about).
    """

    event_id: str
    event_type: str
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def metadata(self) -> dict[str, Any]:
        return self.data.get("metadata") or {}


# ---------------------------------------------------------------------------
# Gateway Protocol
# ---------------------------------------------------------------------------


@runtime_checkable
class PaymentGateway(Protocol):
    """Protocol every payment gateway client must satisfy.

    Every mutating call takes a caller-supplied idempotency key; repeating a
    call with the same key must not move money twice.
    """

    async def create_and_confirm_intent(
        self,
        amount: int,
        currency: str,
        idempotency_key: str,
        payment_method_ref: str,
        metadata: dict[str, str],
    ) -> IntentResult: ...

    async def create_transfer(
        self,
        amount: int,
        currency: str,
        destination_account: str,
        idempotency_key: str,
        metadata: dict[str, str],
    ) -> TransferResult: ...

    async def refund(
        self,
        intent_id: str,
        amount: int,
        idempotency_key: str,
        reason: str,
    ) -> RefundResult: ...

    def verify_webhook_signature(
        self,
        raw_body: bytes,
        signature: str,
        secret: str,
    ) -> GatewayEvent: ...
