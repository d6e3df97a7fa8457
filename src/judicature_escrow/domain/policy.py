"""Escrow business rules: fee split, identifiers, and the custody table.

Pure functions and an immutable policy object. No I/O.
"""

from __future__ import annotations

import secrets
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal

from judicature_escrow.domain.enums import EscrowStatus, OrderStatus

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


@dataclass(frozen=True)
class EscrowPolicy:
    """Escrow rules injected into the services at construction time."""

    platform_fee_percent: float = 10.0
    min_amount: int = 100
    request_expiry_days: int = 7
    supported_currencies: frozenset[str] = field(default_factory=lambda: frozenset({"inr", "usd"}))
    default_currency: str = "inr"
    max_description_length: int = 500

    @property
    def request_expiry(self) -> timedelta:
        return timedelta(days=self.request_expiry_days)


@dataclass(frozen=True)
class AmountSplit:
    amount: int
    platform_fee: int
    payee_net_amount: int


def calculate_amounts(amount: int, fee_percent: float) -> AmountSplit:
    """Split ``amount`` (minor units) into platform fee and payee share.

    The fee is rounded half-up to a whole minor unit and the payee receives
    the remainder, so the two always sum to the original amount.

    >>> calculate_amounts(10000, 10)
    AmountSplit(amount=10000, platform_fee=1000, payee_net_amount=9000)
    """
    fee = (Decimal(amount) * Decimal(str(fee_percent)) / Decimal(100)).quantize(
        Decimal(1), rounding=ROUND_HALF_UP
    )
    platform_fee = int(fee)
    return AmountSplit(
        amount=amount,
        platform_fee=platform_fee,
        payee_net_amount=amount - platform_fee,
    )


def _to_base36(number: int) -> str:
    if number == 0:
        return "0"
    digits = []
    while number:
        number, rem = divmod(number, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def _random_token(length: int = 6) -> str:
    return "".join(secrets.choice(_BASE36) for _ in range(length))


def generate_order_id() -> str:
    """Return a human readable order id such as ``ORD-LX2K9A1B-7QF3ZD``."""
    return f"ORD-{_to_base36(int(time.time() * 1000))}-{_random_token()}".upper()


def generate_request_id() -> str:
    """Return a human readable payment request id such as ``PAY-LX2K9A1B-K2M8QD``."""
    return f"PAY-{_to_base36(int(time.time() * 1000))}-{_random_token()}".upper()


# ---------------------------------------------------------------------------
# Status x custody
# ---------------------------------------------------------------------------

LEGAL_ESCROW_STATES: dict[OrderStatus, frozenset[EscrowStatus]] = {
    OrderStatus.PENDING: frozenset({EscrowStatus.UNFUNDED}),
    OrderStatus.CANCELLED: frozenset({EscrowStatus.UNFUNDED}),
    OrderStatus.PAID: frozenset({EscrowStatus.HELD, EscrowStatus.REFUNDING}),
    OrderStatus.IN_PROGRESS: frozenset({EscrowStatus.HELD, EscrowStatus.REFUNDING}),
    OrderStatus.COMPLETED: frozenset(
        {
            EscrowStatus.HELD,
            EscrowStatus.RELEASING,
            EscrowStatus.RELEASED,
            EscrowStatus.REFUNDING,
        }
    ),
    OrderStatus.DISPUTED: frozenset(
        {EscrowStatus.DISPUTED, EscrowStatus.RELEASING, EscrowStatus.REFUNDING}
    ),
    OrderStatus.REFUNDED: frozenset({EscrowStatus.REFUNDED}),
}


def is_legal_combination(status: str, escrow_status: str) -> bool:
    """Return True if ``(status, escrow_status)`` is a reachable pair."""
    try:
        allowed = LEGAL_ESCROW_STATES[OrderStatus(status)]
        return EscrowStatus(escrow_status) in allowed
    except ValueError:
        return False


def is_terminal(status: str, escrow_status: str) -> bool:
    if status in (OrderStatus.CANCELLED, OrderStatus.REFUNDED):
        return True
    return status == OrderStatus.COMPLETED and escrow_status == EscrowStatus.RELEASED


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on the way back)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def is_expired(expires_at: datetime, now: datetime | None = None) -> bool:
    now = now or datetime.now(UTC)
    return as_utc(now) >= as_utc(expires_at)
