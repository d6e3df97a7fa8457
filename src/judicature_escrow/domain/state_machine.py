"""Order and Payment Request State Machine Guards.

Uses python-statemachine to enforce legal status transitions at the domain
level. No matter what the API, a webhook, or an admin does, an illegal
transition (e.g., pending -> completed) raises TransitionNotAllowed, which
the services translate into InvalidStateTransitionError.

The machines are instantiated per-record from the stored status and validate
a transition before the conditional update is issued.

Order transition table:
    pending      -> paid          (capture_succeeded)
    pending      -> cancelled     (cancel)
    paid         -> in_progress   (start_work)
    paid         -> in_progress   (deliverable_submitted)
    in_progress  -> in_progress   (deliverable_submitted, deliverable_rejected)
    in_progress  -> completed     (deliverable_accepted)
    completed    -> completed     (funds_released)
    paid         -> disputed      (raise_dispute)
    in_progress  -> disputed      (raise_dispute)
    completed    -> disputed      (raise_dispute, only while escrow is held)
    disputed     -> completed     (resolve_for_payee)
    paid         -> refunded      (refund)
    in_progress  -> refunded      (refund)
    completed    -> refunded      (refund)
    disputed     -> refunded      (refund)

Payment request transition table:
    pending   -> accepted   (accept)
    pending   -> rejected   (reject)
    pending   -> cancelled  (cancel)
    accepted  -> paid       (mark_paid)
    paid      -> completed  (complete)

The custody axis (escrow_status) is checked separately against
domain.policy.LEGAL_ESCROW_STATES.
"""

from __future__ import annotations

from statemachine import State, StateMachine
from statemachine.exceptions import TransitionNotAllowed

from judicature_escrow.domain.exceptions import InvalidStateTransitionError


class _GuardMixin:
    """Start-at-any-status construction shared by both machines."""

    def _check_status(self, current_status: str) -> None:
        valid_values = {s.value for s in self.states}  # type: ignore[attr-defined]
        if current_status not in valid_values:
            valid = ", ".join(sorted(valid_values))
            raise ValueError(f"Unknown status '{current_status}'. Valid states: {valid}")

    @property
    def status(self) -> str:
        """Return the current state value as a string (matches the status enum)."""
        return str(self.current_state.value)  # type: ignore[attr-defined]

    def get_allowed_events(self) -> list[str]:
        """Return the names of the events that can fire from the current state."""
        return [event.id for event in self.allowed_events]  # type: ignore[attr-defined]


class OrderStateMachine(_GuardMixin, StateMachine):
    """State machine that guards the order lifecycle.

    Usage:
        sm = OrderStateMachine(current_status="paid")
        sm.start_work()   # transitions to in_progress
        sm.status         # "in_progress"
    """

    # --- States ---
    PENDING = State("Pending", value="pending", initial=True)
    PAID = State("Paid", value="paid")
    IN_PROGRESS = State("In progress", value="in_progress")
    COMPLETED = State("Completed", value="completed")
    DISPUTED = State("Disputed", value="disputed")
    CANCELLED = State("Cancelled", value="cancelled", final=True)
    REFUNDED = State("Refunded", value="refunded", final=True)

    # --- Events / Transitions ---

    # Payment
    capture_succeeded = PENDING.to(PAID)
    cancel = PENDING.to(CANCELLED)

    # Work
    start_work = PAID.to(IN_PROGRESS)
    deliverable_submitted = PAID.to(IN_PROGRESS) | IN_PROGRESS.to.itself()
    deliverable_rejected = IN_PROGRESS.to.itself()
    deliverable_accepted = IN_PROGRESS.to(COMPLETED)

    # Settlement
    funds_released = COMPLETED.to.itself()
    refund = (
        PAID.to(REFUNDED)
        | IN_PROGRESS.to(REFUNDED)
        | COMPLETED.to(REFUNDED)
        | DISPUTED.to(REFUNDED)
    )

    # Disputes
    raise_dispute = PAID.to(DISPUTED) | IN_PROGRESS.to(DISPUTED) | COMPLETED.to(DISPUTED)
    resolve_for_payee = DISPUTED.to(COMPLETED)

    def __init__(self, current_status: str = "pending") -> None:
        """Initialize the state machine at a given status.

        Args:
            current_status: The current OrderStatus value (e.g., "paid").
        """
        self._check_status(current_status)
        super().__init__(start_value=current_status)


class PaymentRequestStateMachine(_GuardMixin, StateMachine):
    """State machine that guards the payment request handshake."""

    PENDING = State("Pending", value="pending", initial=True)
    ACCEPTED = State("Accepted", value="accepted")
    REJECTED = State("Rejected", value="rejected", final=True)
    CANCELLED = State("Cancelled", value="cancelled", final=True)
    PAID = State("Paid", value="paid")
    COMPLETED = State("Completed", value="completed", final=True)

    accept = PENDING.to(ACCEPTED)
    reject = PENDING.to(REJECTED)
    cancel = PENDING.to(CANCELLED)
    mark_paid = ACCEPTED.to(PAID)
    complete = PAID.to(COMPLETED)

    def __init__(self, current_status: str = "pending") -> None:
        self._check_status(current_status)
        super().__init__(start_value=current_status)


def _fire(sm: _GuardMixin, current_status: str, event_name: str) -> str:
    event_method = getattr(sm, event_name, None)
    if event_method is None or not callable(event_method):
        raise ValueError(
            f"Unknown event '{event_name}'. "
            f"Allowed events from {current_status}: {sm.get_allowed_events()}"
        )
    try:
        event_method()
    except TransitionNotAllowed as err:
        raise InvalidStateTransitionError(current_status, event_name) from err
    return sm.status


def validate_transition(current_status: str, event_name: str) -> str:
    """Validate an order transition and return the new status.

    Creates a temporary state machine, fires the named event, and returns
    the resulting status string.

    Args:
        current_status: Current OrderStatus value.
        event_name: The event to fire (e.g., "start_work").

    Returns:
        The new status string after the transition.

    Raises:
        InvalidStateTransitionError: If the transition is illegal.
        ValueError: If the status or event name is unknown.
    """
    return _fire(OrderStateMachine(current_status=current_status), current_status, event_name)


def validate_request_transition(current_status: str, event_name: str) -> str:
    """Same as validate_transition, for payment requests."""
    return _fire(
        PaymentRequestStateMachine(current_status=current_status), current_status, event_name
    )
