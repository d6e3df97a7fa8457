"""Domain exceptions for the Judicature escrow core.

These exceptions are framework-agnostic and represent business rule violations.
They are caught and translated to HTTP responses by the API layer's middleware.
"""


class EscrowError(Exception):
    """Base exception for all domain errors."""

    def __init__(self, message: str, code: str = "ESCROW_ERROR") -> None:
        self.message = message
        self.code = code
        super().__init__(self.message)


# --- Validation Errors ---


class ValidationError(EscrowError):
    """Raised when a command fails field-level validation.

    ``field_errors`` maps each offending field to a human-readable reason.
    """

    def __init__(self, field_errors: dict[str, str]) -> None:
        fields = ", ".join(sorted(field_errors))
        super().__init__(
            message=f"Validation failed for: {fields}",
            code="VALIDATION_ERROR",
        )
        self.field_errors = field_errors


class PermissionDeniedError(EscrowError):
    """Raised when the caller's identity or role may not perform an operation."""

    def __init__(self, actor_id: str, action: str) -> None:
        super().__init__(
            message=f"User {actor_id} is not allowed to {action}",
            code="PERMISSION_DENIED",
        )
        self.actor_id = actor_id
        self.action = action


# --- Not Found Errors ---


class NotFoundError(EscrowError):
    """Base class for lookups that found nothing."""


class OrderNotFoundError(NotFoundError):
    """Raised when an order id does not exist."""

    def __init__(self, order_id: str) -> None:
        super().__init__(
            message=f"Order not found: {order_id}",
            code="ORDER_NOT_FOUND",
        )
        self.order_id = order_id


class DeliverableNotFoundError(NotFoundError):
    def __init__(self, deliverable_id: str) -> None:
        super().__init__(
            message=f"Deliverable not found: {deliverable_id}",
            code="DELIVERABLE_NOT_FOUND",
        )
        self.deliverable_id = deliverable_id


class PaymentRequestNotFoundError(NotFoundError):
    def __init__(self, request_id: str) -> None:
        super().__init__(
            message=f"Payment request not found: {request_id}",
            code="PAYMENT_REQUEST_NOT_FOUND",
        )
        self.request_id = request_id


class UserNotFoundError(NotFoundError):
    def __init__(self, user_id: str) -> None:
        super().__init__(
            message=f"User not found: {user_id}",
            code="USER_NOT_FOUND",
        )
        self.user_id = user_id


# --- State Conflict Errors ---


class StateConflictError(EscrowError):
    """Base class for operations that lost a race or hit the wrong state."""


class InvalidStateTransitionError(StateConflictError):
    """Raised when an attempted state transition is not allowed.

    Example: pending -> completed (must be paid and delivered first)
    """

    def __init__(self, current_state: str, attempted: str) -> None:
        super().__init__(
            message=f"Invalid state transition: {current_state} -> {attempted}",
            code="INVALID_STATE_TRANSITION",
        )
        self.current_state = current_state
        self.attempted = attempted


class StaleStateError(StateConflictError):
    """Raised when a conditional update matched no row.

    Another writer changed the record between our read and our write.
    """

    def __init__(self, subject_id: str, expected: str) -> None:
        super().__init__(
            message=f"{subject_id} is no longer {expected}; it was modified concurrently",
            code="STALE_STATE",
        )
        self.subject_id = subject_id
        self.expected = expected


class RequestExpiredError(StateConflictError):
    def __init__(self, request_id: str) -> None:
        super().__init__(
            message=f"Payment request has expired: {request_id}",
            code="REQUEST_EXPIRED",
        )
        self.request_id = request_id


class DuplicateOperationError(StateConflictError):
    """Raised when the same operation is already being applied elsewhere."""

    def __init__(self, idempotency_key: str) -> None:
        super().__init__(
            message=f"Duplicate operation detected for key: {idempotency_key}",
            code="DUPLICATE_OPERATION",
        )
        self.idempotency_key = idempotency_key


class CaptureInProgressError(StateConflictError):
    """Raised when an earlier capture attempt on the order is still unresolved.

    A charge whose outcome is unknown may yet succeed; a second card is
    refused until the gateway's webhook settles the first attempt.
    """

    def __init__(self, order_id: str, open_key: str) -> None:
        super().__init__(
            message=f"Order {order_id} has an unresolved capture attempt ({open_key})",
            code="CAPTURE_IN_PROGRESS",
        )
        self.order_id = order_id
        self.open_key = open_key


# --- Gateway Errors ---


class GatewayError(EscrowError):
    """Raised when the payment gateway rejects an operation.

    ``reason_code`` carries the processor's decline or error code
    (e.g. ``card_declined``) so callers can surface it unchanged.
    """

    def __init__(self, message: str, reason_code: str = "gateway_error") -> None:
        super().__init__(message=message, code="GATEWAY_ERROR")
        self.reason_code = reason_code

    @property
    def is_decline(self) -> bool:
        return self.reason_code in {"card_declined", "insufficient_funds", "expired_card"}


class GatewayOutcomeUnknownError(GatewayError):
    """Raised when a gateway call timed out or lost its connection.

    The operation may or may not have happened. Webhooks settle it.
    """

    def __init__(self, message: str) -> None:
        super().__init__(message=message, reason_code="outcome_unknown")
        self.code = "GATEWAY_OUTCOME_UNKNOWN"


class WebhookSignatureError(EscrowError):
    def __init__(self, message: str = "Invalid webhook signature") -> None:
        super().__init__(message=message, code="INVALID_SIGNATURE")


class UserDirectoryUnavailableError(EscrowError):
    """Raised when the identity service cannot be reached."""

    def __init__(self, message: str) -> None:
        super().__init__(message=message, code="USER_DIRECTORY_UNAVAILABLE")


class PayoutAccountMissingError(EscrowError):
    """Raised when the payee has no connected payout account to transfer to."""

    def __init__(self, payee_id: str) -> None:
        super().__init__(
            message=f"Payee {payee_id} has no payout account configured",
            code="PAYOUT_ACCOUNT_MISSING",
        )
        self.payee_id = payee_id
