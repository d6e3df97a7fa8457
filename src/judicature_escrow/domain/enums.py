"""Domain enumerations for the Judicature escrow core.

These enums define the canonical states and types used throughout the system.
They are framework-agnostic (no SQLAlchemy, no FastAPI imports).
"""

import enum


class OrderStatus(enum.StrEnum):
    """Lifecycle states of an escrow order.

    State transitions are enforced by the OrderStateMachine guard.
    See domain/state_machine.py for the transition table.
    """

    PENDING = "pending"
    PAID = "paid"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    DISPUTED = "disputed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class EscrowStatus(enum.StrEnum):
    """Custody of the captured funds, orthogonal to OrderStatus.

    An order can be ``completed`` while its funds are still ``held`` until the
    payer releases them. ``releasing`` and ``refunding`` mark money movement
    that has been claimed but not yet confirmed by the gateway.
    """

    UNFUNDED = "unfunded"
    HELD = "held"
    RELEASING = "releasing"
    RELEASED = "released"
    DISPUTED = "disputed"
    REFUNDING = "refunding"
    REFUNDED = "refunded"


class DeliverableStatus(enum.StrEnum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class PaymentRequestStatus(enum.StrEnum):
    """Stored states of a payment request.

    ``EXPIRED`` is never written to the database. It is the effective status
    reported for a pending request read after its expiry.
    """

    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    PAID = "paid"
    COMPLETED = "completed"
    EXPIRED = "expired"


class ServiceType(enum.StrEnum):
    CONSULTATION = "consultation"
    DOCUMENT_REVIEW = "document_review"
    CONTRACT_DRAFTING = "contract_drafting"
    LEGAL_RESEARCH = "legal_research"
    COURT_REPRESENTATION = "court_representation"
    LEGAL_NOTICE = "legal_notice"
    OTHER = "other"


class Urgency(enum.StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class Role(enum.StrEnum):
    """Caller roles as asserted by the upstream auth layer."""

    CLIENT = "client"
    LAWYER = "lawyer"
    ADMIN = "admin"
    SYSTEM = "system"


class ReviewDecision(enum.StrEnum):
    ACCEPT = "accept"
    REJECT = "reject"


class RequestAction(enum.StrEnum):
    ACCEPT = "accept"
    REJECT = "reject"


class DisputeOutcome(enum.StrEnum):
    """Which party an admin resolves a dispute in favour of."""

    PAYER = "payer"
    PAYEE = "payee"


class ChargebackStatus(enum.StrEnum):
    """Final statuses of a card-network dispute, as reported by Stripe."""

    WON = "won"
    LOST = "lost"
    WARNING_CLOSED = "warning_closed"


class RefundReason(enum.StrEnum):
    """Refund reasons accepted by the payment gateway."""

    DUPLICATE = "duplicate"
    FRAUDULENT = "fraudulent"
    REQUESTED_BY_CUSTOMER = "requested_by_customer"


class SubjectType(enum.StrEnum):
    """What an audit event is about."""

    ORDER = "order"
    PAYMENT_REQUEST = "payment_request"


class EventType(enum.StrEnum):
    """Types of audit events recorded in the audit_events table.

    Every state transition MUST produce exactly one event.
    This is the append-only forensic trail for disputes and reconciliation.
    """

    # Order lifecycle
    ORDER_CREATED = "ORDER_CREATED"
    PAYMENT_PENDING = "PAYMENT_PENDING"
    PAYMENT_CAPTURED = "PAYMENT_CAPTURED"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    ORDER_CANCELLED = "ORDER_CANCELLED"
    WORK_STARTED = "WORK_STARTED"

    # Deliverables
    DELIVERABLE_SUBMITTED = "DELIVERABLE_SUBMITTED"
    DELIVERABLE_ACCEPTED = "DELIVERABLE_ACCEPTED"
    DELIVERABLE_REJECTED = "DELIVERABLE_REJECTED"
    DELIVERABLE_DELETED = "DELIVERABLE_DELETED"

    # Settlement
    RELEASE_INITIATED = "RELEASE_INITIATED"
    FUNDS_RELEASED = "FUNDS_RELEASED"
    RELEASE_FAILED = "RELEASE_FAILED"
    REFUND_INITIATED = "REFUND_INITIATED"
    ORDER_REFUNDED = "ORDER_REFUNDED"
    REFUND_FAILED = "REFUND_FAILED"

    # Disputes
    DISPUTE_RAISED = "DISPUTE_RAISED"
    DISPUTE_RESOLVED_PAYEE = "DISPUTE_RESOLVED_PAYEE"
    DISPUTE_RESOLVED_PAYER = "DISPUTE_RESOLVED_PAYER"

    # Manual follow-up
    ATTENTION_REQUIRED = "ATTENTION_REQUIRED"

    # Payment requests
    REQUEST_CREATED = "REQUEST_CREATED"
    REQUEST_ACCEPTED = "REQUEST_ACCEPTED"
    REQUEST_REJECTED = "REQUEST_REJECTED"
    REQUEST_CANCELLED = "REQUEST_CANCELLED"
    REQUEST_PAID = "REQUEST_PAID"
    REQUEST_COMPLETED = "REQUEST_COMPLETED"


class NotificationEvent(enum.StrEnum):
    """Names of the fire-and-forget events sent to the notification sink."""

    ORDER_CREATED = "order.created"
    ORDER_PAID = "order.paid"
    ORDER_CANCELLED = "order.cancelled"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_ORPHANED = "payment.orphaned"
    DELIVERABLE_SUBMITTED = "deliverable.submitted"
    DELIVERABLE_REVIEWED = "deliverable.reviewed"
    FUNDS_RELEASED = "funds.released"
    RELEASE_FAILED = "release.failed"
    DISPUTE_RAISED = "dispute.raised"
    DISPUTE_RESOLVED = "dispute.resolved"
    ORDER_REFUNDED = "order.refunded"
    REQUEST_CREATED = "payment_request.created"
    REQUEST_RESPONDED = "payment_request.responded"
    REQUEST_CANCELLED = "payment_request.cancelled"
    REQUEST_PAID = "payment_request.paid"
