"""Escrow domain: states, business rules, commands and collaborator protocols."""

from judicature_escrow.domain.collaborators import (
    Actor,
    NotificationSink,
    UserDirectory,
    UserIdentity,
)
from judicature_escrow.domain.enums import (
    DeliverableStatus,
    EscrowStatus,
    EventType,
    OrderStatus,
    PaymentRequestStatus,
    Role,
)
from judicature_escrow.domain.exceptions import (
    EscrowError,
    InvalidStateTransitionError,
    OrderNotFoundError,
    StaleStateError,
)
from judicature_escrow.domain.gateway_protocol import (
    GatewayEvent,
    IntentResult,
    PaymentGateway,
    RefundResult,
    TransferResult,
)
from judicature_escrow.domain.policy import EscrowPolicy, calculate_amounts
from judicature_escrow.domain.state_machine import (
    OrderStateMachine,
    PaymentRequestStateMachine,
    validate_transition,
)

__all__ = [
    "Actor",
    "NotificationSink",
    "UserDirectory",
    "UserIdentity",
    "DeliverableStatus",
    "EscrowStatus",
    "EventType",
    "OrderStatus",
    "PaymentRequestStatus",
    "Role",
    "EscrowError",
    "InvalidStateTransitionError",
    "OrderNotFoundError",
    "StaleStateError",
    "GatewayEvent",
    "IntentResult",
    "PaymentGateway",
    "RefundResult",
    "TransferResult",
    "EscrowPolicy",
    "calculate_amounts",
    "OrderStateMachine",
    "PaymentRequestStateMachine",
    "validate_transition",
]
