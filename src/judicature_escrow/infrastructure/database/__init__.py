"""Database layer: engine, ORM models and repositories."""

from judicature_escrow.infrastructure.database.engine import (
    build_engine,
    close_db,
    get_async_session,
    get_session_factory,
    init_db,
    make_session_factory,
)
from judicature_escrow.infrastructure.database.orm_models import (
    AuditEvent,
    Base,
    Deliverable,
    Order,
    PaymentRequest,
)
from judicature_escrow.infrastructure.database.repositories import (
    AuditRepository,
    DeliverableRepository,
    OrderRepository,
    PaymentRequestRepository,
)

__all__ = [
    "Base",
    "AuditEvent",
    "Deliverable",
    "Order",
    "PaymentRequest",
    "AuditRepository",
    "DeliverableRepository",
    "OrderRepository",
    "PaymentRequestRepository",
    "build_engine",
    "get_async_session",
    "get_session_factory",
    "make_session_factory",
    "init_db",
    "close_db",
]
