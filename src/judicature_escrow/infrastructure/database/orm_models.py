"""SQLAlchemy 2.0 ORM models for the Judicature escrow core.

Four tables:
    1. orders            — The unit of escrow between a payer and a payee.
    2. deliverables      — Work files submitted by the payee against an order.
    3. payment_requests  — Pre-order price proposals from lawyer to client.
    4. audit_events      — Append-only audit log of every state transition.

Design decisions:
    - UUIDs as internal primary keys; human readable ids (ORD-..., PAY-...)
      are separate, unique and immutable.
    - Integer minor currency units for every amount (never floats).
    - CHECK constraints on every status column, on the fee split, and on the
      legal (status, escrow_status) pairs.
    - ``version`` on mutable rows, bumped by every conditional update.
    - Portable column types (Uuid, JSON with a JSONB variant) so the same
      models run on PostgreSQL in production and SQLite in tests.
    - audit_events is append-only: no UPDATE or DELETE at the application level.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
    event,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from judicature_escrow.domain.policy import LEGAL_ESCROW_STATES

JSONType = JSON().with_variant(JSONB(), "postgresql")


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _in_list(column: str, values: list[str]) -> str:
    quoted = ", ".join(f"'{v}'" for v in values)
    return f"{column} IN ({quoted})"


def _legal_pairs_clause() -> str:
    clauses = [
        f"(status = '{status.value}' AND " + _in_list("escrow_status", sorted(allowed)) + ")"
        for status, allowed in LEGAL_ESCROW_STATES.items()
    ]
    return " OR ".join(clauses)


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def _set_updated_at(mapper, connection, target):  # noqa: ANN001
    """SQLAlchemy event listener that updates `updated_at` before flush."""
    if hasattr(target, "updated_at"):
        target.updated_at = _utcnow()


# ---------------------------------------------------------------------------
# 1. orders
# ---------------------------------------------------------------------------
class Order(Base):
    """An escrow order between a paying client and a lawyer."""

    __tablename__ = "orders"

    # --- Identity ---
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id: Mapped[str] = mapped_column(
        String(40),
        nullable=False,
        unique=True,
        comment="Human readable id, ORD-<token>",
    )

    # --- Participants ---
    payer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    payee_id: Mapped[str] = mapped_column(String(64), nullable=False)
    payment_request_id: Mapped[str | None] = mapped_column(
        String(40),
        nullable=True,
        default=None,
        comment="Originating payment request (PAY-...), if any",
    )

    # --- Money (minor units, fixed at creation) ---
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    platform_fee: Mapped[int] = mapped_column(Integer, nullable=False)
    payee_net_amount: Mapped[int] = mapped_column(Integer, nullable=False)

    # --- Status ---
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="pending",
        comment="Lifecycle state (guarded by OrderStateMachine)",
    )
    escrow_status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="unfunded",
        comment="Custody of captured funds",
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    # --- Gateway linkage ---
    payment_intent_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    transfer_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    refund_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    capture_idempotency_key: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
        comment="Key of the open or successful capture attempt; cleared when one fails",
    )
    # Bumped whenever funds return to custody, so the next gateway call gets a fresh key.
    release_attempt: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    refund_attempt: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    # --- Details ---
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    dispute_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    disputed_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    resolution: Mapped[str | None] = mapped_column(String(20), nullable=True)
    resolution_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    resolved_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    refund_reason: Mapped[str | None] = mapped_column(String(40), nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    needs_attention: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    attention_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    # --- Timestamps (each set once) ---
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    released_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    disputed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # --- Relationships ---
    deliverables: Mapped[list[Deliverable]] = relationship(
        "Deliverable",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="Deliverable.version.asc()",
        lazy="selectin",
    )

    # --- Table Constraints & Indexes ---
    __table_args__ = (
        CheckConstraint(
            _in_list(
                "status",
                ["pending", "paid", "in_progress", "completed", "disputed", "cancelled", "refunded"],
            ),
            name="ck_order_valid_status",
        ),
        CheckConstraint(_legal_pairs_clause(), name="ck_order_legal_escrow_status"),
        CheckConstraint("amount > 0", name="ck_order_positive_amount"),
        CheckConstraint(
            "platform_fee >= 0 AND payee_net_amount >= 0 "
            "AND amount = platform_fee + payee_net_amount",
            name="ck_order_amount_split",
        ),
        CheckConstraint("payer_id <> payee_id", name="ck_order_distinct_parties"),
        Index("idx_order_status", "status"),
        Index("idx_order_payer", "payer_id"),
        Index("idx_order_payee", "payee_id"),
        Index("idx_order_payment_intent", "payment_intent_id"),
        Index("idx_order_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<Order {self.order_id} status={self.status} "
            f"escrow={self.escrow_status} amount={self.amount} {self.currency}>"
        )


# ---------------------------------------------------------------------------
# 2. deliverables
# ---------------------------------------------------------------------------
class Deliverable(Base):
    """A file the payee delivered against an order."""

    __tablename__ = "deliverables"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_pk: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
    )

    # --- Content (opaque blob reference) ---
    file_ref: Mapped[str] = mapped_column(String(1024), nullable=False)
    file_name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    version: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        comment="1-based submission number within the order",
    )
    uploaded_by: Mapped[str] = mapped_column(String(64), nullable=False)

    # --- Review ---
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    reviewed_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    review_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    uploaded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    order: Mapped[Order] = relationship("Order", back_populates="deliverables")

    __table_args__ = (
        CheckConstraint(
            _in_list("status", ["pending", "accepted", "rejected"]),
            name="ck_deliverable_valid_status",
        ),
        Index("idx_deliverable_order", "order_pk"),
        Index("uq_deliverable_order_version", "order_pk", "version", unique=True),
    )

    def __repr__(self) -> str:
        return f"<Deliverable id={self.id} v{self.version} status={self.status}>"


# ---------------------------------------------------------------------------
# 3. payment_requests
# ---------------------------------------------------------------------------
class PaymentRequest(Base):
    """A lawyer's price proposal awaiting the client's answer."""

    __tablename__ = "payment_requests"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    request_id: Mapped[str] = mapped_column(String(40), nullable=False, unique=True)

    # --- Parties ---
    proposer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    counterparty_id: Mapped[str] = mapped_column(String(64), nullable=False)

    # --- Terms ---
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    service_type: Mapped[str] = mapped_column(String(40), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    urgency: Mapped[str] = mapped_column(String(10), nullable=False, default="medium")
    estimated_delivery_days: Mapped[int] = mapped_column(Integer, nullable=False, default=7)
    case_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    counterparty_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    extra: Mapped[dict | None] = mapped_column(JSONType, nullable=True, default=None)

    # --- Status ---
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    order_id: Mapped[str | None] = mapped_column(
        String(40),
        nullable=True,
        unique=True,
        comment="Order created from this request; set once, never cleared",
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    # --- Timestamps ---
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    responded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint(
            _in_list(
                "status", ["pending", "accepted", "rejected", "cancelled", "paid", "completed"]
            ),
            name="ck_payment_request_valid_status",
        ),
        CheckConstraint("amount > 0", name="ck_payment_request_positive_amount"),
        CheckConstraint(
            "estimated_delivery_days BETWEEN 1 AND 365",
            name="ck_payment_request_eta_bounds",
        ),
        Index("idx_payment_request_status", "status"),
        Index("idx_payment_request_proposer", "proposer_id"),
        Index("idx_payment_request_counterparty", "counterparty_id"),
    )

    def __repr__(self) -> str:
        return f"<PaymentRequest {self.request_id} status={self.status} amount={self.amount}>"


# ---------------------------------------------------------------------------
# 4. audit_events (Append-Only Audit Log)
# ---------------------------------------------------------------------------
class AuditEvent(Base):
    """Immutable audit record of a state transition on an order or request.

    This table is APPEND-ONLY. No UPDATE or DELETE operations are permitted
    at the application level. Every row represents a single atomic event.
    """

    __tablename__ = "audit_events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    # --- Subject ---
    subject_type: Mapped[str] = mapped_column(String(20), nullable=False)
    subject_id: Mapped[str] = mapped_column(
        String(40),
        nullable=False,
        comment="Human readable id of the order or payment request",
    )

    # --- Event Details ---
    event_type: Mapped[str] = mapped_column(String(40), nullable=False)
    old_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    new_status: Mapped[str] = mapped_column(String(20), nullable=False)
    escrow_status: Mapped[str | None] = mapped_column(
        String(20),
        nullable=True,
        comment="Order custody after this event (null for payment requests)",
    )
    actor: Mapped[str] = mapped_column(String(64), nullable=False, default="system")
    metadata_json: Mapped[dict | None] = mapped_column(
        "metadata",
        JSONType,
        nullable=True,
        default=None,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        Index("idx_audit_subject", "subject_type", "subject_id"),
        Index("idx_audit_event_type", "event_type"),
        Index("idx_audit_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<AuditEvent {self.subject_id} type={self.event_type} "
            f"{self.old_status}->{self.new_status}>"
        )


event.listen(Order, "before_update", _set_updated_at)
event.listen(PaymentRequest, "before_update", _set_updated_at)
