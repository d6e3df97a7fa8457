"""Create orders, deliverables, payment_requests and audit_events.

Revision ID: 0001
Revises:
Create Date: 2026-10-19
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "0001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

JSONType = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")

LEGAL_ESCROW_PAIRS = (
    "(status = 'pending' AND escrow_status IN ('unfunded')) OR "
    "(status = 'cancelled' AND escrow_status IN ('unfunded')) OR "
    "(status = 'paid' AND escrow_status IN ('held', 'refunding')) OR "
    "(status = 'in_progress' AND escrow_status IN ('held', 'refunding')) OR "
    "(status = 'completed' AND escrow_status IN ('held', 'refunding', 'released', 'releasing')) OR "
    "(status = 'disputed' AND escrow_status IN ('disputed', 'refunding', 'releasing')) OR "
    "(status = 'refunded' AND escrow_status IN ('refunded'))"
)


def _timestamp(name: str, nullable: bool = True) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade() -> None:
    op.create_table(
        "orders",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("order_id", sa.String(40), nullable=False, unique=True),
        sa.Column("payer_id", sa.String(64), nullable=False),
        sa.Column("payee_id", sa.String(64), nullable=False),
        sa.Column("payment_request_id", sa.String(40), nullable=True),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("platform_fee", sa.Integer(), nullable=False),
        sa.Column("payee_net_amount", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("escrow_status", sa.String(20), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("payment_intent_id", sa.String(255), nullable=True),
        sa.Column("transfer_id", sa.String(255), nullable=True),
        sa.Column("refund_id", sa.String(255), nullable=True),
        sa.Column("capture_idempotency_key", sa.String(255), nullable=True),
        sa.Column("release_attempt", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("refund_attempt", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("dispute_reason", sa.Text(), nullable=True),
        sa.Column("disputed_by", sa.String(64), nullable=True),
        sa.Column("resolution", sa.String(20), nullable=True),
        sa.Column("resolution_notes", sa.Text(), nullable=True),
        sa.Column("resolved_by", sa.String(64), nullable=True),
        sa.Column("refund_reason", sa.String(40), nullable=True),
        sa.Column("cancellation_reason", sa.Text(), nullable=True),
        sa.Column("needs_attention", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("attention_reason", sa.Text(), nullable=True),
        _timestamp("created_at", nullable=False),
        _timestamp("updated_at", nullable=False),
        _timestamp("paid_at"),
        _timestamp("completed_at"),
        _timestamp("released_at"),
        _timestamp("disputed_at"),
        _timestamp("refunded_at"),
        _timestamp("cancelled_at"),
        sa.CheckConstraint(
            "status IN ('pending', 'paid', 'in_progress', 'completed', "
            "'disputed', 'cancelled', 'refunded')",
            name="ck_order_valid_status",
        ),
        sa.CheckConstraint(LEGAL_ESCROW_PAIRS, name="ck_order_legal_escrow_status"),
        sa.CheckConstraint("amount > 0", name="ck_order_positive_amount"),
        sa.CheckConstraint(
            "platform_fee >= 0 AND payee_net_amount >= 0 "
            "AND amount = platform_fee + payee_net_amount",
            name="ck_order_amount_split",
        ),
        sa.CheckConstraint("payer_id <> payee_id", name="ck_order_distinct_parties"),
    )
    op.create_index("idx_order_status", "orders", ["status"])
    op.create_index("idx_order_payer", "orders", ["payer_id"])
    op.create_index("idx_order_payee", "orders", ["payee_id"])
    op.create_index("idx_order_payment_intent", "orders", ["payment_intent_id"])
    op.create_index("idx_order_created_at", "orders", ["created_at"])

    op.create_table(
        "deliverables",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "order_pk",
            sa.Uuid(),
            sa.ForeignKey("orders.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("file_ref", sa.String(1024), nullable=False),
        sa.Column("file_name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("uploaded_by", sa.String(64), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("reviewed_by", sa.String(64), nullable=True),
        sa.Column("review_notes", sa.Text(), nullable=True),
        _timestamp("reviewed_at"),
        _timestamp("uploaded_at", nullable=False),
        sa.CheckConstraint(
            "status IN ('pending', 'accepted', 'rejected')",
            name="ck_deliverable_valid_status",
        ),
    )
    op.create_index("idx_deliverable_order", "deliverables", ["order_pk"])
    op.create_index(
        "uq_deliverable_order_version", "deliverables", ["order_pk", "version"], unique=True
    )

    op.create_table(
        "payment_requests",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("request_id", sa.String(40), nullable=False, unique=True),
        sa.Column("proposer_id", sa.String(64), nullable=False),
        sa.Column("counterparty_id", sa.String(64), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("service_type", sa.String(40), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("urgency", sa.String(10), nullable=False),
        sa.Column("estimated_delivery_days", sa.Integer(), nullable=False),
        sa.Column("case_id", sa.String(64), nullable=True),
        sa.Column("counterparty_notes", sa.Text(), nullable=True),
        sa.Column("extra", JSONType, nullable=True),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("order_id", sa.String(40), nullable=True, unique=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        _timestamp("created_at", nullable=False),
        _timestamp("updated_at", nullable=False),
        _timestamp("expires_at", nullable=False),
        _timestamp("responded_at"),
        _timestamp("paid_at"),
        _timestamp("completed_at"),
        sa.CheckConstraint(
            "status IN ('pending', 'accepted', 'rejected', 'cancelled', 'paid', 'completed')",
            name="ck_payment_request_valid_status",
        ),
        sa.CheckConstraint("amount > 0", name="ck_payment_request_positive_amount"),
        sa.CheckConstraint(
            "estimated_delivery_days BETWEEN 1 AND 365",
            name="ck_payment_request_eta_bounds",
        ),
    )
    op.create_index("idx_payment_request_status", "payment_requests", ["status"])
    op.create_index("idx_payment_request_proposer", "payment_requests", ["proposer_id"])
    op.create_index("idx_payment_request_counterparty", "payment_requests", ["counterparty_id"])

    op.create_table(
        "audit_events",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("subject_type", sa.String(20), nullable=False),
        sa.Column("subject_id", sa.String(40), nullable=False),
        sa.Column("event_type", sa.String(40), nullable=False),
        sa.Column("old_status", sa.String(20), nullable=True),
        sa.Column("new_status", sa.String(20), nullable=False),
        sa.Column("escrow_status", sa.String(20), nullable=True),
        sa.Column("actor", sa.String(64), nullable=False),
        sa.Column("metadata", JSONType, nullable=True),
        _timestamp("created_at", nullable=False),
    )
    op.create_index("idx_audit_subject", "audit_events", ["subject_type", "subject_id"])
    op.create_index("idx_audit_event_type", "audit_events", ["event_type"])
    op.create_index("idx_audit_created_at", "audit_events", ["created_at"])


def downgrade() -> None:
    op.drop_table("audit_events")
    op.drop_table("payment_requests")
    op.drop_table("deliverables")
    op.drop_table("orders")
