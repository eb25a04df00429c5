"""Create escrow_records, escrow_history, delivery_versions and payouts tables.

Revision ID: 001
Revises:
Create Date: 2026-10-17
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

escrow_status = postgresql.ENUM(
    "PENDING_PAYMENT", "HELD", "WAITING_CONFIRMATION", "REVISION_REQUESTED", "RELEASED", "REFUNDED",
    name="escrowstatus", create_type=False,
)
actor = postgresql.ENUM("buyer", "photographer", "system", name="actor", create_type=False)
delivery_status = postgresql.ENUM(
    "PENDING", "UPLOADED", "CONFIRMED", "REJECTED", name="deliverystatus", create_type=False,
)
payout_kind = postgresql.ENUM("RELEASE", "REFUND", name="payoutkind", create_type=False)
payout_status = postgresql.ENUM(
    "PENDING", "PROCESSING", "PENDING_RETRY", "SUCCEEDED", "FAILED",
    name="payoutstatus", create_type=False,
)

ENUM_TYPES = (escrow_status, actor, delivery_status, payout_kind, payout_status)


def upgrade() -> None:
    bind = op.get_bind()
    for enum_type in ENUM_TYPES:
        enum_type.create(bind, checkfirst=True)

    op.create_table(
        "escrow_records",
        sa.Column("escrow_id", sa.Uuid(), primary_key=True),
        sa.Column("transaction_id", sa.String(64), unique=True, nullable=False),
        sa.Column("buyer_id", sa.String(64), nullable=False),
        sa.Column("photographer_id", sa.String(64), nullable=False),
        sa.Column("photo_id", sa.String(64), nullable=True),
        sa.Column("status", escrow_status, nullable=False, server_default="PENDING_PAYMENT"),
        sa.Column("amount_total", sa.Numeric(12, 2), nullable=False),
        sa.Column("platform_fee", sa.Numeric(12, 2), nullable=False),
        sa.Column("photographer_share", sa.Numeric(12, 2), nullable=False),
        sa.Column("revision_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_revisions", sa.Integer(), nullable=False),
        sa.Column("confirmation_deadline", sa.DateTime(timezone=True), nullable=True),
        sa.Column("current_delivery_version", sa.Integer(), nullable=True),
        sa.Column("auto_approved", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("release_error_code", sa.String(64), nullable=True),
        sa.Column("capture_reference", sa.String(128), nullable=True),
        sa.Column("held_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("released_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refunded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint(
            "revision_count >= 0 AND revision_count <= max_revisions",
            name="ck_escrow_records_revision_bounds",
        ),
    )
    op.create_index("ix_escrow_records_buyer_id", "escrow_records", ["buyer_id"])
    op.create_index("ix_escrow_records_photographer_id", "escrow_records", ["photographer_id"])
    # Sweeper scans WAITING_CONFIRMATION rows by deadline
    op.create_index(
        "ix_escrow_records_status_deadline", "escrow_records", ["status", "confirmation_deadline"]
    )

    op.create_table(
        "escrow_history",
        sa.Column("history_id", sa.Uuid(), primary_key=True),
        sa.Column(
            "escrow_id", sa.Uuid(),
            sa.ForeignKey("escrow_records.escrow_id", ondelete="RESTRICT"), nullable=False,
        ),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("from_status", escrow_status, nullable=True),
        sa.Column("to_status", escrow_status, nullable=False),
        sa.Column("actor", actor, nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.UniqueConstraint("escrow_id", "sequence", name="uq_escrow_history_sequence"),
    )
    op.create_index("ix_escrow_history_escrow_id", "escrow_history", ["escrow_id"])

    op.create_table(
        "delivery_versions",
        sa.Column("delivery_id", sa.Uuid(), primary_key=True),
        sa.Column(
            "escrow_id", sa.Uuid(),
            sa.ForeignKey("escrow_records.escrow_id", ondelete="RESTRICT"), nullable=False,
        ),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("status", delivery_status, nullable=False, server_default="PENDING"),
        sa.Column("file_descriptor", sa.String(512), nullable=False),
        sa.Column("photographer_notes", sa.Text(), nullable=True),
        sa.Column("rejection_reason", sa.Text(), nullable=True),
        sa.Column("uploaded_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rejected_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("escrow_id", "version", name="uq_delivery_versions_escrow_version"),
    )
    op.create_index("ix_delivery_versions_escrow_id", "delivery_versions", ["escrow_id"])

    op.create_table(
        "payouts",
        sa.Column("payout_id", sa.Uuid(), primary_key=True),
        sa.Column(
            "escrow_id", sa.Uuid(),
            sa.ForeignKey("escrow_records.escrow_id", ondelete="RESTRICT"), unique=True, nullable=False,
        ),
        sa.Column("kind", payout_kind, nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("account", sa.String(64), nullable=False),
        sa.Column("idempotency_key", sa.String(64), unique=True, nullable=False),
        sa.Column("status", payout_status, nullable=False, server_default="PENDING"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("next_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("gateway_reference", sa.String(128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_payouts_status", "payouts", ["status"])


def downgrade() -> None:
    op.drop_table("payouts")
    op.drop_table("delivery_versions")
    op.drop_table("escrow_history")
    op.drop_table("escrow_records")
    bind = op.get_bind()
    for enum_type in reversed(ENUM_TYPES):
        enum_type.drop(bind, checkfirst=True)
