"""Escrow record and history log models."""

import enum
import uuid
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from photo_escrow.database import Base, UTCDateTime


class EscrowStatus(enum.Enum):
    PENDING_PAYMENT = "PENDING_PAYMENT"
    HELD = "HELD"
    WAITING_CONFIRMATION = "WAITING_CONFIRMATION"
    REVISION_REQUESTED = "REVISION_REQUESTED"
    RELEASED = "RELEASED"
    REFUNDED = "REFUNDED"


class Actor(enum.Enum):
    BUYER = "buyer"
    PHOTOGRAPHER = "photographer"
    SYSTEM = "system"


TERMINAL_STATUSES = frozenset({EscrowStatus.RELEASED, EscrowStatus.REFUNDED})

# Valid state transitions
VALID_TRANSITIONS: dict[EscrowStatus, set[EscrowStatus]] = {
    EscrowStatus.PENDING_PAYMENT: {EscrowStatus.HELD},
    EscrowStatus.HELD: {EscrowStatus.WAITING_CONFIRMATION, EscrowStatus.REFUNDED},
    EscrowStatus.WAITING_CONFIRMATION: {
        EscrowStatus.RELEASED,
        EscrowStatus.REVISION_REQUESTED,
        EscrowStatus.REFUNDED,
    },
    EscrowStatus.REVISION_REQUESTED: {EscrowStatus.WAITING_CONFIRMATION, EscrowStatus.REFUNDED},
    EscrowStatus.RELEASED: set(),
    EscrowStatus.REFUNDED: set(),
}


class EscrowRecord(Base):
    __tablename__ = "escrow_records"
    __table_args__ = (
        CheckConstraint(
            "revision_count >= 0 AND revision_count <= max_revisions",
            name="ck_escrow_records_revision_bounds",
        ),
        Index("ix_escrow_records_status_deadline", "status", "confirmation_deadline"),
    )

    escrow_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    transaction_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    buyer_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    photographer_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    photo_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[EscrowStatus] = mapped_column(
        Enum(EscrowStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=EscrowStatus.PENDING_PAYMENT,
    )
    amount_total: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    platform_fee: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    photographer_share: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    revision_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_revisions: Mapped[int] = mapped_column(Integer, nullable=False)
    confirmation_deadline: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    current_delivery_version: Mapped[int | None] = mapped_column(Integer, nullable=True)
    auto_approved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    release_error_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    capture_reference: Mapped[str | None] = mapped_column(String(128), nullable=True)
    held_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    released_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    refunded_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    # Optimistic concurrency token, bumped by every transition
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=lambda: datetime.now(UTC)
    )


class EscrowHistory(Base):
    """Append-only transition log. Never update or delete rows."""
    __tablename__ = "escrow_history"
    __table_args__ = (
        UniqueConstraint("escrow_id", "sequence", name="uq_escrow_history_sequence"),
    )

    history_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    escrow_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("escrow_records.escrow_id", ondelete="RESTRICT"), nullable=False, index=True
    )
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    from_status: Mapped[EscrowStatus | None] = mapped_column(
        Enum(EscrowStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=True,
    )
    to_status: Mapped[EscrowStatus] = mapped_column(
        Enum(EscrowStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )
    actor: Mapped[Actor] = mapped_column(
        Enum(Actor, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )
    description: Mapped[str] = mapped_column(Text, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=lambda: datetime.now(UTC)
    )
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)
