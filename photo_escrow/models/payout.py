"""Payout outbox — one row per terminal escrow transition."""

import enum
import uuid
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import Enum, ForeignKey, Integer, Numeric, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from photo_escrow.database import Base, UTCDateTime


class PayoutKind(enum.Enum):
    RELEASE = "RELEASE"
    REFUND = "REFUND"


class PayoutStatus(enum.Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    PENDING_RETRY = "PENDING_RETRY"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


class Payout(Base):
    __tablename__ = "payouts"

    payout_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    escrow_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("escrow_records.escrow_id", ondelete="RESTRICT"), unique=True, nullable=False
    )
    kind: Mapped[PayoutKind] = mapped_column(
        Enum(PayoutKind, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    account: Mapped[str] = mapped_column(String(64), nullable=False)
    # Deduplicates at the gateway and locally; equals the escrow's transaction_id
    idempotency_key: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    status: Mapped[PayoutStatus] = mapped_column(
        Enum(PayoutStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        index=True,
        default=PayoutStatus.PENDING,
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_attempt_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    gateway_reference: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=lambda: datetime.now(UTC)
    )
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
