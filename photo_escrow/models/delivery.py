"""Delivery version model — one row per upload attempt, append-only."""

import enum
import uuid
from datetime import UTC, datetime

from sqlalchemy import Enum, ForeignKey, Integer, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from photo_escrow.database import Base, UTCDateTime


class DeliveryStatus(enum.Enum):
    PENDING = "PENDING"
    UPLOADED = "UPLOADED"
    CONFIRMED = "CONFIRMED"
    REJECTED = "REJECTED"


class DeliveryVersion(Base):
    __tablename__ = "delivery_versions"
    __table_args__ = (
        UniqueConstraint("escrow_id", "version", name="uq_delivery_versions_escrow_version"),
    )

    delivery_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    escrow_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("escrow_records.escrow_id", ondelete="RESTRICT"), nullable=False, index=True
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[DeliveryStatus] = mapped_column(
        Enum(DeliveryStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=DeliveryStatus.PENDING,
    )
    file_descriptor: Mapped[str] = mapped_column(String(512), nullable=False)
    photographer_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    uploaded_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=lambda: datetime.now(UTC)
    )
    confirmed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    rejected_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
