"""Delivery uploads and the delivery version history.

Versions are append-only. The escrow's `current_delivery_version` is the only
pointer to the version under review; it is written in the same conditional
UPDATE that moves the escrow to WAITING_CONFIRMATION, so two concurrent
uploads cannot both claim the next version number.
"""

import logging
import uuid
from datetime import UTC, datetime

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from photo_escrow.exceptions import NotFoundError, RaceLost, StateConflictError, ValidationError
from photo_escrow.models.delivery import DeliveryStatus, DeliveryVersion
from photo_escrow.models.escrow import Actor, EscrowRecord, EscrowStatus
from photo_escrow.services.state_machine import apply_transition, get_escrow_record

logger = logging.getLogger(__name__)

UPLOADABLE_STATUSES = (EscrowStatus.HELD, EscrowStatus.REVISION_REQUESTED)


async def get_current_delivery(db: AsyncSession, escrow: EscrowRecord) -> DeliveryVersion | None:
    if escrow.current_delivery_version is None:
        return None
    result = await db.execute(
        select(DeliveryVersion).where(
            DeliveryVersion.escrow_id == escrow.escrow_id,
            DeliveryVersion.version == escrow.current_delivery_version,
        )
    )
    return result.scalar_one_or_none()


async def list_deliveries(db: AsyncSession, transaction_id: str) -> list[DeliveryVersion]:
    escrow = await get_escrow_record(db, transaction_id)
    result = await db.execute(
        select(DeliveryVersion)
        .where(DeliveryVersion.escrow_id == escrow.escrow_id)
        .order_by(DeliveryVersion.version)
    )
    return list(result.scalars().all())


async def get_delivery(db: AsyncSession, transaction_id: str, version: int) -> DeliveryVersion:
    escrow = await get_escrow_record(db, transaction_id)
    result = await db.execute(
        select(DeliveryVersion).where(
            DeliveryVersion.escrow_id == escrow.escrow_id,
            DeliveryVersion.version == version,
        )
    )
    delivery = result.scalar_one_or_none()
    if delivery is None:
        raise NotFoundError(
            f"Delivery version {version} not found for transaction {transaction_id}",
            details={"transaction_id": transaction_id, "version": version},
        )
    return delivery


async def upload_delivery(
    db: AsyncSession,
    transaction_id: str,
    file_descriptor: str,
    notes: str | None = None,
    now: datetime | None = None,
) -> tuple[EscrowRecord, DeliveryVersion]:
    """Record a new delivery version and open the buyer's confirmation window."""
    file_descriptor = (file_descriptor or "").strip()
    if not file_descriptor:
        raise ValidationError("file_descriptor is required", error_code="FILE_REQUIRED")

    now = now or datetime.now(UTC)
    escrow = await get_escrow_record(db, transaction_id)
    if escrow.status not in UPLOADABLE_STATUSES:
        raise StateConflictError(
            f"Cannot upload a delivery while escrow is {escrow.status.value}",
            details={"current_status": escrow.status.value},
        )

    is_revision = escrow.status == EscrowStatus.REVISION_REQUESTED
    next_version = (escrow.current_delivery_version or 0) + 1
    delivery = DeliveryVersion(
        delivery_id=uuid.uuid4(),
        escrow_id=escrow.escrow_id,
        version=next_version,
        status=DeliveryStatus.UPLOADED,
        file_descriptor=file_descriptor,
        photographer_notes=notes,
        uploaded_at=now,
    )
    db.add(delivery)

    try:
        await apply_transition(
            db,
            escrow,
            EscrowStatus.WAITING_CONFIRMATION,
            actor=Actor.PHOTOGRAPHER,
            description=(
                f"revision uploaded as v{next_version}" if is_revision
                else f"delivery v{next_version} uploaded"
            ),
            now=now,
            metadata={"version": next_version, "is_revision": is_revision},
            current_delivery_version=next_version,
        )
        await db.commit()
    except (RaceLost, IntegrityError) as e:
        await db.rollback()
        logger.info("Concurrent upload for %s rejected (v%d)", transaction_id, next_version)
        raise StateConflictError(
            "Another upload for this escrow was accepted first; refresh and retry",
            error_code="CONCURRENT_UPLOAD",
            details={"transaction_id": transaction_id, "version": next_version},
        ) from e

    return escrow, delivery
