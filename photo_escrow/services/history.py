"""Append-only escrow history log and its read side."""

import uuid
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from photo_escrow.exceptions import NotFoundError
from photo_escrow.models.escrow import Actor, EscrowHistory, EscrowRecord, EscrowStatus


def append_history(
    db: AsyncSession,
    escrow_id: uuid.UUID,
    sequence: int,
    from_status: EscrowStatus | None,
    to_status: EscrowStatus,
    actor: Actor,
    description: str,
    timestamp: datetime,
    metadata: dict | None = None,
) -> EscrowHistory:
    """Append to the immutable history log.

    `sequence` is the escrow's concurrency token after the transition, so the
    unique (escrow_id, sequence) constraint rejects a second entry for the
    same transition.
    """
    entry = EscrowHistory(
        history_id=uuid.uuid4(),
        escrow_id=escrow_id,
        sequence=sequence,
        from_status=from_status,
        to_status=to_status,
        actor=actor,
        description=description,
        timestamp=timestamp,
        metadata_=metadata,
    )
    db.add(entry)
    return entry


async def get_history(db: AsyncSession, transaction_id: str) -> list[EscrowHistory]:
    """Ordered history for one escrow, oldest first."""
    result = await db.execute(
        select(EscrowRecord.escrow_id).where(EscrowRecord.transaction_id == transaction_id)
    )
    escrow_id = result.scalar_one_or_none()
    if escrow_id is None:
        raise NotFoundError(
            f"Escrow not found for transaction {transaction_id}",
            details={"transaction_id": transaction_id},
        )

    result = await db.execute(
        select(EscrowHistory)
        .where(EscrowHistory.escrow_id == escrow_id)
        .order_by(EscrowHistory.sequence)
    )
    return list(result.scalars().all())
