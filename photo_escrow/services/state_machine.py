"""Escrow state machine.

Every mutation of an escrow's status goes through `apply_transition`, which
issues a single conditional UPDATE guarded by the expected status and the
record's version token. A zero-row update means another actor got there
first and surfaces as `RaceLost`; callers decide whether that is a no-op
(sweeper), a replay (buyer decision) or a conflict (upload).

In the same database transaction the transition appends one history entry
and, when entering RELEASED or REFUNDED, inserts the payout row keyed by the
transaction_id. Nothing is committed here.
"""

import logging
import uuid
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from photo_escrow.config import settings
from photo_escrow.exceptions import NotFoundError, RaceLost, StateConflictError
from photo_escrow.models.escrow import (
    TERMINAL_STATUSES,
    VALID_TRANSITIONS,
    Actor,
    EscrowRecord,
    EscrowStatus,
)
from photo_escrow.models.payout import Payout, PayoutKind, PayoutStatus
from photo_escrow.services.history import append_history

logger = logging.getLogger(__name__)


async def get_escrow_record(db: AsyncSession, transaction_id: str) -> EscrowRecord:
    result = await db.execute(
        select(EscrowRecord).where(EscrowRecord.transaction_id == transaction_id)
    )
    escrow = result.scalar_one_or_none()
    if escrow is None:
        raise NotFoundError(
            f"Escrow not found for transaction {transaction_id}",
            details={"transaction_id": transaction_id},
        )
    return escrow


def assert_transition(current: EscrowStatus, target: EscrowStatus) -> None:
    """Raise StateConflictError if the state transition is not valid."""
    if target not in VALID_TRANSITIONS.get(current, set()):
        raise StateConflictError(
            f"Cannot transition from {current.value} to {target.value}",
            details={"current_status": current.value, "target_status": target.value},
        )


def _enqueue_payout(db: AsyncSession, escrow: EscrowRecord, target: EscrowStatus) -> Payout:
    if target == EscrowStatus.RELEASED:
        kind, amount, account = PayoutKind.RELEASE, escrow.photographer_share, escrow.photographer_id
    else:
        kind, amount, account = PayoutKind.REFUND, escrow.amount_total, escrow.buyer_id

    payout = Payout(
        payout_id=uuid.uuid4(),
        escrow_id=escrow.escrow_id,
        kind=kind,
        amount=amount,
        account=account,
        idempotency_key=escrow.transaction_id,
        status=PayoutStatus.PENDING,
    )
    db.add(payout)
    return payout


async def apply_transition(
    db: AsyncSession,
    escrow: EscrowRecord,
    target: EscrowStatus,
    *,
    actor: Actor,
    description: str,
    now: datetime | None = None,
    metadata: dict | None = None,
    **changes: Any,
) -> Payout | None:
    """Move `escrow` to `target` with a compare-and-swap write.

    Extra keyword arguments are written in the same UPDATE (e.g.
    revision_count, current_delivery_version). Returns the enqueued payout
    when the target is terminal.
    """
    assert_transition(escrow.status, target)

    now = now or datetime.now(UTC)
    # History timestamps never move backwards for an escrow
    timestamp = max(now, escrow.updated_at) if escrow.updated_at else now
    from_status = escrow.status
    expected_version = escrow.version

    values: dict[str, Any] = {
        "status": target,
        "version": expected_version + 1,
        "updated_at": timestamp,
        "confirmation_deadline": None,
        **changes,
    }
    if target == EscrowStatus.WAITING_CONFIRMATION:
        values["confirmation_deadline"] = now + settings.confirmation_window
    elif target == EscrowStatus.HELD:
        values["held_at"] = timestamp
    elif target == EscrowStatus.RELEASED:
        values["released_at"] = timestamp
    elif target == EscrowStatus.REFUNDED:
        values["refunded_at"] = timestamp

    result = await db.execute(
        update(EscrowRecord)
        .where(
            EscrowRecord.escrow_id == escrow.escrow_id,
            EscrowRecord.status == from_status,
            EscrowRecord.version == expected_version,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise RaceLost(
            f"Escrow {escrow.transaction_id} was modified by another actor",
            details={
                "transaction_id": escrow.transaction_id,
                "expected_status": from_status.value,
                "expected_version": expected_version,
            },
        )
    await db.refresh(escrow)

    append_history(
        db,
        escrow.escrow_id,
        sequence=escrow.version,
        from_status=from_status,
        to_status=target,
        actor=actor,
        description=description,
        timestamp=timestamp,
        metadata=metadata,
    )

    payout = None
    if target in TERMINAL_STATUSES:
        payout = _enqueue_payout(db, escrow, target)

    logger.info(
        "Escrow %s: %s -> %s by %s",
        escrow.transaction_id, from_status.value, target.value, actor.value,
    )
    return payout
