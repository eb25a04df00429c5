"""Buyer decisions on a delivered version.

ACCEPT releases the escrow. REJECT asks for a revision while the revision
budget lasts; once it is spent the rejection is folded into a release and the
caller is told so through `error_code = MAX_REVISIONS_EXCEEDED` rather than
being blocked.

Decisions are not replayed: repeating a decision that already took effect
returns the recorded outcome without touching state or payouts.
"""

import enum
import logging
from dataclasses import dataclass
from datetime import UTC, datetime

from sqlalchemy.ext.asyncio import AsyncSession

from photo_escrow.exceptions import (
    RaceLost,
    RevisionLimitReached,
    StateConflictError,
    ValidationError,
)
from photo_escrow.models.delivery import DeliveryStatus, DeliveryVersion
from photo_escrow.models.escrow import Actor, EscrowRecord, EscrowStatus
from photo_escrow.models.payout import Payout
from photo_escrow.services.delivery import get_current_delivery
from photo_escrow.services.revision_policy import check_revision_budget, require_rejection_reason
from photo_escrow.services.state_machine import apply_transition, get_escrow_record

logger = logging.getLogger(__name__)


class Decision(enum.Enum):
    ACCEPT = "ACCEPT"
    REJECT = "REJECT"


# The storefront's confirm dialog sends YES/NO
_DECISION_ALIASES = {
    "ACCEPT": Decision.ACCEPT,
    "YES": Decision.ACCEPT,
    "REJECT": Decision.REJECT,
    "NO": Decision.REJECT,
}


@dataclass
class DecisionOutcome:
    transaction_id: str
    status: EscrowStatus
    auto_approved: bool
    error_code: str | None = None
    payout: Payout | None = None
    replayed: bool = False


def parse_decision(value: Decision | str | None) -> Decision:
    if isinstance(value, Decision):
        return value
    decision = _DECISION_ALIASES.get(str(value or "").strip().upper())
    if decision is None:
        raise ValidationError(
            f"Invalid decision {value!r}; expected ACCEPT or REJECT",
            error_code="INVALID_DECISION",
        )
    return decision


def _recorded_outcome(escrow: EscrowRecord, decision: Decision) -> DecisionOutcome:
    """Outcome of a decision that already took effect, or StateConflictError."""
    if escrow.status == EscrowStatus.RELEASED and (
        decision == Decision.ACCEPT or escrow.auto_approved
    ):
        return DecisionOutcome(
            transaction_id=escrow.transaction_id,
            status=escrow.status,
            auto_approved=escrow.auto_approved,
            error_code=escrow.release_error_code,
            replayed=True,
        )
    if escrow.status == EscrowStatus.REVISION_REQUESTED and decision == Decision.REJECT:
        return DecisionOutcome(
            transaction_id=escrow.transaction_id,
            status=escrow.status,
            auto_approved=False,
            replayed=True,
        )
    raise StateConflictError(
        f"Escrow is {escrow.status.value}, not awaiting confirmation",
        details={"current_status": escrow.status.value, "decision": decision.value},
    )


async def _accept(
    db: AsyncSession, escrow: EscrowRecord, delivery: DeliveryVersion | None, now: datetime
) -> DecisionOutcome:
    version = escrow.current_delivery_version
    payout = await apply_transition(
        db,
        escrow,
        EscrowStatus.RELEASED,
        actor=Actor.BUYER,
        description=f"buyer accepted delivery v{version}",
        now=now,
        metadata={"version": version},
        auto_approved=False,
        release_error_code=None,
    )
    if delivery is not None:
        delivery.status = DeliveryStatus.CONFIRMED
        delivery.confirmed_at = now
    return DecisionOutcome(escrow.transaction_id, escrow.status, auto_approved=False, payout=payout)


async def _reject(
    db: AsyncSession,
    escrow: EscrowRecord,
    delivery: DeliveryVersion | None,
    reason: str,
    now: datetime,
) -> DecisionOutcome:
    version = escrow.current_delivery_version
    revision_count, max_revisions = escrow.revision_count, escrow.max_revisions

    try:
        check_revision_budget(revision_count, max_revisions)
    except RevisionLimitReached as limit:
        payout = await apply_transition(
            db,
            escrow,
            EscrowStatus.RELEASED,
            actor=Actor.SYSTEM,
            description="auto-approved: maximum revisions exceeded",
            now=now,
            metadata={
                "version": version,
                "rejection_reason": reason,
                "revision_count": revision_count,
                "max_revisions": max_revisions,
            },
            auto_approved=True,
            release_error_code=limit.error_code,
        )
        if delivery is not None:
            delivery.status = DeliveryStatus.CONFIRMED
            delivery.confirmed_at = now
        logger.info(
            "Rejection of %s folded into release: %d/%d revisions used",
            escrow.transaction_id, revision_count, max_revisions,
        )
        return DecisionOutcome(
            escrow.transaction_id,
            escrow.status,
            auto_approved=True,
            error_code=limit.error_code,
            payout=payout,
        )

    await apply_transition(
        db,
        escrow,
        EscrowStatus.REVISION_REQUESTED,
        actor=Actor.BUYER,
        description=f"buyer requested revision {revision_count + 1}/{max_revisions}",
        now=now,
        metadata={"version": version, "reason": reason},
        revision_count=revision_count + 1,
    )
    if delivery is not None:
        delivery.status = DeliveryStatus.REJECTED
        delivery.rejected_at = now
        delivery.rejection_reason = reason
    return DecisionOutcome(escrow.transaction_id, escrow.status, auto_approved=False)


async def decide(
    db: AsyncSession,
    transaction_id: str,
    decision: Decision | str,
    reason: str | None = None,
    now: datetime | None = None,
) -> DecisionOutcome:
    """Apply the buyer's ACCEPT/REJECT to the escrow's current delivery."""
    decision = parse_decision(decision)
    if decision == Decision.REJECT:
        reason = require_rejection_reason(reason)

    now = now or datetime.now(UTC)
    escrow = await get_escrow_record(db, transaction_id)
    if escrow.status != EscrowStatus.WAITING_CONFIRMATION:
        return _recorded_outcome(escrow, decision)

    delivery = await get_current_delivery(db, escrow)
    try:
        if decision == Decision.ACCEPT:
            outcome = await _accept(db, escrow, delivery, now)
        else:
            outcome = await _reject(db, escrow, delivery, reason, now)  # type: ignore[arg-type]
        await db.commit()
    except RaceLost:
        await db.rollback()
        logger.info("Decision on %s lost the race, returning recorded outcome", transaction_id)
        escrow = await get_escrow_record(db, transaction_id)
        return _recorded_outcome(escrow, decision)

    return outcome
