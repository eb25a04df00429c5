"""Escrow creation, refunds and the per-escrow read model."""

import logging
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from photo_escrow.config import settings
from photo_escrow.exceptions import PaymentCaptureError, RaceLost, StateConflictError
from photo_escrow.models.delivery import DeliveryVersion
from photo_escrow.models.escrow import Actor, EscrowRecord, EscrowStatus
from photo_escrow.models.payout import Payout
from photo_escrow.schemas.escrow import EscrowCreate
from photo_escrow.services.delivery import get_current_delivery
from photo_escrow.services.gateway import PaymentGateway
from photo_escrow.services.history import append_history
from photo_escrow.services.revision_policy import can_request_revision
from photo_escrow.services.state_machine import apply_transition, assert_transition, get_escrow_record
from photo_escrow.services.urgency import Urgency, classify_urgency, hours_remaining

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


@dataclass
class EscrowView:
    """Escrow plus the derived fields presentation layers need."""
    escrow: EscrowRecord
    current_delivery: DeliveryVersion | None
    urgency: Urgency | None
    hours_remaining: float | None
    can_confirm: bool
    can_request_revision: bool
    can_download: bool


def split_amount(amount_total: Decimal) -> tuple[Decimal, Decimal]:
    """Return (platform_fee, photographer_share); they always sum to amount_total."""
    platform_fee = (amount_total * settings.platform_fee_percent).quantize(CENT, rounding=ROUND_HALF_UP)
    return platform_fee, amount_total - platform_fee


def build_view(
    escrow: EscrowRecord, current_delivery: DeliveryVersion | None, now: datetime
) -> EscrowView:
    waiting = escrow.status == EscrowStatus.WAITING_CONFIRMATION
    return EscrowView(
        escrow=escrow,
        current_delivery=current_delivery,
        urgency=classify_urgency(escrow.confirmation_deadline, now),
        hours_remaining=hours_remaining(escrow.confirmation_deadline, now),
        can_confirm=waiting and current_delivery is not None,
        can_request_revision=can_request_revision(
            escrow.status, escrow.revision_count, escrow.max_revisions
        ),
        can_download=escrow.status == EscrowStatus.RELEASED,
    )


async def get_escrow(
    db: AsyncSession, transaction_id: str, now: datetime | None = None
) -> EscrowView:
    escrow = await get_escrow_record(db, transaction_id)
    current = await get_current_delivery(db, escrow)
    return build_view(escrow, current, now or datetime.now(UTC))


async def create_escrow(
    db: AsyncSession,
    gateway: PaymentGateway,
    data: EscrowCreate,
    now: datetime | None = None,
) -> EscrowRecord:
    """Create the escrow and capture payment. Atomic: nothing persists if capture fails."""
    now = now or datetime.now(UTC)

    existing = await db.execute(
        select(EscrowRecord.escrow_id).where(EscrowRecord.transaction_id == data.transaction_id)
    )
    if existing.scalar_one_or_none() is not None:
        raise StateConflictError(
            f"Escrow already exists for transaction {data.transaction_id}",
            error_code="DUPLICATE_TRANSACTION",
        )

    platform_fee, photographer_share = split_amount(data.amount_total)
    max_revisions = (
        data.max_revisions if data.max_revisions is not None else settings.default_max_revisions
    )
    escrow = EscrowRecord(
        escrow_id=uuid.uuid4(),
        transaction_id=data.transaction_id,
        buyer_id=data.buyer_id,
        photographer_id=data.photographer_id,
        photo_id=data.photo_id,
        status=EscrowStatus.PENDING_PAYMENT,
        amount_total=data.amount_total,
        platform_fee=platform_fee,
        photographer_share=photographer_share,
        revision_count=0,
        max_revisions=max_revisions,
        version=1,
        created_at=now,
        updated_at=now,
    )
    db.add(escrow)
    append_history(
        db,
        escrow.escrow_id,
        sequence=1,
        from_status=None,
        to_status=EscrowStatus.PENDING_PAYMENT,
        actor=Actor.BUYER,
        description="purchase created",
        timestamp=now,
        metadata={"amount_total": str(data.amount_total)},
    )
    try:
        await db.flush()
    except IntegrityError as e:
        await db.rollback()
        raise StateConflictError(
            f"Escrow already exists for transaction {data.transaction_id}",
            error_code="DUPLICATE_TRANSACTION",
        ) from e

    try:
        reference = await gateway.capture(data.transaction_id, data.amount_total)
    except PaymentCaptureError:
        await db.rollback()
        logger.warning("Capture failed for %s, escrow not created", data.transaction_id)
        raise

    await apply_transition(
        db,
        escrow,
        EscrowStatus.HELD,
        actor=Actor.SYSTEM,
        description="payment captured",
        now=now,
        metadata={"capture_reference": reference},
        capture_reference=reference,
    )
    await db.commit()
    return escrow


async def _refund(
    db: AsyncSession,
    escrow: EscrowRecord,
    reason: str,
    actor: Actor,
    now: datetime,
) -> Payout:
    assert_transition(escrow.status, EscrowStatus.REFUNDED)
    try:
        payout = await apply_transition(
            db,
            escrow,
            EscrowStatus.REFUNDED,
            actor=actor,
            description=f"refunded: {reason}",
            now=now,
            metadata={"reason": reason},
        )
        await db.commit()
    except RaceLost as e:
        await db.rollback()
        raise StateConflictError(
            "Escrow changed while processing the refund; refresh and retry",
            details=e.details,
        ) from e
    return payout  # type: ignore[return-value]


async def refund_escrow(
    db: AsyncSession,
    transaction_id: str,
    reason: str,
    actor: Actor = Actor.SYSTEM,
    now: datetime | None = None,
) -> tuple[EscrowRecord, Payout]:
    """Dispute/cancellation path into REFUNDED. Enqueues the refund payout."""
    escrow = await get_escrow_record(db, transaction_id)
    payout = await _refund(db, escrow, reason, actor, now or datetime.now(UTC))
    return escrow, payout


async def cancel_purchase(
    db: AsyncSession,
    transaction_id: str,
    reason: str | None = None,
    now: datetime | None = None,
) -> tuple[EscrowRecord, Payout]:
    """Buyer cancels before the photographer has uploaded anything."""
    escrow = await get_escrow_record(db, transaction_id)
    if escrow.status != EscrowStatus.HELD:
        raise StateConflictError(
            f"Purchase can only be cancelled before delivery, currently {escrow.status.value}",
            details={"current_status": escrow.status.value},
        )
    payout = await _refund(
        db, escrow, reason or "cancelled by buyer", Actor.BUYER, now or datetime.now(UTC)
    )
    return escrow, payout
