"""Read-side queries for buyer and photographer dashboards."""

import math
import uuid
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from photo_escrow.exceptions import ValidationError
from photo_escrow.models.delivery import DeliveryVersion
from photo_escrow.models.escrow import EscrowRecord, EscrowStatus
from photo_escrow.services.escrow import CENT, EscrowView, build_view

PENDING_ORDER_KINDS = {
    "new": EscrowStatus.HELD,
    "revision": EscrowStatus.REVISION_REQUESTED,
}


def _money(value: object) -> Decimal:
    return Decimal(str(value)).quantize(CENT)


def parse_status(value: str | None) -> EscrowStatus | None:
    if value is None:
        return None
    try:
        return EscrowStatus(value.upper())
    except ValueError:
        raise ValidationError(
            f"Unknown escrow status {value!r}",
            error_code="INVALID_STATUS",
            details={"allowed": [s.value for s in EscrowStatus]},
        ) from None


async def _views(
    db: AsyncSession, escrows: list[EscrowRecord], now: datetime
) -> list[EscrowView]:
    """Attach each escrow's current delivery with a single query."""
    ids = [e.escrow_id for e in escrows if e.current_delivery_version is not None]
    current: dict[uuid.UUID, DeliveryVersion] = {}
    if ids:
        result = await db.execute(
            select(DeliveryVersion).where(DeliveryVersion.escrow_id.in_(ids))
        )
        wanted = {e.escrow_id: e.current_delivery_version for e in escrows}
        for delivery in result.scalars().all():
            if wanted.get(delivery.escrow_id) == delivery.version:
                current[delivery.escrow_id] = delivery
    return [build_view(e, current.get(e.escrow_id), now) for e in escrows]


async def list_purchases(
    db: AsyncSession,
    buyer_id: str,
    status: EscrowStatus | None = None,
    page: int = 1,
    limit: int = 10,
    now: datetime | None = None,
) -> tuple[list[EscrowView], int]:
    """Buyer's purchases, newest first. Returns (page of views, total count)."""
    query = select(EscrowRecord).where(EscrowRecord.buyer_id == buyer_id)
    count_query = select(func.count()).select_from(EscrowRecord).where(
        EscrowRecord.buyer_id == buyer_id
    )
    if status is not None:
        query = query.where(EscrowRecord.status == status)
        count_query = count_query.where(EscrowRecord.status == status)

    total = (await db.execute(count_query)).scalar_one()
    result = await db.execute(
        query.order_by(EscrowRecord.created_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    escrows = list(result.scalars().all())
    return await _views(db, escrows, now or datetime.now(UTC)), total


def total_pages(total: int, limit: int) -> int:
    return math.ceil(total / limit) if limit else 0


async def list_pending_orders(
    db: AsyncSession,
    photographer_id: str,
    kind: str | None = None,
    page: int = 1,
    limit: int = 10,
    now: datetime | None = None,
) -> tuple[list[EscrowView], int, dict]:
    """Orders waiting on the photographer: new (HELD) and revision requests.

    Returns (page of views oldest first, total matching `kind`, summary over both kinds).
    """
    if kind is not None and kind not in PENDING_ORDER_KINDS:
        raise ValidationError(
            f"Unknown order type {kind!r}; expected 'new' or 'revision'",
            error_code="INVALID_ORDER_TYPE",
        )
    statuses = [PENDING_ORDER_KINDS[kind]] if kind else list(PENDING_ORDER_KINDS.values())

    filters = (
        EscrowRecord.photographer_id == photographer_id,
        EscrowRecord.status.in_(statuses),
    )
    total = (
        await db.execute(select(func.count()).select_from(EscrowRecord).where(*filters))
    ).scalar_one()
    result = await db.execute(
        select(EscrowRecord)
        .where(*filters)
        .order_by(EscrowRecord.held_at)
        .offset((page - 1) * limit)
        .limit(limit)
    )
    escrows = list(result.scalars().all())

    summary_rows = await db.execute(
        select(
            EscrowRecord.status,
            func.count(),
            func.coalesce(func.sum(EscrowRecord.photographer_share), 0),
        )
        .where(
            EscrowRecord.photographer_id == photographer_id,
            EscrowRecord.status.in_(list(PENDING_ORDER_KINDS.values())),
        )
        .group_by(EscrowRecord.status)
    )
    counts: dict[EscrowStatus, int] = {}
    earning = _money(0)
    for status, count, share in summary_rows.all():
        counts[status] = count
        earning += _money(share)

    summary = {
        "total_new": counts.get(EscrowStatus.HELD, 0),
        "total_revisions": counts.get(EscrowStatus.REVISION_REQUESTED, 0),
        "total_pending": sum(counts.values()),
        "total_earning_pending": earning,
    }
    return await _views(db, escrows, now or datetime.now(UTC)), total, summary


async def photographer_stats(db: AsyncSession, photographer_id: str) -> dict:
    result = await db.execute(
        select(
            EscrowRecord.status,
            func.count(),
            func.coalesce(func.sum(EscrowRecord.photographer_share), 0),
            func.coalesce(func.sum(EscrowRecord.revision_count), 0),
            func.count().filter(EscrowRecord.revision_count > 0),
        )
        .where(EscrowRecord.photographer_id == photographer_id)
        .group_by(EscrowRecord.status)
    )

    counts: dict[EscrowStatus, int] = {}
    shares: dict[EscrowStatus, Decimal] = {}
    revisions = 0
    revised_orders = 0
    for status, count, share, revision_total, revised in result.all():
        counts[status] = count
        shares[status] = _money(share)
        revisions += int(revision_total)
        revised_orders += int(revised)

    total = sum(counts.values())
    open_statuses = (
        EscrowStatus.HELD,
        EscrowStatus.WAITING_CONFIRMATION,
        EscrowStatus.REVISION_REQUESTED,
    )
    return {
        "overview": {
            "total_orders": total,
            "pending_upload": counts.get(EscrowStatus.HELD, 0),
            "pending_revision": counts.get(EscrowStatus.REVISION_REQUESTED, 0),
            "awaiting_confirmation": counts.get(EscrowStatus.WAITING_CONFIRMATION, 0),
            "completed": counts.get(EscrowStatus.RELEASED, 0),
            "refunded": counts.get(EscrowStatus.REFUNDED, 0),
        },
        "earnings": {
            "total_earned": shares.get(EscrowStatus.RELEASED, _money(0)),
            "pending_earnings": sum((shares.get(s, _money(0)) for s in open_statuses), _money(0)),
        },
        "performance": {
            "revision_rate": round(revised_orders / total, 4) if total else 0.0,
            "avg_revisions_per_order": round(revisions / total, 2) if total else 0.0,
        },
    }
