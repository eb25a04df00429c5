"""Deadline sweeper: auto-releases escrows whose confirmation window elapsed.

Each tick selects WAITING_CONFIRMATION escrows past their deadline and moves
them to RELEASED through the conditional transition, committing per escrow.
An escrow the buyer decided on in the meantime loses the race and is skipped.
With several app nodes, a Redis lease lets only one of them sweep per
interval; the conditional write is what keeps the outcome correct.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime

import redis.asyncio as aioredis
from redis.exceptions import RedisError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from photo_escrow.config import settings
from photo_escrow.exceptions import RaceLost
from photo_escrow.models.delivery import DeliveryStatus
from photo_escrow.models.escrow import Actor, EscrowRecord, EscrowStatus
from photo_escrow.services.delivery import get_current_delivery
from photo_escrow.services.state_machine import apply_transition, get_escrow_record

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    released: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    payout_ids: list[uuid.UUID] = field(default_factory=list)


async def sweep_expired(
    db: AsyncSession, now: datetime | None = None, limit: int | None = None
) -> SweepResult:
    """Release every expired escrow in one batch, oldest deadline first."""
    now = now or datetime.now(UTC)
    result = await db.execute(
        select(EscrowRecord.transaction_id)
        .where(
            EscrowRecord.status == EscrowStatus.WAITING_CONFIRMATION,
            EscrowRecord.confirmation_deadline <= now,
        )
        .order_by(EscrowRecord.confirmation_deadline)
        .limit(limit or settings.sweeper_batch_size)
    )
    # Rollbacks expire loaded rows, so iterate over plain ids and re-read each
    expired = list(result.scalars().all())

    sweep = SweepResult()
    for transaction_id in expired:
        escrow = await get_escrow_record(db, transaction_id)
        if escrow.status != EscrowStatus.WAITING_CONFIRMATION:
            logger.info("Escrow %s already %s, skipping", transaction_id, escrow.status.value)
            sweep.skipped.append(transaction_id)
            continue
        delivery = await get_current_delivery(db, escrow)
        try:
            payout = await apply_transition(
                db,
                escrow,
                EscrowStatus.RELEASED,
                actor=Actor.SYSTEM,
                description="auto-released on deadline",
                now=now,
                metadata={"version": escrow.current_delivery_version},
                auto_approved=True,
                release_error_code=None,
            )
        except RaceLost:
            await db.rollback()
            logger.info("Escrow %s decided before the sweeper got to it, skipping", transaction_id)
            sweep.skipped.append(transaction_id)
            continue

        if delivery is not None:
            delivery.status = DeliveryStatus.CONFIRMED
            delivery.confirmed_at = now
        await db.commit()
        sweep.released.append(transaction_id)
        if payout is not None:
            sweep.payout_ids.append(payout.payout_id)

    if sweep.released or sweep.skipped:
        logger.info(
            "Sweep: released %d escrows, skipped %d", len(sweep.released), len(sweep.skipped)
        )
    return sweep


async def _acquire_lease(redis: aioredis.Redis, interval: int) -> bool:
    """One node per interval. Redis being down means every node sweeps."""
    ttl = max(int(interval * 0.9), 1)
    try:
        return bool(await redis.set(settings.sweeper_lock_key, "1", nx=True, ex=ttl))
    except RedisError:
        logger.warning("Sweeper lease unavailable, sweeping without it")
        return True


async def sweep_once(
    session_factory: async_sessionmaker[AsyncSession],
    redis: aioredis.Redis | None = None,
    interval: int | None = None,
) -> SweepResult | None:
    """One tick: take the lease, sweep, dispatch the resulting payouts."""
    from photo_escrow.services import payout as payout_service

    interval = interval or settings.sweeper_interval_seconds
    if redis is not None and not await _acquire_lease(redis, interval):
        logger.debug("Another node holds the sweeper lease")
        return None

    async with session_factory() as db:
        sweep = await sweep_expired(db)

    for payout_id in sweep.payout_ids:
        payout_service.dispatch_payout(payout_id)
    return sweep


async def run_deadline_sweeper() -> None:
    """Sweep every `sweeper_interval_seconds` until cancelled."""
    from photo_escrow import database
    from photo_escrow.redis import redis_client

    redis = redis_client()
    interval = settings.sweeper_interval_seconds
    logger.info("Deadline sweeper started (interval %ds)", interval)

    while True:
        try:
            await sweep_once(database.async_session_factory, redis, interval)
            await asyncio.sleep(interval)
        except asyncio.CancelledError:
            logger.info("Deadline sweeper shutting down")
            break
        except Exception:
            logger.exception("Deadline sweeper error, retrying in 5s")
            await asyncio.sleep(5)

    await redis.aclose()
