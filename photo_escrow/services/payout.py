"""Payout executor.

A payout row is written by the state machine in the same transaction that
moves an escrow to RELEASED or REFUNDED. This module moves the money: it
claims the row (PENDING/PENDING_RETRY -> PROCESSING), calls the gateway with
the row's idempotency key and records the result. Gateway failures are
retried with exponential backoff through the Redis retry queue; once
`payout_max_attempts` is spent the row is FAILED and an operator has to look
at it. Nothing here touches the escrow status.
"""

import asyncio
import logging
import uuid
from datetime import UTC, datetime, timedelta

import redis.asyncio as aioredis
from redis.exceptions import RedisError
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from photo_escrow.config import settings
from photo_escrow.exceptions import NotFoundError, PayoutGatewayError, StateConflictError
from photo_escrow.models.escrow import EscrowRecord
from photo_escrow.models.payout import Payout, PayoutKind, PayoutStatus
from photo_escrow.services.gateway import PaymentGateway
from photo_escrow.services.retry_queue import enqueue_retry

logger = logging.getLogger(__name__)

# Keep references so in-flight payouts are not garbage collected
_background_tasks: set[asyncio.Task] = set()


def backoff_delay(attempts: int) -> float:
    """Seconds to wait before the next attempt, after `attempts` failures."""
    delay = settings.payout_backoff_base_seconds * 2 ** max(attempts - 1, 0)
    return float(min(delay, settings.payout_backoff_max_seconds))


async def _claim(db: AsyncSession, payout: Payout) -> bool:
    """PENDING/PENDING_RETRY/PROCESSING -> PROCESSING, counting the attempt."""
    result = await db.execute(
        update(Payout)
        .where(
            Payout.payout_id == payout.payout_id,
            Payout.status == payout.status,
            Payout.attempts == payout.attempts,
        )
        .values(status=PayoutStatus.PROCESSING, attempts=payout.attempts + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await db.rollback()
        await db.refresh(payout)
        return False
    await db.commit()
    await db.refresh(payout)
    return True


async def _send(gateway: PaymentGateway, payout: Payout) -> str:
    if payout.kind == PayoutKind.RELEASE:
        return await gateway.payout(payout.amount, payout.account, payout.idempotency_key)
    return await gateway.refund(payout.amount, payout.account, payout.idempotency_key)


async def execute_payout(
    db: AsyncSession,
    payout_id: uuid.UUID,
    gateway: PaymentGateway,
    *,
    redis: aioredis.Redis | None = None,
    now: datetime | None = None,
    resume: bool = False,
) -> Payout | None:
    """Run one attempt of a payout.

    `resume` lets startup recovery pick up a row left in PROCESSING by a
    crashed worker; the gateway deduplicates on the idempotency key.
    """
    now = now or datetime.now(UTC)
    result = await db.execute(select(Payout).where(Payout.payout_id == payout_id))
    payout = result.scalar_one_or_none()
    if payout is None:
        logger.warning("Payout %s not found", payout_id)
        return None

    if payout.status in (PayoutStatus.SUCCEEDED, PayoutStatus.FAILED):
        logger.info("Payout %s already %s, skipping", payout_id, payout.status.value)
        return payout
    if payout.status == PayoutStatus.PROCESSING and not resume:
        logger.info("Payout %s already in flight, skipping", payout_id)
        return payout
    if (
        payout.status == PayoutStatus.PENDING_RETRY
        and payout.next_attempt_at is not None
        and payout.next_attempt_at > now
    ):
        logger.info("Payout %s not due until %s", payout_id, payout.next_attempt_at)
        return payout

    if not await _claim(db, payout):
        logger.info("Payout %s claimed by another worker", payout_id)
        return payout

    try:
        reference = await _send(gateway, payout)
    except PayoutGatewayError as e:
        await _record_failure(db, payout, e, now, redis)
        return payout
    except Exception as e:
        # The row is already PROCESSING; anything else still has to go through retry
        logger.exception("Payout %s attempt raised unexpectedly", payout_id)
        error = PayoutGatewayError(str(e) or type(e).__name__, error_code="unexpected_error")
        await _record_failure(db, payout, error, now, redis)
        return payout

    payout.status = PayoutStatus.SUCCEEDED
    payout.gateway_reference = reference
    payout.completed_at = now
    payout.next_attempt_at = None
    payout.last_error = None
    await db.commit()
    logger.info(
        "Payout %s (%s %s to %s) succeeded: %s",
        payout_id, payout.kind.value, payout.amount, payout.account, reference,
    )
    return payout


async def _record_failure(
    db: AsyncSession,
    payout: Payout,
    error: PayoutGatewayError,
    now: datetime,
    redis: aioredis.Redis | None,
) -> None:
    payout.last_error = f"{error.error_code}: {error.message}"

    if payout.attempts >= settings.payout_max_attempts:
        payout.status = PayoutStatus.FAILED
        payout.next_attempt_at = None
        await db.commit()
        logger.critical(
            "Payout %s for escrow %s FAILED after %d attempts, manual action required: %s",
            payout.payout_id, payout.idempotency_key, payout.attempts, payout.last_error,
        )
        return

    delay = backoff_delay(payout.attempts)
    payout.status = PayoutStatus.PENDING_RETRY
    payout.next_attempt_at = now + timedelta(seconds=delay)
    await db.commit()
    logger.warning(
        "Payout %s attempt %d failed (%s), retrying in %ss",
        payout.payout_id, payout.attempts, payout.last_error, delay,
    )

    if redis is not None:
        try:
            await enqueue_retry(redis, payout.payout_id, payout.next_attempt_at.timestamp())
        except RedisError:
            # Startup recovery re-enqueues PENDING_RETRY rows
            logger.warning("Could not enqueue retry for payout %s", payout.payout_id)


async def _payout_for(
    db: AsyncSession, transaction_id: str, idempotency_key: str, kind: PayoutKind
) -> Payout:
    result = await db.execute(
        select(Payout)
        .join(EscrowRecord, EscrowRecord.escrow_id == Payout.escrow_id)
        .where(
            EscrowRecord.transaction_id == transaction_id,
            Payout.idempotency_key == idempotency_key,
        )
    )
    payout = result.scalar_one_or_none()
    if payout is None:
        raise NotFoundError(
            f"No payout for transaction {transaction_id}",
            details={"transaction_id": transaction_id, "idempotency_key": idempotency_key},
        )
    if payout.kind != kind:
        raise StateConflictError(
            f"Payout for transaction {transaction_id} is a {payout.kind.value}, not a {kind.value}",
            details={"transaction_id": transaction_id, "kind": payout.kind.value},
        )
    return payout


async def release(
    db: AsyncSession,
    transaction_id: str,
    idempotency_key: str,
    gateway: PaymentGateway,
    *,
    redis: aioredis.Redis | None = None,
    now: datetime | None = None,
) -> Payout | None:
    """Pay the photographer's share of a RELEASED escrow."""
    payout = await _payout_for(db, transaction_id, idempotency_key, PayoutKind.RELEASE)
    return await execute_payout(db, payout.payout_id, gateway, redis=redis, now=now)


async def refund(
    db: AsyncSession,
    transaction_id: str,
    idempotency_key: str,
    gateway: PaymentGateway,
    *,
    redis: aioredis.Redis | None = None,
    now: datetime | None = None,
) -> Payout | None:
    """Return the full amount of a REFUNDED escrow to the buyer."""
    payout = await _payout_for(db, transaction_id, idempotency_key, PayoutKind.REFUND)
    return await execute_payout(db, payout.payout_id, gateway, redis=redis, now=now)


async def run_payout(payout_id: uuid.UUID, resume: bool = False) -> None:
    """Execute a payout in its own session, outside any request."""
    from photo_escrow import database
    from photo_escrow.redis import redis_client
    from photo_escrow.services.gateway import get_payment_gateway

    redis = redis_client()
    try:
        async with database.async_session_factory() as db:
            await execute_payout(db, payout_id, get_payment_gateway(), redis=redis, resume=resume)
    except Exception:
        logger.exception("Payout %s execution failed", payout_id)
    finally:
        await redis.aclose()


def dispatch_payout(payout_id: uuid.UUID, resume: bool = False) -> None:
    """Fire-and-forget execution after the enqueuing transaction committed."""
    task = asyncio.create_task(run_payout(payout_id, resume=resume))
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
