"""Payout retry queue using a Redis sorted set.

A payout that failed at the gateway is ZADDed with score = next attempt unix
timestamp. A single async consumer sleeps until the earliest retry is due,
removes it (the ZREM winner owns it) and runs the payout again.
"""

import asyncio
import logging
import time
import uuid

import redis.asyncio as aioredis

logger = logging.getLogger(__name__)

RETRY_KEY = "payout:retries"


async def enqueue_retry(
    redis: aioredis.Redis,
    payout_id: uuid.UUID,
    due_timestamp: float,
) -> None:
    """Schedule a payout for another attempt."""
    await redis.zadd(RETRY_KEY, {str(payout_id): due_timestamp})
    logger.info("Enqueued retry for payout %s at %s", payout_id, due_timestamp)


async def run_payout_retry_consumer() -> None:
    """Block on the sorted set, re-running payouts as their retries come due."""
    from photo_escrow.redis import redis_client
    from photo_escrow.services.payout import run_payout

    redis = redis_client()

    while True:
        try:
            entries = await redis.zrangebyscore(
                RETRY_KEY, "-inf", "+inf", start=0, num=1, withscores=True
            )

            if not entries:
                await asyncio.sleep(10)
                continue

            payout_id_bytes, due_ts = entries[0]
            now = time.time()

            if due_ts > now:
                # Wake at most every 60s to pick up earlier retries
                await asyncio.sleep(min(due_ts - now, 60.0))
                continue

            removed = await redis.zrem(RETRY_KEY, payout_id_bytes)
            if not removed:
                # Another consumer got it
                continue

            await run_payout(uuid.UUID(payout_id_bytes.decode()))

        except asyncio.CancelledError:
            logger.info("Payout retry consumer shutting down")
            break
        except Exception:
            logger.exception("Payout retry consumer error, retrying in 5s")
            await asyncio.sleep(5)

    await redis.aclose()
