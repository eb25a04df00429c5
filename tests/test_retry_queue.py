"""Tests for the payout retry queue consumer (Redis mocked)."""

import asyncio
import uuid
from unittest.mock import AsyncMock, patch

import pytest

from photo_escrow.services.retry_queue import RETRY_KEY, enqueue_retry, run_payout_retry_consumer


@pytest.mark.asyncio
async def test_enqueue_retry() -> None:
    redis = AsyncMock()
    payout_id = uuid.uuid4()

    await enqueue_retry(redis, payout_id, 1700000000.0)

    redis.zadd.assert_awaited_once_with(RETRY_KEY, {str(payout_id): 1700000000.0})


@pytest.mark.asyncio
async def test_consumer_runs_due_payout() -> None:
    payout_id = uuid.uuid4()
    redis = AsyncMock()
    redis.zrangebyscore.side_effect = [
        [(str(payout_id).encode(), 0.0)],
        asyncio.CancelledError(),
    ]
    redis.zrem.return_value = 1

    with patch("photo_escrow.redis.redis_client", return_value=redis), \
         patch("photo_escrow.services.payout.run_payout", new_callable=AsyncMock) as run:
        await run_payout_retry_consumer()

    redis.zrem.assert_awaited_once_with(RETRY_KEY, str(payout_id).encode())
    run.assert_awaited_once_with(payout_id)
    redis.aclose.assert_awaited_once()


@pytest.mark.asyncio
async def test_consumer_skips_entry_claimed_elsewhere() -> None:
    redis = AsyncMock()
    redis.zrangebyscore.side_effect = [
        [(str(uuid.uuid4()).encode(), 0.0)],
        asyncio.CancelledError(),
    ]
    redis.zrem.return_value = 0

    with patch("photo_escrow.redis.redis_client", return_value=redis), \
         patch("photo_escrow.services.payout.run_payout", new_callable=AsyncMock) as run:
        await run_payout_retry_consumer()

    run.assert_not_awaited()
