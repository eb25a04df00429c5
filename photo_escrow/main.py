"""FastAPI application entry point."""

import asyncio
import logging
from contextlib import asynccontextmanager
from collections.abc import AsyncGenerator

import redis.asyncio as aioredis
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from photo_escrow.config import settings
from photo_escrow.exceptions import EscrowError
from photo_escrow.middleware import BodySizeLimitMiddleware, RequestLoggingMiddleware
from photo_escrow.routers import buyers, escrows, photographers

logger = logging.getLogger(__name__)


async def _recover_payouts(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    redis: aioredis.Redis | None = None,
) -> None:
    """Pick up payouts interrupted by a restart.

    PENDING and PROCESSING rows are executed again (the gateway deduplicates
    on the idempotency key). PENDING_RETRY rows go back on the retry queue;
    ZADD with the same member only moves its score, so this is safe to run
    on every startup.
    """
    from photo_escrow import database
    from photo_escrow.models.payout import Payout, PayoutStatus
    from photo_escrow.redis import redis_client
    from photo_escrow.services import payout as payout_service
    from photo_escrow.services.retry_queue import enqueue_retry
    from sqlalchemy import select

    session_factory = session_factory or database.async_session_factory
    try:
        async with session_factory() as db:
            result = await db.execute(
                select(Payout.payout_id, Payout.status, Payout.next_attempt_at).where(
                    Payout.status.in_([
                        PayoutStatus.PENDING,
                        PayoutStatus.PROCESSING,
                        PayoutStatus.PENDING_RETRY,
                    ])
                )
            )
            rows = list(result.all())

        if not rows:
            logger.info("Payout recovery: nothing in flight")
            return

        retries = [r for r in rows if r.status == PayoutStatus.PENDING_RETRY]
        for row in rows:
            if row.status != PayoutStatus.PENDING_RETRY:
                logger.info("Recovering %s payout %s", row.status.value, row.payout_id)
                payout_service.dispatch_payout(
                    row.payout_id, resume=row.status == PayoutStatus.PROCESSING
                )

        if retries:
            own_client = redis is None
            redis = redis or redis_client()
            try:
                for row in retries:
                    due = row.next_attempt_at.timestamp() if row.next_attempt_at else 0.0
                    await enqueue_retry(redis, row.payout_id, due)
            finally:
                if own_client:
                    await redis.aclose()

        logger.info(
            "Payout recovery: %d dispatched, %d retries re-enqueued",
            len(rows) - len(retries), len(retries),
        )
    except Exception:
        logger.exception("Payout recovery failed")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: startup and shutdown."""
    from photo_escrow.services.retry_queue import run_payout_retry_consumer
    from photo_escrow.services.sweeper import run_deadline_sweeper

    tasks = [asyncio.create_task(run_payout_retry_consumer())]
    if settings.sweeper_enabled:
        tasks.append(asyncio.create_task(run_deadline_sweeper()))
    await _recover_payouts()

    yield

    for task in tasks:
        task.cancel()
    for task in tasks:
        try:
            await task
        except asyncio.CancelledError:
            pass


app = FastAPI(
    title="Photo Purchase Escrow",
    description="Escrow lifecycle for marketplace photo purchases",
    version="0.1.0",
    lifespan=lifespan,
)


@app.exception_handler(EscrowError)
async def escrow_error_handler(request: Request, exc: EscrowError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "error_code": exc.error_code},
    )


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Last added runs outermost
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(BodySizeLimitMiddleware, max_bytes=settings.max_request_body_bytes)

app.include_router(escrows.router)
app.include_router(buyers.router)
app.include_router(photographers.router)


@app.get("/health")
async def health() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "ok"}
