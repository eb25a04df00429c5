"""Test configuration and fixtures.

Each test gets a fresh database built from the ORM metadata. With the default
`test_database_url` that is a SQLite file under the test's tmp_path, so the
suite runs without Postgres or Redis; point TEST_DATABASE_URL at Postgres to
run against asyncpg instead. Redis is replaced by AsyncMock where needed.
"""

from collections.abc import AsyncGenerator
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from photo_escrow.config import settings
from photo_escrow.database import Base, get_db
from photo_escrow.exceptions import PaymentCaptureError
from photo_escrow.main import app
from photo_escrow.models.delivery import DeliveryVersion  # noqa: F401
from photo_escrow.models.escrow import EscrowRecord
from photo_escrow.models.payout import Payout  # noqa: F401
from photo_escrow.schemas.escrow import EscrowCreate
from photo_escrow.services.delivery import upload_delivery
from photo_escrow.services.escrow import create_escrow
from photo_escrow.services.gateway import get_payment_gateway

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def _database_url(tmp_path: Path) -> str:
    url = settings.test_database_url
    if url.startswith("sqlite"):
        return f"sqlite+aiosqlite:///{tmp_path / 'photo_escrow_test.db'}"
    return url


class FakeGateway:
    """In-memory PaymentGateway that records calls.

    Queue exceptions on `payout_errors` to make the next payout/refund calls fail.
    """

    def __init__(self) -> None:
        self.captures: list[tuple[str, Decimal]] = []
        self.payouts: list[tuple[Decimal, str, str]] = []
        self.refunds: list[tuple[Decimal, str, str]] = []
        self.fail_capture = False
        self.payout_errors: list[Exception] = []

    async def capture(self, transaction_id: str, amount: Decimal) -> str:
        if self.fail_capture:
            raise PaymentCaptureError("card declined")
        self.captures.append((transaction_id, amount))
        return f"cap_{transaction_id}"

    async def payout(self, amount: Decimal, account: str, idempotency_key: str) -> str:
        if self.payout_errors:
            raise self.payout_errors.pop(0)
        self.payouts.append((amount, account, idempotency_key))
        return f"po_{idempotency_key}"

    async def refund(self, amount: Decimal, account: str, idempotency_key: str) -> str:
        if self.payout_errors:
            raise self.payout_errors.pop(0)
        self.refunds.append((amount, account, idempotency_key))
        return f"rf_{idempotency_key}"


@pytest.fixture(autouse=True)
def _isolate_settings() -> None:
    """Snapshot settings before each test and restore after to prevent mutation bleed."""
    original = settings.model_dump()
    yield  # type: ignore[misc]
    for key, value in original.items():
        object.__setattr__(settings, key, value)


@pytest_asyncio.fixture
async def engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    engine = create_async_engine(_database_url(tmp_path))
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def dispatched() -> MagicMock:
    """Capture payout dispatches instead of spawning background tasks."""
    with patch("photo_escrow.services.payout.dispatch_payout") as mock:
        yield mock


@pytest_asyncio.fixture
async def client(
    session_factory: async_sessionmaker[AsyncSession],
    gateway: FakeGateway,
    dispatched: MagicMock,
) -> AsyncGenerator[AsyncClient, None]:
    """HTTP test client with overridden DB and gateway dependencies."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payment_gateway] = lambda: gateway

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


def make_purchase_data(transaction_id: str = "tx-1", **overrides: object) -> dict:
    data = {
        "transaction_id": transaction_id,
        "buyer_id": "buyer-1",
        "photographer_id": "photog-1",
        "photo_id": "photo-1",
        "amount_total": "50.00",
    }
    data.update(overrides)
    return data


async def make_held_escrow(
    db: AsyncSession,
    gateway: FakeGateway,
    transaction_id: str = "tx-1",
    max_revisions: int | None = None,
    now: datetime = T0,
    **overrides: object,
) -> EscrowRecord:
    data = EscrowCreate(
        **make_purchase_data(transaction_id, max_revisions=max_revisions, **overrides)
    )
    return await create_escrow(db, gateway, data, now=now)


async def make_waiting_escrow(
    db: AsyncSession,
    gateway: FakeGateway,
    transaction_id: str = "tx-1",
    max_revisions: int | None = None,
    now: datetime = T0,
) -> EscrowRecord:
    """Held escrow with v1 delivered one hour after purchase."""
    await make_held_escrow(db, gateway, transaction_id, max_revisions, now=now)
    escrow, _ = await upload_delivery(
        db, transaction_id, f"s3://deliveries/{transaction_id}/v1.jpg", now=now + timedelta(hours=1)
    )
    return escrow
