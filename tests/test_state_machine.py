"""Tests for escrow creation and the conditional transition function."""

from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from photo_escrow.exceptions import PaymentCaptureError, RaceLost, StateConflictError
from photo_escrow.models.escrow import (
    TERMINAL_STATUSES,
    VALID_TRANSITIONS,
    Actor,
    EscrowHistory,
    EscrowRecord,
    EscrowStatus,
)
from photo_escrow.models.payout import Payout, PayoutKind, PayoutStatus
from photo_escrow.schemas.escrow import EscrowCreate
from photo_escrow.services.escrow import cancel_purchase, create_escrow, refund_escrow, split_amount
from photo_escrow.services.state_machine import apply_transition, assert_transition, get_escrow_record
from tests.conftest import T0, FakeGateway, make_held_escrow, make_purchase_data, make_waiting_escrow


def test_terminal_states_have_no_exits() -> None:
    for status in TERMINAL_STATUSES:
        assert VALID_TRANSITIONS[status] == set()


@pytest.mark.parametrize(
    "current,target",
    [
        (EscrowStatus.HELD, EscrowStatus.RELEASED),
        (EscrowStatus.PENDING_PAYMENT, EscrowStatus.WAITING_CONFIRMATION),
        (EscrowStatus.REVISION_REQUESTED, EscrowStatus.RELEASED),
        (EscrowStatus.RELEASED, EscrowStatus.REFUNDED),
        (EscrowStatus.REFUNDED, EscrowStatus.HELD),
    ],
)
def test_unlisted_transitions_rejected(current: EscrowStatus, target: EscrowStatus) -> None:
    with pytest.raises(StateConflictError):
        assert_transition(current, target)


def test_split_amount_sums_to_total() -> None:
    assert split_amount(Decimal("50.00")) == (Decimal("5.00"), Decimal("45.00"))
    fee, share = split_amount(Decimal("0.15"))
    assert fee == Decimal("0.02")
    assert fee + share == Decimal("0.15")


@pytest.mark.asyncio
async def test_create_escrow_captures_and_holds(db_session: AsyncSession, gateway: FakeGateway) -> None:
    escrow = await make_held_escrow(db_session, gateway)

    assert escrow.status == EscrowStatus.HELD
    assert escrow.capture_reference == "cap_tx-1"
    assert escrow.held_at == T0
    assert escrow.platform_fee + escrow.photographer_share == escrow.amount_total
    assert escrow.max_revisions == 2
    assert escrow.confirmation_deadline is None
    assert gateway.captures == [("tx-1", Decimal("50.00"))]

    result = await db_session.execute(
        select(EscrowHistory).where(EscrowHistory.escrow_id == escrow.escrow_id).order_by(EscrowHistory.sequence)
    )
    history = list(result.scalars().all())
    assert [(h.from_status, h.to_status) for h in history] == [
        (None, EscrowStatus.PENDING_PAYMENT),
        (EscrowStatus.PENDING_PAYMENT, EscrowStatus.HELD),
    ]


@pytest.mark.asyncio
async def test_create_escrow_uses_explicit_revision_ceiling(
    db_session: AsyncSession, gateway: FakeGateway
) -> None:
    escrow = await make_held_escrow(db_session, gateway, max_revisions=0)
    assert escrow.max_revisions == 0


@pytest.mark.asyncio
async def test_duplicate_transaction_rejected(db_session: AsyncSession, gateway: FakeGateway) -> None:
    await make_held_escrow(db_session, gateway)
    with pytest.raises(StateConflictError) as exc:
        await make_held_escrow(db_session, gateway)
    assert exc.value.error_code == "DUPLICATE_TRANSACTION"
    assert len(gateway.captures) == 1


@pytest.mark.asyncio
async def test_capture_failure_persists_nothing(db_session: AsyncSession, gateway: FakeGateway) -> None:
    gateway.fail_capture = True
    with pytest.raises(PaymentCaptureError):
        await create_escrow(db_session, gateway, EscrowCreate(**make_purchase_data()), now=T0)

    count = await db_session.execute(select(func.count()).select_from(EscrowRecord))
    assert count.scalar_one() == 0
    count = await db_session.execute(select(func.count()).select_from(EscrowHistory))
    assert count.scalar_one() == 0


@pytest.mark.asyncio
async def test_deadline_set_only_while_waiting(db_session: AsyncSession, gateway: FakeGateway) -> None:
    escrow = await make_waiting_escrow(db_session, gateway)
    assert escrow.status == EscrowStatus.WAITING_CONFIRMATION
    assert escrow.confirmation_deadline == T0 + timedelta(hours=1) + timedelta(hours=48)

    await apply_transition(
        db_session, escrow, EscrowStatus.REVISION_REQUESTED,
        actor=Actor.BUYER, description="revision", now=T0 + timedelta(hours=2),
        revision_count=1,
    )
    await db_session.commit()
    assert escrow.confirmation_deadline is None
    assert escrow.revision_count == 1


@pytest.mark.asyncio
async def test_every_transition_bumps_version_and_logs_once(
    db_session: AsyncSession, gateway: FakeGateway
) -> None:
    escrow = await make_waiting_escrow(db_session, gateway)
    assert escrow.version == 3

    result = await db_session.execute(
        select(EscrowHistory.sequence).where(EscrowHistory.escrow_id == escrow.escrow_id)
    )
    assert sorted(result.scalars().all()) == [1, 2, 3]


@pytest.mark.asyncio
async def test_release_enqueues_single_payout(db_session: AsyncSession, gateway: FakeGateway) -> None:
    escrow = await make_waiting_escrow(db_session, gateway)
    payout = await apply_transition(
        db_session, escrow, EscrowStatus.RELEASED,
        actor=Actor.BUYER, description="accepted", now=T0 + timedelta(hours=2),
    )
    await db_session.commit()

    assert payout is not None
    assert payout.kind == PayoutKind.RELEASE
    assert payout.amount == Decimal("45.00")
    assert payout.account == "photog-1"
    assert payout.idempotency_key == "tx-1"
    assert payout.status == PayoutStatus.PENDING
    assert escrow.released_at == T0 + timedelta(hours=2)


@pytest.mark.asyncio
async def test_stale_version_loses_race(
    session_factory: async_sessionmaker[AsyncSession], gateway: FakeGateway
) -> None:
    async with session_factory() as db:
        await make_waiting_escrow(db, gateway)

    async with session_factory() as stale, session_factory() as fresh:
        stale_escrow = await get_escrow_record(stale, "tx-1")
        fresh_escrow = await get_escrow_record(fresh, "tx-1")

        await apply_transition(
            fresh, fresh_escrow, EscrowStatus.RELEASED,
            actor=Actor.BUYER, description="accepted",
        )
        await fresh.commit()

        with pytest.raises(RaceLost):
            await apply_transition(
                stale, stale_escrow, EscrowStatus.RELEASED,
                actor=Actor.SYSTEM, description="auto-released on deadline",
            )
        await stale.rollback()

    async with session_factory() as db:
        count = await db.execute(select(func.count()).select_from(Payout))
        assert count.scalar_one() == 1


@pytest.mark.asyncio
async def test_refund_from_waiting(db_session: AsyncSession, gateway: FakeGateway) -> None:
    await make_waiting_escrow(db_session, gateway)
    escrow, payout = await refund_escrow(db_session, "tx-1", "dispute upheld", now=T0 + timedelta(hours=3))

    assert escrow.status == EscrowStatus.REFUNDED
    assert escrow.refunded_at is not None
    assert escrow.confirmation_deadline is None
    assert payout.kind == PayoutKind.REFUND
    assert payout.amount == Decimal("50.00")
    assert payout.account == "buyer-1"


@pytest.mark.asyncio
async def test_terminal_escrow_cannot_be_refunded(db_session: AsyncSession, gateway: FakeGateway) -> None:
    await make_held_escrow(db_session, gateway)
    await refund_escrow(db_session, "tx-1", "dispute upheld")
    with pytest.raises(StateConflictError):
        await refund_escrow(db_session, "tx-1", "again")


@pytest.mark.asyncio
async def test_cancel_only_before_upload(db_session: AsyncSession, gateway: FakeGateway) -> None:
    await make_held_escrow(db_session, gateway, "tx-held")
    escrow, payout = await cancel_purchase(db_session, "tx-held")
    assert escrow.status == EscrowStatus.REFUNDED
    assert payout.kind == PayoutKind.REFUND

    await make_waiting_escrow(db_session, gateway, "tx-delivered")
    with pytest.raises(StateConflictError):
        await cancel_purchase(db_session, "tx-delivered", "changed my mind")
