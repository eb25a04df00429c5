"""Escrow lifecycle endpoints: purchase, delivery, decision, refund."""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from photo_escrow.database import get_db
from photo_escrow.models.escrow import Actor
from photo_escrow.schemas.escrow import (
    CancelRequest,
    DecisionRequest,
    DecisionResponse,
    DeliveryUpload,
    DeliveryVersionResponse,
    EscrowCreate,
    EscrowDetailResponse,
    EscrowResponse,
    HistoryEntryResponse,
    RefundRequest,
    UploadResponse,
)
from photo_escrow.services import decision as decision_service
from photo_escrow.services import delivery as delivery_service
from photo_escrow.services import escrow as escrow_service
from photo_escrow.services import history as history_service
from photo_escrow.services import payout as payout_service
from photo_escrow.services.gateway import PaymentGateway, get_payment_gateway

router = APIRouter(prefix="/escrows", tags=["escrows"])


@router.post("", response_model=EscrowResponse, status_code=201)
async def create_escrow(
    data: EscrowCreate,
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
) -> EscrowResponse:
    """Capture payment for a purchase and hold it in escrow."""
    escrow = await escrow_service.create_escrow(db, gateway, data)
    return EscrowResponse.model_validate(escrow)


@router.get("/{transaction_id}", response_model=EscrowDetailResponse)
async def get_escrow(
    transaction_id: str,
    db: AsyncSession = Depends(get_db),
) -> EscrowDetailResponse:
    view = await escrow_service.get_escrow(db, transaction_id)
    return EscrowDetailResponse.model_validate(view)


@router.get("/{transaction_id}/history", response_model=list[HistoryEntryResponse])
async def get_history(
    transaction_id: str,
    db: AsyncSession = Depends(get_db),
) -> list[HistoryEntryResponse]:
    """Full audit trail, oldest first."""
    entries = await history_service.get_history(db, transaction_id)
    return [HistoryEntryResponse.model_validate(e) for e in entries]


@router.get("/{transaction_id}/deliveries", response_model=list[DeliveryVersionResponse])
async def list_deliveries(
    transaction_id: str,
    db: AsyncSession = Depends(get_db),
) -> list[DeliveryVersionResponse]:
    deliveries = await delivery_service.list_deliveries(db, transaction_id)
    return [DeliveryVersionResponse.model_validate(d) for d in deliveries]


@router.get("/{transaction_id}/deliveries/{version}", response_model=DeliveryVersionResponse)
async def get_delivery(
    transaction_id: str,
    version: int,
    db: AsyncSession = Depends(get_db),
) -> DeliveryVersionResponse:
    """Preview a single delivery version."""
    delivery = await delivery_service.get_delivery(db, transaction_id, version)
    return DeliveryVersionResponse.model_validate(delivery)


@router.post("/{transaction_id}/deliveries", response_model=UploadResponse, status_code=201)
async def upload_delivery(
    transaction_id: str,
    data: DeliveryUpload,
    db: AsyncSession = Depends(get_db),
) -> UploadResponse:
    """Photographer uploads the file (or a revision). Starts the confirmation window."""
    escrow, delivery = await delivery_service.upload_delivery(
        db, transaction_id, data.file_descriptor, data.photographer_notes
    )
    return UploadResponse(
        transaction_id=escrow.transaction_id,
        version=delivery.version,
        status=delivery.status.value,
        escrow_status=escrow.status.value,
        is_revision=delivery.version > 1,
        confirmation_deadline=escrow.confirmation_deadline,
    )


@router.post("/{transaction_id}/decision", response_model=DecisionResponse)
async def decide(
    transaction_id: str,
    data: DecisionRequest,
    db: AsyncSession = Depends(get_db),
) -> DecisionResponse:
    """Buyer accepts or rejects the current delivery."""
    outcome = await decision_service.decide(db, transaction_id, data.decision, data.reason)
    if outcome.payout is not None:
        payout_service.dispatch_payout(outcome.payout.payout_id)
    return DecisionResponse(
        transaction_id=outcome.transaction_id,
        status=outcome.status.value,
        auto_approved=outcome.auto_approved,
        error_code=outcome.error_code,
        replayed=outcome.replayed,
    )


@router.post("/{transaction_id}/cancel", response_model=EscrowResponse)
async def cancel_purchase(
    transaction_id: str,
    data: CancelRequest | None = None,
    db: AsyncSession = Depends(get_db),
) -> EscrowResponse:
    """Buyer cancels before anything was delivered. Refunds in full."""
    escrow, payout = await escrow_service.cancel_purchase(
        db, transaction_id, data.reason if data else None
    )
    payout_service.dispatch_payout(payout.payout_id)
    return EscrowResponse.model_validate(escrow)


@router.post("/{transaction_id}/refund", response_model=EscrowResponse)
async def refund_escrow(
    transaction_id: str,
    data: RefundRequest,
    db: AsyncSession = Depends(get_db),
) -> EscrowResponse:
    """Dispute resolved in the buyer's favour."""
    escrow, payout = await escrow_service.refund_escrow(
        db, transaction_id, data.reason, actor=Actor.SYSTEM
    )
    payout_service.dispatch_payout(payout.payout_id)
    return EscrowResponse.model_validate(escrow)
