"""Photographer order endpoints."""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from photo_escrow.database import get_db
from photo_escrow.schemas.escrow import (
    EscrowDetailResponse,
    OrdersSummary,
    PaginationInfo,
    PendingOrdersResponse,
    PhotographerStatsResponse,
)
from photo_escrow.services import queries

router = APIRouter(prefix="/photographers", tags=["photographers"])


@router.get("/{photographer_id}/orders/pending", response_model=PendingOrdersResponse)
async def list_pending_orders(
    photographer_id: str,
    type: str | None = Query(None, description="'new' or 'revision'"),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
) -> PendingOrdersResponse:
    """Orders waiting for an upload: new purchases and revision requests, oldest first."""
    views, total, summary = await queries.list_pending_orders(
        db, photographer_id, type, page, limit
    )
    return PendingOrdersResponse(
        data=[EscrowDetailResponse.model_validate(v) for v in views],
        summary=OrdersSummary(**summary),
        pagination=PaginationInfo(
            total=total,
            page=page,
            limit=limit,
            total_pages=queries.total_pages(total, limit),
        ),
    )


@router.get("/{photographer_id}/orders/stats", response_model=PhotographerStatsResponse)
async def photographer_stats(
    photographer_id: str,
    db: AsyncSession = Depends(get_db),
) -> PhotographerStatsResponse:
    stats = await queries.photographer_stats(db, photographer_id)
    return PhotographerStatsResponse.model_validate(stats)
