"""Buyer dashboard endpoints."""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from photo_escrow.database import get_db
from photo_escrow.schemas.escrow import EscrowDetailResponse, PaginationInfo, PurchaseListResponse
from photo_escrow.services import queries

router = APIRouter(prefix="/buyers", tags=["buyers"])


@router.get("/{buyer_id}/purchases", response_model=PurchaseListResponse)
async def list_purchases(
    buyer_id: str,
    status: str | None = Query(None, description="Filter by escrow status"),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
) -> PurchaseListResponse:
    """Buyer's purchases, newest first."""
    views, total = await queries.list_purchases(
        db, buyer_id, queries.parse_status(status), page, limit
    )
    return PurchaseListResponse(
        data=[EscrowDetailResponse.model_validate(v) for v in views],
        pagination=PaginationInfo(
            total=total,
            page=page,
            limit=limit,
            total_pages=queries.total_pages(total, limit),
        ),
    )
