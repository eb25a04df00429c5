"""Pydantic v2 schemas for escrow lifecycle endpoints."""

from datetime import datetime
from decimal import Decimal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


def _enum_value(v: object) -> object:
    if hasattr(v, "value"):
        return v.value
    return v


class EscrowCreate(BaseModel):
    """Purchase captured by the storefront. Creates the escrow in HELD."""
    transaction_id: str = Field(..., min_length=1, max_length=64)
    buyer_id: str = Field(..., min_length=1, max_length=64)
    photographer_id: str = Field(..., min_length=1, max_length=64)
    photo_id: str | None = Field(None, max_length=64)
    amount_total: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    max_revisions: int | None = Field(None, ge=0, le=10)


class DeliveryUpload(BaseModel):
    """Photographer delivers (or re-delivers) the purchased file."""
    file_descriptor: str = Field(..., max_length=512)
    photographer_notes: str | None = Field(None, max_length=2048)


class DecisionRequest(BaseModel):
    """Buyer accepts or rejects the current delivery.

    Also accepts the storefront's original payload shape:
    ``{"confirmation": "YES" | "NO", "rejection_reason": "..."}``.
    """
    decision: str = Field(..., validation_alias=AliasChoices("decision", "confirmation"))
    reason: str | None = Field(
        None, max_length=2048, validation_alias=AliasChoices("reason", "rejection_reason")
    )


class CancelRequest(BaseModel):
    reason: str | None = Field(None, max_length=1024)


class RefundRequest(BaseModel):
    """Dispute resolution in the buyer's favour."""
    reason: str = Field(..., min_length=1, max_length=1024)


class DecisionResponse(BaseModel):
    transaction_id: str
    status: str
    auto_approved: bool
    error_code: str | None = None
    replayed: bool = False


class UploadResponse(BaseModel):
    transaction_id: str
    version: int
    status: str
    escrow_status: str
    is_revision: bool
    confirmation_deadline: datetime | None


class DeliveryVersionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    version: int
    status: str
    file_descriptor: str
    photographer_notes: str | None
    rejection_reason: str | None
    uploaded_at: datetime
    confirmed_at: datetime | None
    rejected_at: datetime | None

    @field_validator("status", mode="before")
    @classmethod
    def serialize_status(cls, v: object) -> object:
        return _enum_value(v)


class EscrowResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    transaction_id: str
    buyer_id: str
    photographer_id: str
    photo_id: str | None
    status: str
    amount_total: Decimal
    platform_fee: Decimal
    photographer_share: Decimal
    revision_count: int
    max_revisions: int
    confirmation_deadline: datetime | None
    current_delivery_version: int | None
    auto_approved: bool
    release_error_code: str | None
    held_at: datetime | None
    released_at: datetime | None
    refunded_at: datetime | None
    created_at: datetime
    updated_at: datetime

    @field_validator("status", mode="before")
    @classmethod
    def serialize_status(cls, v: object) -> object:
        return _enum_value(v)


class EscrowDetailResponse(BaseModel):
    """Escrow read model: record, current delivery and countdown hints."""
    model_config = ConfigDict(from_attributes=True)

    escrow: EscrowResponse
    current_delivery: DeliveryVersionResponse | None
    urgency: str | None
    hours_remaining: float | None
    can_confirm: bool
    can_request_revision: bool
    can_download: bool

    @field_validator("urgency", mode="before")
    @classmethod
    def serialize_urgency(cls, v: object) -> object:
        return _enum_value(v)


class HistoryEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    sequence: int
    from_status: str | None
    to_status: str
    actor: str
    description: str
    timestamp: datetime
    metadata: dict | None = Field(None, validation_alias="metadata_")

    @field_validator("from_status", "to_status", "actor", mode="before")
    @classmethod
    def serialize_enums(cls, v: object) -> object:
        return _enum_value(v)


class PaginationInfo(BaseModel):
    total: int
    page: int
    limit: int
    total_pages: int


class PurchaseListResponse(BaseModel):
    data: list[EscrowDetailResponse]
    pagination: PaginationInfo


class OrdersSummary(BaseModel):
    total_pending: int
    total_new: int
    total_revisions: int
    total_earning_pending: Decimal


class PendingOrdersResponse(BaseModel):
    data: list[EscrowDetailResponse]
    summary: OrdersSummary
    pagination: PaginationInfo


class StatsOverview(BaseModel):
    total_orders: int
    pending_upload: int
    pending_revision: int
    awaiting_confirmation: int
    completed: int
    refunded: int


class StatsEarnings(BaseModel):
    total_earned: Decimal
    pending_earnings: Decimal


class StatsPerformance(BaseModel):
    revision_rate: float
    avg_revisions_per_order: float


class PhotographerStatsResponse(BaseModel):
    overview: StatsOverview
    earnings: StatsEarnings
    performance: StatsPerformance
