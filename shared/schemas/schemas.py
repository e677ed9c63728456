"""
shared/schemas/schemas.py
All Pydantic v2 request/response schemas for the platform.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from shared.models.models import BookingStatus, PaymentMethod, PaymentStatus


# ── Base ──────────────────────────────────────────────────────

class BaseSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


class MessageResponse(BaseSchema):
    message: str


class PaginatedResponse(BaseSchema):
    items: List[Any]
    total: int
    page: int
    page_size: int
    pages: int


# ── Catalog ───────────────────────────────────────────────────

class ScrapCategoryResponse(BaseSchema):
    id: uuid.UUID
    name: str
    parent_id: Optional[uuid.UUID]
    unit: str
    is_active: bool


class ScrapRateResponse(BaseSchema):
    id: uuid.UUID
    category_id: uuid.UUID
    price_per_kg: Decimal
    is_active: bool
    created_at: datetime


class RateUpdateRequest(BaseSchema):
    price_per_kg: Decimal = Field(..., gt=0, max_digits=10, decimal_places=2)


# ── Partner ───────────────────────────────────────────────────

class PartnerCreateRequest(BaseSchema):
    name: str = Field(..., min_length=2, max_length=255)
    phone: str = Field(..., pattern=r"^\+?[0-9]{10,15}$")
    vehicle: str = Field(..., min_length=2, max_length=100)
    user_id: Optional[uuid.UUID] = None
    active: bool = True


class PartnerUpdateRequest(BaseSchema):
    name: Optional[str] = Field(None, min_length=2, max_length=255)
    vehicle: Optional[str] = Field(None, min_length=2, max_length=100)
    active: Optional[bool] = None


class PartnerResponse(BaseSchema):
    id: uuid.UUID
    user_id: Optional[uuid.UUID]
    name: str
    phone: str
    vehicle: str
    rating: Decimal
    active: bool
    created_at: datetime


# ── Booking ───────────────────────────────────────────────────

class BookingItemCreate(BaseSchema):
    category_id: uuid.UUID
    estimated_weight: Decimal = Field(..., max_digits=10, decimal_places=3)


class BookingCreateRequest(BaseSchema):
    address_id: uuid.UUID
    scheduled_time: datetime
    items: List[BookingItemCreate] = Field(default_factory=list)


class BookingItemResponse(BaseSchema):
    id: uuid.UUID
    category_id: uuid.UUID
    position: int
    estimated_weight: Decimal
    final_weight: Optional[Decimal]
    rate_per_kg: Decimal


class BookingResponse(BaseSchema):
    id: uuid.UUID
    booking_number: str
    user_id: uuid.UUID
    address_id: uuid.UUID
    partner_id: Optional[uuid.UUID]
    scheduled_time: datetime
    status: BookingStatus
    estimated_amount: Decimal
    final_amount: Optional[Decimal]
    cancellation_reason: Optional[str]
    cancelled_by: Optional[str]
    confirmed_at: Optional[datetime]
    assigned_at: Optional[datetime]
    accepted_at: Optional[datetime]
    completed_at: Optional[datetime]
    cancelled_at: Optional[datetime]
    created_at: datetime


class BookingDetailResponse(BookingResponse):
    items: List[BookingItemResponse] = []


class BookingStatusUpdateRequest(BaseSchema):
    status: BookingStatus
    reason: Optional[str] = Field(None, max_length=500)


class BookingCancelRequest(BaseSchema):
    reason: str = Field(..., min_length=3, max_length=500)


class BookingConfirmResponse(BaseSchema):
    booking: BookingDetailResponse
    assignment: str            # assigned | awaiting_partner | already_assigned
    partner_id: Optional[uuid.UUID] = None


class BookingPhaseResponse(BaseSchema):
    booking_id: uuid.UUID
    status: BookingStatus
    label: str
    phase: str                 # scheduled | in_progress | closed


class AuditLogResponse(BaseSchema):
    id: uuid.UUID
    from_status: Optional[str]
    to_status: str
    changed_by_id: Optional[uuid.UUID]
    reason: Optional[str]
    created_at: datetime


# ── Dispatch ──────────────────────────────────────────────────

class AssignPartnerRequest(BaseSchema):
    partner_id: uuid.UUID


class AssignmentResponse(BaseSchema):
    booking_id: uuid.UUID
    outcome: str
    partner_id: Optional[uuid.UUID]
    status: BookingStatus


class PartnerAdvanceRequest(BaseSchema):
    target: Optional[BookingStatus] = None


# ── Settlement ────────────────────────────────────────────────

class FinalWeightRequest(BaseSchema):
    final_weight: Decimal = Field(..., max_digits=10, decimal_places=3)


class SettleRequest(BaseSchema):
    method: PaymentMethod
    transaction_id: Optional[str] = Field(None, max_length=100)

    @field_validator("transaction_id")
    @classmethod
    def strip_transaction_id(cls, v: Optional[str]) -> Optional[str]:
        if v is not None:
            v = v.strip() or None
        return v


class PaymentResponse(BaseSchema):
    id: uuid.UUID
    booking_id: uuid.UUID
    user_id: uuid.UUID
    amount: Decimal
    method: PaymentMethod
    status: PaymentStatus
    transaction_id: Optional[str]
    paid_at: Optional[datetime]
    created_at: datetime


class PaymentStatusUpdateRequest(BaseSchema):
    status: PaymentStatus


# ── Rating ────────────────────────────────────────────────────

class RatingCreateRequest(BaseSchema):
    booking_id: uuid.UUID
    partner_id: uuid.UUID
    # Range is enforced in the service so the error carries the domain code
    stars: int
    comment: Optional[str] = Field(None, max_length=2000)


class RatingResponse(BaseSchema):
    id: uuid.UUID
    booking_id: uuid.UUID
    user_id: uuid.UUID
    partner_id: uuid.UUID
    stars: int
    comment: Optional[str]
    created_at: datetime


# ── Notification ──────────────────────────────────────────────

class NotificationResponse(BaseSchema):
    id: uuid.UUID
    booking_id: Optional[uuid.UUID]
    icon: str
    title: str
    message: str
    is_read: bool
    read_at: Optional[datetime]
    created_at: datetime


class UnreadCountResponse(BaseSchema):
    unread_count: int


# ── Admin ─────────────────────────────────────────────────────

class AdminStatsResponse(BaseSchema):
    total_bookings: int
    bookings_by_status: dict
    active_partners: int
    awaiting_partner: int
    completed_revenue: Decimal
    ratings_count: int
    average_stars: Optional[float]
