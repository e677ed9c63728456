"""
services/booking/router.py
Customer-facing booking lifecycle endpoints.
States: pending → confirmed → partner_assigned → on_the_way → arrived → completed
        (cancelled from any non-completed state)
"""

from math import ceil
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import get_redis
from services.booking import lifecycle
from services.booking.repository import (
    ensure_can_view,
    ensure_owner_or_admin,
    get_booking,
    get_items,
    get_timeline,
)
from services.booking.state_machine import STATUS_LABELS, phase
from shared.middleware.auth import get_current_user, require_user
from shared.models.models import Booking, BookingStatus, User
from shared.schemas.schemas import (
    AuditLogResponse,
    BookingCancelRequest,
    BookingConfirmResponse,
    BookingCreateRequest,
    BookingDetailResponse,
    BookingItemCreate,
    BookingItemResponse,
    BookingPhaseResponse,
    BookingResponse,
    BookingStatusUpdateRequest,
    PaginatedResponse,
)

router = APIRouter(prefix="/bookings", tags=["Bookings"])


# ── Helpers ───────────────────────────────────────────────────

async def _detail(db: AsyncSession, booking: Booking) -> BookingDetailResponse:
    items = await get_items(db, booking.id)
    detail = BookingDetailResponse.model_validate(booking)
    detail.items = [BookingItemResponse.model_validate(i) for i in items]
    return detail


async def _confirm_response(db: AsyncSession, result: lifecycle.ConfirmResult) -> BookingConfirmResponse:
    assignment = result.assignment
    return BookingConfirmResponse(
        booking=await _detail(db, result.booking),
        assignment=assignment.outcome.value if assignment else "none",
        partner_id=result.booking.partner_id,
    )


# ── Create & list ─────────────────────────────────────────────

@router.post("", response_model=BookingDetailResponse, status_code=status.HTTP_201_CREATED)
async def create_booking(
    data: BookingCreateRequest,
    current_user: User = Depends(require_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Create a pickup request with its scrap items.
    The estimate is priced from today's rates and never changes afterwards.
    """
    booking = await lifecycle.create_booking(
        db,
        current_user,
        data.address_id,
        data.scheduled_time,
        [lifecycle.ItemRequest(i.category_id, i.estimated_weight) for i in data.items],
    )
    return await _detail(db, booking)


@router.get("", response_model=PaginatedResponse)
async def list_my_bookings(
    status_filter: Optional[BookingStatus] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(10, ge=1, le=50),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    bookings, total = await lifecycle.list_for_owner(db, current_user, status_filter, page, page_size)
    return PaginatedResponse(
        items=[BookingResponse.model_validate(b) for b in bookings],
        total=total,
        page=page,
        page_size=page_size,
        pages=ceil(total / page_size) if total else 0,
    )


@router.get("/{booking_id}", response_model=BookingDetailResponse)
async def get_booking_detail(
    booking_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    booking = await get_booking(db, booking_id)
    await ensure_can_view(db, booking, current_user)
    return await _detail(db, booking)


@router.post("/{booking_id}/items", response_model=BookingItemResponse, status_code=status.HTTP_201_CREATED)
async def add_item(
    booking_id: UUID,
    data: BookingItemCreate,
    current_user: User = Depends(require_user),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Add a scrap item while the booking is still pending."""
    item = await lifecycle.add_item(
        db, redis, booking_id, current_user, data.category_id, data.estimated_weight
    )
    return item


# ── Transitions ───────────────────────────────────────────────

@router.post("/{booking_id}/confirm", response_model=BookingConfirmResponse)
async def confirm_booking(
    booking_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """
    pending → confirmed, then try to dispatch a partner right away.
    `assignment` is `assigned`, or `awaiting_partner` when nobody is free yet.
    """
    result = await lifecycle.confirm(db, redis, booking_id, current_user)
    return await _confirm_response(db, result)


@router.post("/{booking_id}/status", response_model=BookingConfirmResponse)
async def update_status(
    booking_id: UUID,
    data: BookingStatusUpdateRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    result = await lifecycle.advance(
        db, redis, booking_id, BookingStatus(data.status), current_user, data.reason
    )
    return await _confirm_response(db, result)


@router.post("/{booking_id}/cancel", response_model=BookingDetailResponse)
async def cancel_booking(
    booking_id: UUID,
    data: BookingCancelRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    booking = await lifecycle.cancel(db, redis, booking_id, current_user, data.reason)
    return await _detail(db, booking)


# ── Reads ─────────────────────────────────────────────────────

@router.get("/{booking_id}/timeline", response_model=list[AuditLogResponse])
async def booking_timeline(
    booking_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Every status change of the booking, oldest first."""
    booking = await get_booking(db, booking_id)
    ensure_owner_or_admin(booking, current_user)
    return await get_timeline(db, booking.id)


@router.get("/{booking_id}/phase", response_model=BookingPhaseResponse)
async def booking_phase(
    booking_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    booking = await get_booking(db, booking_id)
    await ensure_can_view(db, booking, current_user)
    return BookingPhaseResponse(
        booking_id=booking.id,
        status=booking.status,
        label=STATUS_LABELS[booking.status],
        phase=phase(booking.status),
    )
