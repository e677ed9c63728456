"""
services/dispatch/router.py
Partner-facing endpoints: job list, accept, and on-the-way / arrived updates.
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import get_redis
from services.dispatch import coordinator
from shared.middleware.auth import get_current_partner, require_partner
from shared.models.models import Booking, BookingStatus, Partner, User
from shared.schemas.schemas import BookingResponse, PartnerAdvanceRequest

router = APIRouter(prefix="/partner", tags=["Partner"])


@router.get("/bookings", response_model=list[BookingResponse])
async def my_jobs(
    include_open: bool = Query(True, description="Also list confirmed bookings nobody has claimed"),
    partner: Partner = Depends(get_current_partner),
    db: AsyncSession = Depends(get_db),
):
    """Bookings assigned to me, plus open confirmed ones waiting for a partner."""
    condition = Booking.partner_id == partner.id
    if include_open and partner.active:
        condition = or_(
            condition,
            and_(Booking.status == BookingStatus.CONFIRMED, Booking.partner_id.is_(None)),
        )
    result = await db.execute(
        select(Booking).where(condition).order_by(Booking.scheduled_time, Booking.booking_number)
    )
    return result.scalars().all()


@router.post("/bookings/{booking_id}/accept", response_model=BookingResponse)
async def accept_booking(
    booking_id: UUID,
    current_user: User = Depends(require_partner),
    partner: Partner = Depends(get_current_partner),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """
    Claim an unassigned confirmed booking, or acknowledge one already assigned
    to me. A booking held by another partner returns 409 ALREADY_ASSIGNED.
    """
    return await coordinator.partner_accept(db, redis, booking_id, partner, actor=current_user)


@router.post("/bookings/{booking_id}/advance", response_model=BookingResponse)
async def advance_booking(
    booking_id: UUID,
    data: Optional[PartnerAdvanceRequest] = None,
    current_user: User = Depends(require_partner),
    partner: Partner = Depends(get_current_partner),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """
    partner_assigned → on_the_way → arrived. Send `target` to make retries
    idempotent. Completion happens only through settlement.
    """
    target = BookingStatus(data.target) if data and data.target else None
    return await coordinator.partner_advance(
        db, redis, booking_id, partner, target=target, actor=current_user
    )
