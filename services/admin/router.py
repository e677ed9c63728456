"""
services/admin/router.py
Admin-only endpoints: partner management, manual and triggered dispatch,
booking oversight, dashboard counters and rate changes.
"""

import logging
import uuid
from decimal import Decimal
from math import ceil
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import RedisCache, get_redis
from services.catalog.router import RATES_CACHE_KEY
from services.dispatch import coordinator
from shared.middleware.auth import require_admin
from shared.models.models import (
    Booking,
    BookingStatus,
    Partner,
    Payment,
    PaymentStatus,
    Rating,
    ScrapCategory,
    ScrapRate,
    User,
    UserRole,
)
from shared.schemas.schemas import (
    AdminStatsResponse,
    AssignmentResponse,
    AssignPartnerRequest,
    BookingResponse,
    PaginatedResponse,
    PartnerCreateRequest,
    PartnerResponse,
    PartnerUpdateRequest,
    RateUpdateRequest,
    ScrapRateResponse,
)
from shared.utils.errors import NotFound

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["Admin"])


def _assignment_response(result: coordinator.AssignmentResult) -> AssignmentResponse:
    return AssignmentResponse(
        booking_id=result.booking_id,
        outcome=result.outcome.value,
        partner_id=result.partner_id,
        status=result.status,
    )


# ── Partners ──────────────────────────────────────────────────────────────────

@router.get("/partners", response_model=list[PartnerResponse])
async def list_partners(
    active: Optional[bool] = Query(None),
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    query = select(Partner).order_by(Partner.created_at, Partner.phone)
    if active is not None:
        query = query.where(Partner.active == active)
    result = await db.execute(query)
    return result.scalars().all()


@router.post("/partners", response_model=PartnerResponse, status_code=201)
async def create_partner(
    data: PartnerCreateRequest,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Enroll a pickup partner, optionally linking the account they log in with."""
    existing = await db.scalar(select(Partner.id).where(Partner.phone == data.phone))
    if existing:
        raise HTTPException(status_code=409, detail="A partner with this phone already exists")

    if data.user_id:
        user = await db.get(User, data.user_id)
        if not user:
            raise NotFound("User not found", user_id=str(data.user_id))
        if user.role == UserRole.ADMIN:
            raise HTTPException(status_code=400, detail="Admin accounts cannot be partners")
        user.role = UserRole.PARTNER

    partner = Partner(
        id=uuid.uuid4(),
        user_id=data.user_id,
        name=data.name,
        phone=data.phone,
        vehicle=data.vehicle,
        rating=Decimal("0"),
        active=data.active,
    )
    db.add(partner)
    await db.commit()
    logger.info(f"Admin {current_user.id} enrolled partner {partner.id}")
    return partner


@router.put("/partners/{partner_id}", response_model=PartnerResponse)
async def update_partner(
    partner_id: UUID,
    data: PartnerUpdateRequest,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Deactivating a partner stops new dispatches; existing jobs are untouched."""
    partner = await db.get(Partner, partner_id)
    if not partner:
        raise NotFound("Partner not found", partner_id=str(partner_id))

    for field, value in data.model_dump(exclude_unset=True).items():
        if value is not None:
            setattr(partner, field, value)
    await db.commit()
    logger.info(f"Admin {current_user.id} updated partner {partner.id}")
    return partner


# ── Dispatch ──────────────────────────────────────────────────────────────────

@router.post("/bookings/{booking_id}/assign", response_model=AssignmentResponse)
async def assign_partner(
    booking_id: UUID,
    data: AssignPartnerRequest,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    result = await coordinator.assign_partner(
        db, redis, booking_id, data.partner_id, actor=current_user
    )
    return _assignment_response(result)


@router.post("/bookings/{booking_id}/auto-assign", response_model=AssignmentResponse)
async def trigger_auto_assign(
    booking_id: UUID,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    result = await coordinator.auto_assign(db, redis, booking_id, actor=current_user)
    return _assignment_response(result)


# ── Bookings ──────────────────────────────────────────────────────────────────

@router.get("/bookings", response_model=PaginatedResponse)
async def list_all_bookings(
    status_filter: Optional[BookingStatus] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    query = select(Booking)
    if status_filter:
        query = query.where(Booking.status == BookingStatus(status_filter))

    total = await db.scalar(select(func.count()).select_from(query.subquery())) or 0
    result = await db.execute(
        query.order_by(Booking.created_at.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    return PaginatedResponse(
        items=[BookingResponse.model_validate(b) for b in result.scalars()],
        total=total,
        page=page,
        page_size=page_size,
        pages=ceil(total / page_size) if total else 0,
    )


@router.get("/stats", response_model=AdminStatsResponse)
async def dashboard_stats(
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Counters for the admin dashboard."""
    rows = await db.execute(select(Booking.status, func.count(Booking.id)).group_by(Booking.status))
    by_status = {s.value: 0 for s in BookingStatus}
    for booking_status, count in rows.all():
        by_status[BookingStatus(booking_status).value] = count

    active_partners = await db.scalar(
        select(func.count(Partner.id)).where(Partner.active == True)  # noqa: E712
    )
    awaiting = await db.scalar(
        select(func.count(Booking.id)).where(
            Booking.status == BookingStatus.CONFIRMED, Booking.partner_id.is_(None)
        )
    )
    revenue = await db.scalar(
        select(func.coalesce(func.sum(Payment.amount), 0)).where(
            Payment.status == PaymentStatus.COMPLETED
        )
    )
    ratings_count, average = (
        await db.execute(select(func.count(Rating.id), func.avg(Rating.stars)))
    ).one()

    return AdminStatsResponse(
        total_bookings=sum(by_status.values()),
        bookings_by_status=by_status,
        active_partners=active_partners or 0,
        awaiting_partner=awaiting or 0,
        completed_revenue=Decimal(str(revenue)).quantize(Decimal("0.01")),
        ratings_count=ratings_count,
        average_stars=round(float(average), 2) if average is not None else None,
    )


# ── Rates ─────────────────────────────────────────────────────────────────────

@router.put("/rates/{category_id}", response_model=ScrapRateResponse)
async def update_rate(
    category_id: UUID,
    data: RateUpdateRequest,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """
    Replace the active rate of a category. The old row is kept inactive for
    history; bookings already priced keep their snapshot.
    """
    category = await db.get(ScrapCategory, category_id)
    if not category or not category.is_active:
        raise NotFound("Category not found", category_id=str(category_id))

    await db.execute(
        update(ScrapRate)
        .where(ScrapRate.category_id == category_id, ScrapRate.is_active == True)  # noqa: E712
        .values(is_active=False)
    )
    rate = ScrapRate(
        id=uuid.uuid4(),
        category_id=category_id,
        price_per_kg=data.price_per_kg,
        is_active=True,
    )
    db.add(rate)
    await db.commit()
    await RedisCache(redis).delete(RATES_CACHE_KEY)

    logger.info(f"Rate for category {category.name} set to {data.price_per_kg}/kg by {current_user.id}")
    return rate
