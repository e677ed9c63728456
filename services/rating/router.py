"""
services/rating/router.py
Post-completion ratings.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.rating import closure
from shared.middleware.auth import get_current_user, require_user
from shared.models.models import User
from shared.schemas.schemas import RatingCreateRequest, RatingResponse

router = APIRouter(prefix="/ratings", tags=["Ratings"])


@router.post("", response_model=RatingResponse, status_code=status.HTTP_201_CREATED)
async def submit_rating(
    data: RatingCreateRequest,
    current_user: User = Depends(require_user),
    db: AsyncSession = Depends(get_db),
):
    """Rate the partner of a completed pickup (1–5 stars). One rating per booking."""
    return await closure.submit_rating(
        db, current_user, data.booking_id, data.partner_id, data.stars, data.comment
    )


@router.get("/booking/{booking_id}", response_model=RatingResponse)
async def get_booking_rating(
    booking_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await closure.get_booking_rating(db, booking_id)


@router.get("/partner/{partner_id}", response_model=list[RatingResponse])
async def get_partner_ratings(
    partner_id: UUID,
    limit: int = Query(50, ge=1, le=100),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await closure.ratings_for_partner(db, partner_id, limit)
