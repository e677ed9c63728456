"""
services/rating/closure.py
Optional post-completion rating, at most one per booking.
The partner's aggregate rating is maintained elsewhere and not recomputed here.
"""

import logging
import uuid
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from services.booking.repository import get_booking
from services.notification.emitter import NotificationEmitter
from shared.models.models import BookingStatus, Partner, Rating, User
from shared.utils.errors import AlreadyRated, NotAuthorized, NotFound, ValidationError

logger = logging.getLogger(__name__)

MIN_STARS = 1
MAX_STARS = 5


async def submit_rating(
    db: AsyncSession,
    user: User,
    booking_id: uuid.UUID,
    partner_id: uuid.UUID,
    stars: int,
    comment: Optional[str] = None,
) -> Rating:
    booking = await get_booking(db, booking_id)
    if booking.user_id != user.id:
        raise NotAuthorized("Only the booking owner can rate this pickup", booking_id=str(booking_id))

    existing = await rating_for_booking(db, booking_id)
    if existing is not None:
        raise AlreadyRated("This booking has already been rated", booking_id=str(booking_id))

    if booking.status != BookingStatus.COMPLETED:
        raise NotAuthorized(
            "Only completed pickups can be rated",
            booking_id=str(booking_id),
            status=booking.status.value,
        )
    if booking.partner_id != partner_id:
        raise NotAuthorized(
            "Partner did not handle this pickup",
            booking_id=str(booking_id),
            partner_id=str(partner_id),
        )
    if not isinstance(stars, int) or isinstance(stars, bool) or not MIN_STARS <= stars <= MAX_STARS:
        raise ValidationError(f"Stars must be between {MIN_STARS} and {MAX_STARS}", stars=stars)

    rating = Rating(
        id=uuid.uuid4(),
        booking_id=booking.id,
        user_id=user.id,
        partner_id=partner_id,
        stars=stars,
        comment=comment.strip() if comment else None,
    )
    db.add(rating)

    emitter = NotificationEmitter(db)
    partner = await db.get(Partner, partner_id)
    if partner:
        emitter.rating_received(booking, partner, stars)

    try:
        await db.commit()
    except IntegrityError:
        # Lost a race with a concurrent submission for the same booking
        await db.rollback()
        raise AlreadyRated("This booking has already been rated", booking_id=str(booking_id))

    logger.info(f"Booking {booking_id} rated {stars} star(s) for partner {partner_id}")
    await emitter.publish()
    return rating


async def rating_for_booking(db: AsyncSession, booking_id: uuid.UUID) -> Optional[Rating]:
    result = await db.execute(select(Rating).where(Rating.booking_id == booking_id))
    return result.scalar_one_or_none()


async def get_booking_rating(db: AsyncSession, booking_id: uuid.UUID) -> Rating:
    rating = await rating_for_booking(db, booking_id)
    if not rating:
        raise NotFound("No rating for this booking", booking_id=str(booking_id))
    return rating


async def ratings_for_partner(
    db: AsyncSession, partner_id: uuid.UUID, limit: int = 50
) -> List[Rating]:
    result = await db.execute(
        select(Rating)
        .where(Rating.partner_id == partner_id)
        .order_by(Rating.created_at.desc())
        .limit(limit)
    )
    return list(result.scalars().all())
