"""
services/booking/repository.py
Booking reads and the single-writer guard used by every state-changing operation.
"""

import logging
import random
import string
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, List, Optional

import redis.asyncio as aioredis
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from config.redis_client import booking_lock
from shared.models.models import Booking, BookingAuditLog, BookingItem, Partner, User, UserRole
from shared.utils.errors import BookingBusy, NotAuthorized, NotFound

logger = logging.getLogger(__name__)


def generate_booking_number() -> str:
    """Human-readable booking number like SP-2026-X7K9M."""
    year = datetime.now(timezone.utc).year
    suffix = "".join(random.choices(string.ascii_uppercase + string.digits, k=5))
    return f"SP-{year}-{suffix}"


async def get_booking(db: AsyncSession, booking_id: uuid.UUID) -> Booking:
    booking = await db.get(Booking, booking_id)
    if not booking:
        raise NotFound("Booking not found", booking_id=str(booking_id))
    return booking


async def load_booking_for_update(db: AsyncSession, booking_id: uuid.UUID) -> Booking:
    """Re-read the booking row under a row lock, discarding any stale identity-map copy."""
    result = await db.execute(
        select(Booking)
        .where(Booking.id == booking_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    booking = result.scalar_one_or_none()
    if not booking:
        raise NotFound("Booking not found", booking_id=str(booking_id))
    return booking


async def get_items(db: AsyncSession, booking_id: uuid.UUID) -> List[BookingItem]:
    result = await db.execute(
        select(BookingItem)
        .where(BookingItem.booking_id == booking_id)
        .order_by(BookingItem.position)
    )
    return list(result.scalars().all())


async def get_timeline(db: AsyncSession, booking_id: uuid.UUID) -> List[BookingAuditLog]:
    result = await db.execute(
        select(BookingAuditLog)
        .where(BookingAuditLog.booking_id == booking_id)
        .order_by(BookingAuditLog.created_at, BookingAuditLog.id)
    )
    return list(result.scalars().all())


async def partner_for_user(db: AsyncSession, user: User) -> Optional[Partner]:
    if user.role != UserRole.PARTNER:
        return None
    result = await db.execute(select(Partner).where(Partner.user_id == user.id))
    return result.scalar_one_or_none()


async def ensure_can_view(db: AsyncSession, booking: Booking, user: User) -> None:
    """Owner, assigned partner or admin."""
    if user.role == UserRole.ADMIN or booking.user_id == user.id:
        return
    partner = await partner_for_user(db, user)
    if partner and booking.partner_id == partner.id:
        return
    raise NotAuthorized("Not authorized to view this booking", booking_id=str(booking.id))


def ensure_owner_or_admin(booking: Booking, user: User) -> None:
    if user.role != UserRole.ADMIN and booking.user_id != user.id:
        raise NotAuthorized("Not authorized to modify this booking", booking_id=str(booking.id))


@asynccontextmanager
async def guarded_booking(
    db: AsyncSession,
    redis: aioredis.Redis,
    booking_id: uuid.UUID,
) -> AsyncIterator[Booking]:
    """
    Single-writer scope for one booking.

    Takes the per-booking Redis lock, re-reads the row FOR UPDATE, yields it for
    precondition checks and mutation, then commits. Any error rolls the whole
    unit back. A concurrent write detected by the version counter surfaces as
    BookingBusy.

        async with guarded_booking(db, redis, booking_id) as booking:
            await machine.advance(booking, BookingStatus.ON_THE_WAY)
    """
    async with booking_lock(redis, booking_id):
        try:
            booking = await load_booking_for_update(db, booking_id)
            yield booking
            await db.commit()
        except StaleDataError:
            await db.rollback()
            logger.warning(f"Booking {booking_id} changed underneath this write, rolled back")
            raise BookingBusy(
                "Booking was updated by another request. Please retry.",
                booking_id=str(booking_id),
            )
        except Exception:
            await db.rollback()
            raise
