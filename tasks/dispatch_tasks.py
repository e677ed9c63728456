"""
tasks/dispatch_tasks.py
Periodic dispatch retry.

Bookings confirmed while no partner was active stay `confirmed`. This beat task
re-runs auto-assignment for each of them; auto_assign is idempotent, so
overlapping runs or a concurrent partner accept are harmless.
"""

import asyncio
import logging
from typing import Callable, Optional

import redis.asyncio as aioredis
from sqlalchemy import select

from config.database import task_session
from config.settings import settings
from tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


async def _retry_unassigned(
    redis: Optional[aioredis.Redis] = None,
    session_scope: Callable = task_session,
) -> dict:
    from services.dispatch.coordinator import AssignmentOutcome, auto_assign
    from shared.models.models import Booking, BookingStatus
    from shared.utils.errors import BookingError

    own_client = redis is None
    if own_client:
        redis = aioredis.from_url(settings.REDIS_URL, encoding="utf-8", decode_responses=True)

    summary = {"checked": 0, "assigned": 0, "awaiting": 0, "skipped": 0}
    try:
        async with session_scope() as db:
            result = await db.execute(
                select(Booking.id)
                .where(
                    Booking.status == BookingStatus.CONFIRMED,
                    Booking.partner_id.is_(None),
                )
                .order_by(Booking.confirmed_at, Booking.scheduled_time)
            )
            booking_ids = list(result.scalars().all())

            for booking_id in booking_ids:
                summary["checked"] += 1
                try:
                    outcome = await auto_assign(db, redis, booking_id)
                except BookingError as e:
                    # Cancelled or claimed meanwhile, or locked by another writer
                    logger.info(f"Dispatch retry skipped booking {booking_id}: {e.code}")
                    summary["skipped"] += 1
                    continue
                if outcome.outcome == AssignmentOutcome.ASSIGNED:
                    summary["assigned"] += 1
                elif outcome.outcome == AssignmentOutcome.AWAITING_PARTNER:
                    summary["awaiting"] += 1
                    # Every remaining booking would get the same answer
                    break
    finally:
        if own_client:
            await redis.aclose()

    logger.info(
        f"Dispatch retry: checked={summary['checked']} assigned={summary['assigned']} "
        f"awaiting={summary['awaiting']} skipped={summary['skipped']}"
    )
    return summary


@celery_app.task
def retry_unassigned_bookings():
    """Beat task: runs every DISPATCH_RETRY_INTERVAL_SECONDS."""
    return asyncio.run(_retry_unassigned())
