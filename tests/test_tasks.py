"""
tests/test_tasks.py
Celery task bodies: dispatch retry for waiting bookings and FCM push delivery.
"""

import uuid
from unittest.mock import AsyncMock, patch

import pytest
from celery.exceptions import Retry
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db_context
from services.booking import lifecycle
from shared.models.models import Address, Booking, BookingStatus, Notification, User
from tasks import notification_tasks
from tasks.dispatch_tasks import _retry_unassigned
from tests.conftest import make_booking, make_partner


# ── Dispatch retry ────────────────────────────────────────────

@pytest.mark.asyncio
async def test_retry_assigns_waiting_bookings(
    db: AsyncSession, redis, user: User, address: Address, catalog, pending_booking: Booking
):
    second = await make_booking(db, user, address, [(catalog["Newspaper"], "4")])
    await lifecycle.confirm(db, redis, pending_booking.id, user)
    await lifecycle.confirm(db, redis, second.id, user)

    first_partner = await make_partner(db, "Early Bird", "9876500070", enrolled_minutes_ago=30)
    other_partner = await make_partner(db, "Night Owl", "9876500071", enrolled_minutes_ago=10)

    summary = await _retry_unassigned(redis, session_scope=get_db_context)

    assert summary == {"checked": 2, "assigned": 2, "awaiting": 0, "skipped": 0}
    rows = (await db.execute(
        select(Booking.id, Booking.partner_id, Booking.status)
        .where(Booking.id.in_([pending_booking.id, second.id]))
    )).all()
    assert {r.status for r in rows} == {BookingStatus.PARTNER_ASSIGNED}
    # One job each under least-loaded
    assert {r.partner_id for r in rows} == {first_partner.id, other_partner.id}


@pytest.mark.asyncio
async def test_retry_stops_when_nobody_is_free(
    db: AsyncSession, redis, user: User, address: Address, catalog, pending_booking: Booking
):
    second = await make_booking(db, user, address, [(catalog["Newspaper"], "4")])
    await lifecycle.confirm(db, redis, pending_booking.id, user)
    await lifecycle.confirm(db, redis, second.id, user)

    summary = await _retry_unassigned(redis, session_scope=get_db_context)

    assert summary == {"checked": 1, "assigned": 0, "awaiting": 1, "skipped": 0}


@pytest.mark.asyncio
async def test_retry_ignores_cancelled_and_pending(
    db: AsyncSession, redis, user: User, address: Address, catalog, pending_booking: Booking
):
    cancelled = await make_booking(db, user, address, [(catalog["Newspaper"], "4")])
    await lifecycle.confirm(db, redis, cancelled.id, user)
    await lifecycle.cancel(db, redis, cancelled.id, user, "Found another buyer")
    await make_partner(db, "Standby", "9876500072")

    summary = await _retry_unassigned(redis, session_scope=get_db_context)

    assert summary["checked"] == 0


@pytest.mark.asyncio
async def test_retry_skips_locked_booking(
    db: AsyncSession, redis, user: User, pending_booking: Booking, monkeypatch
):
    from config.redis_client import RedisCache
    from config.settings import settings

    await lifecycle.confirm(db, redis, pending_booking.id, user)
    await make_partner(db, "Standby", "9876500072")
    monkeypatch.setattr(settings, "BOOKING_LOCK_WAIT_SECONDS", 0.1)
    await RedisCache(redis).try_lock_booking(str(pending_booking.id), "api-writer")

    summary = await _retry_unassigned(redis, session_scope=get_db_context)

    assert summary == {"checked": 1, "assigned": 0, "awaiting": 0, "skipped": 1}


# ── Push delivery ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_mark_pushed_flags_notification(
    db: AsyncSession, user: User, pending_booking: Booking
):
    notification = (await db.execute(
        select(Notification).where(Notification.booking_id == pending_booking.id)
    )).scalar_one()
    assert notification.sent_push is False

    await notification_tasks._mark_pushed(str(notification.id))

    await db.refresh(notification)
    assert notification.sent_push is True


def test_push_task_delivers_and_marks():
    notification_id = str(uuid.uuid4())
    with patch.object(notification_tasks, "_send_fcm", return_value=True) as send, \
            patch.object(notification_tasks, "_mark_pushed", new=AsyncMock()) as mark:
        notification_tasks.send_push_notification(
            notification_id, "fcm-token", "📦 Booking Confirmed", "Status: Confirmed.", {"booking_id": "b1"}
        )

    send.assert_called_once_with(
        "fcm-token", "📦 Booking Confirmed", "Status: Confirmed.", {"booking_id": "b1"}
    )
    mark.assert_awaited_once_with(notification_id)


def test_push_task_retries_when_fcm_fails():
    with patch.object(notification_tasks, "_send_fcm", return_value=False), \
            patch.object(notification_tasks, "_mark_pushed", new=AsyncMock()) as mark:
        with pytest.raises(Retry):
            notification_tasks.send_push_notification(str(uuid.uuid4()), "fcm-token", "t", "b")

    mark.assert_not_awaited()
