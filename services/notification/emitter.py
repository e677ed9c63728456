"""
services/notification/emitter.py
In-app notification sink for booking events.

Notifications are appended to the caller's transaction, so they are persisted
if and only if the state change that produced them commits. Push delivery is
handed to Celery only after commit via publish(); a broker outage is logged and
never fails the booking operation.
"""

import logging
import uuid
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from shared.models.models import Booking, BookingStatus, Notification, Partner, User
from services.booking.state_machine import STATUS_LABELS
from tasks.notification_tasks import send_push_notification

logger = logging.getLogger(__name__)


# ── Icon tags ─────────────────────────────────────────────────

ICON_BOOKING = "📦"
ICON_TRUCK = "🚛"
ICON_PIN = "📍"
ICON_PAYMENT = "💰"
ICON_RATING = "⭐"


# ── Per-status templates (owner-facing) ───────────────────────

STATUS_TEMPLATES = {
    BookingStatus.PENDING: (
        ICON_BOOKING,
        "Booking Received",
        "We've received your pickup request {number}.",
    ),
    BookingStatus.CONFIRMED: (
        ICON_BOOKING,
        "Booking Confirmed",
        "Your pickup {number} is confirmed. We're finding a partner for you.",
    ),
    BookingStatus.PARTNER_ASSIGNED: (
        ICON_TRUCK,
        "Partner Assigned",
        "A pickup partner has been assigned to {number}.",
    ),
    BookingStatus.ON_THE_WAY: (
        ICON_TRUCK,
        "Partner On the Way",
        "Your pickup partner is on the way for {number}.",
    ),
    BookingStatus.ARRIVED: (
        ICON_PIN,
        "Partner Arrived",
        "Your pickup partner has arrived for {number}.",
    ),
    BookingStatus.COMPLETED: (
        ICON_PAYMENT,
        "Pickup Completed",
        "{currency}{amount} paid for {number}. Thank you for recycling!",
    ),
    BookingStatus.CANCELLED: (
        ICON_BOOKING,
        "Booking Cancelled",
        "Your pickup {number} has been cancelled.",
    ),
}


class NotificationEmitter:
    """Collects notifications for one unit of work and publishes pushes after commit."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.outbox: List[Notification] = []

    def emit(
        self,
        user_id: uuid.UUID,
        icon: str,
        title: str,
        message: str,
        booking_id: Optional[uuid.UUID] = None,
    ) -> Notification:
        notification = Notification(
            id=uuid.uuid4(),
            user_id=user_id,
            booking_id=booking_id,
            icon=icon,
            title=title,
            message=message,
            is_read=False,
            sent_push=False,
        )
        self.db.add(notification)
        self.outbox.append(notification)
        return notification

    def status_changed(self, booking: Booking, previous: Optional[BookingStatus]) -> Notification:
        """Owner notification for a status transition, labelled with the new status."""
        icon, title, body = STATUS_TEMPLATES[booking.status]
        label = STATUS_LABELS[booking.status]
        message = body.format(
            number=booking.booking_number,
            currency=settings.CURRENCY_SYMBOL,
            amount=booking.final_amount,
        )
        return self.emit(
            booking.user_id,
            icon,
            title,
            f"{message} Status: {label}.",
            booking_id=booking.id,
        )

    def partner_assigned(self, booking: Booking, partner: Partner) -> Optional[Notification]:
        if partner.user_id is None:
            return None
        return self.emit(
            partner.user_id,
            ICON_TRUCK,
            "New Pickup Assigned",
            f"Pickup {booking.booking_number} is scheduled for "
            f"{booking.scheduled_time:%d %b %Y, %I:%M %p}.",
            booking_id=booking.id,
        )

    def rating_received(self, booking: Booking, partner: Partner, stars: int) -> Optional[Notification]:
        if partner.user_id is None:
            return None
        return self.emit(
            partner.user_id,
            ICON_RATING,
            "New Rating",
            f"You received {stars} star{'s' if stars != 1 else ''} for pickup {booking.booking_number}.",
            booking_id=booking.id,
        )

    async def publish(self) -> int:
        """
        Enqueue push delivery for everything emitted so far. Call after commit.
        Returns the number of pushes enqueued.
        """
        pending, self.outbox = self.outbox, []
        if not pending:
            return 0

        user_ids = {n.user_id for n in pending}
        result = await self.db.execute(
            select(User.id, User.fcm_token).where(
                User.id.in_(user_ids), User.fcm_token.is_not(None)
            )
        )
        tokens = dict(result.all())

        enqueued = 0
        for notification in pending:
            token = tokens.get(notification.user_id)
            if not token:
                continue
            try:
                send_push_notification.delay(
                    str(notification.id),
                    token,
                    f"{notification.icon} {notification.title}",
                    notification.message,
                    {"booking_id": str(notification.booking_id or "")},
                )
                enqueued += 1
            except Exception as e:
                logger.warning(f"Push enqueue failed for notification {notification.id}: {e}")
        return enqueued
