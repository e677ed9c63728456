"""
services/booking/state_machine.py
Booking status state machine.

    pending → confirmed → partner_assigned → on_the_way → arrived → completed
    cancelled is reachable from every non-terminal state.

Every successful transition stamps the matching lifecycle timestamp, appends
one BookingAuditLog row and emits exactly one owner notification. Callers run
the machine inside guarded_booking() so the whole step commits atomically.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.models.models import (
    Booking,
    BookingAuditLog,
    BookingItem,
    BookingStatus,
    User,
    UserRole,
)
from shared.utils.errors import InvalidTransition, TerminalStateError, ValidationError

logger = logging.getLogger(__name__)


FORWARD_TRANSITIONS = {
    BookingStatus.PENDING: BookingStatus.CONFIRMED,
    BookingStatus.CONFIRMED: BookingStatus.PARTNER_ASSIGNED,
    BookingStatus.PARTNER_ASSIGNED: BookingStatus.ON_THE_WAY,
    BookingStatus.ON_THE_WAY: BookingStatus.ARRIVED,
    BookingStatus.ARRIVED: BookingStatus.COMPLETED,
}

TERMINAL_STATUSES = frozenset({BookingStatus.COMPLETED, BookingStatus.CANCELLED})

STATUS_LABELS = {
    BookingStatus.PENDING: "Pending",
    BookingStatus.CONFIRMED: "Confirmed",
    BookingStatus.PARTNER_ASSIGNED: "Partner Assigned",
    BookingStatus.ON_THE_WAY: "On the Way",
    BookingStatus.ARRIVED: "Arrived",
    BookingStatus.COMPLETED: "Completed",
    BookingStatus.CANCELLED: "Cancelled",
}

_TIMESTAMP_FIELDS = {
    BookingStatus.CONFIRMED: "confirmed_at",
    BookingStatus.PARTNER_ASSIGNED: "assigned_at",
    BookingStatus.COMPLETED: "completed_at",
    BookingStatus.CANCELLED: "cancelled_at",
}


def phase(status: BookingStatus) -> str:
    """Coarse grouping used by the UI tabs."""
    status = BookingStatus(status)
    if status in (BookingStatus.PENDING, BookingStatus.CONFIRMED):
        return "scheduled"
    if status in TERMINAL_STATUSES:
        return "closed"
    return "in_progress"


def is_terminal(status: BookingStatus) -> bool:
    return BookingStatus(status) in TERMINAL_STATUSES


class BookingStateMachine:
    """
    Applies transitions to a booking already loaded (and locked) in `db`.

    `emitter` is a NotificationEmitter bound to the same session; `actor` is the
    user driving the change, or None for system actions (auto-dispatch).
    """

    def __init__(self, db: AsyncSession, emitter, actor: Optional[User] = None):
        self.db = db
        self.emitter = emitter
        self.actor = actor
        self._last_stamp: Optional[datetime] = None

    # ── Entry point ──────────────────────────────────────────

    def start(self, booking: Booking) -> None:
        """Record creation as the None → pending transition."""
        booking.status = BookingStatus.PENDING
        self._record(booking, None, BookingStatus.PENDING, reason=None)

    # ── Transitions ──────────────────────────────────────────

    async def advance(
        self,
        booking: Booking,
        target: BookingStatus,
        reason: Optional[str] = None,
        *,
        settling: bool = False,
    ) -> bool:
        """
        Move `booking` to `target`. Returns False for the idempotent no-op
        (already at target), True when a transition happened.
        """
        target = BookingStatus(target)
        current = booking.status

        if target == current:
            return False
        if current in TERMINAL_STATUSES:
            raise TerminalStateError(
                f"Booking is already {current.value}",
                booking_id=str(booking.id),
                status=current.value,
            )
        if target == BookingStatus.CANCELLED:
            self.cancel(booking, reason or "Cancelled")
            return True

        expected = FORWARD_TRANSITIONS.get(current)
        if target != expected:
            raise InvalidTransition(
                f"Cannot move booking from {current.value} to {target.value}",
                booking_id=str(booking.id),
                current=current.value,
                target=target.value,
            )

        if target == BookingStatus.CONFIRMED:
            if await self._item_count(booking) == 0:
                raise ValidationError(
                    "Add at least one scrap item before confirming",
                    booking_id=str(booking.id),
                )
        elif current == BookingStatus.CONFIRMED and booking.partner_id is None:
            raise InvalidTransition(
                "A partner must be assigned before the pickup can proceed",
                booking_id=str(booking.id),
            )
        elif target == BookingStatus.COMPLETED and not settling:
            raise InvalidTransition(
                "A booking is completed only by settling its payment",
                booking_id=str(booking.id),
            )

        self._apply(booking, target, reason)
        return True

    def cancel(self, booking: Booking, reason: str) -> None:
        current = booking.status
        if current in TERMINAL_STATUSES:
            raise TerminalStateError(
                f"Booking is already {current.value}",
                booking_id=str(booking.id),
                status=current.value,
            )
        booking.cancellation_reason = reason
        booking.cancelled_by = self._actor_role()
        self._apply(booking, BookingStatus.CANCELLED, reason)

    # ── Internals ────────────────────────────────────────────

    def _apply(self, booking: Booking, target: BookingStatus, reason: Optional[str]) -> None:
        previous = booking.status
        booking.status = target
        field = _TIMESTAMP_FIELDS.get(target)
        if field:
            setattr(booking, field, self._stamp())
        self._record(booking, previous, target, reason)

    def _record(
        self,
        booking: Booking,
        previous: Optional[BookingStatus],
        target: BookingStatus,
        reason: Optional[str],
    ) -> None:
        self.db.add(BookingAuditLog(
            booking_id=booking.id,
            from_status=previous.value if previous else None,
            to_status=target.value,
            changed_by_id=self.actor.id if self.actor else None,
            reason=reason,
            audit_metadata={"actor_role": self._actor_role()},
            created_at=self._stamp(),
        ))
        self.emitter.status_changed(booking, previous)
        logger.info(
            f"Booking {booking.id} status "
            f"{previous.value if previous else None} -> {target.value}"
        )

    def _stamp(self) -> datetime:
        # Strictly increasing within one unit of work so the timeline keeps its order
        now = datetime.now(timezone.utc)
        if self._last_stamp is not None and now <= self._last_stamp:
            now = self._last_stamp + timedelta(microseconds=1)
        self._last_stamp = now
        return now

    def _actor_role(self) -> str:
        if self.actor is None:
            return "system"
        return {
            UserRole.ADMIN: "admin",
            UserRole.PARTNER: "partner",
        }.get(self.actor.role, "user")

    async def _item_count(self, booking: Booking) -> int:
        result = await self.db.execute(
            select(func.count()).select_from(BookingItem).where(BookingItem.booking_id == booking.id)
        )
        return result.scalar_one()
