"""
services/dispatch/coordinator.py
Partner dispatch: selection policy, auto-assignment, manual assignment, and the
partner-driven accept / advance steps.

Every attach goes through the state machine (confirmed → partner_assigned), so
dispatch never writes booking.status directly.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

import redis.asyncio as aioredis
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from services.booking.repository import guarded_booking
from services.booking.state_machine import TERMINAL_STATUSES, BookingStateMachine
from services.notification.emitter import NotificationEmitter
from shared.models.models import Booking, BookingStatus, Partner, User
from shared.utils.errors import (
    AlreadyAssigned,
    InvalidTransition,
    NotAuthorized,
    NotFound,
    TerminalStateError,
    ValidationError,
)

logger = logging.getLogger(__name__)

# Statuses that count as a partner's open workload
OPEN_JOB_STATUSES = (
    BookingStatus.PARTNER_ASSIGNED,
    BookingStatus.ON_THE_WAY,
    BookingStatus.ARRIVED,
)

# The only moves a partner may drive; completion belongs to settlement
PARTNER_STEPS = {
    BookingStatus.PARTNER_ASSIGNED: BookingStatus.ON_THE_WAY,
    BookingStatus.ON_THE_WAY: BookingStatus.ARRIVED,
}


class AssignmentOutcome(str, Enum):
    ASSIGNED = "assigned"
    AWAITING_PARTNER = "awaiting_partner"
    ALREADY_ASSIGNED = "already_assigned"


@dataclass
class AssignmentResult:
    booking_id: uuid.UUID
    outcome: AssignmentOutcome
    partner_id: Optional[uuid.UUID]
    status: BookingStatus


# ── Selection policy ──────────────────────────────────────────

async def select_partner(db: AsyncSession, policy: Optional[str] = None) -> Optional[Partner]:
    """
    Deterministically choose an active partner.

    least_loaded: fewest open jobs, then earliest enrolled, then phone.
    first_active: earliest enrolled, then phone.
    """
    policy = policy or settings.DISPATCH_POLICY
    query = select(Partner).where(Partner.active == True)  # noqa: E712

    if policy == "least_loaded":
        load = (
            select(Booking.partner_id, func.count(Booking.id).label("open_jobs"))
            .where(Booking.status.in_(OPEN_JOB_STATUSES))
            .group_by(Booking.partner_id)
            .subquery()
        )
        query = query.outerjoin(load, load.c.partner_id == Partner.id).order_by(
            func.coalesce(load.c.open_jobs, 0), Partner.created_at, Partner.phone
        )
    elif policy == "first_active":
        query = query.order_by(Partner.created_at, Partner.phone)
    else:
        raise ValueError(f"Unknown dispatch policy: {policy}")

    result = await db.execute(query.limit(1))
    return result.scalar_one_or_none()


# ── Coordinator (operates on an already-guarded booking) ─────

class DispatchCoordinator:
    def __init__(self, db: AsyncSession, machine: BookingStateMachine):
        self.db = db
        self.machine = machine

    async def attach(self, booking: Booking, partner: Partner) -> AssignmentResult:
        booking.partner_id = partner.id
        await self.machine.advance(booking, BookingStatus.PARTNER_ASSIGNED)
        self.machine.emitter.partner_assigned(booking, partner)
        logger.info(f"Booking {booking.id} assigned to partner {partner.id}")
        return self._result(booking, AssignmentOutcome.ASSIGNED)

    async def auto_assign(self, booking: Booking) -> AssignmentResult:
        self._require_open(booking)
        if booking.partner_id is not None:
            return self._result(booking, AssignmentOutcome.ALREADY_ASSIGNED)
        if booking.status != BookingStatus.CONFIRMED:
            raise InvalidTransition(
                "Booking must be confirmed before a partner can be assigned",
                booking_id=str(booking.id),
                status=booking.status.value,
            )

        partner = await select_partner(self.db)
        if partner is None:
            logger.info(f"Booking {booking.id} awaiting partner: no active partner available")
            return self._result(booking, AssignmentOutcome.AWAITING_PARTNER)
        return await self.attach(booking, partner)

    async def assign(self, booking: Booking, partner: Partner) -> AssignmentResult:
        self._require_open(booking)
        if booking.partner_id == partner.id:
            return self._result(booking, AssignmentOutcome.ALREADY_ASSIGNED)
        if booking.partner_id is not None:
            raise AlreadyAssigned(
                "Booking already has a partner",
                booking_id=str(booking.id),
                partner_id=str(booking.partner_id),
            )
        if booking.status != BookingStatus.CONFIRMED:
            raise InvalidTransition(
                "Booking must be confirmed before a partner can be assigned",
                booking_id=str(booking.id),
                status=booking.status.value,
            )
        return await self.attach(booking, partner)

    def _require_open(self, booking: Booking) -> None:
        if booking.status in TERMINAL_STATUSES:
            raise TerminalStateError(
                f"Booking is already {booking.status.value}",
                booking_id=str(booking.id),
            )

    @staticmethod
    def _result(booking: Booking, outcome: AssignmentOutcome) -> AssignmentResult:
        return AssignmentResult(
            booking_id=booking.id,
            outcome=outcome,
            partner_id=booking.partner_id,
            status=booking.status,
        )


# ── Service operations (guarded, committed, published) ───────

async def auto_assign(
    db: AsyncSession,
    redis: aioredis.Redis,
    booking_id: uuid.UUID,
    actor: Optional[User] = None,
) -> AssignmentResult:
    emitter = NotificationEmitter(db)
    machine = BookingStateMachine(db, emitter, actor)
    async with guarded_booking(db, redis, booking_id) as booking:
        result = await DispatchCoordinator(db, machine).auto_assign(booking)
    await emitter.publish()
    return result


async def assign_partner(
    db: AsyncSession,
    redis: aioredis.Redis,
    booking_id: uuid.UUID,
    partner_id: uuid.UUID,
    actor: Optional[User] = None,
) -> AssignmentResult:
    partner = await db.get(Partner, partner_id)
    if not partner:
        raise NotFound("Partner not found", partner_id=str(partner_id))
    if not partner.active:
        raise ValidationError("Partner is not active", partner_id=str(partner_id))

    emitter = NotificationEmitter(db)
    machine = BookingStateMachine(db, emitter, actor)
    async with guarded_booking(db, redis, booking_id) as booking:
        result = await DispatchCoordinator(db, machine).assign(booking, partner)
    await emitter.publish()
    return result


async def partner_accept(
    db: AsyncSession,
    redis: aioredis.Redis,
    booking_id: uuid.UUID,
    partner: Partner,
    actor: Optional[User] = None,
) -> Booking:
    """
    Claim an unassigned confirmed booking, or acknowledge one already assigned
    to this partner. Repeated accepts are no-ops.
    """
    if not partner.active:
        raise NotAuthorized("Partner account is not active", partner_id=str(partner.id))

    emitter = NotificationEmitter(db)
    machine = BookingStateMachine(db, emitter, actor)
    async with guarded_booking(db, redis, booking_id) as booking:
        if booking.status in TERMINAL_STATUSES:
            raise TerminalStateError(
                f"Booking is already {booking.status.value}", booking_id=str(booking.id)
            )

        if booking.partner_id is None:
            if booking.status != BookingStatus.CONFIRMED:
                raise InvalidTransition(
                    "Booking is not open for partners yet",
                    booking_id=str(booking.id),
                    status=booking.status.value,
                )
            await DispatchCoordinator(db, machine).attach(booking, partner)
            booking.accepted_at = datetime.now(timezone.utc)
        elif booking.partner_id != partner.id:
            raise AlreadyAssigned(
                "Booking is assigned to another partner", booking_id=str(booking.id)
            )
        elif booking.status != BookingStatus.PARTNER_ASSIGNED:
            raise InvalidTransition(
                "Booking can no longer be accepted",
                booking_id=str(booking.id),
                status=booking.status.value,
            )
        elif booking.accepted_at is None:
            booking.accepted_at = datetime.now(timezone.utc)
            logger.info(f"Partner {partner.id} accepted booking {booking.id}")

    await emitter.publish()
    return booking


async def partner_advance(
    db: AsyncSession,
    redis: aioredis.Redis,
    booking_id: uuid.UUID,
    partner: Partner,
    target: Optional[BookingStatus] = None,
    actor: Optional[User] = None,
) -> Booking:
    """
    partner_assigned → on_the_way → arrived. With an explicit target equal to
    the current status the call is a no-op, so client retries are safe.
    """
    emitter = NotificationEmitter(db)
    machine = BookingStateMachine(db, emitter, actor)
    async with guarded_booking(db, redis, booking_id) as booking:
        if booking.partner_id != partner.id:
            raise NotAuthorized(
                "Only the assigned partner can update this pickup", booking_id=str(booking.id)
            )
        if target == BookingStatus.COMPLETED:
            raise InvalidTransition(
                "A booking is completed only by settling its payment", booking_id=str(booking.id)
            )
        if target is None or target != booking.status:
            if booking.status in TERMINAL_STATUSES:
                raise TerminalStateError(
                    f"Booking is already {booking.status.value}", booking_id=str(booking.id)
                )
            step = PARTNER_STEPS.get(booking.status)
            if step is None or (target is not None and target != step):
                raise InvalidTransition(
                    f"Partner cannot move booking from {booking.status.value}"
                    + (f" to {target.value}" if target else ""),
                    booking_id=str(booking.id),
                    status=booking.status.value,
                )
            await machine.advance(booking, step)

    await emitter.publish()
    return booking
