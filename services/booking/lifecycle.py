"""
services/booking/lifecycle.py
Booking lifecycle service: create, add items, confirm (with auto-dispatch),
generic advance and cancel, plus the owner-scoped reads.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterable, List, Optional, Tuple

import redis.asyncio as aioredis
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from services.booking.repository import (
    ensure_owner_or_admin,
    generate_booking_number,
    guarded_booking,
)
from services.booking.state_machine import BookingStateMachine, is_terminal
from services.dispatch.coordinator import AssignmentResult, DispatchCoordinator
from services.notification.emitter import NotificationEmitter
from services.pricing import engine as pricing
from shared.models.models import (
    Address,
    Booking,
    BookingItem,
    BookingStatus,
    User,
    UserRole,
)
from shared.utils.errors import (
    InvalidTransition,
    NotAuthorized,
    NotFound,
    TerminalStateError,
    ValidationError,
)

logger = logging.getLogger(__name__)

# Customers may only drive these moves through the generic status endpoint
CUSTOMER_TARGETS = (BookingStatus.CONFIRMED, BookingStatus.CANCELLED)


@dataclass
class ItemRequest:
    category_id: uuid.UUID
    estimated_weight: Decimal


@dataclass
class ConfirmResult:
    booking: Booking
    assignment: Optional[AssignmentResult]


async def _confirm_and_dispatch(
    db: AsyncSession,
    machine: BookingStateMachine,
    booking: Booking,
    reason: Optional[str] = None,
) -> AssignmentResult:
    """
    pending → confirmed, then auto-dispatch. A retried confirm that lands after
    dispatch already moved the booking to partner_assigned is a no-op and reports
    already_assigned.
    """
    if booking.status == BookingStatus.PARTNER_ASSIGNED and booking.partner_id is not None:
        logger.info(f"Booking {booking.id} already confirmed and dispatched, nothing to do")
    else:
        await machine.advance(booking, BookingStatus.CONFIRMED, reason)
    return await DispatchCoordinator(db, machine).auto_assign(booking)


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


async def _priced_items(
    db: AsyncSession, booking_id: uuid.UUID, items: Iterable[ItemRequest], start: int = 0
) -> Tuple[List[BookingItem], Decimal]:
    """Validate weights, look up live rates and build item rows with their rate snapshot."""
    items = list(items)
    for item in items:
        if pricing.to_decimal(item.estimated_weight, "estimated_weight") <= 0:
            raise ValidationError(
                "Estimated weight must be greater than zero",
                category_id=str(item.category_id),
            )

    rates = await pricing.active_rates(db, (i.category_id for i in items))
    total = pricing.estimate(items, rates)

    rows = [
        BookingItem(
            id=uuid.uuid4(),
            booking_id=booking_id,
            category_id=item.category_id,
            position=start + offset,
            estimated_weight=pricing.to_decimal(item.estimated_weight),
            rate_per_kg=rates[item.category_id],
        )
        for offset, item in enumerate(items)
    ]
    return rows, total


# ── Create ────────────────────────────────────────────────────

async def create_booking(
    db: AsyncSession,
    user: User,
    address_id: uuid.UUID,
    scheduled_time: datetime,
    items: Iterable[ItemRequest],
) -> Booking:
    address = await db.get(Address, address_id)
    if not address:
        raise NotFound("Address not found", address_id=str(address_id))
    if address.user_id != user.id:
        raise NotAuthorized("Address does not belong to this user", address_id=str(address_id))
    if _as_utc(scheduled_time) <= datetime.now(timezone.utc):
        raise ValidationError("Pickup must be scheduled in the future")

    booking_id = uuid.uuid4()
    rows, estimated = await _priced_items(db, booking_id, items)

    booking = Booking(
        id=booking_id,
        booking_number=generate_booking_number(),
        user_id=user.id,
        address_id=address.id,
        scheduled_time=scheduled_time,
        estimated_amount=estimated,
    )
    emitter = NotificationEmitter(db)
    BookingStateMachine(db, emitter, user).start(booking)

    db.add(booking)
    await db.flush()
    db.add_all(rows)
    try:
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info(
        f"Booking {booking.booking_number} created for user {user.id} "
        f"with {len(rows)} item(s), estimate {estimated}"
    )
    await emitter.publish()
    return booking


async def add_item(
    db: AsyncSession,
    redis: aioredis.Redis,
    booking_id: uuid.UUID,
    user: User,
    category_id: uuid.UUID,
    estimated_weight: Decimal,
) -> BookingItem:
    """Append an item while pending; existing items keep their price."""
    async with guarded_booking(db, redis, booking_id) as booking:
        if booking.user_id != user.id:
            raise NotAuthorized("Only the booking owner can add items", booking_id=str(booking.id))
        if is_terminal(booking.status):
            raise TerminalStateError(
                f"Booking is already {booking.status.value}", booking_id=str(booking.id)
            )
        if booking.status != BookingStatus.PENDING:
            raise InvalidTransition(
                "Items can only be added while the booking is pending",
                booking_id=str(booking.id),
                status=booking.status.value,
            )

        count = await db.execute(
            select(func.count()).select_from(BookingItem).where(BookingItem.booking_id == booking.id)
        )
        rows, added = await _priced_items(
            db, booking.id, [ItemRequest(category_id, estimated_weight)], start=count.scalar_one()
        )
        db.add_all(rows)
        booking.estimated_amount = (Decimal(booking.estimated_amount) + added).quantize(pricing.CENTS)

    logger.info(f"Item added to booking {booking_id}, estimate now {booking.estimated_amount}")
    return rows[0]


# ── Transitions ───────────────────────────────────────────────

async def confirm(
    db: AsyncSession,
    redis: aioredis.Redis,
    booking_id: uuid.UUID,
    actor: User,
) -> ConfirmResult:
    """pending → confirmed, then auto-dispatch in the same write."""
    emitter = NotificationEmitter(db)
    machine = BookingStateMachine(db, emitter, actor)
    async with guarded_booking(db, redis, booking_id) as booking:
        ensure_owner_or_admin(booking, actor)
        assignment = await _confirm_and_dispatch(db, machine, booking)
    await emitter.publish()
    return ConfirmResult(booking=booking, assignment=assignment)


async def advance(
    db: AsyncSession,
    redis: aioredis.Redis,
    booking_id: uuid.UUID,
    target: BookingStatus,
    actor: User,
    reason: Optional[str] = None,
) -> ConfirmResult:
    """
    Generic transition. Admins may request any target; customers only confirm
    or cancel. Reaching confirmed triggers auto-dispatch.
    """
    target = BookingStatus(target)
    emitter = NotificationEmitter(db)
    machine = BookingStateMachine(db, emitter, actor)
    async with guarded_booking(db, redis, booking_id) as booking:
        ensure_owner_or_admin(booking, actor)
        if actor.role != UserRole.ADMIN and target not in CUSTOMER_TARGETS:
            raise NotAuthorized(
                "Customers can only confirm or cancel a booking",
                booking_id=str(booking.id),
                target=target.value,
            )
        if target == BookingStatus.CONFIRMED:
            assignment = await _confirm_and_dispatch(db, machine, booking, reason)
        else:
            await machine.advance(booking, target, reason)
            assignment = None
    await emitter.publish()
    return ConfirmResult(booking=booking, assignment=assignment)


async def cancel(
    db: AsyncSession,
    redis: aioredis.Redis,
    booking_id: uuid.UUID,
    actor: User,
    reason: str,
) -> Booking:
    emitter = NotificationEmitter(db)
    machine = BookingStateMachine(db, emitter, actor)
    async with guarded_booking(db, redis, booking_id) as booking:
        ensure_owner_or_admin(booking, actor)
        machine.cancel(booking, reason)
    await emitter.publish()
    return booking


# ── Reads ─────────────────────────────────────────────────────

async def list_for_owner(
    db: AsyncSession,
    user: User,
    status_filter: Optional[BookingStatus] = None,
    page: int = 1,
    page_size: int = 10,
) -> Tuple[List[Booking], int]:
    query = select(Booking).where(Booking.user_id == user.id)
    if status_filter:
        query = query.where(Booking.status == BookingStatus(status_filter))

    total = (await db.execute(select(func.count()).select_from(query.subquery()))).scalar_one()
    result = await db.execute(
        query.order_by(Booking.created_at.desc(), Booking.booking_number)
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    return list(result.scalars().all()), total

