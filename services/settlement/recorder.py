"""
services/settlement/recorder.py
Final weights, settlement and payment records.

Settlement is the only path to `completed`: the Payment row, the booking's
final_amount and the status change are written in one guarded transaction.
"""

import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional

import redis.asyncio as aioredis
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from services.booking.repository import (
    ensure_owner_or_admin,
    get_booking,
    get_items,
    guarded_booking,
    partner_for_user,
)
from services.booking.state_machine import TERMINAL_STATUSES, BookingStateMachine
from services.notification.emitter import ICON_PAYMENT, NotificationEmitter
from services.pricing import engine as pricing
from shared.models.models import (
    Booking,
    BookingItem,
    BookingStatus,
    Payment,
    PaymentMethod,
    PaymentStatus,
    User,
    UserRole,
)
from shared.utils.errors import (
    AlreadySettled,
    InvalidTransition,
    NotAuthorized,
    NotFound,
    TerminalStateError,
    ValidationError,
)

logger = logging.getLogger(__name__)

# Admin-driven payment status moves after settlement
PAYMENT_TRANSITIONS = {
    PaymentStatus.PENDING: {PaymentStatus.COMPLETED, PaymentStatus.FAILED},
    PaymentStatus.COMPLETED: {PaymentStatus.REFUNDED},
}


def _require_arrived(booking: Booking) -> None:
    if booking.status in TERMINAL_STATUSES:
        raise TerminalStateError(
            f"Booking is already {booking.status.value}", booking_id=str(booking.id)
        )
    if booking.status != BookingStatus.ARRIVED:
        raise InvalidTransition(
            "Partner must have arrived before the pickup can be weighed or settled",
            booking_id=str(booking.id),
            status=booking.status.value,
        )


async def _payment_for(db: AsyncSession, booking_id: uuid.UUID) -> Optional[Payment]:
    result = await db.execute(select(Payment).where(Payment.booking_id == booking_id))
    return result.scalar_one_or_none()


# ── Final weight ──────────────────────────────────────────────

async def record_final_weight(
    db: AsyncSession,
    redis: aioredis.Redis,
    booking_id: uuid.UUID,
    item_id: uuid.UUID,
    weight: Decimal,
    actor: User,
) -> BookingItem:
    """Record the measured weight of one item. Last write wins until settlement."""
    weight = pricing.to_decimal(weight, "final_weight")
    if weight <= 0:
        raise ValidationError("Final weight must be greater than zero", item_id=str(item_id))

    async with guarded_booking(db, redis, booking_id) as booking:
        if actor.role != UserRole.ADMIN and booking.user_id != actor.id:
            partner = await partner_for_user(db, actor)
            if not partner or booking.partner_id != partner.id:
                raise NotAuthorized(
                    "Not authorized to weigh this pickup", booking_id=str(booking.id)
                )
        _require_arrived(booking)

        item = await db.get(BookingItem, item_id)
        if not item or item.booking_id != booking.id:
            raise NotFound("Item not found on this booking", item_id=str(item_id))
        item.final_weight = weight

    logger.info(f"Final weight {weight} kg recorded for item {item_id} of booking {booking_id}")
    return item


# ── Settlement ────────────────────────────────────────────────

async def settle(
    db: AsyncSession,
    redis: aioredis.Redis,
    booking_id: uuid.UUID,
    method: PaymentMethod,
    actor: User,
    transaction_id: Optional[str] = None,
) -> Payment:
    """
    Reconcile the final amount, record the payment and complete the booking.
    A second call fails with AlreadySettled and leaves the payment untouched.
    """
    method = PaymentMethod(method)
    emitter = NotificationEmitter(db)
    machine = BookingStateMachine(db, emitter, actor)

    async with guarded_booking(db, redis, booking_id) as booking:
        ensure_owner_or_admin(booking, actor)

        payment = await _payment_for(db, booking.id)
        if payment is not None:
            if booking.status != BookingStatus.ARRIVED:
                raise AlreadySettled(
                    "Booking has already been settled",
                    booking_id=str(booking.id),
                    payment_id=str(payment.id),
                )
            # A payment without completion: finish from the recorded payment
            logger.warning(
                f"Booking {booking.id} has payment {payment.id} but is still arrived, completing it"
            )
            booking.final_amount = payment.amount
            await machine.advance(booking, BookingStatus.COMPLETED, settling=True)
        else:
            _require_arrived(booking)

            items = await get_items(db, booking.id)
            if not items:
                raise ValidationError("Booking has no items to settle", booking_id=str(booking.id))
            amount = pricing.reconcile(items)

            payment = Payment(
                id=uuid.uuid4(),
                booking_id=booking.id,
                user_id=booking.user_id,
                amount=amount,
                method=method,
                status=PaymentStatus.COMPLETED,
                transaction_id=transaction_id,
                paid_at=datetime.now(timezone.utc),
            )
            db.add(payment)
            booking.final_amount = amount
            await machine.advance(booking, BookingStatus.COMPLETED, settling=True)

    logger.info(
        f"Booking {booking_id} settled: {settings.CURRENCY_SYMBOL}{payment.amount} "
        f"via {payment.method.value}"
    )
    await emitter.publish()
    return payment


# ── Payment reads & admin updates ─────────────────────────────

async def get_payment(db: AsyncSession, booking_id: uuid.UUID, actor: User) -> Payment:
    booking = await get_booking(db, booking_id)
    ensure_owner_or_admin(booking, actor)
    payment = await _payment_for(db, booking_id)
    if not payment:
        raise NotFound("No payment recorded for this booking", booking_id=str(booking_id))
    return payment


async def payment_history(db: AsyncSession, user: User) -> List[Payment]:
    result = await db.execute(
        select(Payment)
        .where(Payment.user_id == user.id)
        .order_by(Payment.created_at.desc())
    )
    return list(result.scalars().all())


async def update_payment_status(
    db: AsyncSession,
    redis: aioredis.Redis,
    payment_id: uuid.UUID,
    status: PaymentStatus,
    actor: Optional[User] = None,
) -> Payment:
    """pending → completed | failed, completed → refunded."""
    status = PaymentStatus(status)
    payment = await db.get(Payment, payment_id)
    if not payment:
        raise NotFound("Payment not found", payment_id=str(payment_id))

    emitter = NotificationEmitter(db)
    async with guarded_booking(db, redis, payment.booking_id) as booking:
        await db.refresh(payment)
        current = payment.status
        if status not in PAYMENT_TRANSITIONS.get(current, set()):
            raise InvalidTransition(
                f"Cannot move payment from {current.value} to {status.value}",
                payment_id=str(payment.id),
            )
        payment.status = status
        if status == PaymentStatus.COMPLETED and payment.paid_at is None:
            payment.paid_at = datetime.now(timezone.utc)
        if status == PaymentStatus.REFUNDED:
            emitter.emit(
                booking.user_id,
                ICON_PAYMENT,
                "Refund Processed",
                f"{settings.CURRENCY_SYMBOL}{payment.amount} for {booking.booking_number} "
                f"has been refunded.",
                booking_id=booking.id,
            )

    logger.info(
        f"Payment {payment_id} status {current.value} -> {status.value} "
        f"by {actor.id if actor else 'system'}"
    )
    await emitter.publish()
    return payment
