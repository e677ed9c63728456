"""
tests/test_settlement.py
Final weights, settlement (the only way to complete a booking), payment reads
and admin payment status changes.
"""

import uuid
from decimal import Decimal

import pytest
from httpx import AsyncClient
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from services.booking import lifecycle
from services.booking.repository import get_items
from services.settlement import recorder
from shared.models.models import (
    Booking,
    BookingStatus,
    Notification,
    Partner,
    Payment,
    PaymentMethod,
    PaymentStatus,
    ScrapRate,
    User,
)
from shared.utils.errors import (
    AlreadySettled,
    InvalidTransition,
    NotAuthorized,
    NotFound,
    TerminalStateError,
    ValidationError,
)
from tests.conftest import auth_headers


# ── Final weight ──────────────────────────────────────────────

@pytest.mark.asyncio
async def test_partner_records_final_weight(
    db: AsyncSession, redis, arrived_booking: Booking, partner_user: User
):
    item = (await get_items(db, arrived_booking.id))[0]
    updated = await recorder.record_final_weight(
        db, redis, arrived_booking.id, item.id, Decimal("4.5"), partner_user
    )
    assert updated.final_weight == Decimal("4.5")

    # Last write wins until settlement
    updated = await recorder.record_final_weight(
        db, redis, arrived_booking.id, item.id, Decimal("4.75"), partner_user
    )
    assert updated.final_weight == Decimal("4.75")


@pytest.mark.asyncio
async def test_final_weight_before_arrival_is_invalid(
    db: AsyncSession, redis, assigned_booking: Booking, partner_user: User
):
    item = (await get_items(db, assigned_booking.id))[0]
    with pytest.raises(InvalidTransition):
        await recorder.record_final_weight(
            db, redis, assigned_booking.id, item.id, Decimal("4.5"), partner_user
        )


@pytest.mark.asyncio
@pytest.mark.parametrize("weight", ["0", "-1.5"])
async def test_final_weight_must_be_positive(
    db: AsyncSession, redis, arrived_booking: Booking, partner_user: User, weight
):
    item = (await get_items(db, arrived_booking.id))[0]
    with pytest.raises(ValidationError):
        await recorder.record_final_weight(
            db, redis, arrived_booking.id, item.id, Decimal(weight), partner_user
        )


@pytest.mark.asyncio
async def test_final_weight_for_unknown_item(
    db: AsyncSession, redis, arrived_booking: Booking, partner_user: User
):
    with pytest.raises(NotFound):
        await recorder.record_final_weight(
            db, redis, arrived_booking.id, uuid.uuid4(), Decimal("1"), partner_user
        )


@pytest.mark.asyncio
async def test_stranger_cannot_record_weight(
    db: AsyncSession, redis, arrived_booking: Booking, other_user: User
):
    item = (await get_items(db, arrived_booking.id))[0]
    with pytest.raises(NotAuthorized):
        await recorder.record_final_weight(
            db, redis, arrived_booking.id, item.id, Decimal("4"), other_user
        )


# ── Settle ────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_settle_uses_measured_weight(
    db: AsyncSession, redis, user: User, partner_user: User, arrived_booking: Booking
):
    """5 kg estimated at ₹30, 4.5 kg on the scale → ₹135.00 paid in cash."""
    item = (await get_items(db, arrived_booking.id))[0]
    await recorder.record_final_weight(
        db, redis, arrived_booking.id, item.id, Decimal("4.5"), partner_user
    )

    payment = await recorder.settle(db, redis, arrived_booking.id, PaymentMethod.CASH, user)

    assert payment.amount == Decimal("135.00")
    assert payment.method == PaymentMethod.CASH
    assert payment.status == PaymentStatus.COMPLETED
    assert payment.paid_at is not None

    await db.refresh(arrived_booking)
    assert arrived_booking.status == BookingStatus.COMPLETED
    assert arrived_booking.final_amount == Decimal("135.00")
    assert arrived_booking.estimated_amount == Decimal("150.00")
    assert arrived_booking.completed_at is not None


@pytest.mark.asyncio
async def test_settle_without_measurement_uses_estimate(
    db: AsyncSession, redis, user: User, arrived_booking: Booking
):
    payment = await recorder.settle(db, redis, arrived_booking.id, PaymentMethod.UPI, user, "UPI-1")
    assert payment.amount == Decimal("150.00")
    assert payment.transaction_id == "UPI-1"


@pytest.mark.asyncio
async def test_second_settle_is_rejected(
    db: AsyncSession, redis, user: User, arrived_booking: Booking
):
    booking_id = arrived_booking.id
    first = await recorder.settle(db, redis, booking_id, PaymentMethod.CASH, user)
    first_id = first.id

    with pytest.raises(AlreadySettled):
        await recorder.settle(db, redis, booking_id, PaymentMethod.UPI, user)

    # The failed write rolled back, so read by plain ids only
    payments = (await db.execute(
        select(Payment).where(Payment.booking_id == booking_id)
    )).scalars().all()
    assert [p.id for p in payments] == [first_id]
    assert payments[0].method == PaymentMethod.CASH


@pytest.mark.asyncio
async def test_rate_change_does_not_reprice_existing_booking(
    db: AsyncSession, redis, user: User, catalog, arrived_booking: Booking
):
    iron = catalog["Iron"]
    old = (await db.execute(
        select(ScrapRate).where(ScrapRate.category_id == iron.id, ScrapRate.is_active == True)  # noqa: E712
    )).scalar_one()
    old.is_active = False
    db.add(ScrapRate(id=uuid.uuid4(), category_id=iron.id, price_per_kg=Decimal("40")))
    await db.commit()

    payment = await recorder.settle(db, redis, arrived_booking.id, PaymentMethod.CASH, user)
    assert payment.amount == Decimal("150.00")


@pytest.mark.asyncio
async def test_settle_before_arrival_is_invalid(
    db: AsyncSession, redis, user: User, assigned_booking: Booking
):
    with pytest.raises(InvalidTransition):
        await recorder.settle(db, redis, assigned_booking.id, PaymentMethod.CASH, user)

    await db.refresh(assigned_booking)
    assert assigned_booking.final_amount is None


@pytest.mark.asyncio
async def test_settle_cancelled_booking_is_terminal(
    db: AsyncSession, redis, user: User, pending_booking: Booking
):
    await lifecycle.cancel(db, redis, pending_booking.id, user, "No longer needed")
    with pytest.raises(TerminalStateError):
        await recorder.settle(db, redis, pending_booking.id, PaymentMethod.CASH, user)


@pytest.mark.asyncio
async def test_only_owner_or_admin_settles(
    db: AsyncSession, redis, other_user: User, arrived_booking: Booking
):
    with pytest.raises(NotAuthorized):
        await recorder.settle(db, redis, arrived_booking.id, PaymentMethod.CASH, other_user)


@pytest.mark.asyncio
async def test_payment_without_completion_is_finished_on_retry(
    db: AsyncSession, redis, user: User, arrived_booking: Booking
):
    """A payment row on an arrived booking completes the booking from that payment."""
    existing = Payment(
        id=uuid.uuid4(),
        booking_id=arrived_booking.id,
        user_id=user.id,
        amount=Decimal("120.00"),
        method=PaymentMethod.UPI,
        status=PaymentStatus.COMPLETED,
    )
    db.add(existing)
    await db.commit()

    payment = await recorder.settle(db, redis, arrived_booking.id, PaymentMethod.CASH, user)

    assert payment.id == existing.id
    await db.refresh(arrived_booking)
    assert arrived_booking.status == BookingStatus.COMPLETED
    assert arrived_booking.final_amount == Decimal("120.00")


@pytest.mark.asyncio
async def test_final_amount_only_exists_on_completed_bookings(
    db: AsyncSession, arrived_booking: Booking
):
    arrived_booking.final_amount = Decimal("10.00")
    with pytest.raises(IntegrityError):
        await db.commit()
    await db.rollback()


@pytest.mark.asyncio
async def test_completion_notifies_owner_with_amount(
    db: AsyncSession, redis, user: User, arrived_booking: Booking
):
    await recorder.settle(db, redis, arrived_booking.id, PaymentMethod.CASH, user)

    note = (await db.execute(
        select(Notification)
        .where(Notification.booking_id == arrived_booking.id, Notification.title == "Pickup Completed")
    )).scalar_one()
    assert note.icon == "💰"
    assert "₹150.00" in note.message
    assert note.message.endswith("Status: Completed.")


# ── Payment status ────────────────────────────────────────────

@pytest.mark.asyncio
async def test_refund_completed_payment(
    db: AsyncSession, redis, user: User, admin_user: User, arrived_booking: Booking
):
    payment = await recorder.settle(db, redis, arrived_booking.id, PaymentMethod.CASH, user)

    refunded = await recorder.update_payment_status(
        db, redis, payment.id, PaymentStatus.REFUNDED, admin_user
    )
    assert refunded.status == PaymentStatus.REFUNDED

    titles = (await db.execute(
        select(Notification.title).where(Notification.user_id == user.id)
    )).scalars().all()
    assert "Refund Processed" in titles

    with pytest.raises(InvalidTransition):
        await recorder.update_payment_status(
            db, redis, payment.id, PaymentStatus.COMPLETED, admin_user
        )


@pytest.mark.asyncio
async def test_payment_status_same_state_is_invalid(
    db: AsyncSession, redis, user: User, admin_user: User, arrived_booking: Booking
):
    payment = await recorder.settle(db, redis, arrived_booking.id, PaymentMethod.CASH, user)
    with pytest.raises(InvalidTransition):
        await recorder.update_payment_status(
            db, redis, payment.id, PaymentStatus.COMPLETED, admin_user
        )


@pytest.mark.asyncio
async def test_unknown_payment_is_not_found(db: AsyncSession, redis, admin_user: User):
    with pytest.raises(NotFound):
        await recorder.update_payment_status(
            db, redis, uuid.uuid4(), PaymentStatus.REFUNDED, admin_user
        )


# ── API ───────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_settle_api_flow(
    client: AsyncClient,
    db: AsyncSession,
    user: User,
    partner: Partner,
    partner_user: User,
    arrived_booking: Booking,
):
    item = (await get_items(db, arrived_booking.id))[0]

    response = await client.put(
        f"/bookings/{arrived_booking.id}/items/{item.id}/final-weight",
        headers=auth_headers(partner_user),
        json={"final_weight": "4.5"},
    )
    assert response.status_code == 200
    assert Decimal(response.json()["final_weight"]) == Decimal("4.5")

    response = await client.post(
        f"/bookings/{arrived_booking.id}/settle",
        headers=auth_headers(user),
        json={"method": "upi", "transaction_id": "  UPI-778899  "},
    )
    assert response.status_code == 200
    data = response.json()
    assert Decimal(data["amount"]) == Decimal("135.00")
    assert data["method"] == "upi"
    assert data["transaction_id"] == "UPI-778899"

    response = await client.post(
        f"/bookings/{arrived_booking.id}/settle",
        headers=auth_headers(user),
        json={"method": "cash"},
    )
    assert response.status_code == 409
    assert response.json()["code"] == "ALREADY_SETTLED"

    response = await client.get(f"/bookings/{arrived_booking.id}/payment", headers=auth_headers(user))
    assert response.status_code == 200
    assert Decimal(response.json()["amount"]) == Decimal("135.00")

    response = await client.get("/payments/me/history", headers=auth_headers(user))
    assert [p["booking_id"] for p in response.json()] == [str(arrived_booking.id)]


@pytest.mark.asyncio
async def test_settle_api_rejects_unknown_method(
    client: AsyncClient, user: User, arrived_booking: Booking
):
    response = await client.post(
        f"/bookings/{arrived_booking.id}/settle",
        headers=auth_headers(user),
        json={"method": "cheque"},
    )
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_payment_before_settlement_is_404(
    client: AsyncClient, user: User, arrived_booking: Booking
):
    response = await client.get(f"/bookings/{arrived_booking.id}/payment", headers=auth_headers(user))
    assert response.status_code == 404
    assert response.json()["code"] == "NOT_FOUND"


@pytest.mark.asyncio
async def test_payment_status_api_is_admin_only(
    client: AsyncClient,
    db: AsyncSession,
    redis,
    user: User,
    admin_user: User,
    arrived_booking: Booking,
):
    payment = await recorder.settle(db, redis, arrived_booking.id, PaymentMethod.CASH, user)

    response = await client.patch(
        f"/payments/{payment.id}/status", headers=auth_headers(user), json={"status": "refunded"}
    )
    assert response.status_code == 403

    response = await client.patch(
        f"/payments/{payment.id}/status", headers=auth_headers(admin_user), json={"status": "refunded"}
    )
    assert response.status_code == 200
    assert response.json()["status"] == "refunded"
