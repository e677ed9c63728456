"""
services/settlement/router.py
Final weights, settlement and payment records.
"""

from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import get_redis
from services.settlement import recorder
from shared.middleware.auth import get_current_user, require_admin
from shared.models.models import PaymentMethod, PaymentStatus, User
from shared.schemas.schemas import (
    BookingItemResponse,
    FinalWeightRequest,
    PaymentResponse,
    PaymentStatusUpdateRequest,
    SettleRequest,
)

router = APIRouter(tags=["Settlement"])


@router.put(
    "/bookings/{booking_id}/items/{item_id}/final-weight",
    response_model=BookingItemResponse,
)
async def record_final_weight(
    booking_id: UUID,
    item_id: UUID,
    data: FinalWeightRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Record the weight measured at pickup. Allowed once the partner has arrived."""
    return await recorder.record_final_weight(
        db, redis, booking_id, item_id, data.final_weight, current_user
    )


@router.post("/bookings/{booking_id}/settle", response_model=PaymentResponse)
async def settle_booking(
    booking_id: UUID,
    data: SettleRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """
    Reconcile against measured weights, record the payment and complete the
    booking in one step. A second call returns 409 ALREADY_SETTLED.
    """
    return await recorder.settle(
        db,
        redis,
        booking_id,
        PaymentMethod(data.method),
        current_user,
        transaction_id=data.transaction_id,
    )


@router.get("/bookings/{booking_id}/payment", response_model=PaymentResponse)
async def get_booking_payment(
    booking_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await recorder.get_payment(db, booking_id, current_user)


@router.get("/payments/me/history", response_model=list[PaymentResponse])
async def my_payment_history(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await recorder.payment_history(db, current_user)


@router.patch("/payments/{payment_id}/status", response_model=PaymentResponse)
async def update_payment_status(
    payment_id: UUID,
    data: PaymentStatusUpdateRequest,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Admin: pending → completed | failed, completed → refunded."""
    return await recorder.update_payment_status(
        db, redis, payment_id, PaymentStatus(data.status), actor=current_user
    )
