"""
services/pricing/engine.py
Pure price computation for scrap pickups.

All amounts are Decimal, rounded to paise with ROUND_HALF_UP. The estimate is
computed once at booking time from the live rate table; reconciliation at
settlement uses the per-item rate snapshot so later rate changes never reprice
an existing booking.
"""

import uuid
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Iterable, Mapping, Optional, Protocol, Union

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.models.models import ScrapCategory, ScrapRate
from shared.utils.errors import ValidationError

CENTS = Decimal("0.01")

Number = Union[Decimal, int, float, str]


class EstimatedItem(Protocol):
    category_id: uuid.UUID
    estimated_weight: Decimal


class PricedItem(Protocol):
    estimated_weight: Decimal
    final_weight: Optional[Decimal]
    rate_per_kg: Decimal


def to_decimal(value: Number, field: str = "value") -> Decimal:
    # float goes through str so 4.5 stays 4.5 and not 4.4999...
    try:
        return value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field} must be a number", field=field, value=str(value))


def price(weight: Number, rate_per_kg: Number) -> Decimal:
    """weight × rate, rounded half-up to 2 places."""
    weight = to_decimal(weight, "weight")
    rate = to_decimal(rate_per_kg, "rate_per_kg")
    if weight <= 0:
        raise ValidationError("Weight must be greater than zero", weight=str(weight))
    if rate <= 0:
        raise ValidationError("Rate must be greater than zero", rate_per_kg=str(rate))
    return (weight * rate).quantize(CENTS, rounding=ROUND_HALF_UP)


def estimate(items: Iterable[EstimatedItem], rates: Mapping[uuid.UUID, Decimal]) -> Decimal:
    """Sum of estimated weight × current rate for every item."""
    total = Decimal("0.00")
    for item in items:
        rate = rates.get(item.category_id)
        if rate is None:
            raise ValidationError(
                "No active rate for category", category_id=str(item.category_id)
            )
        total += price(item.estimated_weight, rate)
    return total.quantize(CENTS, rounding=ROUND_HALF_UP)


def reconcile(items: Iterable[PricedItem]) -> Decimal:
    """
    Final amount: measured weight where recorded, estimated weight otherwise,
    priced at the rate captured when the item was added.
    """
    total = Decimal("0.00")
    for item in items:
        weight = item.final_weight if item.final_weight is not None else item.estimated_weight
        total += price(weight, item.rate_per_kg)
    return total.quantize(CENTS, rounding=ROUND_HALF_UP)


async def active_rates(
    db: AsyncSession, category_ids: Iterable[uuid.UUID]
) -> dict[uuid.UUID, Decimal]:
    """Active price-per-kg for each active category among category_ids."""
    ids = set(category_ids)
    if not ids:
        return {}
    result = await db.execute(
        select(ScrapRate.category_id, ScrapRate.price_per_kg)
        .join(ScrapCategory, ScrapCategory.id == ScrapRate.category_id)
        .where(
            ScrapRate.category_id.in_(ids),
            ScrapRate.is_active == True,  # noqa: E712
            ScrapCategory.is_active == True,  # noqa: E712
        )
        .order_by(ScrapRate.created_at)
    )
    # Later rows win should two active rows ever coexist
    return {category_id: Decimal(rate) for category_id, rate in result.all()}
