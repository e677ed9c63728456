"""
tests/test_admin.py
Admin endpoints: partners, manual dispatch, oversight, dashboard and rates.
"""

from decimal import Decimal

import pytest
from httpx import AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from services.booking import lifecycle
from services.catalog.router import RATES_CACHE_KEY
from services.rating import closure
from services.settlement import recorder
from shared.models.models import (
    Booking,
    Partner,
    PaymentMethod,
    ScrapRate,
    User,
    UserRole,
)
from tests.conftest import auth_headers, make_booking, make_user


# ── Access ────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_non_admin_is_forbidden(client: AsyncClient, user: User):
    response = await client.get("/admin/stats", headers=auth_headers(user))
    assert response.status_code == 403


# ── Partners ──────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_enroll_partner_links_account(
    client: AsyncClient, db: AsyncSession, admin_user: User
):
    driver = await make_user(db, "Imran Shaikh", "9876500050")

    response = await client.post(
        "/admin/partners",
        headers=auth_headers(admin_user),
        json={"name": "Imran Shaikh", "phone": "9876500050", "vehicle": "Tempo", "user_id": str(driver.id)},
    )
    assert response.status_code == 201
    assert response.json()["active"] is True

    await db.refresh(driver)
    assert driver.role == UserRole.PARTNER

    response = await client.post(
        "/admin/partners",
        headers=auth_headers(admin_user),
        json={"name": "Someone Else", "phone": "9876500050", "vehicle": "Cycle cart"},
    )
    assert response.status_code == 409


@pytest.mark.asyncio
async def test_deactivated_partner_gets_no_new_jobs(
    client: AsyncClient,
    db: AsyncSession,
    redis,
    admin_user: User,
    user: User,
    partner: Partner,
    pending_booking: Booking,
):
    response = await client.put(
        f"/admin/partners/{partner.id}",
        headers=auth_headers(admin_user),
        json={"active": False},
    )
    assert response.status_code == 200
    assert response.json()["active"] is False

    result = await lifecycle.confirm(db, redis, pending_booking.id, user)
    assert result.assignment.outcome.value == "awaiting_partner"

    response = await client.get(
        "/admin/partners", headers=auth_headers(admin_user), params={"active": True}
    )
    assert response.json() == []


# ── Dispatch ──────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_manual_assign_and_auto_assign(
    client: AsyncClient,
    db: AsyncSession,
    redis,
    admin_user: User,
    user: User,
    pending_booking: Booking,
):
    await lifecycle.confirm(db, redis, pending_booking.id, user)

    response = await client.post(
        f"/admin/bookings/{pending_booking.id}/auto-assign", headers=auth_headers(admin_user)
    )
    assert response.json()["outcome"] == "awaiting_partner"

    response = await client.post(
        "/admin/partners",
        headers=auth_headers(admin_user),
        json={"name": "Walk-in Partner", "phone": "9876500060", "vehicle": "Tata Ace"},
    )
    partner_id = response.json()["id"]

    response = await client.post(
        f"/admin/bookings/{pending_booking.id}/assign",
        headers=auth_headers(admin_user),
        json={"partner_id": partner_id},
    )
    assert response.status_code == 200
    assert response.json() == {
        "booking_id": str(pending_booking.id),
        "outcome": "assigned",
        "partner_id": partner_id,
        "status": "partner_assigned",
    }

    # Assigning the same partner again is a no-op
    response = await client.post(
        f"/admin/bookings/{pending_booking.id}/assign",
        headers=auth_headers(admin_user),
        json={"partner_id": partner_id},
    )
    assert response.json()["outcome"] == "already_assigned"


@pytest.mark.asyncio
async def test_assign_unknown_partner_is_404(
    client: AsyncClient, admin_user: User, pending_booking: Booking
):
    response = await client.post(
        f"/admin/bookings/{pending_booking.id}/assign",
        headers=auth_headers(admin_user),
        json={"partner_id": "00000000-0000-0000-0000-000000000000"},
    )
    assert response.status_code == 404


# ── Oversight ─────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_list_all_bookings(
    client: AsyncClient,
    db: AsyncSession,
    admin_user: User,
    user: User,
    address,
    catalog,
    pending_booking: Booking,
):
    await make_booking(db, user, address, [(catalog["Copper"], "2")])

    response = await client.get(
        "/admin/bookings", headers=auth_headers(admin_user), params={"page_size": 1}
    )
    data = response.json()
    assert data["total"] == 2
    assert data["pages"] == 2
    assert len(data["items"]) == 1


@pytest.mark.asyncio
async def test_dashboard_stats(
    client: AsyncClient,
    db: AsyncSession,
    redis,
    admin_user: User,
    user: User,
    partner: Partner,
    arrived_booking: Booking,
):
    await recorder.settle(db, redis, arrived_booking.id, PaymentMethod.CASH, user)
    await closure.submit_rating(db, user, arrived_booking.id, partner.id, 4)

    response = await client.get("/admin/stats", headers=auth_headers(admin_user))
    assert response.status_code == 200
    data = response.json()
    assert data["total_bookings"] == 1
    assert data["bookings_by_status"]["completed"] == 1
    assert data["bookings_by_status"]["pending"] == 0
    assert data["active_partners"] == 1
    assert data["awaiting_partner"] == 0
    assert Decimal(data["completed_revenue"]) == Decimal("150.00")
    assert data["ratings_count"] == 1
    assert data["average_stars"] == 4.0


# ── Rates ─────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_rate_update_keeps_history_and_busts_cache(
    client: AsyncClient,
    db: AsyncSession,
    redis,
    admin_user: User,
    user: User,
    address,
    catalog,
    pending_booking: Booking,
):
    iron = catalog["Iron"]
    response = await client.get("/catalog/rates")
    assert response.status_code == 200
    assert await redis.get(RATES_CACHE_KEY) is not None

    response = await client.put(
        f"/admin/rates/{iron.id}",
        headers=auth_headers(admin_user),
        json={"price_per_kg": "35.50"},
    )
    assert response.status_code == 200
    assert await redis.get(RATES_CACHE_KEY) is None

    rows = (await db.execute(
        select(ScrapRate)
        .where(ScrapRate.category_id == iron.id)
        .order_by(ScrapRate.created_at)
        .execution_options(populate_existing=True)
    )).scalars().all()
    assert [(r.price_per_kg, r.is_active) for r in rows] == [
        (Decimal("30.00"), False),
        (Decimal("35.50"), True),
    ]

    # New bookings see the new price, the existing one keeps its estimate
    fresh = await make_booking(db, user, address, [(iron, "2")])
    assert fresh.estimated_amount == Decimal("71.00")
    await db.refresh(pending_booking)
    assert pending_booking.estimated_amount == Decimal("150.00")


@pytest.mark.asyncio
async def test_rate_must_be_positive(client: AsyncClient, admin_user: User, catalog):
    response = await client.put(
        f"/admin/rates/{catalog['Iron'].id}",
        headers=auth_headers(admin_user),
        json={"price_per_kg": "0"},
    )
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_public_catalog(client: AsyncClient, catalog):
    response = await client.get("/catalog/categories")
    assert response.status_code == 200
    names = [c["name"] for c in response.json()]
    # Parents first
    assert names[:2] == ["Metal", "Paper"]
    assert set(names[2:]) == {"Copper", "Iron", "Newspaper"}
