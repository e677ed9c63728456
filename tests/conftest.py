"""
tests/conftest.py
Shared fixtures: a fresh SQLite schema per test, fakeredis in place of Redis,
an httpx client over the ASGI app, and factories for the reference data.
"""

import os
import tempfile
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import patch

# Settings are read at import time, so the environment must be ready first
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret-key")
os.environ.setdefault(
    "DATABASE_URL",
    f"sqlite+aiosqlite:///{tempfile.mkdtemp(prefix='scrap-pickup-tests-')}/test.db",
)
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("BOOKING_LOCK_WAIT_SECONDS", "2")

import fakeredis.aioredis
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import AsyncSessionLocal, Base, engine, get_db
from config.redis_client import get_redis
from shared.models import models  # noqa: F401  (registers tables)
from shared.models.models import (
    Address,
    Booking,
    BookingStatus,
    Partner,
    ScrapCategory,
    ScrapRate,
    User,
    UserRole,
)
from shared.utils.security import create_access_token
from tasks.notification_tasks import send_push_notification


# ── Helpers (importable from tests) ───────────────────────────

def auth_headers(user: User) -> dict:
    token, _ = create_access_token(str(user.id), UserRole(user.role).value, user.phone)
    return {"Authorization": f"Bearer {token}"}


def future(days: int = 2) -> datetime:
    return datetime.now(timezone.utc) + timedelta(days=days)


async def make_user(db: AsyncSession, name: str, phone: str, role: UserRole = UserRole.USER, **kw) -> User:
    user = User(id=uuid.uuid4(), name=name, phone=phone, role=role, is_active=True, **kw)
    db.add(user)
    await db.commit()
    return user


async def make_partner(
    db: AsyncSession,
    name: str,
    phone: str,
    user: User | None = None,
    active: bool = True,
    enrolled_minutes_ago: int = 60,
) -> Partner:
    partner = Partner(
        id=uuid.uuid4(),
        user_id=user.id if user else None,
        name=name,
        phone=phone,
        vehicle="Tata Ace",
        rating=Decimal("4.5"),
        active=active,
        created_at=datetime.now(timezone.utc) - timedelta(minutes=enrolled_minutes_ago),
    )
    db.add(partner)
    await db.commit()
    return partner


async def make_booking(
    db: AsyncSession,
    user: User,
    address: Address,
    items: list[tuple[ScrapCategory, str]],
):
    """Create a pending booking through the lifecycle service."""
    from services.booking import lifecycle

    return await lifecycle.create_booking(
        db,
        user,
        address.id,
        future(),
        [lifecycle.ItemRequest(category.id, Decimal(weight)) for category, weight in items],
    )


# ── Infrastructure ────────────────────────────────────────────

@pytest_asyncio.fixture(autouse=True)
async def setup_db():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield


@pytest.fixture(autouse=True)
def push_delay():
    """Push delivery is a Celery hop; record enqueues instead of talking to a broker."""
    with patch.object(send_push_notification, "delay") as delay:
        yield delay


@pytest_asyncio.fixture
async def db() -> AsyncSession:
    async with AsyncSessionLocal() as session:
        yield session


@pytest_asyncio.fixture
async def redis():
    client = fakeredis.aioredis.FakeRedis(decode_responses=True)
    await client.flushall()
    yield client
    await client.aclose()


@pytest_asyncio.fixture
async def client(redis) -> AsyncClient:
    from main import app

    async def _get_db():
        async with AsyncSessionLocal() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_redis] = lambda: redis
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


# ── People ────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def user(db: AsyncSession) -> User:
    return await make_user(db, "Asha Verma", "9876500001", fcm_token="fcm-asha")


@pytest_asyncio.fixture
async def other_user(db: AsyncSession) -> User:
    return await make_user(db, "Rohit Das", "9876500002")


@pytest_asyncio.fixture
async def admin_user(db: AsyncSession) -> User:
    return await make_user(db, "Ops Admin", "9876500009", role=UserRole.ADMIN)


@pytest_asyncio.fixture
async def partner_user(db: AsyncSession) -> User:
    return await make_user(db, "Ravi Kumar", "9876500011", role=UserRole.PARTNER)


@pytest_asyncio.fixture
async def partner(db: AsyncSession, partner_user: User) -> Partner:
    return await make_partner(db, "Ravi Kumar", "9876500011", user=partner_user, enrolled_minutes_ago=120)


@pytest_asyncio.fixture
async def second_partner_user(db: AsyncSession) -> User:
    return await make_user(db, "Suresh Singh", "9876500012", role=UserRole.PARTNER)


@pytest_asyncio.fixture
async def second_partner(db: AsyncSession, second_partner_user: User) -> Partner:
    return await make_partner(db, "Suresh Singh", "9876500012", user=second_partner_user, enrolled_minutes_ago=60)


# ── Reference data ────────────────────────────────────────────

@pytest_asyncio.fixture
async def address(db: AsyncSession, user: User) -> Address:
    addr = Address(
        id=uuid.uuid4(),
        user_id=user.id,
        label="Home",
        street="12 MG Road",
        city="Bengaluru",
        pincode="560001",
    )
    db.add(addr)
    await db.commit()
    return addr


@pytest_asyncio.fixture
async def catalog(db: AsyncSession) -> dict[str, ScrapCategory]:
    """Metal → Iron (₹30/kg), Copper (₹450/kg); Paper → Newspaper (₹12/kg)."""
    metal = ScrapCategory(id=uuid.uuid4(), name="Metal", unit="kg")
    paper = ScrapCategory(id=uuid.uuid4(), name="Paper", unit="kg")
    db.add_all([metal, paper])
    await db.flush()

    categories = {
        "Iron": (metal, "30"),
        "Copper": (metal, "450"),
        "Newspaper": (paper, "12"),
    }
    result = {"Metal": metal, "Paper": paper}
    for name, (parent, price) in categories.items():
        category = ScrapCategory(id=uuid.uuid4(), name=name, parent_id=parent.id, unit="kg")
        db.add(category)
        await db.flush()
        db.add(ScrapRate(id=uuid.uuid4(), category_id=category.id, price_per_kg=Decimal(price)))
        result[name] = category
    await db.commit()
    return result


@pytest_asyncio.fixture
async def pending_booking(db: AsyncSession, user: User, address: Address, catalog) -> Booking:
    """5 kg of iron at ₹30/kg → estimate ₹150.00."""
    return await make_booking(db, user, address, [(catalog["Iron"], "5")])


@pytest_asyncio.fixture
async def assigned_booking(db: AsyncSession, redis, user: User, pending_booking: Booking, partner: Partner) -> Booking:
    from services.booking import lifecycle

    result = await lifecycle.confirm(db, redis, pending_booking.id, user)
    assert result.booking.status == BookingStatus.PARTNER_ASSIGNED
    return result.booking


@pytest_asyncio.fixture
async def arrived_booking(db: AsyncSession, redis, assigned_booking: Booking, partner: Partner, partner_user: User) -> Booking:
    from services.dispatch import coordinator

    await coordinator.partner_advance(db, redis, assigned_booking.id, partner, actor=partner_user)
    booking = await coordinator.partner_advance(db, redis, assigned_booking.id, partner, actor=partner_user)
    assert booking.status == BookingStatus.ARRIVED
    return booking
