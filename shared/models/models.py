"""
shared/models/models.py
All SQLAlchemy ORM models for the Scrap Pickup Platform.
UUID primary keys throughout; portable column types so the same schema runs on
PostgreSQL and SQLite.
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum as PyEnum
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    SmallInteger,
    String,
    Text,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from config.database import Base


# ── Enumerations ──────────────────────────────────────────────

class UserRole(str, PyEnum):
    USER = "USER"
    PARTNER = "PARTNER"
    ADMIN = "ADMIN"


class BookingStatus(str, PyEnum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PARTNER_ASSIGNED = "partner_assigned"
    ON_THE_WAY = "on_the_way"
    ARRIVED = "arrived"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class PaymentMethod(str, PyEnum):
    CASH = "cash"
    UPI = "upi"


class PaymentStatus(str, PyEnum):
    PENDING = "pending"
    COMPLETED = "completed"
    REFUNDED = "refunded"
    FAILED = "failed"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _enum_column(enum_cls) -> Enum:
    """Store enum *values* (the wire strings) rather than member names."""
    return Enum(
        enum_cls,
        values_callable=lambda members: [m.value for m in members],
        native_enum=False,
        length=30,
    )


# ── Mixins ────────────────────────────────────────────────────

class TimestampMixin:
    """Adds created_at and updated_at to any model."""
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        nullable=False,
    )


# ── Identity & reference data ─────────────────────────────────

class User(TimestampMixin, Base):
    """Account resolved from the bearer token. Managed by the identity service."""
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    phone: Mapped[str] = mapped_column(String(20), nullable=False, unique=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    role: Mapped[UserRole] = mapped_column(
        Enum(UserRole), nullable=False, default=UserRole.USER
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    fcm_token: Mapped[Optional[str]] = mapped_column(Text, nullable=True)  # Push notification token

    __table_args__ = (Index("ix_users_role", "role"),)

    def __repr__(self) -> str:
        return f"<User {self.phone} ({self.role})>"


class Address(TimestampMixin, Base):
    """User's saved pickup address. Read-only from the booking core."""
    __tablename__ = "addresses"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    label: Mapped[str] = mapped_column(String(50), nullable=False)  # "Home", "Shop"
    street: Mapped[str] = mapped_column(String(255), nullable=False)
    city: Mapped[str] = mapped_column(String(100), nullable=False)
    pincode: Mapped[str] = mapped_column(String(10), nullable=False)
    lat: Mapped[Optional[float]] = mapped_column(Numeric(9, 6), nullable=True)
    lng: Mapped[Optional[float]] = mapped_column(Numeric(9, 6), nullable=True)

    __table_args__ = (Index("ix_addresses_user_id", "user_id"),)


class ScrapCategory(TimestampMixin, Base):
    """Two-level category tree (e.g. Metal → Copper). Rates attach to leaves."""
    __tablename__ = "scrap_categories"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    parent_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("scrap_categories.id"), nullable=True
    )
    unit: Mapped[str] = mapped_column(String(10), nullable=False, default="kg")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class ScrapRate(TimestampMixin, Base):
    """
    Price per kg for a category. Exactly one active row per category; a rate
    change deactivates the old row and inserts a new one.
    """
    __tablename__ = "scrap_rates"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    category_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("scrap_categories.id"), nullable=False
    )
    price_per_kg: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    __table_args__ = (
        CheckConstraint("price_per_kg > 0", name="ck_scrap_rate_positive"),
        Index("ix_scrap_rates_category_active", "category_id", "is_active"),
    )


class Partner(TimestampMixin, Base):
    """
    Pickup partner (driver + vehicle). Bookings point at partners; partners
    never own bookings.
    """
    __tablename__ = "partners"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id"), unique=True, nullable=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    phone: Mapped[str] = mapped_column(String(20), nullable=False, unique=True)
    vehicle: Mapped[str] = mapped_column(String(100), nullable=False)
    rating: Mapped[Decimal] = mapped_column(Numeric(2, 1), default=0, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    __table_args__ = (
        CheckConstraint("rating >= 0 AND rating <= 5", name="ck_partner_rating_range"),
        Index("ix_partners_active", "active"),
    )


# ── Booking core ──────────────────────────────────────────────

class Booking(TimestampMixin, Base):
    """
    A single scheduled scrap pickup.
    Status transitions: pending → confirmed → partner_assigned → on_the_way →
    arrived → completed, with cancelled reachable from any non-completed state.
    """
    __tablename__ = "bookings"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    booking_number: Mapped[str] = mapped_column(String(20), unique=True, nullable=False)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    address_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("addresses.id"), nullable=False
    )
    partner_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("partners.id"), nullable=True
    )

    scheduled_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[BookingStatus] = mapped_column(
        _enum_column(BookingStatus), nullable=False, default=BookingStatus.PENDING
    )

    # Pricing
    estimated_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=0)
    final_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)

    # Cancellation
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    cancelled_by: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)

    # Timestamps
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    assigned_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    accepted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    # Optimistic concurrency: every UPDATE is "WHERE version = <read version>"
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint(
            "(status = 'completed') = (final_amount IS NOT NULL)",
            name="ck_booking_final_amount_iff_completed",
        ),
        CheckConstraint(
            "partner_id IS NOT NULL OR status IN ('pending', 'confirmed', 'cancelled')",
            name="ck_booking_partner_after_confirmed",
        ),
        Index("ix_bookings_user_id", "user_id"),
        Index("ix_bookings_partner_id", "partner_id"),
        Index("ix_bookings_status", "status"),
        Index("ix_bookings_scheduled_time", "scheduled_time"),
    )


class BookingItem(Base):
    """One scrap line of a booking, re-weighable at settlement."""
    __tablename__ = "booking_items"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False
    )
    category_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("scrap_categories.id"), nullable=False
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    estimated_weight: Mapped[Decimal] = mapped_column(Numeric(10, 3), nullable=False)
    final_weight: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 3), nullable=True)
    # Rate in force when the item was priced; settlement never reprices
    rate_per_kg: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )

    __table_args__ = (
        CheckConstraint("estimated_weight > 0", name="ck_item_estimated_weight_positive"),
        CheckConstraint(
            "final_weight IS NULL OR final_weight > 0", name="ck_item_final_weight_positive"
        ),
        Index("ix_booking_items_booking_id", "booking_id"),
    )


class BookingAuditLog(Base):
    """Immutable log of all booking status transitions."""
    __tablename__ = "booking_audit_logs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("bookings.id"), nullable=False
    )
    from_status: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    to_status: Mapped[str] = mapped_column(String(30), nullable=False)
    changed_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=True
    )
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    audit_metadata: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )

    __table_args__ = (Index("ix_booking_audit_logs_booking_id", "booking_id"),)


class Payment(TimestampMixin, Base):
    """Settlement payment. Exactly one per booking (unique booking_id)."""
    __tablename__ = "payments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("bookings.id"), unique=True, nullable=False
    )
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    method: Mapped[PaymentMethod] = mapped_column(_enum_column(PaymentMethod), nullable=False)
    status: Mapped[PaymentStatus] = mapped_column(
        _enum_column(PaymentStatus), nullable=False, default=PaymentStatus.PENDING
    )
    transaction_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    __table_args__ = (Index("ix_payments_user_id", "user_id"),)


class Rating(TimestampMixin, Base):
    """Post-completion feedback. One per booking (enforced by unique constraint)."""
    __tablename__ = "ratings"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("bookings.id"), unique=True, nullable=False
    )
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    partner_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("partners.id"), nullable=False
    )
    stars: Mapped[int] = mapped_column(SmallInteger, nullable=False)
    comment: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint("stars >= 1 AND stars <= 5", name="ck_rating_stars_range"),
        Index("ix_ratings_partner_id", "partner_id"),
    )


class Notification(TimestampMixin, Base):
    """In-app notification. Append-only from the booking core."""
    __tablename__ = "notifications"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    booking_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("bookings.id"), nullable=True
    )
    icon: Mapped[str] = mapped_column(String(16), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    is_read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    read_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    sent_push: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    __table_args__ = (Index("ix_notifications_user_id_read", "user_id", "is_read"),)
