"""
shared/models/models.py
All SQLAlchemy ORM models for the Ambulance Booking API.
Portable column types (Uuid, JSON) so the same models run on PostgreSQL and SQLite.
Nested document parts (timeline, medical flags, hospital services) live in JSON columns.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum as PyEnum
from typing import List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    SmallInteger,
    String,
    Text,
    Uuid,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from config.database import Base

# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Enumerations ──────────────────────────────────────────────

class UserRole(str, PyEnum):
    PATIENT = "patient"
    DRIVER = "driver"
    ADMIN = "admin"


class BookingStatus(str, PyEnum):
    PENDING = "pending"
    ASSIGNED = "assigned"
    EN_ROUTE = "en_route"
    ARRIVED = "arrived"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class BookingPriority(str, PyEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class PaymentStatus(str, PyEnum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


class NotificationKind(str, PyEnum):
    BOOKING = "booking"
    SYSTEM = "system"
    EMERGENCY = "emergency"
    PAYMENT = "payment"


class HospitalType(str, PyEnum):
    PUBLIC = "public"
    PRIVATE = "private"


# Statuses in which a booking holds its driver
ACTIVE_BOOKING_STATUSES = (
    BookingStatus.ASSIGNED,
    BookingStatus.EN_ROUTE,
    BookingStatus.ARRIVED,
)


def _enum(enum_cls) -> Enum:
    # Store the lowercase values, not the member names
    return Enum(enum_cls, values_callable=lambda e: [m.value for m in e], native_enum=False, length=20)


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


# ── Models ────────────────────────────────────────────────────

class User(TimestampMixin, Base):
    """
    Account for every role. Driver-only state (availability, last known
    location, aggregate rating) lives on the same row and stays NULL/default
    for patients and admins.
    """
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    phone: Mapped[str] = mapped_column(String(30), nullable=False)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[UserRole] = mapped_column(_enum(UserRole), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Driver-only
    available: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    location_lat: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    location_lng: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    location_updated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    rating: Mapped[float] = mapped_column(Float, default=5.0, nullable=False)
    total_rides: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    notifications: Mapped[List["Notification"]] = relationship(back_populates="user")

    __table_args__ = (
        Index("ix_users_role", "role"),
        Index("ix_users_role_available", "role", "available"),
    )

    @property
    def location(self) -> Optional[dict]:
        if self.location_lat is None or self.location_lng is None:
            return None
        return {
            "lat": self.location_lat,
            "lng": self.location_lng,
            "timestamp": self.location_updated_at,
        }

    def __repr__(self) -> str:
        return f"<User {self.email} ({self.role})>"


class Booking(TimestampMixin, Base):
    """
    A single ambulance transport request.
    Status transitions: pending → assigned → en_route → arrived → completed,
    with cancellation from every non-terminal state.
    """
    __tablename__ = "bookings"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    # Parties
    patient_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    patient_name: Mapped[str] = mapped_column(String(255), nullable=False)
    patient_phone: Mapped[str] = mapped_column(String(30), nullable=False)
    driver_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=True
    )
    emergency_contact: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    emergency_contact_phone: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)

    # Itinerary
    pickup_address: Mapped[str] = mapped_column(Text, nullable=False)
    pickup_lat: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    pickup_lng: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    destination_address: Mapped[str] = mapped_column(Text, nullable=False)
    destination_lat: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    destination_lng: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    route_distance_km: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    # Clinical
    medical_condition: Mapped[str] = mapped_column(Text, nullable=False)
    priority: Mapped[BookingPriority] = mapped_column(
        _enum(BookingPriority), nullable=False, default=BookingPriority.MEDIUM
    )
    medical_flags: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    # e.g. {"wheelchair": true, "oxygen": false, "stretcher": true, "specialInstructions": "..."}
    is_emergency: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Status
    status: Mapped[BookingStatus] = mapped_column(
        _enum(BookingStatus), nullable=False, default=BookingStatus.PENDING
    )
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    cancelled_by: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    timeline: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    # e.g. [{"status": "pending", "timestamp": "...", "actorRole": "patient", "note": "..."}]

    # Pricing
    base_fare: Mapped[float] = mapped_column(Float, nullable=False)
    distance_fare: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    priority_multiplier: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)
    total_fare: Mapped[float] = mapped_column(Float, nullable=False)
    payment_status: Mapped[PaymentStatus] = mapped_column(
        _enum(PaymentStatus), nullable=False, default=PaymentStatus.PENDING
    )

    # Feedback
    feedback_rating: Mapped[Optional[int]] = mapped_column(SmallInteger, nullable=True)
    feedback_comment: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    feedback_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    # Timestamps
    estimated_arrival: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    actual_arrival: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    # Relationships (eager: async sessions cannot lazy-load)
    patient: Mapped["User"] = relationship(foreign_keys=[patient_id], lazy="selectin")
    driver: Mapped[Optional["User"]] = relationship(foreign_keys=[driver_id], lazy="selectin")

    __table_args__ = (
        CheckConstraint(
            "feedback_rating IS NULL OR (feedback_rating >= 1 AND feedback_rating <= 5)",
            name="ck_booking_feedback_rating_range",
        ),
        Index("ix_bookings_patient_id", "patient_id"),
        Index("ix_bookings_driver_id", "driver_id"),
        Index("ix_bookings_status", "status"),
        Index("ix_bookings_created_at", "created_at"),
    )


class Notification(TimestampMixin, Base):
    """In-app notification for one user. Only the `is_read` flag ever changes."""
    __tablename__ = "notifications"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False
    )
    booking_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("bookings.id"), nullable=True
    )
    kind: Mapped[NotificationKind] = mapped_column(_enum(NotificationKind), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    link: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    is_read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    read_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    user: Mapped["User"] = relationship(back_populates="notifications")

    __table_args__ = (Index("ix_notifications_user_id_read", "user_id", "is_read"),)


class Hospital(TimestampMixin, Base):
    """Hospital directory entry used for destination lookup."""
    __tablename__ = "hospitals"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    address: Mapped[str] = mapped_column(Text, nullable=False)
    lat: Mapped[float] = mapped_column(Float, nullable=False)
    lng: Mapped[float] = mapped_column(Float, nullable=False)
    phone: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    type: Mapped[HospitalType] = mapped_column(
        _enum(HospitalType), nullable=False, default=HospitalType.PUBLIC
    )
    services: Mapped[List[str]] = mapped_column(JSONType, nullable=False, default=list)

    __table_args__ = (Index("ix_hospitals_name", "name"),)

    @property
    def location(self) -> dict:
        return {"lat": self.lat, "lng": self.lng}
