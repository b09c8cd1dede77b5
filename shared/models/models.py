"""
shared/models/models.py
All SQLAlchemy ORM models for the Inspection Booking API.
UUID primary keys throughout; portable column types (PostgreSQL in
production, SQLite in tests).
"""

import uuid
from datetime import date, datetime, timezone
from enum import Enum as PyEnum
from typing import List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from config.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Enumerations ──────────────────────────────────────────────

class UserRole(str, PyEnum):
    SUPERUSER = "superuser"
    ADMIN = "admin"
    AGENCY_ADMIN = "agency-admin"
    AGENCY_USER = "agency-user"


class Region(str, PyEnum):
    EAST = "EAST"
    SOUTH = "SOUTH"
    WEST = "WEST"
    NORTH = "NORTH"
    CENTRAL = "CENTRAL"


REGION_LABELS = {
    Region.EAST: "East",
    Region.SOUTH: "South",
    Region.WEST: "West",
    Region.NORTH: "North",
    Region.CENTRAL: "Central",
}


class TaskStatus(str, PyEnum):
    UNKNOWN = "unknown"
    INCOMPLETE = "incomplete"
    PROCESSING = "processing"
    DUE_SOON = "due_soon"
    EXPIRED = "expired"
    COMPLETED = "completed"
    HISTORY = "history"


class ScheduleStatus(str, PyEnum):
    PUBLISHED = "published"
    CLOSED = "closed"


class BookingStatus(str, PyEnum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"


class BookerType(str, PyEnum):
    CONTACT = "contact"
    AGENCY_USER = "agencyUser"


class NotificationStatus(str, PyEnum):
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"


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


# ── Directory (read by the inspection core) ───────────────────

class Agency(TimestampMixin, Base):
    __tablename__ = "agencies"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class User(TimestampMixin, Base):
    """Staff account. Agency roles carry an agency_id; admin roles do not."""
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, unique=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[UserRole] = mapped_column(
        Enum(UserRole), nullable=False, default=UserRole.AGENCY_USER
    )
    agency_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("agencies.id"), nullable=True
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    __table_args__ = (
        Index("ix_users_agency_id", "agency_id"),
        Index("ix_users_role", "role"),
    )

    def __repr__(self) -> str:
        return f"<User {self.email} ({self.role})>"


class Property(TimestampMixin, Base):
    __tablename__ = "properties"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    address: Mapped[str] = mapped_column(String(500), nullable=False)
    region: Mapped[Optional[Region]] = mapped_column(Enum(Region), nullable=True)
    agency_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("agencies.id"), nullable=True
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    agency: Mapped[Optional["Agency"]] = relationship(lazy="joined")

    __table_args__ = (
        Index("ix_properties_region", "region"),
        Index("ix_properties_agency_id", "agency_id"),
    )


class Contact(TimestampMixin, Base):
    __tablename__ = "contacts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    property_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("properties.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    __table_args__ = (Index("ix_contacts_property_id", "property_id"),)


class Task(TimestampMixin, Base):
    """Compliance task on a property. The inspection core only moves it to PROCESSING."""
    __tablename__ = "tasks"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    property_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("properties.id", ondelete="CASCADE"), nullable=False
    )
    task_name: Mapped[str] = mapped_column(String(255), nullable=False)
    type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    status: Mapped[TaskStatus] = mapped_column(
        Enum(TaskStatus), nullable=False, default=TaskStatus.UNKNOWN
    )
    inspection_date: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    __table_args__ = (Index("ix_tasks_property_status", "property_id", "status"),)


# ── Inspection ────────────────────────────────────────────────

class InspectionConfig(TimestampMixin, Base):
    """Default operating hours per region. Read when a schedule is created."""
    __tablename__ = "inspection_configs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    region: Mapped[Region] = mapped_column(Enum(Region), nullable=False, unique=True)
    start_time: Mapped[str] = mapped_column(String(5), nullable=False)  # "09:00"
    end_time: Mapped[str] = mapped_column(String(5), nullable=False)    # "17:00"
    slot_duration: Mapped[int] = mapped_column(Integer, nullable=False)  # minutes
    max_capacity: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    __table_args__ = (
        CheckConstraint("slot_duration >= 15", name="ck_inspection_config_slot_duration"),
    )


class InspectionSchedule(TimestampMixin, Base):
    """One inspection day for one region. Owns its slots."""
    __tablename__ = "inspection_schedules"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    region: Mapped[Region] = mapped_column(Enum(Region), nullable=False)
    schedule_date: Mapped[date] = mapped_column(Date, nullable=False)
    start_time: Mapped[str] = mapped_column(String(5), nullable=False)
    end_time: Mapped[str] = mapped_column(String(5), nullable=False)
    slot_duration: Mapped[int] = mapped_column(Integer, nullable=False)
    max_capacity: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    status: Mapped[ScheduleStatus] = mapped_column(
        Enum(ScheduleStatus), nullable=False, default=ScheduleStatus.PUBLISHED
    )
    note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=True
    )

    slots: Mapped[List["InspectionSlot"]] = relationship(
        back_populates="schedule",
        cascade="all, delete-orphan",
        order_by="InspectionSlot.start_time",
    )

    __table_args__ = (
        UniqueConstraint("region", "schedule_date", name="uq_inspection_schedule_region_date"),
        Index("ix_inspection_schedules_date", "schedule_date"),
    )


class InspectionSlot(Base):
    """
    Bookable window within a schedule.
    current_bookings counts pending + confirmed bookings; it is only changed by
    conditional UPDATEs inside the transaction that changes the booking.
    """
    __tablename__ = "inspection_slots"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    schedule_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("inspection_schedules.id", ondelete="CASCADE"), nullable=False
    )
    start_time: Mapped[str] = mapped_column(String(5), nullable=False)
    end_time: Mapped[str] = mapped_column(String(5), nullable=False)
    max_capacity: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    current_bookings: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_available: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    schedule: Mapped["InspectionSchedule"] = relationship(
        back_populates="slots", lazy="joined", innerjoin=True
    )

    __table_args__ = (
        CheckConstraint(
            "current_bookings >= 0 AND current_bookings <= max_capacity",
            name="ck_inspection_slot_capacity",
        ),
        Index("ix_inspection_slots_schedule_id", "schedule_id"),
    )

    @property
    def has_capacity(self) -> bool:
        return self.is_available and self.current_bookings < self.max_capacity

    @property
    def available_spots(self) -> int:
        return max(self.max_capacity - self.current_bookings, 0)


class InspectionBooking(TimestampMixin, Base):
    """
    A claim on a slot for one property.
    Status transitions: pending → confirmed | rejected; reschedule keeps status.
    """
    __tablename__ = "inspection_bookings"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    slot_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("inspection_slots.id"), nullable=False
    )
    property_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("properties.id"), nullable=False
    )
    contact_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("contacts.id"), nullable=True
    )
    booked_by_user_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=True
    )
    booker_type: Mapped[BookerType] = mapped_column(Enum(BookerType), nullable=False)

    contact_name: Mapped[str] = mapped_column(String(255), nullable=False)
    contact_phone: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    contact_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    status: Mapped[BookingStatus] = mapped_column(
        Enum(BookingStatus), nullable=False, default=BookingStatus.PENDING
    )
    booking_token: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    token_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    confirmed_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=True
    )
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    slot: Mapped["InspectionSlot"] = relationship(lazy="joined", innerjoin=True)
    property: Mapped["Property"] = relationship(lazy="joined", innerjoin=True)
    booked_by_user: Mapped[Optional["User"]] = relationship(
        lazy="joined", foreign_keys=[booked_by_user_id]
    )

    __table_args__ = (
        CheckConstraint(
            "(contact_id IS NULL) <> (booked_by_user_id IS NULL)",
            name="ck_inspection_booking_single_booker",
        ),
        Index("ix_inspection_bookings_property_status", "property_id", "status"),
        Index("ix_inspection_bookings_slot_id", "slot_id"),
    )


class InspectionNotification(TimestampMixin, Base):
    """Invitation sent for a (property, schedule) pair. Its token is the public credential."""
    __tablename__ = "inspection_notifications"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    schedule_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("inspection_schedules.id", ondelete="CASCADE"), nullable=False
    )
    property_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("properties.id"), nullable=False
    )
    contact_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("contacts.id"), nullable=True
    )
    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=True
    )
    recipient_type: Mapped[BookerType] = mapped_column(Enum(BookerType), nullable=False)
    recipient_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    recipient_email: Mapped[str] = mapped_column(String(255), nullable=False)
    booking_token: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    token_expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[NotificationStatus] = mapped_column(
        Enum(NotificationStatus), nullable=False, default=NotificationStatus.SENT
    )
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    schedule: Mapped["InspectionSchedule"] = relationship(lazy="joined", innerjoin=True)
    property: Mapped["Property"] = relationship(lazy="joined", innerjoin=True)
    contact: Mapped[Optional["Contact"]] = relationship(lazy="joined")

    __table_args__ = (
        UniqueConstraint("property_id", "schedule_id", name="uq_inspection_notification_pair"),
        Index("ix_inspection_notifications_schedule_id", "schedule_id"),
    )


class InspectionBookingAuditLog(Base):
    """Immutable log of all booking status transitions."""
    __tablename__ = "inspection_booking_audit_logs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("inspection_bookings.id"), nullable=False
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

    __table_args__ = (Index("ix_inspection_audit_booking_id", "booking_id"),)
