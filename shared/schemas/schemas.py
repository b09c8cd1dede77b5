"""
shared/schemas/schemas.py
All Pydantic v2 request/response schemas for the platform.
"""

import re
import uuid
from datetime import date, datetime
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator

from shared.models.models import Region, ScheduleStatus

TIME_PATTERN = r"^([0-1]?[0-9]|2[0-3]):[0-5][0-9]$"


def _minutes(value: str) -> int:
    hours, minutes = value.split(":")
    return int(hours) * 60 + int(minutes)


def _normalize_time(value: Optional[str]) -> Optional[str]:
    """'9:00' → '09:00' so slot times sort lexically."""
    if value is None:
        return None
    if not re.match(TIME_PATTERN, value):
        raise ValueError("Invalid time format (HH:MM)")
    hours, minutes = value.split(":")
    return f"{int(hours):02d}:{minutes}"


# ── Base ──────────────────────────────────────────────────────

class BaseSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


class PaginatedResponse(BaseSchema):
    items: List[Any]
    total: int
    page: int
    page_size: int
    pages: int


# ── Region Config ─────────────────────────────────────────────

class InspectionConfigUpdate(BaseSchema):
    start_time: str
    end_time: str
    slot_duration: int = Field(..., ge=15, le=480)
    max_capacity: Optional[int] = Field(None, ge=1, le=20)
    is_active: Optional[bool] = None

    @field_validator("start_time", "end_time")
    @classmethod
    def normalize_time(cls, v: Optional[str]) -> Optional[str]:
        return _normalize_time(v)

    @model_validator(mode="after")
    def check_window(self) -> "InspectionConfigUpdate":
        if _minutes(self.end_time) <= _minutes(self.start_time):
            raise ValueError("End time must be after start time")
        return self


class InspectionConfigResponse(BaseSchema):
    id: Optional[uuid.UUID] = None
    region: str
    region_label: str
    start_time: Optional[str]
    end_time: Optional[str]
    slot_duration: Optional[int]
    max_capacity: int
    is_active: bool
    is_configured: bool
    updated_at: Optional[datetime] = None


# ── Schedule ──────────────────────────────────────────────────

class ScheduleCreateRequest(BaseSchema):
    region: Region
    schedule_date: date
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    slot_duration: Optional[int] = Field(None, ge=1, le=480)
    max_capacity: Optional[int] = Field(None, ge=1, le=20)
    note: Optional[str] = Field(None, max_length=500)

    @field_validator("start_time", "end_time")
    @classmethod
    def normalize_time(cls, v: Optional[str]) -> Optional[str]:
        return _normalize_time(v)


class ScheduleUpdateRequest(BaseSchema):
    status: Optional[ScheduleStatus] = None
    note: Optional[str] = Field(None, max_length=500)

    @model_validator(mode="after")
    def require_one_field(self) -> "ScheduleUpdateRequest":
        if self.status is None and self.note is None:
            raise ValueError("At least one field must be provided for update")
        return self


class SlotResponse(BaseSchema):
    id: uuid.UUID
    start_time: str
    end_time: str
    max_capacity: int
    current_bookings: int
    is_available: bool
    available_spots: int


class ScheduleResponse(BaseSchema):
    id: uuid.UUID
    region: str
    region_label: str
    schedule_date: date
    start_time: str
    end_time: str
    slot_duration: int
    max_capacity: int
    status: str
    note: Optional[str]
    is_active: bool
    created_by_id: Optional[uuid.UUID]
    created_at: datetime
    slots: Optional[List[SlotResponse]] = None
    slots_count: Optional[int] = None


class RecipientInfo(BaseSchema):
    name: Optional[str]
    email: str
    role: Optional[str] = None


class ScheduleProperty(BaseSchema):
    id: uuid.UUID
    address: str
    region: Optional[str]
    agency_id: Optional[uuid.UUID]
    agency_name: Optional[str]
    has_notification: bool
    recipient: Optional[RecipientInfo]
    recipient_type: Optional[str]


# ── Notifications ─────────────────────────────────────────────

class SendNotificationsRequest(BaseSchema):
    property_ids: List[uuid.UUID] = Field(..., min_length=1)


class NotificationOutcome(BaseSchema):
    property_id: uuid.UUID
    recipient_email: Optional[str] = None
    recipient_name: Optional[str] = None
    recipient_type: Optional[str] = None
    recipient_role: Optional[str] = None
    error: Optional[str] = None
    reason: Optional[str] = None


class SendNotificationsResponse(BaseSchema):
    success: List[NotificationOutcome]
    failed: List[NotificationOutcome]
    skipped: List[NotificationOutcome]


# ── Booking (admin) ───────────────────────────────────────────

class BookingConfirmRequest(BaseSchema):
    note: Optional[str] = Field(None, max_length=500)
    send_notification: bool = True


class BookingRejectRequest(BaseSchema):
    note: Optional[str] = Field(None, max_length=500)
    send_notification: bool = True


class BookingRescheduleRequest(BaseSchema):
    slot_id: uuid.UUID
    note: Optional[str] = Field(None, max_length=500)
    send_notification: bool = True


class BookedBy(BaseSchema):
    type: str
    type_label: str
    name: Optional[str]
    email: Optional[str]
    role: Optional[str] = None


class BookingSlotSummary(BaseSchema):
    id: uuid.UUID
    start_time: str
    end_time: str


class BookingScheduleSummary(BaseSchema):
    id: uuid.UUID
    region: str
    region_label: str
    schedule_date: date


class BookingPropertySummary(BaseSchema):
    id: uuid.UUID
    address: str


class BookingResponse(BaseSchema):
    id: uuid.UUID
    status: str
    booker_type: str
    booked_by: Optional[BookedBy]
    contact_name: str
    contact_phone: Optional[str]
    contact_email: Optional[str]
    note: Optional[str]
    slot: BookingSlotSummary
    schedule: BookingScheduleSummary
    property: BookingPropertySummary
    confirmed_by_id: Optional[uuid.UUID]
    confirmed_at: Optional[datetime]
    created_at: datetime
    updated_at: datetime
    # Set by confirm only
    auto_rejected_count: Optional[int] = None
    tasks_updated: Optional[int] = None


# ── Public Booking ────────────────────────────────────────────

class PublicBookingSubmitRequest(BaseSchema):
    slot_id: uuid.UUID
    contact_name: str = Field(..., min_length=1, max_length=255)
    contact_phone: Optional[str] = Field(None, max_length=100)
    contact_email: Optional[EmailStr] = None
    note: Optional[str] = Field(None, max_length=500)


class PublicSlot(BaseSchema):
    id: uuid.UUID
    start_time: str
    end_time: str
    available_spots: int


class PublicSchedule(BaseSchema):
    id: uuid.UUID
    schedule_date: date
    is_invited_date: bool
    slots: List[PublicSlot]


class PublicContact(BaseSchema):
    name: Optional[str]
    phone: Optional[str]
    email: Optional[str]


class PublicBookingSummary(BaseSchema):
    id: uuid.UUID
    status: str
    contact_name: str
    start_time: str
    end_time: str
    region: str
    region_label: str
    schedule_date: date
    property_address: str
    note: Optional[str]
    created_at: datetime


class PublicBookingPage(BaseSchema):
    already_booked: bool
    booking: Optional[PublicBookingSummary] = None
    property_address: Optional[str] = None
    region: Optional[str] = None
    region_label: Optional[str] = None
    contact: Optional[PublicContact] = None
    schedules: List[PublicSchedule] = []


class PublicBookingSubmitResponse(BaseSchema):
    success: bool = True
    message: str
    booking: PublicBookingSummary


class PublicBookingStatus(BaseSchema):
    status: str
    booking: Optional[PublicBookingSummary] = None


# ── Generic ───────────────────────────────────────────────────

class MessageResponse(BaseSchema):
    message: str
    success: bool = True


class ErrorResponse(BaseSchema):
    detail: str
    code: Optional[str] = None
    state: Optional[str] = None
