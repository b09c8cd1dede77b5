"""
services/public_booking/gateway.py
Token-authenticated booking flow for tenants and agency staff.
The invitation token is the only credential; it never expires a booking,
only the ability to make one.
"""

from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from services.inspection.bookings import BookingService, ContactDetails, inspection_today
from shared.models.models import (
    REGION_LABELS,
    InspectionBooking,
    InspectionNotification,
    InspectionSchedule,
    ScheduleStatus,
)
from shared.schemas.schemas import (
    PublicBookingPage,
    PublicBookingStatus,
    PublicBookingSubmitRequest,
    PublicBookingSubmitResponse,
    PublicBookingSummary,
    PublicContact,
    PublicSchedule,
    PublicSlot,
)
from shared.utils.errors import NotFoundError, ValidationError
from shared.utils.security import is_token_expired


# ── Masking ───────────────────────────────────────────────────

def mask_phone(phone: Optional[str]) -> Optional[str]:
    """'0412345678' → '041****678'"""
    if not phone:
        return None
    if len(phone) <= 6:
        return "*" * len(phone)
    return phone[:3] + "*" * (len(phone) - 6) + phone[-3:]


def mask_email(email: Optional[str]) -> Optional[str]:
    """'jane@example.com' → 'j**e@example.com'"""
    if not email:
        return None
    local, sep, domain = email.partition("@")
    if not sep:
        return email
    if len(local) <= 2:
        masked = "*" * len(local)
    else:
        masked = local[0] + "*" * (len(local) - 2) + local[-1]
    return f"{masked}@{domain}"


# ── Lookups ───────────────────────────────────────────────────

async def _find_notification(db: AsyncSession, token: str) -> Optional[InspectionNotification]:
    result = await db.execute(
        select(InspectionNotification).where(InspectionNotification.booking_token == token)
    )
    return result.scalar_one_or_none()


async def _find_booking(db: AsyncSession, token: str) -> Optional[InspectionBooking]:
    result = await db.execute(
        select(InspectionBooking)
        .where(InspectionBooking.booking_token == token)
        .execution_options(populate_existing=True)
    )
    return result.unique().scalar_one_or_none()


def serialize_public_booking(booking: InspectionBooking) -> PublicBookingSummary:
    schedule = booking.slot.schedule
    return PublicBookingSummary(
        id=booking.id,
        status=booking.status.value,
        contact_name=booking.contact_name,
        start_time=booking.slot.start_time,
        end_time=booking.slot.end_time,
        region=schedule.region.value,
        region_label=REGION_LABELS[schedule.region],
        schedule_date=schedule.schedule_date,
        property_address=booking.property.address,
        note=booking.note,
        created_at=booking.created_at,
    )


# ── Operations ────────────────────────────────────────────────

async def get_booking_page_data(db: AsyncSession, token: str) -> PublicBookingPage:
    """
    Everything the booking page needs for one link: the existing booking if
    the link was used, otherwise every upcoming open slot in the region.
    """
    notification = await _find_notification(db, token)
    if not notification:
        raise NotFoundError("Invalid or expired booking link", state="invalid_link")

    booking = await _find_booking(db, token)
    if booking:
        return PublicBookingPage(already_booked=True, booking=serialize_public_booking(booking))

    if is_token_expired(notification.token_expires_at):
        raise ValidationError("This booking link has expired", state="expired")

    region = notification.schedule.region
    result = await db.execute(
        select(InspectionSchedule)
        .options(selectinload(InspectionSchedule.slots))
        .where(
            InspectionSchedule.region == region,
            InspectionSchedule.status == ScheduleStatus.PUBLISHED,
            InspectionSchedule.is_active.is_(True),
            InspectionSchedule.schedule_date >= inspection_today(),
        )
        .order_by(InspectionSchedule.schedule_date)
        .execution_options(populate_existing=True)
    )

    schedules = []
    for schedule in result.scalars().all():
        open_slots = [
            PublicSlot(
                id=slot.id,
                start_time=slot.start_time,
                end_time=slot.end_time,
                available_spots=slot.available_spots,
            )
            for slot in schedule.slots
            if slot.has_capacity
        ]
        if open_slots:
            schedules.append(PublicSchedule(
                id=schedule.id,
                schedule_date=schedule.schedule_date,
                is_invited_date=schedule.id == notification.schedule_id,
                slots=open_slots,
            ))

    if not schedules:
        raise ValidationError("No inspection times are currently available", state="no_slots")

    contact = notification.contact
    return PublicBookingPage(
        already_booked=False,
        property_address=notification.property.address,
        region=region.value,
        region_label=REGION_LABELS[region],
        contact=PublicContact(
            name=contact.name if contact else notification.recipient_name,
            phone=mask_phone(contact.phone if contact else None),
            email=mask_email(notification.recipient_email),
        ),
        schedules=schedules,
    )


async def submit_booking(
    db: AsyncSession,
    token: str,
    data: PublicBookingSubmitRequest,
) -> PublicBookingSubmitResponse:
    booking = await BookingService(db).submit_booking(
        token,
        data.slot_id,
        ContactDetails(
            name=data.contact_name,
            phone=data.contact_phone,
            email=data.contact_email,
            note=data.note,
        ),
    )
    return PublicBookingSubmitResponse(
        message="Your booking has been submitted successfully",
        booking=serialize_public_booking(booking),
    )


async def get_booking_status(db: AsyncSession, token: str) -> PublicBookingStatus:
    booking = await _find_booking(db, token)
    if booking:
        return PublicBookingStatus(
            status=booking.status.value,
            booking=serialize_public_booking(booking),
        )
    if await _find_notification(db, token):
        return PublicBookingStatus(status="not_booked")
    raise NotFoundError("Invalid booking link", state="invalid_link")
