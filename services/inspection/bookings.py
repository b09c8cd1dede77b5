"""
services/inspection/bookings.py
Booking lifecycle for inspection slots.

States: pending → confirmed | rejected
        pending | confirmed → rescheduled (status kept, slot moved)

Every transition is one transaction. Seats are taken and released with
conditional UPDATEs on the slot row, so current_bookings never leaves
[0, max_capacity] no matter how requests interleave. Confirming a booking
rejects every other pending booking of the same property and moves the
property's incomplete tasks to processing, all in the same transaction.
Emails go out after commit through BookingEffects.
"""

import logging
import math
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from typing import List, Optional
from zoneinfo import ZoneInfo

from sqlalchemy import false, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import transaction
from config.settings import settings
from services.inspection.notifications import BookingEffects, confirmation_recipients
from shared.models.models import (
    REGION_LABELS,
    BookerType,
    BookingStatus,
    InspectionBooking,
    InspectionBookingAuditLog,
    InspectionNotification,
    InspectionSchedule,
    InspectionSlot,
    Property,
    ScheduleStatus,
    Task,
    TaskStatus,
)
from shared.schemas.schemas import (
    BookedBy,
    BookingPropertySummary,
    BookingResponse,
    BookingScheduleSummary,
    BookingSlotSummary,
    PaginatedResponse,
)
from shared.utils.errors import ConflictError, NotFoundError, ValidationError
from shared.utils.permissions import Actor
from shared.utils.security import is_token_expired

logger = logging.getLogger(__name__)


@dataclass
class ContactDetails:
    name: str
    phone: Optional[str] = None
    email: Optional[str] = None
    note: Optional[str] = None


@dataclass
class ConfirmationResult:
    booking: InspectionBooking
    auto_rejected_ids: List[uuid.UUID] = field(default_factory=list)
    tasks_updated: int = 0


# ── Seat Accounting ───────────────────────────────────────────

async def _reserve_seat(db: AsyncSession, slot_id: uuid.UUID) -> bool:
    """Take one seat if the slot is open and not full. False when nothing was updated."""
    result = await db.execute(
        update(InspectionSlot)
        .where(
            InspectionSlot.id == slot_id,
            InspectionSlot.is_available.is_(True),
            InspectionSlot.current_bookings < InspectionSlot.max_capacity,
        )
        .values(current_bookings=InspectionSlot.current_bookings + 1)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def _release_seat(db: AsyncSession, slot_id: uuid.UUID) -> bool:
    """Give one seat back. A counter already at zero means it drifted; logged, not raised."""
    result = await db.execute(
        update(InspectionSlot)
        .where(InspectionSlot.id == slot_id, InspectionSlot.current_bookings > 0)
        .values(current_bookings=InspectionSlot.current_bookings - 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        logger.warning(f"Slot {slot_id} had no seat to release; booking counter out of step")
        return False
    return True


# ── Task Cascade ──────────────────────────────────────────────

def inspection_datetime(booking: InspectionBooking) -> datetime:
    """Schedule date + slot start in the inspection timezone, as UTC."""
    local = datetime.combine(
        booking.slot.schedule.schedule_date,
        time.fromisoformat(booking.slot.start_time),
        tzinfo=ZoneInfo(settings.INSPECTION_TIMEZONE),
    )
    return local.astimezone(timezone.utc)


async def _mark_tasks_processing(
    db: AsyncSession,
    property_id: uuid.UUID,
    inspection_date: datetime,
) -> int:
    result = await db.execute(
        update(Task)
        .where(
            Task.property_id == property_id,
            Task.is_active.is_(True),
            Task.status == TaskStatus.INCOMPLETE,
        )
        .values(status=TaskStatus.PROCESSING, inspection_date=inspection_date)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


async def _move_inspection_date(
    db: AsyncSession,
    property_id: uuid.UUID,
    inspection_date: datetime,
) -> int:
    """Processing tasks follow their confirmed booking when it is rescheduled."""
    result = await db.execute(
        update(Task)
        .where(
            Task.property_id == property_id,
            Task.is_active.is_(True),
            Task.status == TaskStatus.PROCESSING,
        )
        .values(inspection_date=inspection_date)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


# ── Helpers ───────────────────────────────────────────────────

def inspection_today() -> date:
    return datetime.now(ZoneInfo(settings.INSPECTION_TIMEZONE)).date()


async def _upcoming_confirmed_booking(
    db: AsyncSession,
    property_id: uuid.UUID,
    exclude_id: Optional[uuid.UUID] = None,
    lock: bool = False,
) -> Optional[uuid.UUID]:
    """Id of a confirmed booking for the property on a schedule dated today or later."""
    stmt = (
        select(InspectionBooking.id)
        .join(InspectionSlot, InspectionSlot.id == InspectionBooking.slot_id)
        .join(InspectionSchedule, InspectionSchedule.id == InspectionSlot.schedule_id)
        .where(
            InspectionBooking.property_id == property_id,
            InspectionBooking.status == BookingStatus.CONFIRMED,
            InspectionSchedule.schedule_date >= inspection_today(),
        )
        .limit(1)
    )
    if exclude_id is not None:
        stmt = stmt.where(InspectionBooking.id != exclude_id)
    if lock:
        stmt = stmt.with_for_update(of=InspectionBooking)
    return await db.scalar(stmt)


def _log_status_change(
    db: AsyncSession,
    booking_id: uuid.UUID,
    from_status: Optional[BookingStatus],
    to_status: BookingStatus,
    changed_by_id: Optional[uuid.UUID],
    reason: Optional[str] = None,
    metadata: Optional[dict] = None,
) -> None:
    """Append an immutable audit log entry for every status change."""
    db.add(InspectionBookingAuditLog(
        booking_id=booking_id,
        from_status=from_status.value if from_status else None,
        to_status=to_status.value,
        changed_by_id=changed_by_id,
        reason=reason,
        audit_metadata=metadata,
    ))


async def _load_booking(
    db: AsyncSession,
    booking_id: uuid.UUID,
    lock: bool = False,
) -> InspectionBooking:
    stmt = (
        select(InspectionBooking)
        .where(InspectionBooking.id == booking_id)
        .execution_options(populate_existing=True)
    )
    if lock:
        stmt = stmt.with_for_update(of=InspectionBooking)
    result = await db.execute(stmt)
    booking = result.unique().scalar_one_or_none()
    if not booking:
        raise NotFoundError("Booking not found")
    return booking


def serialize_booking(booking: InspectionBooking, result: Optional[ConfirmationResult] = None) -> BookingResponse:
    if booking.booker_type == BookerType.AGENCY_USER and booking.booked_by_user:
        booked_by = BookedBy(
            type=BookerType.AGENCY_USER.value,
            type_label="Agency Staff",
            name=booking.booked_by_user.name,
            email=booking.booked_by_user.email,
            role=booking.booked_by_user.role.value,
        )
    else:
        booked_by = BookedBy(
            type=BookerType.CONTACT.value,
            type_label="Property Contact",
            name=booking.contact_name,
            email=booking.contact_email,
        )

    schedule = booking.slot.schedule
    return BookingResponse(
        id=booking.id,
        status=booking.status.value,
        booker_type=booking.booker_type.value,
        booked_by=booked_by,
        contact_name=booking.contact_name,
        contact_phone=booking.contact_phone,
        contact_email=booking.contact_email,
        note=booking.note,
        slot=BookingSlotSummary(
            id=booking.slot.id,
            start_time=booking.slot.start_time,
            end_time=booking.slot.end_time,
        ),
        schedule=BookingScheduleSummary(
            id=schedule.id,
            region=schedule.region.value,
            region_label=REGION_LABELS[schedule.region],
            schedule_date=schedule.schedule_date,
        ),
        property=BookingPropertySummary(id=booking.property.id, address=booking.property.address),
        confirmed_by_id=booking.confirmed_by_id,
        confirmed_at=booking.confirmed_at,
        created_at=booking.created_at,
        updated_at=booking.updated_at,
        auto_rejected_count=len(result.auto_rejected_ids) if result else None,
        tasks_updated=result.tasks_updated if result else None,
    )


# ── Service ───────────────────────────────────────────────────

class BookingService:
    def __init__(self, db: AsyncSession, effects: Optional[BookingEffects] = None):
        self.db = db
        self.effects = effects or BookingEffects()

    # ── Queries ───────────────────────────────────────────────

    async def list_bookings(
        self,
        actor: Actor,
        schedule_id: Optional[uuid.UUID] = None,
        property_id: Optional[uuid.UUID] = None,
        status: Optional[BookingStatus] = None,
        page: int = 1,
        page_size: int = settings.DEFAULT_PAGE_SIZE,
    ) -> PaginatedResponse:
        actor.require(actor.permissions.can_view_bookings(), "view bookings")

        filters = []
        if schedule_id:
            filters.append(InspectionBooking.slot_id.in_(
                select(InspectionSlot.id).where(InspectionSlot.schedule_id == schedule_id)
            ))
        if property_id:
            filters.append(InspectionBooking.property_id == property_id)
        if status:
            filters.append(InspectionBooking.status == status)
        if actor.permissions.is_agency_member:
            if actor.agency_id is None:
                filters.append(false())
            else:
                filters.append(InspectionBooking.property_id.in_(
                    select(Property.id).where(Property.agency_id == actor.agency_id)
                ))

        total = await self.db.scalar(select(func.count(InspectionBooking.id)).where(*filters))
        result = await self.db.execute(
            select(InspectionBooking)
            .where(*filters)
            .order_by(InspectionBooking.created_at.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        return PaginatedResponse(
            items=[serialize_booking(b) for b in result.unique().scalars().all()],
            total=total or 0,
            page=page,
            page_size=page_size,
            pages=math.ceil((total or 0) / page_size),
        )

    async def get_booking(self, booking_id: uuid.UUID, actor: Actor) -> InspectionBooking:
        actor.require(actor.permissions.can_view_bookings(), "view bookings")
        booking = await _load_booking(self.db, booking_id)
        if actor.permissions.is_agency_member and booking.property.agency_id != actor.agency_id:
            # Same answer as a missing booking
            raise NotFoundError("Booking not found")
        return booking

    # ── Transitions ───────────────────────────────────────────

    async def submit_booking(
        self,
        token: str,
        slot_id: uuid.UUID,
        contact: ContactDetails,
    ) -> InspectionBooking:
        """
        Create a pending booking from an invitation token.
        The token is single-use: the unique index on booking_token settles
        concurrent submissions, and the loser gets a ConflictError.
        """
        db = self.db
        result = await db.execute(
            select(InspectionNotification).where(InspectionNotification.booking_token == token)
        )
        notification = result.scalar_one_or_none()
        if not notification:
            raise NotFoundError("Invalid or expired booking link", state="invalid_link")

        already = await db.scalar(
            select(InspectionBooking.id).where(InspectionBooking.booking_token == token)
        )
        if already:
            raise ConflictError("A booking has already been made with this link", state="already_booked")

        if is_token_expired(notification.token_expires_at):
            raise ValidationError("This booking link has expired", state="expired")

        processing = await db.scalar(
            select(Task.id)
            .where(
                Task.property_id == notification.property_id,
                Task.is_active.is_(True),
                Task.status == TaskStatus.PROCESSING,
            )
            .limit(1)
        )
        if processing:
            raise ConflictError(
                "An inspection is already being processed for this property",
                state="processing",
            )
        if await _upcoming_confirmed_booking(db, notification.property_id):
            raise ConflictError(
                "An inspection is already confirmed for this property",
                state="processing",
            )

        slot = await db.scalar(
            select(InspectionSlot)
            .join(InspectionSlot.schedule)
            .where(
                InspectionSlot.id == slot_id,
                InspectionSchedule.is_active.is_(True),
                InspectionSchedule.status == ScheduleStatus.PUBLISHED,
                InspectionSchedule.region == notification.schedule.region,
            )
        )
        if slot is None:
            raise ValidationError("Selected time slot is not available")

        is_contact = notification.recipient_type == BookerType.CONTACT
        async with transaction(db):
            if not await _reserve_seat(db, slot.id):
                raise ValidationError("This time slot is no longer available")

            booking = InspectionBooking(
                slot_id=slot.id,
                property_id=notification.property_id,
                contact_id=notification.contact_id if is_contact else None,
                booked_by_user_id=None if is_contact else notification.user_id,
                booker_type=notification.recipient_type,
                contact_name=contact.name,
                contact_phone=contact.phone,
                contact_email=contact.email,
                note=contact.note,
                status=BookingStatus.PENDING,
                booking_token=token,
                token_expires_at=notification.token_expires_at,
            )
            db.add(booking)
            try:
                await db.flush()
            except IntegrityError:
                raise ConflictError(
                    "A booking has already been made with this link", state="already_booked"
                )
            _log_status_change(
                db, booking.id, None, BookingStatus.PENDING,
                changed_by_id=booking.booked_by_user_id,
                reason="Submitted from booking link",
            )

        logger.info(f"Booking {booking.id} submitted for property {booking.property_id}")
        return await _load_booking(db, booking.id)

    async def confirm_booking(
        self,
        booking_id: uuid.UUID,
        actor: Actor,
        send_notification: bool = True,
        note: Optional[str] = None,
    ) -> ConfirmationResult:
        """
        Confirm one booking and settle the property in the same transaction:
        other pending bookings of the property are rejected (their seats
        released, no email) and incomplete tasks move to processing with the
        inspection date. A second confirm of the same booking fails on the
        status check, so retries are safe.
        """
        actor.require(actor.permissions.can_confirm_bookings(), "confirm bookings")
        db = self.db

        async with transaction(db):
            booking = await _load_booking(db, booking_id, lock=True)
            if booking.status != BookingStatus.PENDING:
                raise ValidationError(f"Cannot confirm a booking with status: {booking.status.value}")
            if await _upcoming_confirmed_booking(db, booking.property_id, exclude_id=booking.id, lock=True):
                raise ConflictError("Another booking is already confirmed for this property")

            now = datetime.now(timezone.utc)
            booking.status = BookingStatus.CONFIRMED
            booking.confirmed_by_id = actor.id
            booking.confirmed_at = now
            _log_status_change(
                db, booking.id, BookingStatus.PENDING, BookingStatus.CONFIRMED, actor.id, reason=note
            )

            siblings = await db.execute(
                select(InspectionBooking)
                .where(
                    InspectionBooking.property_id == booking.property_id,
                    InspectionBooking.status == BookingStatus.PENDING,
                    InspectionBooking.id != booking.id,
                )
                .with_for_update(of=InspectionBooking)
            )
            auto_rejected = []
            for other in siblings.unique().scalars().all():
                await _release_seat(db, other.slot_id)
                other.status = BookingStatus.REJECTED
                _log_status_change(
                    db, other.id, BookingStatus.PENDING, BookingStatus.REJECTED, actor.id,
                    reason="Auto-rejected: another booking for this property was confirmed",
                    metadata={"confirmed_booking_id": str(booking.id)},
                )
                auto_rejected.append(other.id)
                logger.info(
                    f"Auto-rejected booking {other.id} for property {booking.property_id} "
                    f"(confirmed {booking.id})"
                )

            tasks_updated = await _mark_tasks_processing(
                db, booking.property_id, inspection_datetime(booking)
            )
            await db.flush()

        booking = await _load_booking(db, booking_id)
        result = ConfirmationResult(
            booking=booking,
            auto_rejected_ids=auto_rejected,
            tasks_updated=tasks_updated,
        )
        logger.info(
            f"Booking {booking_id} confirmed by {actor.id}: "
            f"{len(auto_rejected)} auto-rejected, {tasks_updated} tasks updated"
        )

        if send_notification:
            try:
                self.effects.booking_confirmed(booking, await confirmation_recipients(db, booking))
            except Exception as e:
                logger.error(f"Failed to prepare confirmation emails for booking {booking_id}: {e}")
            self.effects.dispatch()
        return result

    async def reject_booking(
        self,
        booking_id: uuid.UUID,
        actor: Actor,
        note: Optional[str] = None,
        send_notification: bool = True,
    ) -> InspectionBooking:
        actor.require(actor.permissions.can_reject_bookings(), "reject bookings")
        db = self.db

        async with transaction(db):
            booking = await _load_booking(db, booking_id, lock=True)
            if booking.status != BookingStatus.PENDING:
                raise ValidationError(f"Cannot reject a booking with status: {booking.status.value}")

            await _release_seat(db, booking.slot_id)
            booking.status = BookingStatus.REJECTED
            booking.confirmed_by_id = actor.id
            booking.confirmed_at = datetime.now(timezone.utc)
            _log_status_change(
                db, booking.id, BookingStatus.PENDING, BookingStatus.REJECTED, actor.id, reason=note
            )

        booking = await _load_booking(db, booking_id)
        logger.info(f"Booking {booking_id} rejected by {actor.id}")

        if send_notification:
            try:
                self.effects.booking_rejected(booking)
            except Exception as e:
                logger.error(f"Failed to prepare rejection email for booking {booking_id}: {e}")
            self.effects.dispatch()
        return booking

    async def reschedule_booking(
        self,
        booking_id: uuid.UUID,
        new_slot_id: uuid.UUID,
        actor: Actor,
        note: Optional[str] = None,
        send_notification: bool = True,
    ) -> InspectionBooking:
        """Move a pending or confirmed booking to another slot; the status is kept."""
        actor.require(actor.permissions.can_reschedule_bookings(), "reschedule bookings")
        db = self.db

        async with transaction(db):
            booking = await _load_booking(db, booking_id, lock=True)
            if booking.status not in (BookingStatus.PENDING, BookingStatus.CONFIRMED):
                raise ValidationError(
                    f"Cannot reschedule a booking with status: {booking.status.value}"
                )

            new_slot = await db.get(InspectionSlot, new_slot_id)
            if new_slot is None:
                raise NotFoundError("Time slot not found")
            if new_slot.id == booking.slot_id:
                raise ValidationError("Booking is already in this time slot")
            target = new_slot.schedule
            if (
                not target.is_active
                or target.status != ScheduleStatus.PUBLISHED
                or target.region != booking.slot.schedule.region
            ):
                raise ValidationError("The selected time slot is not available")

            previous = {
                "slot_id": str(booking.slot_id),
                "schedule_date": booking.slot.schedule.schedule_date,
                "start_time": booking.slot.start_time,
                "end_time": booking.slot.end_time,
            }
            await _release_seat(db, booking.slot_id)
            if not await _reserve_seat(db, new_slot.id):
                raise ValidationError("The selected time slot is not available")

            booking.slot = new_slot
            if note is not None:
                booking.note = note
            if booking.status == BookingStatus.CONFIRMED:
                await _move_inspection_date(db, booking.property_id, inspection_datetime(booking))
            _log_status_change(
                db, booking.id, booking.status, booking.status, actor.id,
                reason=note or "Rescheduled",
                metadata={"from_slot_id": previous["slot_id"], "to_slot_id": str(new_slot.id)},
            )

        booking = await _load_booking(db, booking_id)
        logger.info(f"Booking {booking_id} moved to slot {new_slot_id} by {actor.id}")

        if send_notification:
            try:
                self.effects.booking_rescheduled(booking, previous)
            except Exception as e:
                logger.error(f"Failed to prepare reschedule email for booking {booking_id}: {e}")
            self.effects.dispatch()
        return booking
