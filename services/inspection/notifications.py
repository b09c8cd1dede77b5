"""
services/inspection/notifications.py
Invitation dispatch and post-commit booking emails.

Emails are never part of a database transaction. Invitations are enqueued
right after the notification row commits; booking emails are collected in
a BookingEffects outbox and dispatched once the booking change is durable.
A failed enqueue is logged and reported, never raised to the caller.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import transaction
from config.settings import settings
from services.inspection.recipients import resolve_recipient
from services.inspection.schedules import get_schedule_or_404
from shared.models.models import (
    BookerType,
    InspectionBooking,
    InspectionNotification,
    NotificationStatus,
    Property,
    ScheduleStatus,
)
from shared.schemas.schemas import NotificationOutcome, SendNotificationsResponse
from shared.utils.errors import ValidationError
from shared.utils.permissions import Actor
from shared.utils.security import generate_booking_token, get_token_expiry_date
from tasks import notification_tasks

logger = logging.getLogger(__name__)

BOOKER_LABELS = {
    BookerType.CONTACT: "Property Contact",
    BookerType.AGENCY_USER: "Agency Staff",
}


@dataclass(frozen=True)
class EmailMessage:
    to: str
    subject: str
    html: str


def enqueue_email(message: EmailMessage) -> None:
    notification_tasks.send_email.delay(message.to, message.subject, message.html)


def booking_link(token: str) -> str:
    return f"{settings.FRONTEND_URL.rstrip('/')}/book/{token}"


def _booker_name(booking: InspectionBooking) -> str:
    if booking.booker_type == BookerType.AGENCY_USER and booking.booked_by_user:
        return booking.booked_by_user.name
    return booking.contact_name


def _booking_fields(booking: InspectionBooking) -> dict:
    return {
        "address": booking.property.address,
        "schedule_date": notification_tasks.format_schedule_date(booking.slot.schedule.schedule_date),
        "start_time": booking.slot.start_time,
        "end_time": booking.slot.end_time,
    }


def booker_email(booking: InspectionBooking) -> Optional[str]:
    if booking.contact_email:
        return booking.contact_email
    if booking.booked_by_user:
        return booking.booked_by_user.email
    return None


# ── Post-commit Effects ───────────────────────────────────────

@dataclass
class BookingEffects:
    """
    Outbox for booking emails. Services add messages only after their
    transaction has committed, then call dispatch(). dispatch() never raises.
    """
    outbox: List[EmailMessage] = field(default_factory=list)

    def booking_confirmed(self, booking: InspectionBooking, recipients: Iterable[str]) -> None:
        fields = _booking_fields(booking)
        for email in _unique_emails(recipients):
            subject, body = notification_tasks.render_email(
                "BOOKING_CONFIRMED",
                recipient_name=None,
                booker_name=_booker_name(booking),
                booker_label=BOOKER_LABELS[booking.booker_type],
                **fields,
            )
            self.outbox.append(EmailMessage(to=email, subject=subject, html=body))

    def booking_rejected(self, booking: InspectionBooking) -> None:
        email = booker_email(booking)
        if not email:
            logger.info(f"Booking {booking.id} has no email address; rejection email skipped")
            return
        subject, body = notification_tasks.render_email(
            "BOOKING_REJECTED", recipient_name=booking.contact_name, **_booking_fields(booking)
        )
        self.outbox.append(EmailMessage(to=email, subject=subject, html=body))

    def booking_rescheduled(self, booking: InspectionBooking, previous: dict) -> None:
        email = booker_email(booking)
        if not email:
            logger.info(f"Booking {booking.id} has no email address; reschedule email skipped")
            return
        subject, body = notification_tasks.render_email(
            "BOOKING_RESCHEDULED",
            recipient_name=booking.contact_name,
            old_schedule_date=notification_tasks.format_schedule_date(previous["schedule_date"]),
            old_start_time=previous["start_time"],
            old_end_time=previous["end_time"],
            **_booking_fields(booking),
        )
        self.outbox.append(EmailMessage(to=email, subject=subject, html=body))

    def dispatch(self) -> int:
        """Enqueue every queued message. Returns how many were handed to the broker."""
        sent = 0
        messages, self.outbox = self.outbox, []
        for message in messages:
            try:
                enqueue_email(message)
                sent += 1
            except Exception as e:
                logger.error(f"Failed to enqueue email to {message.to}: {e}")
        return sent


def _unique_emails(emails: Iterable[Optional[str]]) -> List[str]:
    seen = set()
    unique = []
    for email in emails:
        if not email:
            continue
        key = email.strip().lower()
        if key not in seen:
            seen.add(key)
            unique.append(email.strip())
    return unique


async def confirmation_recipients(db: AsyncSession, booking: InspectionBooking) -> List[str]:
    """Every invitation recipient of the property, plus whoever made the booking."""
    result = await db.execute(
        select(InspectionNotification.recipient_email)
        .where(InspectionNotification.property_id == booking.property_id)
        .order_by(InspectionNotification.created_at)
    )
    return _unique_emails([*result.scalars().all(), booker_email(booking)])


# ── Invitation Dispatch ───────────────────────────────────────

async def send_notifications(
    db: AsyncSession,
    schedule_id: uuid.UUID,
    property_ids: List[uuid.UUID],
    actor: Actor,
) -> SendNotificationsResponse:
    """
    Invite each property's recipient to book a slot on this schedule.
    Each property is handled in its own transaction, so one failure never
    aborts the batch. A property with a live (non-failed) invitation is
    skipped; a failed one is re-issued with a fresh token.
    """
    actor.require(actor.permissions.can_send_notifications(), "send inspection notifications")

    schedule = await get_schedule_or_404(db, schedule_id)
    if schedule.status != ScheduleStatus.PUBLISHED:
        raise ValidationError("Notifications can only be sent for published schedules")
    schedule_date = notification_tasks.format_schedule_date(schedule.schedule_date)

    success: List[NotificationOutcome] = []
    failed: List[NotificationOutcome] = []
    skipped: List[NotificationOutcome] = []

    for property_id in dict.fromkeys(property_ids):
        prop = await db.get(Property, property_id)
        if prop is None or not prop.is_active:
            failed.append(NotificationOutcome(property_id=property_id, error="Property not found"))
            continue

        result = await db.execute(
            select(InspectionNotification).where(
                InspectionNotification.property_id == property_id,
                InspectionNotification.schedule_id == schedule_id,
            )
        )
        notification = result.scalar_one_or_none()
        if notification and notification.status != NotificationStatus.FAILED:
            skipped.append(NotificationOutcome(
                property_id=property_id,
                recipient_email=notification.recipient_email,
                reason="Already notified for this schedule",
            ))
            continue

        recipient = await resolve_recipient(db, prop)
        if recipient is None:
            failed.append(NotificationOutcome(
                property_id=property_id,
                error="No contact or agency user with email found",
            ))
            continue

        address = prop.address
        try:
            async with transaction(db):
                if notification is None:
                    notification = InspectionNotification(
                        schedule_id=schedule_id,
                        property_id=property_id,
                    )
                    db.add(notification)
                notification.contact_id = recipient.contact_id
                notification.user_id = recipient.user_id
                notification.recipient_type = recipient.type
                notification.recipient_name = recipient.name
                notification.recipient_email = recipient.email
                notification.booking_token = generate_booking_token()
                notification.token_expires_at = get_token_expiry_date()
                notification.status = NotificationStatus.SENT
                notification.sent_at = datetime.now(timezone.utc)
                await db.flush()
        except IntegrityError as e:
            logger.warning(f"Notification for property {property_id} not recorded: {e}")
            failed.append(NotificationOutcome(
                property_id=property_id,
                recipient_email=recipient.email,
                error="Property was notified concurrently",
            ))
            continue

        subject, body = notification_tasks.render_email(
            "BOOKING_INVITATION",
            recipient_name=recipient.name,
            address=address,
            schedule_date=schedule_date,
            booking_link=booking_link(notification.booking_token),
            ttl_days=settings.BOOKING_TOKEN_TTL_DAYS,
        )
        outcome = NotificationOutcome(
            property_id=property_id,
            recipient_email=recipient.email,
            recipient_name=recipient.name,
            recipient_type=recipient.type.value,
            recipient_role=recipient.role.value if recipient.role else None,
        )

        try:
            enqueue_email(EmailMessage(to=recipient.email, subject=subject, html=body))
        except Exception as e:
            logger.error(f"Failed to enqueue invitation for property {property_id}: {e}")
            async with transaction(db):
                notification.status = NotificationStatus.FAILED
            outcome.error = str(e)
            failed.append(outcome)
            continue

        success.append(outcome)

    logger.info(
        f"Notifications for schedule {schedule_id}: {len(success)} sent, "
        f"{len(failed)} failed, {len(skipped)} skipped"
    )
    return SendNotificationsResponse(success=success, failed=failed, skipped=skipped)
