"""
tests/test_bookings.py
Booking lifecycle: submission from a booking link, capacity accounting,
rejection, rescheduling and role checks.
"""

import logging
from datetime import datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest
from httpx import AsyncClient
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from services.inspection.bookings import BookingService, ContactDetails, _release_seat
from shared.models.models import (
    BookerType,
    BookingStatus,
    InspectionBooking,
    InspectionBookingAuditLog,
    InspectionSlot,
    Region,
    ScheduleStatus,
    Task,
    TaskStatus,
    User,
)
from shared.utils.errors import ValidationError
from shared.utils.security import as_utc
from tests.conftest import auth_headers, booking_payload, next_week


async def _seats(db: AsyncSession, slot_id) -> int:
    slot = await db.get(InspectionSlot, slot_id)
    await db.refresh(slot)
    return slot.current_bookings


@pytest.fixture
def invited_property(make_property, make_contact, make_invitation):
    """Property with a tenant contact, invited to the given schedule. Returns (property, token)."""
    async def _make(schedule, address="10 Booking Street", email="tina@example.com"):
        prop = await make_property(address=address)
        contact = await make_contact(prop, email=email)
        invitation = await make_invitation(prop, schedule, contact=contact)
        return prop, invitation.booking_token
    return _make


# ── Submission ─────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_submit_booking_creates_pending_and_takes_seat(
    client: AsyncClient, db: AsyncSession, make_schedule, invited_property
):
    schedule = await make_schedule()
    slot_id = schedule.slots[0].id
    prop, token = await invited_property(schedule)

    response = await client.post(
        f"/public/bookings/{token}",
        json=booking_payload(slot_id, contact_phone="0400000000", note="Dog in backyard"),
    )
    assert response.status_code == 201
    data = response.json()
    assert data["success"] is True
    assert data["booking"]["status"] == "pending"
    assert data["booking"]["start_time"] == "09:00"
    assert data["booking"]["property_address"] == "10 Booking Street"

    booking = await db.scalar(select(InspectionBooking).where(InspectionBooking.booking_token == token))
    assert booking.booker_type == BookerType.CONTACT
    assert booking.contact_id is not None
    assert booking.booked_by_user_id is None
    assert booking.property_id == prop.id
    assert await _seats(db, slot_id) == 1

    audit = (await db.execute(select(InspectionBookingAuditLog))).scalars().all()
    assert [(a.from_status, a.to_status) for a in audit] == [(None, "pending")]


@pytest.mark.asyncio
async def test_agency_user_invitation_books_as_agency_user(
    client: AsyncClient,
    db: AsyncSession,
    agency_user: User,
    make_schedule,
    make_property,
    make_invitation,
):
    schedule = await make_schedule()
    slot_id = schedule.slots[0].id
    prop = await make_property()
    invitation = await make_invitation(prop, schedule, user=agency_user)
    token = invitation.booking_token

    response = await client.post(f"/public/bookings/{token}", json=booking_payload(slot_id, "Sam Staff"))
    assert response.status_code == 201

    booking = await db.scalar(select(InspectionBooking).where(InspectionBooking.booking_token == token))
    assert booking.booker_type == BookerType.AGENCY_USER
    assert booking.booked_by_user_id == agency_user.id
    assert booking.contact_id is None


@pytest.mark.asyncio
async def test_full_slot_rejects_second_booking(
    client: AsyncClient, db: AsyncSession, make_schedule, invited_property
):
    schedule = await make_schedule(max_capacity=1)
    slot_id = schedule.slots[0].id
    _, token_a = await invited_property(schedule, address="A Street", email="a@example.com")
    _, token_b = await invited_property(schedule, address="B Street", email="b@example.com")

    first = await client.post(f"/public/bookings/{token_a}", json=booking_payload(slot_id, "A"))
    second = await client.post(f"/public/bookings/{token_b}", json=booking_payload(slot_id, "B"))

    assert first.status_code == 201
    assert second.status_code == 400
    assert second.json()["detail"] == "This time slot is no longer available"
    assert await _seats(db, slot_id) == 1

    bookings = (await db.execute(select(InspectionBooking))).scalars().all()
    assert len(bookings) == 1


@pytest.mark.asyncio
async def test_capacity_two_takes_two_bookings(
    client: AsyncClient, db: AsyncSession, make_schedule, invited_property
):
    schedule = await make_schedule(max_capacity=2)
    slot_id = schedule.slots[1].id
    tokens = [
        (await invited_property(schedule, address=f"{n} Shared Street", email=f"t{n}@example.com"))[1]
        for n in range(3)
    ]

    statuses = [
        (await client.post(f"/public/bookings/{token}", json=booking_payload(slot_id))).status_code
        for token in tokens
    ]

    assert statuses == [201, 201, 400]
    assert await _seats(db, slot_id) == 2


@pytest.mark.asyncio
async def test_stale_seat_count_cannot_overbook(db: AsyncSession, make_schedule, invited_property):
    schedule = await make_schedule(max_capacity=1)
    slot = schedule.slots[0]
    slot_id = slot.id
    _, token = await invited_property(schedule)

    # A competing writer takes the last seat after this session loaded the slot.
    await db.execute(
        update(InspectionSlot)
        .where(InspectionSlot.id == slot_id)
        .values(current_bookings=InspectionSlot.current_bookings + 1)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    assert slot.current_bookings == 0

    with pytest.raises(ValidationError) as exc_info:
        await BookingService(db).submit_booking(token, slot_id, ContactDetails(name="Tina Tenant"))

    assert exc_info.value.detail == "This time slot is no longer available"
    assert await _seats(db, slot_id) == 1
    assert (await db.execute(select(InspectionBooking))).scalars().all() == []


@pytest.mark.asyncio
async def test_release_on_empty_slot_logs_drift(db: AsyncSession, make_schedule, caplog):
    schedule = await make_schedule()
    slot_id = schedule.slots[0].id

    with caplog.at_level(logging.WARNING, logger="services.inspection.bookings"):
        released = await _release_seat(db, slot_id)
    await db.commit()

    assert released is False
    assert f"Slot {slot_id} had no seat to release" in caplog.text
    assert await _seats(db, slot_id) == 0


@pytest.mark.asyncio
async def test_token_is_single_use(client: AsyncClient, db: AsyncSession, make_schedule, invited_property):
    schedule = await make_schedule()
    first_slot, second_slot = schedule.slots[0].id, schedule.slots[1].id
    _, token = await invited_property(schedule)

    first = await client.post(f"/public/bookings/{token}", json=booking_payload(first_slot))
    again = await client.post(f"/public/bookings/{token}", json=booking_payload(second_slot))

    assert first.status_code == 201
    assert again.status_code == 409
    assert again.json()["state"] == "already_booked"
    assert await _seats(db, second_slot) == 0


@pytest.mark.asyncio
async def test_processing_task_blocks_submission(
    client: AsyncClient, make_schedule, make_property, make_contact, make_invitation, make_task
):
    schedule = await make_schedule()
    slot_id = schedule.slots[0].id
    prop = await make_property()
    contact = await make_contact(prop)
    await make_task(prop, status=TaskStatus.PROCESSING)
    invitation = await make_invitation(prop, schedule, contact=contact)

    response = await client.post(
        f"/public/bookings/{invitation.booking_token}", json=booking_payload(slot_id)
    )
    assert response.status_code == 409
    assert response.json()["code"] == "CONFLICT"


@pytest.mark.asyncio
async def test_expired_link_cannot_book(
    client: AsyncClient, make_schedule, make_property, make_contact, make_invitation
):
    schedule = await make_schedule()
    slot_id = schedule.slots[0].id
    prop = await make_property()
    contact = await make_contact(prop)
    invitation = await make_invitation(
        prop, schedule, contact=contact,
        expires_at=datetime.now(timezone.utc) - timedelta(minutes=1),
    )

    response = await client.post(
        f"/public/bookings/{invitation.booking_token}", json=booking_payload(slot_id)
    )
    assert response.status_code == 400
    assert response.json()["state"] == "expired"


@pytest.mark.asyncio
async def test_unknown_token_is_invalid_link(client: AsyncClient, make_schedule):
    schedule = await make_schedule()
    response = await client.post(
        f"/public/bookings/{'0' * 64}", json=booking_payload(schedule.slots[0].id)
    )
    assert response.status_code == 404
    assert response.json()["state"] == "invalid_link"


@pytest.mark.asyncio
async def test_slot_on_closed_schedule_is_unavailable(
    client: AsyncClient, db: AsyncSession, make_schedule, invited_property
):
    invited_to = await make_schedule()
    closed = await make_schedule(
        schedule_date=invited_to.schedule_date + timedelta(days=1),
        status=ScheduleStatus.CLOSED,
    )
    closed_slot = closed.slots[0].id
    _, token = await invited_property(invited_to)

    response = await client.post(f"/public/bookings/{token}", json=booking_payload(closed_slot))
    assert response.status_code == 400
    assert await _seats(db, closed_slot) == 0


@pytest.mark.asyncio
async def test_missing_contact_name_is_422(client: AsyncClient, make_schedule, invited_property):
    schedule = await make_schedule()
    _, token = await invited_property(schedule)
    response = await client.post(
        f"/public/bookings/{token}", json={"slot_id": str(schedule.slots[0].id)}
    )
    assert response.status_code == 422


# ── Rejection ──────────────────────────────────────────────────────────────────

async def _submit(client: AsyncClient, db: AsyncSession, token: str, slot_id, **extra) -> InspectionBooking:
    response = await client.post(f"/public/bookings/{token}", json=booking_payload(slot_id, **extra))
    assert response.status_code == 201
    return await db.scalar(select(InspectionBooking).where(InspectionBooking.booking_token == token))


@pytest.mark.asyncio
async def test_reject_releases_seat_and_emails_booker(
    client: AsyncClient, db: AsyncSession, admin: User, make_schedule, invited_property, email_outbox
):
    schedule = await make_schedule()
    slot_id = schedule.slots[0].id
    _, token = await invited_property(schedule)
    booking = await _submit(client, db, token, slot_id, contact_email="booker@example.com")

    response = await client.post(
        f"/inspections/bookings/{booking.id}/reject",
        headers=auth_headers(admin),
        json={"note": "Inspector double-booked"},
    )
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "rejected"
    assert data["confirmed_by_id"] == str(admin.id)
    assert data["confirmed_at"] is not None
    assert await _seats(db, slot_id) == 0

    email_outbox.assert_called_once()
    to, subject, _ = email_outbox.call_args.args
    assert to == "booker@example.com"
    assert subject == "Booking Update - 10 Booking Street"


@pytest.mark.asyncio
async def test_reject_without_notification_sends_nothing(
    client: AsyncClient, db: AsyncSession, admin: User, make_schedule, invited_property, email_outbox
):
    schedule = await make_schedule()
    _, token = await invited_property(schedule)
    booking = await _submit(client, db, token, schedule.slots[0].id, contact_email="b@example.com")

    response = await client.post(
        f"/inspections/bookings/{booking.id}/reject",
        headers=auth_headers(admin),
        json={"send_notification": False},
    )
    assert response.status_code == 200
    email_outbox.assert_not_called()


@pytest.mark.asyncio
async def test_reject_twice_fails(
    client: AsyncClient, db: AsyncSession, admin: User, make_schedule, invited_property
):
    schedule = await make_schedule()
    slot_id = schedule.slots[0].id
    _, token = await invited_property(schedule)
    booking = await _submit(client, db, token, slot_id)
    booking_id = booking.id
    headers = auth_headers(admin)

    first = await client.post(f"/inspections/bookings/{booking_id}/reject", headers=headers, json={})
    second = await client.post(f"/inspections/bookings/{booking_id}/reject", headers=headers, json={})

    assert first.status_code == 200
    assert second.status_code == 400
    assert "Cannot reject" in second.json()["detail"]
    assert await _seats(db, slot_id) == 0


# ── Reschedule ─────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_reschedule_moves_seat_and_keeps_status(
    client: AsyncClient, db: AsyncSession, admin: User, make_schedule, invited_property, email_outbox
):
    schedule = await make_schedule()
    old_slot, new_slot = schedule.slots[0].id, schedule.slots[1].id
    _, token = await invited_property(schedule)
    booking = await _submit(client, db, token, old_slot, contact_email="booker@example.com")

    response = await client.post(
        f"/inspections/bookings/{booking.id}/reschedule",
        headers=auth_headers(admin),
        json={"slot_id": str(new_slot), "note": "Moved to later"},
    )
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "pending"
    assert data["slot"]["id"] == str(new_slot)
    assert data["note"] == "Moved to later"
    assert await _seats(db, old_slot) == 0
    assert await _seats(db, new_slot) == 1

    email_outbox.assert_called_once()
    assert email_outbox.call_args.args[1] == "Booking Rescheduled - 10 Booking Street"


@pytest.mark.asyncio
async def test_reschedule_to_full_slot_changes_nothing(
    client: AsyncClient, db: AsyncSession, admin: User, make_schedule, invited_property
):
    schedule = await make_schedule(max_capacity=1)
    slot_a, slot_b = schedule.slots[0].id, schedule.slots[1].id
    _, token_a = await invited_property(schedule, address="A Street", email="a@example.com")
    _, token_b = await invited_property(schedule, address="B Street", email="b@example.com")
    booking = await _submit(client, db, token_a, slot_a)
    booking_id = booking.id
    await _submit(client, db, token_b, slot_b)

    response = await client.post(
        f"/inspections/bookings/{booking_id}/reschedule",
        headers=auth_headers(admin),
        json={"slot_id": str(slot_b)},
    )
    assert response.status_code == 400
    assert await _seats(db, slot_a) == 1
    assert await _seats(db, slot_b) == 1

    booking = await db.get(InspectionBooking, booking_id)
    await db.refresh(booking)
    assert booking.slot_id == slot_a


@pytest.mark.asyncio
async def test_reschedule_to_same_slot_fails(
    client: AsyncClient, db: AsyncSession, admin: User, make_schedule, invited_property
):
    schedule = await make_schedule()
    slot_id = schedule.slots[0].id
    _, token = await invited_property(schedule)
    booking = await _submit(client, db, token, slot_id)

    response = await client.post(
        f"/inspections/bookings/{booking.id}/reschedule",
        headers=auth_headers(admin),
        json={"slot_id": str(slot_id)},
    )
    assert response.status_code == 400
    assert await _seats(db, slot_id) == 1


@pytest.mark.asyncio
async def test_reschedule_to_unknown_slot_is_404(
    client: AsyncClient, db: AsyncSession, admin: User, make_schedule, invited_property
):
    schedule = await make_schedule()
    _, token = await invited_property(schedule)
    booking = await _submit(client, db, token, schedule.slots[0].id)

    response = await client.post(
        f"/inspections/bookings/{booking.id}/reschedule",
        headers=auth_headers(admin),
        json={"slot_id": "00000000-0000-0000-0000-000000000000"},
    )
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_rejected_booking_cannot_be_rescheduled(
    client: AsyncClient, db: AsyncSession, admin: User, make_schedule, invited_property
):
    schedule = await make_schedule()
    new_slot = schedule.slots[1].id
    _, token = await invited_property(schedule)
    booking = await _submit(client, db, token, schedule.slots[0].id)
    booking_id = booking.id
    headers = auth_headers(admin)

    await client.post(f"/inspections/bookings/{booking_id}/reject", headers=headers, json={})
    response = await client.post(
        f"/inspections/bookings/{booking_id}/reschedule",
        headers=headers,
        json={"slot_id": str(new_slot)},
    )
    assert response.status_code == 400
    assert await _seats(db, new_slot) == 0


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "target",
    [
        {"status": ScheduleStatus.CLOSED, "schedule_date": next_week() + timedelta(days=1)},
        {"region": Region.WEST},
    ],
    ids=["closed-schedule", "other-region"],
)
async def test_reschedule_target_must_be_open_in_same_region(
    target, client: AsyncClient, db: AsyncSession, admin: User, make_schedule, invited_property
):
    schedule = await make_schedule()
    old_slot = schedule.slots[0].id
    other = await make_schedule(**target)
    new_slot = other.slots[0].id
    _, token = await invited_property(schedule)
    booking = await _submit(client, db, token, old_slot)
    booking_id = booking.id

    response = await client.post(
        f"/inspections/bookings/{booking_id}/reschedule",
        headers=auth_headers(admin),
        json={"slot_id": str(new_slot)},
    )
    assert response.status_code == 400
    assert response.json()["detail"] == "The selected time slot is not available"
    assert await _seats(db, old_slot) == 1
    assert await _seats(db, new_slot) == 0

    booking = await db.get(InspectionBooking, booking_id)
    await db.refresh(booking)
    assert booking.slot_id == old_slot


@pytest.mark.asyncio
async def test_reschedule_confirmed_booking_moves_inspection_date(
    client: AsyncClient, db: AsyncSession, admin: User, make_schedule, make_task, invited_property
):
    schedule = await make_schedule()
    later = await make_schedule(
        schedule_date=next_week() + timedelta(days=3), start_time="13:00", end_time="14:00"
    )
    old_slot, new_slot, later_date = schedule.slots[0].id, later.slots[1].id, later.schedule_date
    prop, token = await invited_property(schedule)
    task = await make_task(prop)
    task_id = task.id
    booking = await _submit(client, db, token, old_slot)
    booking_id = booking.id
    headers = auth_headers(admin)

    confirmed = await client.post(f"/inspections/bookings/{booking_id}/confirm", headers=headers, json={})
    assert confirmed.status_code == 200

    response = await client.post(
        f"/inspections/bookings/{booking_id}/reschedule",
        headers=headers,
        json={"slot_id": str(new_slot)},
    )
    assert response.status_code == 200
    assert response.json()["status"] == "confirmed"
    assert await _seats(db, old_slot) == 0
    assert await _seats(db, new_slot) == 1

    task = await db.get(Task, task_id)
    await db.refresh(task)
    assert task.status == TaskStatus.PROCESSING
    assert as_utc(task.inspection_date) == datetime.combine(
        later_date, time(13, 30), tzinfo=ZoneInfo("Australia/Melbourne")
    ).astimezone(timezone.utc)


# ── Permissions & Visibility ───────────────────────────────────────────────────

@pytest.mark.asyncio
@pytest.mark.parametrize("action", ["confirm", "reject"])
async def test_agency_roles_cannot_decide_bookings(
    action, client: AsyncClient, db: AsyncSession, agency_admin: User, make_schedule, invited_property
):
    schedule = await make_schedule()
    _, token = await invited_property(schedule)
    booking = await _submit(client, db, token, schedule.slots[0].id)

    response = await client.post(
        f"/inspections/bookings/{booking.id}/{action}",
        headers=auth_headers(agency_admin),
        json={},
    )
    assert response.status_code == 403
    await db.refresh(booking)
    assert booking.status == BookingStatus.PENDING


@pytest.mark.asyncio
async def test_agency_user_cannot_reschedule(
    client: AsyncClient, db: AsyncSession, agency_user: User, make_schedule, invited_property
):
    schedule = await make_schedule()
    first_slot, second_slot = schedule.slots[0].id, schedule.slots[1].id
    _, token = await invited_property(schedule)
    booking = await _submit(client, db, token, first_slot)

    response = await client.post(
        f"/inspections/bookings/{booking.id}/reschedule",
        headers=auth_headers(agency_user),
        json={"slot_id": str(second_slot)},
    )
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_agency_users_only_see_their_agency_bookings(
    client: AsyncClient,
    db: AsyncSession,
    admin: User,
    agency_user: User,
    other_agency_user: User,
    other_agency,
    make_schedule,
    make_property,
    make_contact,
    make_invitation,
    invited_property,
):
    schedule = await make_schedule(max_capacity=5)
    slot_id = schedule.slots[0].id
    _, own_token = await invited_property(schedule, address="Own Street")
    foreign = await make_property(address="Foreign Street", agency_id=other_agency.id)
    foreign_contact = await make_contact(foreign, email="foreign@example.com")
    foreign_token = (await make_invitation(foreign, schedule, contact=foreign_contact)).booking_token

    own = await _submit(client, db, own_token, slot_id)
    foreign_booking = await _submit(client, db, foreign_token, slot_id)

    response = await client.get("/inspections/bookings", headers=auth_headers(agency_user))
    assert response.status_code == 200
    assert [b["id"] for b in response.json()["items"]] == [str(own.id)]

    response = await client.get("/inspections/bookings", headers=auth_headers(admin))
    assert response.json()["total"] == 2

    response = await client.get(
        f"/inspections/bookings/{foreign_booking.id}", headers=auth_headers(agency_user)
    )
    assert response.status_code == 404

    response = await client.get(
        f"/inspections/bookings/{foreign_booking.id}", headers=auth_headers(other_agency_user)
    )
    assert response.status_code == 200
    assert response.json()["property"]["address"] == "Foreign Street"


@pytest.mark.asyncio
async def test_list_bookings_filters_by_status(
    client: AsyncClient, db: AsyncSession, admin: User, make_schedule, invited_property
):
    schedule = await make_schedule(max_capacity=2)
    slot_id = schedule.slots[0].id
    _, token_a = await invited_property(schedule, address="A Street", email="a@example.com")
    _, token_b = await invited_property(schedule, address="B Street", email="b@example.com")
    rejected = await _submit(client, db, token_a, slot_id)
    await _submit(client, db, token_b, slot_id)
    headers = auth_headers(admin)
    await client.post(f"/inspections/bookings/{rejected.id}/reject", headers=headers, json={})

    response = await client.get("/inspections/bookings", headers=headers, params={"status": "pending"})
    assert response.status_code == 200
    items = response.json()["items"]
    assert len(items) == 1
    assert items[0]["property"]["address"] == "B Street"
