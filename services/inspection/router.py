"""
services/inspection/router.py
Staff endpoints: region configs, schedules, invitations and booking review.
Managers (superuser/admin) may change anything; agency roles may only read
bookings for their own agency's properties.
"""

from datetime import date
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.inspection import notifications, schedules
from services.inspection.bookings import BookingService, serialize_booking
from shared.middleware.auth import get_current_actor
from shared.models.models import BookingStatus, Region, ScheduleStatus
from shared.schemas.schemas import (
    BookingConfirmRequest,
    BookingRejectRequest,
    BookingRescheduleRequest,
    BookingResponse,
    InspectionConfigResponse,
    InspectionConfigUpdate,
    MessageResponse,
    PaginatedResponse,
    ScheduleCreateRequest,
    ScheduleProperty,
    ScheduleResponse,
    ScheduleUpdateRequest,
    SendNotificationsRequest,
    SendNotificationsResponse,
)
from shared.utils.permissions import Actor

router = APIRouter(prefix="/inspections", tags=["Inspections"])


# ── Region Config ──────────────────────────────────────────────────────────────

@router.get("/configs", response_model=List[InspectionConfigResponse])
async def list_configs(
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    """All regions, including ones that have not been configured yet."""
    actor.require(actor.permissions.can_manage_schedules(), "view inspection configs")
    return await schedules.list_configs(db)


@router.get("/configs/{region}", response_model=InspectionConfigResponse)
async def get_config(
    region: Region,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    actor.require(actor.permissions.can_manage_schedules(), "view inspection configs")
    return await schedules.get_config(db, region)


@router.put("/configs/{region}", response_model=InspectionConfigResponse)
async def upsert_config(
    region: Region,
    data: InspectionConfigUpdate,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    return await schedules.upsert_config(db, region, data, actor)


# ── Schedules ──────────────────────────────────────────────────────────────────

@router.post("/schedules", response_model=ScheduleResponse, status_code=status.HTTP_201_CREATED)
async def create_schedule(
    data: ScheduleCreateRequest,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    """
    Create a schedule and its slots.
    start_time / end_time / slot_duration / max_capacity default to the region config.
    """
    return await schedules.create_schedule(db, data, actor)


@router.get("/schedules", response_model=PaginatedResponse)
async def list_schedules(
    region: Optional[Region] = None,
    schedule_status: Optional[ScheduleStatus] = Query(None, alias="status"),
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    actor.require(actor.permissions.can_manage_schedules(), "view inspection schedules")
    return await schedules.list_schedules(
        db,
        region=region,
        status=schedule_status,
        date_from=date_from,
        date_to=date_to,
        page=page,
        page_size=page_size,
    )


@router.get("/schedules/{schedule_id}", response_model=ScheduleResponse)
async def get_schedule(
    schedule_id: UUID,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    actor.require(actor.permissions.can_manage_schedules(), "view inspection schedules")
    return await schedules.get_schedule(db, schedule_id)


@router.patch("/schedules/{schedule_id}", response_model=ScheduleResponse)
async def update_schedule(
    schedule_id: UUID,
    data: ScheduleUpdateRequest,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    return await schedules.update_schedule(db, schedule_id, data, actor)


@router.delete("/schedules/{schedule_id}", response_model=MessageResponse)
async def delete_schedule(
    schedule_id: UUID,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    await schedules.delete_schedule(db, schedule_id, actor)
    return MessageResponse(message="Schedule deleted successfully")


@router.get("/schedules/{schedule_id}/properties", response_model=List[ScheduleProperty])
async def get_schedule_properties(
    schedule_id: UUID,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    """Properties in the schedule's region with the recipient an invitation would go to."""
    return await schedules.get_schedule_properties(db, schedule_id, actor)


@router.post("/schedules/{schedule_id}/notifications", response_model=SendNotificationsResponse)
async def send_notifications(
    schedule_id: UUID,
    data: SendNotificationsRequest,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    """
    Send booking invitations. Properties already invited for this schedule
    are reported in `skipped`; per-property failures land in `failed`.
    """
    return await notifications.send_notifications(db, schedule_id, data.property_ids, actor)


# ── Bookings ───────────────────────────────────────────────────────────────────

@router.get("/bookings", response_model=PaginatedResponse)
async def list_bookings(
    schedule_id: Optional[UUID] = None,
    property_id: Optional[UUID] = None,
    booking_status: Optional[BookingStatus] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    return await BookingService(db).list_bookings(
        actor,
        schedule_id=schedule_id,
        property_id=property_id,
        status=booking_status,
        page=page,
        page_size=page_size,
    )


@router.get("/bookings/{booking_id}", response_model=BookingResponse)
async def get_booking(
    booking_id: UUID,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    booking = await BookingService(db).get_booking(booking_id, actor)
    return serialize_booking(booking)


@router.post("/bookings/{booking_id}/confirm", response_model=BookingResponse)
async def confirm_booking(
    booking_id: UUID,
    data: BookingConfirmRequest = BookingConfirmRequest(),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    """
    Confirm a pending booking. Other pending bookings for the same property
    are rejected and the property's incomplete tasks move to processing.
    """
    result = await BookingService(db).confirm_booking(
        booking_id,
        actor,
        send_notification=data.send_notification,
        note=data.note,
    )
    return serialize_booking(result.booking, result)


@router.post("/bookings/{booking_id}/reject", response_model=BookingResponse)
async def reject_booking(
    booking_id: UUID,
    data: BookingRejectRequest = BookingRejectRequest(),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    booking = await BookingService(db).reject_booking(
        booking_id,
        actor,
        note=data.note,
        send_notification=data.send_notification,
    )
    return serialize_booking(booking)


@router.post("/bookings/{booking_id}/reschedule", response_model=BookingResponse)
async def reschedule_booking(
    booking_id: UUID,
    data: BookingRescheduleRequest,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    booking = await BookingService(db).reschedule_booking(
        booking_id,
        data.slot_id,
        actor,
        note=data.note,
        send_notification=data.send_notification,
    )
    return serialize_booking(booking)
