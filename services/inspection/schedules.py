"""
services/inspection/schedules.py
Region configs and inspection schedules.
A schedule and all of its slots are written in one transaction.
"""

import logging
import math
import uuid
from datetime import date
from typing import List, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from config.database import transaction
from config.settings import settings
from services.inspection.recipients import resolve_recipient
from services.inspection.slots import generate_slots
from shared.models.models import (
    REGION_LABELS,
    InspectionConfig,
    InspectionNotification,
    InspectionSchedule,
    InspectionSlot,
    NotificationStatus,
    Property,
    Region,
    ScheduleStatus,
)
from shared.schemas.schemas import (
    InspectionConfigResponse,
    InspectionConfigUpdate,
    PaginatedResponse,
    RecipientInfo,
    ScheduleCreateRequest,
    ScheduleProperty,
    ScheduleResponse,
    ScheduleUpdateRequest,
    SlotResponse,
)
from shared.utils.errors import ConflictError, NotFoundError, ValidationError
from shared.utils.permissions import Actor

logger = logging.getLogger(__name__)


# ── Serializers ───────────────────────────────────────────────

def serialize_config(config: InspectionConfig) -> InspectionConfigResponse:
    return InspectionConfigResponse(
        id=config.id,
        region=config.region.value,
        region_label=REGION_LABELS[config.region],
        start_time=config.start_time,
        end_time=config.end_time,
        slot_duration=config.slot_duration,
        max_capacity=config.max_capacity,
        is_active=config.is_active,
        is_configured=True,
        updated_at=config.updated_at,
    )


def _unconfigured(region: Region) -> InspectionConfigResponse:
    return InspectionConfigResponse(
        region=region.value,
        region_label=REGION_LABELS[region],
        start_time=None,
        end_time=None,
        slot_duration=None,
        max_capacity=1,
        is_active=False,
        is_configured=False,
    )


def serialize_slot(slot: InspectionSlot) -> SlotResponse:
    return SlotResponse(
        id=slot.id,
        start_time=slot.start_time,
        end_time=slot.end_time,
        max_capacity=slot.max_capacity,
        current_bookings=slot.current_bookings,
        is_available=slot.is_available,
        available_spots=slot.available_spots,
    )


def serialize_schedule(
    schedule: InspectionSchedule,
    include_slots: bool = False,
    slots_count: Optional[int] = None,
) -> ScheduleResponse:
    return ScheduleResponse(
        id=schedule.id,
        region=schedule.region.value,
        region_label=REGION_LABELS[schedule.region],
        schedule_date=schedule.schedule_date,
        start_time=schedule.start_time,
        end_time=schedule.end_time,
        slot_duration=schedule.slot_duration,
        max_capacity=schedule.max_capacity,
        status=schedule.status.value,
        note=schedule.note,
        is_active=schedule.is_active,
        created_by_id=schedule.created_by_id,
        created_at=schedule.created_at,
        slots=[serialize_slot(s) for s in schedule.slots] if include_slots else None,
        slots_count=slots_count,
    )


# ── Region Config ─────────────────────────────────────────────

async def find_config(db: AsyncSession, region: Region) -> Optional[InspectionConfig]:
    result = await db.execute(select(InspectionConfig).where(InspectionConfig.region == region))
    return result.scalar_one_or_none()


async def list_configs(db: AsyncSession) -> List[InspectionConfigResponse]:
    """Every region, configured or not, in Region declaration order."""
    result = await db.execute(select(InspectionConfig))
    by_region = {c.region: c for c in result.scalars().all()}
    return [
        serialize_config(by_region[region]) if region in by_region else _unconfigured(region)
        for region in Region
    ]


async def get_config(db: AsyncSession, region: Region) -> InspectionConfigResponse:
    config = await find_config(db, region)
    return serialize_config(config) if config else _unconfigured(region)


async def upsert_config(
    db: AsyncSession,
    region: Region,
    data: InspectionConfigUpdate,
    actor: Actor,
) -> InspectionConfigResponse:
    actor.require(actor.permissions.can_manage_schedules(), "configure inspection regions")
    # Same rules as schedule creation so a saved config always yields slots
    generate_slots(data.start_time, data.end_time, data.slot_duration, 1)

    async with transaction(db):
        config = await find_config(db, region)
        if config is None:
            config = InspectionConfig(region=region)
            db.add(config)
        config.start_time = data.start_time
        config.end_time = data.end_time
        config.slot_duration = data.slot_duration
        if data.max_capacity is not None:
            config.max_capacity = data.max_capacity
        elif config.max_capacity is None:
            config.max_capacity = 1
        if data.is_active is not None:
            config.is_active = data.is_active
        await db.flush()

    logger.info(f"Inspection config saved for {region.value} by {actor.id}")
    return serialize_config(config)


# ── Schedules ─────────────────────────────────────────────────

async def get_schedule_or_404(
    db: AsyncSession,
    schedule_id: uuid.UUID,
    with_slots: bool = False,
) -> InspectionSchedule:
    stmt = select(InspectionSchedule).where(
        InspectionSchedule.id == schedule_id,
        InspectionSchedule.is_active.is_(True),
    )
    if with_slots:
        stmt = stmt.options(selectinload(InspectionSchedule.slots)).execution_options(
            populate_existing=True
        )
    result = await db.execute(stmt)
    schedule = result.scalar_one_or_none()
    if not schedule:
        raise NotFoundError("Schedule not found")
    return schedule


async def create_schedule(
    db: AsyncSession,
    data: ScheduleCreateRequest,
    actor: Actor,
) -> ScheduleResponse:
    """
    Create a schedule for one region and day. Missing time fields fall back
    to the region config; the slot grid is generated up front and inserted
    together with the schedule.
    """
    actor.require(actor.permissions.can_manage_schedules(), "create inspection schedules")
    region = Region(data.region)

    existing = await db.scalar(
        select(InspectionSchedule.id).where(
            InspectionSchedule.region == region,
            InspectionSchedule.schedule_date == data.schedule_date,
        )
    )
    if existing:
        raise ConflictError("A schedule already exists for this region and date")

    config = await find_config(db, region)
    start_time = data.start_time or (config.start_time if config else None)
    end_time = data.end_time or (config.end_time if config else None)
    slot_duration = data.slot_duration or (config.slot_duration if config else None)
    max_capacity = data.max_capacity or (config.max_capacity if config else None) or 1

    if not (start_time and end_time and slot_duration):
        raise ValidationError(
            f"Time settings are required for {region.value} region. Configure the "
            f"region or provide start_time, end_time and slot_duration."
        )

    drafts = generate_slots(start_time, end_time, slot_duration, max_capacity)

    schedule = InspectionSchedule(
        region=region,
        schedule_date=data.schedule_date,
        start_time=start_time,
        end_time=end_time,
        slot_duration=slot_duration,
        max_capacity=max_capacity,
        status=ScheduleStatus.PUBLISHED,
        note=data.note,
        is_active=True,
        created_by_id=actor.id,
        slots=[
            InspectionSlot(
                start_time=d.start_time,
                end_time=d.end_time,
                max_capacity=d.max_capacity,
                current_bookings=d.current_bookings,
                is_available=d.is_available,
            )
            for d in drafts
        ],
    )

    async with transaction(db):
        db.add(schedule)
        try:
            await db.flush()
        except IntegrityError:
            raise ConflictError("A schedule already exists for this region and date")

    logger.info(
        f"Schedule {schedule.id} created for {region.value} on {data.schedule_date} "
        f"with {len(drafts)} slots"
    )
    return serialize_schedule(schedule, include_slots=True)


async def list_schedules(
    db: AsyncSession,
    region: Optional[Region] = None,
    status: Optional[ScheduleStatus] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    page: int = 1,
    page_size: int = settings.DEFAULT_PAGE_SIZE,
) -> PaginatedResponse:
    filters = [InspectionSchedule.is_active.is_(True)]
    if region:
        filters.append(InspectionSchedule.region == region)
    if status:
        filters.append(InspectionSchedule.status == status)
    if date_from:
        filters.append(InspectionSchedule.schedule_date >= date_from)
    if date_to:
        filters.append(InspectionSchedule.schedule_date <= date_to)

    total = await db.scalar(select(func.count(InspectionSchedule.id)).where(*filters))

    slots_count = (
        select(func.count(InspectionSlot.id))
        .where(InspectionSlot.schedule_id == InspectionSchedule.id)
        .correlate(InspectionSchedule)
        .scalar_subquery()
    )
    result = await db.execute(
        select(InspectionSchedule, slots_count.label("slots_count"))
        .where(*filters)
        .order_by(InspectionSchedule.schedule_date.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )

    return PaginatedResponse(
        items=[serialize_schedule(s, slots_count=count) for s, count in result.all()],
        total=total or 0,
        page=page,
        page_size=page_size,
        pages=math.ceil((total or 0) / page_size),
    )


async def get_schedule(db: AsyncSession, schedule_id: uuid.UUID) -> ScheduleResponse:
    schedule = await get_schedule_or_404(db, schedule_id, with_slots=True)
    return serialize_schedule(schedule, include_slots=True)


async def update_schedule(
    db: AsyncSession,
    schedule_id: uuid.UUID,
    data: ScheduleUpdateRequest,
    actor: Actor,
) -> ScheduleResponse:
    actor.require(actor.permissions.can_manage_schedules(), "update inspection schedules")

    async with transaction(db):
        schedule = await get_schedule_or_404(db, schedule_id)
        if data.status is not None:
            schedule.status = ScheduleStatus(data.status)
        if data.note is not None:
            schedule.note = data.note

    return await get_schedule(db, schedule_id)


async def delete_schedule(db: AsyncSession, schedule_id: uuid.UUID, actor: Actor) -> None:
    """Soft delete: the schedule disappears from listings and the public page."""
    actor.require(actor.permissions.can_manage_schedules(), "delete inspection schedules")

    async with transaction(db):
        schedule = await get_schedule_or_404(db, schedule_id)
        schedule.is_active = False

    logger.info(f"Schedule {schedule_id} deleted by {actor.id}")


async def get_schedule_properties(
    db: AsyncSession,
    schedule_id: uuid.UUID,
    actor: Actor,
) -> List[ScheduleProperty]:
    """Properties in the schedule's region, with their invitation recipient."""
    actor.require(actor.permissions.can_send_notifications(), "view schedule recipients")
    schedule = await get_schedule_or_404(db, schedule_id)

    result = await db.execute(
        select(Property)
        .where(Property.region == schedule.region, Property.is_active.is_(True))
        .order_by(Property.address)
    )
    properties = result.scalars().unique().all()

    notified = set(
        (await db.execute(
            select(InspectionNotification.property_id).where(
                InspectionNotification.schedule_id == schedule.id,
                InspectionNotification.status != NotificationStatus.FAILED,
            )
        )).scalars().all()
    )

    items = []
    for prop in properties:
        recipient = await resolve_recipient(db, prop)
        items.append(ScheduleProperty(
            id=prop.id,
            address=prop.address,
            region=prop.region.value if prop.region else None,
            agency_id=prop.agency_id,
            agency_name=prop.agency.name if prop.agency else None,
            has_notification=prop.id in notified,
            recipient=RecipientInfo(
                name=recipient.name,
                email=recipient.email,
                role=recipient.role.value if recipient.role else None,
            ) if recipient else None,
            recipient_type=recipient.type.value if recipient else None,
        ))
    return items
