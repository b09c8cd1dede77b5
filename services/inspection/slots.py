"""
services/inspection/slots.py
Slot generation for an inspection day.
Times are "HH:MM" strings; arithmetic is done in minutes since midnight.
"""

from dataclasses import dataclass
from typing import List

from config.settings import settings
from shared.utils.errors import ValidationError


@dataclass(frozen=True)
class SlotDraft:
    start_time: str
    end_time: str
    max_capacity: int
    current_bookings: int = 0
    is_available: bool = True


def parse_time(value: str) -> int:
    """'09:30' → 570"""
    try:
        hours, minutes = (int(part) for part in value.split(":"))
    except (AttributeError, ValueError):
        raise ValidationError(f"Invalid time format '{value}' (expected HH:MM)")
    if not (0 <= hours < 24 and 0 <= minutes < 60):
        raise ValidationError(f"Invalid time '{value}'")
    return hours * 60 + minutes


def format_time(total_minutes: int) -> str:
    """570 → '09:30'"""
    return f"{total_minutes // 60:02d}:{total_minutes % 60:02d}"


def validate_time_window(start_time: str, end_time: str, slot_duration: int) -> None:
    start = parse_time(start_time)
    end = parse_time(end_time)

    if end <= start:
        raise ValidationError("End time must be after start time")
    if slot_duration < settings.MIN_SLOT_DURATION_MINUTES:
        raise ValidationError(
            f"Slot duration must be at least {settings.MIN_SLOT_DURATION_MINUTES} minutes"
        )
    if slot_duration > settings.MAX_SLOT_DURATION_MINUTES:
        raise ValidationError(
            f"Slot duration must be at most {settings.MAX_SLOT_DURATION_MINUTES} minutes"
        )
    if end - start < slot_duration:
        raise ValidationError("Time range is shorter than one slot")


def generate_slots(
    start_time: str,
    end_time: str,
    slot_duration: int,
    max_capacity: int,
) -> List[SlotDraft]:
    """
    Split [start_time, end_time) into consecutive slots of slot_duration minutes.
    A trailing remainder shorter than one slot is dropped, so
    generate_slots("09:00", "10:00", 45, 1) yields a single 09:00-09:45 slot.
    """
    validate_time_window(start_time, end_time, slot_duration)
    start = parse_time(start_time)
    end = parse_time(end_time)

    slots: List[SlotDraft] = []
    current = start
    while current + slot_duration <= end:
        slots.append(SlotDraft(
            start_time=format_time(current),
            end_time=format_time(current + slot_duration),
            max_capacity=max_capacity,
        ))
        current += slot_duration
    return slots
