from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Optional, Protocol

from ..models import FacilityStatus
from .errors import ValidationError

_LABEL_RE = re.compile(r"^(\d{2}):(\d{2})-(\d{2}):(\d{2})$")


class SlotSource(Protocol):
    id: int
    opens_at: time
    closes_at: time
    slot_interval_minutes: int
    status: FacilityStatus


@dataclass(frozen=True, order=True)
class TimeSlot:
    facility_id: int
    day: date
    start: time
    end: time

    @property
    def label(self) -> str:
        return f"{self.start:%H:%M}-{self.end:%H:%M}"


def generate_slots(facility: SlotSource, day: date) -> list[TimeSlot]:
    """Bookable slots for a day. Facilities that are not open have none."""
    if facility.status != FacilityStatus.OPEN:
        return []
    return slot_grid(facility, day)


def slot_grid(facility: SlotSource, day: date) -> list[TimeSlot]:
    """
    Carve the operating window into full-length slots regardless of status.
    A trailing interval shorter than the slot size is dropped.
    """
    if facility.slot_interval_minutes <= 0:
        return []

    step = timedelta(minutes=facility.slot_interval_minutes)
    cursor = datetime.combine(day, facility.opens_at)
    closing = datetime.combine(day, facility.closes_at)
    slots: list[TimeSlot] = []
    while cursor + step <= closing:
        end = cursor + step
        slots.append(TimeSlot(facility.id, day, cursor.time(), end.time()))
        cursor = end
    return slots


def parse_slot_label(label: str) -> tuple[time, time]:
    match = _LABEL_RE.match(label.strip())
    if match is None:
        raise ValidationError(f"malformed slot label: {label!r}")
    h1, m1, h2, m2 = (int(part) for part in match.groups())
    try:
        start, end = time(h1, m1), time(h2, m2)
    except ValueError as exc:
        raise ValidationError(f"malformed slot label: {label!r}") from exc
    if start >= end:
        raise ValidationError("slot must end after it starts")
    return start, end


def find_slot(facility: SlotSource, day: date, label: str) -> Optional[TimeSlot]:
    start, end = parse_slot_label(label)
    for slot in generate_slots(facility, day):
        if slot.start == start and slot.end == end:
            return slot
    return None
