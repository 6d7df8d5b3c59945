from datetime import date, time
from types import SimpleNamespace

import pytest
from facility_booking.domain.calendar import find_slot, generate_slots, parse_slot_label, slot_grid
from facility_booking.domain.errors import ValidationError
from facility_booking.models import FacilityStatus

DAY = date(2030, 3, 17)


def _facility(
    opens_at: time = time(6, 0),
    closes_at: time = time(22, 0),
    interval: int = 60,
    status: FacilityStatus = FacilityStatus.OPEN,
) -> SimpleNamespace:
    return SimpleNamespace(
        id=1,
        opens_at=opens_at,
        closes_at=closes_at,
        slot_interval_minutes=interval,
        status=status,
    )


def test_gym_day_has_sixteen_hourly_slots() -> None:
    slots = generate_slots(_facility(), DAY)
    assert len(slots) == 16
    assert slots[0].label == "06:00-07:00"
    assert slots[-1].label == "21:00-22:00"
    assert all(s.facility_id == 1 and s.day == DAY for s in slots)


def test_slots_are_ordered_and_contiguous() -> None:
    slots = generate_slots(_facility(interval=30), DAY)
    assert slots == sorted(slots)
    for prev, nxt in zip(slots, slots[1:]):
        assert prev.end == nxt.start


def test_trailing_partial_slot_is_dropped() -> None:
    slots = generate_slots(_facility(closes_at=time(7, 30)), DAY)
    assert [s.label for s in slots] == ["06:00-07:00"]


def test_window_shorter_than_interval_yields_nothing() -> None:
    assert generate_slots(_facility(closes_at=time(6, 45)), DAY) == []
    assert generate_slots(_facility(closes_at=time(6, 0)), DAY) == []


@pytest.mark.parametrize("status", [FacilityStatus.MAINTENANCE, FacilityStatus.CLOSED])
def test_facility_not_open_has_no_bookable_slots(status: FacilityStatus) -> None:
    facility = _facility(status=status)
    assert generate_slots(facility, DAY) == []
    assert len(slot_grid(facility, DAY)) == 16


def test_non_positive_interval_yields_no_slots() -> None:
    assert slot_grid(_facility(interval=0), DAY) == []
    assert slot_grid(_facility(interval=-30), DAY) == []
    assert find_slot(_facility(interval=0), DAY, "17:00-18:00") is None


def test_find_slot_matches_grid_only() -> None:
    facility = _facility()
    slot = find_slot(facility, DAY, "17:00-18:00")
    assert slot is not None and slot.start == time(17, 0)
    assert find_slot(facility, DAY, "21:30-22:30") is None
    assert find_slot(facility, DAY, "22:00-23:00") is None
    assert find_slot(facility, DAY, "17:00-17:30") is None


@pytest.mark.parametrize("label", ["", "17-18", "17:00 - 18", "25:00-26:00", "18:00-17:00", "17:00-17:00"])
def test_parse_slot_label_rejects_malformed(label: str) -> None:
    with pytest.raises(ValidationError):
        parse_slot_label(label)


def test_parse_slot_label() -> None:
    assert parse_slot_label("06:00-07:00") == (time(6, 0), time(7, 0))
