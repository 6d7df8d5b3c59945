from datetime import date, time
from typing import Any, Dict, List

from ..domain.calendar import parse_slot_label, slot_grid
from ..domain.identity import Actor
from ..domain.repositories import CapacityLedger, FacilityRepository, ReservationRepository
from ..domain.services import ensure_staff
from ..models import ReservationStatus
from .facilities import get_facility

NOON = time(12, 0)
EVENING = time(18, 0)
POPULAR_SLOT_COUNT = 3


def _period(start: time) -> str:
    if start < NOON:
        return "morning"
    if start < EVENING:
        return "afternoon"
    return "evening"


def _percent(part: int, whole: int) -> float:
    if whole <= 0:
        return 0.0
    return round(100.0 * part / whole, 1)


async def facility_day_stats(
    facility_repo: FacilityRepository,
    res_repo: ReservationRepository,
    ledger: CapacityLedger,
    *,
    facility_id: int,
    day: date,
    actor: Actor,
) -> Dict[str, Any]:
    """
    Read-only usage summary for one facility and day: reservation totals,
    cancellation rate, check-ins, the busiest slots and utilization per part of day.
    """
    ensure_staff(actor, facility_id)
    facility = await get_facility(facility_repo, facility_id=facility_id)
    reservations = await res_repo.list_by_facility_and_date(facility_id, day)
    occupancy = await ledger.occupancy_by_slot(facility_id, day)

    total = len(reservations)
    cancelled = sum(1 for r in reservations if r.status == ReservationStatus.CANCELLED)
    pending = sum(1 for r in reservations if r.status == ReservationStatus.PENDING)
    confirmed = sum(1 for r in reservations if r.status == ReservationStatus.CONFIRMED)
    checked_in = sum(1 for r in reservations if r.status == ReservationStatus.CONFIRMED and r.checked_in)

    labels = [slot.label for slot in slot_grid(facility, day)]
    for label in occupancy:
        if label not in labels:
            labels.append(label)

    slot_usage: List[Dict[str, Any]] = [
        {"slot": label, "booked": occupancy.get(label, 0), "usage": _percent(occupancy.get(label, 0), facility.capacity)}
        for label in labels
    ]
    popular = sorted(
        (entry for entry in slot_usage if entry["booked"] > 0),
        key=lambda entry: (-entry["booked"], entry["slot"]),
    )[:POPULAR_SLOT_COUNT]

    buckets: Dict[str, List[int]] = {"morning": [0, 0], "afternoon": [0, 0], "evening": [0, 0]}
    for entry in slot_usage:
        start, _ = parse_slot_label(entry["slot"])
        bucket = buckets[_period(start)]
        bucket[0] += entry["booked"]
        bucket[1] += facility.capacity

    return {
        "facility_id": facility_id,
        "date": day,
        "total_reservations": total,
        "active_reservations": pending + confirmed,
        "pending": pending,
        "confirmed": confirmed,
        "cancelled": cancelled,
        "checked_in": checked_in,
        "cancellation_rate": _percent(cancelled, total),
        "booked_units": sum(occupancy.values()),
        "popular_slots": popular,
        "time_distribution": {name: _percent(used, cap) for name, (used, cap) in buckets.items()},
    }
