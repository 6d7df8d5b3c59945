from datetime import date, time
from typing import Any, Optional

from ..domain.errors import ForbiddenError, NotFoundError, ValidationError
from ..domain.identity import Actor
from ..domain.repositories import CapacityLedger, FacilityRepository
from ..domain.services import ensure_staff
from ..models import Facility, FacilityStatus

NULLABLE_SETTINGS = frozenset({"max_reservations_per_day"})

SETTINGS_FIELDS = frozenset(
    {
        "name",
        "capacity",
        "opens_at",
        "closes_at",
        "slot_interval_minutes",
        "status",
        "requires_approval",
        "max_reservations_per_day",
    }
)


def validate_facility_config(
    *,
    capacity: int,
    opens_at: time,
    closes_at: time,
    slot_interval_minutes: int,
    max_reservations_per_day: Optional[int],
) -> None:
    if capacity < 1:
        raise ValidationError("capacity must be >= 1")
    if slot_interval_minutes < 1:
        raise ValidationError("slot interval must be >= 1 minute")
    if opens_at > closes_at:
        raise ValidationError("opening time must not be after closing time")
    if max_reservations_per_day is not None and max_reservations_per_day < 1:
        raise ValidationError("max reservations per day must be >= 1")


async def create_facility(
    facility_repo: FacilityRepository,
    *,
    actor: Actor,
    name: str,
    capacity: int,
    opens_at: time,
    closes_at: time,
    slot_interval_minutes: int = 60,
    status: FacilityStatus = FacilityStatus.OPEN,
    requires_approval: bool = False,
    max_reservations_per_day: Optional[int] = None,
) -> Facility:
    # Only unscoped staff may add facilities.
    if not actor.is_staff or actor.facility_scope is not None:
        raise ForbiddenError("unscoped staff role required")
    validate_facility_config(
        capacity=capacity,
        opens_at=opens_at,
        closes_at=closes_at,
        slot_interval_minutes=slot_interval_minutes,
        max_reservations_per_day=max_reservations_per_day,
    )
    return await facility_repo.create(
        name=name,
        capacity=capacity,
        opens_at=opens_at,
        closes_at=closes_at,
        slot_interval_minutes=slot_interval_minutes,
        status=status,
        requires_approval=requires_approval,
        max_reservations_per_day=max_reservations_per_day,
    )


async def get_facility(facility_repo: FacilityRepository, *, facility_id: int) -> Facility:
    facility = await facility_repo.get(facility_id)
    if facility is None:
        raise NotFoundError("facility not found")
    return facility


async def list_facilities(
    facility_repo: FacilityRepository, *, status: Optional[FacilityStatus] = None
) -> list[Facility]:
    """Every facility ordered by id, optionally only those in one status."""
    return await facility_repo.list_all(status=status)


async def update_settings(
    facility_repo: FacilityRepository,
    ledger: CapacityLedger,
    *,
    facility_id: int,
    actor: Actor,
    today: date,
    changes: dict[str, Any],
) -> Facility:
    """
    Merge new settings into a facility. Capacity may not drop below the occupancy
    already booked for today or later. Existing reservations stay as they are when
    hours or interval change.
    """
    ensure_staff(actor, facility_id)
    facility = await get_facility(facility_repo, facility_id=facility_id)
    unknown = set(changes) - SETTINGS_FIELDS
    if unknown:
        raise ValidationError(f"unknown settings: {', '.join(sorted(unknown))}")
    nulled = {field for field, value in changes.items() if value is None} - NULLABLE_SETTINGS
    if nulled:
        raise ValidationError(f"settings cannot be null: {', '.join(sorted(nulled))}")

    merged = {field: changes.get(field, getattr(facility, field)) for field in SETTINGS_FIELDS}
    validate_facility_config(
        capacity=merged["capacity"],
        opens_at=merged["opens_at"],
        closes_at=merged["closes_at"],
        slot_interval_minutes=merged["slot_interval_minutes"],
        max_reservations_per_day=merged["max_reservations_per_day"],
    )
    if merged["capacity"] < facility.capacity:
        booked = await ledger.max_occupancy_since(facility_id, today)
        if merged["capacity"] < booked:
            raise ValidationError(f"capacity {merged['capacity']} is below existing bookings ({booked})")

    if not changes:
        return facility
    return await facility_repo.update(facility, **changes)
