from datetime import date
from typing import Any, Dict, List

from ..domain.calendar import generate_slots
from ..domain.errors import NotFoundError
from ..domain.repositories import CapacityLedger, FacilityRepository
from ..models import FacilityStatus


async def get_availability(
    facility_repo: FacilityRepository,
    ledger: CapacityLedger,
    *,
    facility_id: int,
    day: date,
) -> List[Dict[str, Any]]:
    facility = await facility_repo.get(facility_id)
    if facility is None:
        raise NotFoundError("facility not found")

    slots = generate_slots(facility, day)
    occupancy = await ledger.occupancy_by_slot(facility_id, day)
    items: List[Dict[str, Any]] = []
    for slot in slots:
        booked = occupancy.get(slot.label, 0)
        available = max(facility.capacity - booked, 0)
        items.append(
            {
                "slot": slot.label,
                "capacity": facility.capacity,
                "booked": booked,
                "available": available,
                "is_bookable": available > 0 and facility.status == FacilityStatus.OPEN,
            }
        )
    return items
