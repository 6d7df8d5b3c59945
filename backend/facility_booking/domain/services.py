from dataclasses import dataclass
from datetime import date
from typing import Optional

from ..models import FacilityStatus, Reservation, ReservationStatus
from .errors import (
    DailyLimitExceededError,
    DuplicateBookingError,
    FacilityClosedError,
    ForbiddenError,
    InvalidSlotError,
    InvalidTransitionError,
    ValidationError,
)
from .identity import Actor

ALLOWED_TRANSITIONS: dict[ReservationStatus, frozenset[ReservationStatus]] = {
    ReservationStatus.PENDING: frozenset({ReservationStatus.CONFIRMED, ReservationStatus.CANCELLED}),
    ReservationStatus.CONFIRMED: frozenset({ReservationStatus.CANCELLED}),
    ReservationStatus.CANCELLED: frozenset(),
}


@dataclass(frozen=True)
class BookingSnapshot:
    facility_status: FacilityStatus
    day: date
    today: date
    slot_exists: bool
    requester_has_active_reservation: bool
    requester_reservations_that_day: int
    max_reservations_per_day: Optional[int]
    capacity: int


def validate_booking(snapshot: BookingSnapshot, *, companions: int) -> int:
    """
    Pure validation of a booking request before the ledger is touched.
    Returns the capacity units the reservation will consume. Raises domain errors otherwise.
    """
    if companions < 0:
        raise ValidationError("companions must not be negative")
    units = 1 + companions
    if units > snapshot.capacity:
        raise ValidationError(f"party of {units} exceeds facility capacity {snapshot.capacity}")
    if snapshot.day < snapshot.today:
        raise ValidationError("cannot book a date in the past")
    if snapshot.facility_status != FacilityStatus.OPEN:
        raise FacilityClosedError(f"facility is {snapshot.facility_status}")
    if not snapshot.slot_exists:
        raise InvalidSlotError("slot is outside operating hours or off the slot grid")
    if snapshot.requester_has_active_reservation:
        raise DuplicateBookingError("requester already holds a reservation for this slot")
    limit = snapshot.max_reservations_per_day
    if limit is not None and snapshot.requester_reservations_that_day >= limit:
        raise DailyLimitExceededError(f"at most {limit} reservations per day")
    return units


def ensure_transition(current: ReservationStatus, target: ReservationStatus) -> bool:
    """Return True when the transition changes state, False for a same-state no-op."""
    if current == target:
        return False
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransitionError(f"cannot move reservation from {current} to {target}")
    return True


def ensure_can_act(actor: Actor, reservation: Reservation, *, override: bool = False) -> None:
    """
    Requesters may act on their own reservations; staff on any reservation of a
    facility they manage. Overrides are staff-only.
    """
    if actor.manages(reservation.facility_id):
        return
    if not override and actor.actor_id == reservation.requester_id:
        return
    raise ForbiddenError("not allowed to modify this reservation")


def ensure_staff(actor: Actor, facility_id: int) -> None:
    if not actor.manages(facility_id):
        raise ForbiddenError("staff scope over this facility required")
