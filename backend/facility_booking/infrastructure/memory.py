"""
In-memory repositories.

These back the booking engine without a database: useful for tests, local
development and single-process deployments. All state lives in dicts guarded
by asyncio locks, so they are safe for concurrent tasks on one event loop but
not across processes.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import date, datetime, time, timezone
from typing import Any, AsyncIterator

from ..domain.errors import CapacityExceededError, StaleStateError
from ..models import Facility, FacilityStatus, Reservation, ReservationStatus

logger = logging.getLogger(__name__)

LedgerKey = tuple[int, date, str]


def _utc_now_naive() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class InMemoryFacilityRepository:
    def __init__(self) -> None:
        self._facilities: dict[int, Facility] = {}
        self._ids = itertools.count(1)

    async def get(self, facility_id: int) -> Facility | None:
        return self._facilities.get(facility_id)

    async def list_all(self, *, status: FacilityStatus | None = None) -> list[Facility]:
        rows = [f for f in self._facilities.values() if status is None or f.status == status]
        return sorted(rows, key=lambda f: f.id)

    async def create(
        self,
        *,
        name: str,
        capacity: int,
        opens_at: time,
        closes_at: time,
        slot_interval_minutes: int,
        status: FacilityStatus,
        requires_approval: bool,
        max_reservations_per_day: int | None,
    ) -> Facility:
        now = _utc_now_naive()
        facility = Facility(
            id=next(self._ids),
            name=name,
            capacity=capacity,
            opens_at=opens_at,
            closes_at=closes_at,
            slot_interval_minutes=slot_interval_minutes,
            status=status,
            requires_approval=requires_approval,
            max_reservations_per_day=max_reservations_per_day,
            created_at=now,
            updated_at=now,
        )
        self._facilities[facility.id] = facility
        return facility

    async def update(self, facility: Facility, **changes: Any) -> Facility:
        stored = self._facilities[facility.id]
        for field, value in changes.items():
            setattr(stored, field, value)
        stored.updated_at = _utc_now_naive()
        return stored


class InMemoryReservationRepository:
    def __init__(self) -> None:
        self._reservations: dict[int, Reservation] = {}
        self._ids = itertools.count(1)
        self._lock = asyncio.Lock()

    async def get(self, reservation_id: int) -> Reservation | None:
        return self._reservations.get(reservation_id)

    async def create(
        self,
        *,
        facility_id: int,
        requester_id: str,
        requester_name: str,
        reserved_on: date,
        time_slot: str,
        status: ReservationStatus,
        companions: int,
        purpose: str | None,
    ) -> Reservation:
        # Yield like a real store would on I/O.
        await asyncio.sleep(0)
        now = _utc_now_naive()
        async with self._lock:
            reservation = Reservation(
                id=next(self._ids),
                facility_id=facility_id,
                requester_id=requester_id,
                requester_name=requester_name,
                reserved_on=reserved_on,
                time_slot=time_slot,
                status=status,
                companions=companions,
                units=1 + companions,
                purpose=purpose,
                note=None,
                checked_in=False,
                version=1,
                created_at=now,
                updated_at=now,
            )
            self._reservations[reservation.id] = reservation
        return reservation

    async def update(self, reservation: Reservation, *, expected_version: int, **changes: Any) -> Reservation:
        await asyncio.sleep(0)
        async with self._lock:
            stored = self._reservations.get(reservation.id)
            if stored is None or stored.version != expected_version:
                raise StaleStateError("reservation was modified concurrently")
            for field, value in changes.items():
                setattr(stored, field, value)
            stored.version = expected_version + 1
            stored.updated_at = _utc_now_naive()
            return stored

    def _matching(self, facility_id: int, day: date) -> list[Reservation]:
        return [
            r for r in self._reservations.values() if r.facility_id == facility_id and r.reserved_on == day
        ]

    async def list_by_facility_and_date(self, facility_id: int, day: date) -> list[Reservation]:
        return sorted(self._matching(facility_id, day), key=lambda r: (r.time_slot, r.id))

    async def list_by_requester(self, requester_id: str) -> list[Reservation]:
        rows = [r for r in self._reservations.values() if r.requester_id == requester_id]
        return sorted(rows, key=lambda r: (r.reserved_on, r.time_slot, r.id))

    async def list_active_since(self, facility_id: int, day: date) -> list[Reservation]:
        rows = [
            r
            for r in self._reservations.values()
            if r.facility_id == facility_id and r.reserved_on >= day and r.is_active
        ]
        return sorted(rows, key=lambda r: (r.reserved_on, r.time_slot, r.id))

    async def has_active(
        self, facility_id: int, day: date, time_slot: str, requester_id: str, *, locking: bool = False
    ) -> bool:
        return any(
            r.time_slot == time_slot and r.requester_id == requester_id and r.is_active
            for r in self._matching(facility_id, day)
        )

    async def count_active_for_day(
        self, facility_id: int, day: date, requester_id: str, *, locking: bool = False
    ) -> int:
        return sum(1 for r in self._matching(facility_id, day) if r.requester_id == requester_id and r.is_active)

    async def sum_active_units(self, facility_id: int, day: date, time_slot: str) -> int:
        return sum(r.units for r in self._matching(facility_id, day) if r.time_slot == time_slot and r.is_active)


class InMemoryCapacityLedger:
    """
    Occupancy counters with one asyncio.Lock per (facility, date, slot) key, plus a
    second per-key lock that `hold` takes for the whole booking.
    """

    def __init__(self) -> None:
        self._booked: dict[LedgerKey, int] = defaultdict(int)
        self._locks: dict[LedgerKey, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._holds: dict[LedgerKey, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def occupancy(self, facility_id: int, day: date, time_slot: str) -> int:
        return self._booked.get((facility_id, day, time_slot), 0)

    async def occupancy_by_slot(self, facility_id: int, day: date) -> dict[str, int]:
        return {
            time_slot: booked
            for (fid, d, time_slot), booked in self._booked.items()
            if fid == facility_id and d == day
        }

    @asynccontextmanager
    async def hold(self, facility_id: int, day: date, time_slot: str) -> AsyncIterator[None]:
        # Separate from the counter locks so reserve and release work inside a hold.
        async with self._holds[(facility_id, day, time_slot)]:
            yield

    async def reserve(self, facility: Facility, day: date, time_slot: str, units: int) -> int:
        key = (facility.id, day, time_slot)
        async with self._locks[key]:
            current = self._booked[key]
            # Suspension point between read and write; the key lock keeps it atomic.
            await asyncio.sleep(0)
            if current + units > facility.capacity:
                raise CapacityExceededError("capacity exceeded")
            self._booked[key] = current + units
            return self._booked[key]

    async def release(self, facility_id: int, day: date, time_slot: str, units: int) -> int:
        key = (facility_id, day, time_slot)
        async with self._locks[key]:
            current = self._booked[key]
            if units > current:
                logger.warning("release of %s units exceeds occupancy %s for %s", units, current, key)
            self._booked[key] = max(current - units, 0)
            return self._booked[key]

    async def max_occupancy_since(self, facility_id: int, day: date) -> int:
        return max(
            (booked for (fid, d, _), booked in self._booked.items() if fid == facility_id and d >= day),
            default=0,
        )
