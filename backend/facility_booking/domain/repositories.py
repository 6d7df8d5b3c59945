from __future__ import annotations

from contextlib import AbstractAsyncContextManager
from datetime import date, time
from typing import Any, Protocol

from ..models import Facility, FacilityStatus, Reservation, ReservationStatus


class FacilityRepository(Protocol):
    async def get(self, facility_id: int) -> Facility | None: ...

    async def list_all(self, *, status: FacilityStatus | None = None) -> list[Facility]: ...

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
    ) -> Facility: ...

    async def update(self, facility: Facility, **changes: Any) -> Facility: ...


class ReservationRepository(Protocol):
    async def get(self, reservation_id: int) -> Reservation | None: ...

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
    ) -> Reservation: ...

    async def update(self, reservation: Reservation, *, expected_version: int, **changes: Any) -> Reservation:
        """Apply changes and bump the version; raises StaleStateError if the stored version moved."""
        ...

    async def list_by_facility_and_date(self, facility_id: int, day: date) -> list[Reservation]: ...

    async def list_by_requester(self, requester_id: str) -> list[Reservation]: ...

    async def list_active_since(self, facility_id: int, day: date) -> list[Reservation]: ...

    async def has_active(
        self, facility_id: int, day: date, time_slot: str, requester_id: str, *, locking: bool = False
    ) -> bool:
        """`locking` reads the latest committed rows instead of the transaction snapshot."""
        ...

    async def count_active_for_day(
        self, facility_id: int, day: date, requester_id: str, *, locking: bool = False
    ) -> int: ...

    async def sum_active_units(self, facility_id: int, day: date, time_slot: str) -> int: ...


class CapacityLedger(Protocol):
    async def occupancy(self, facility_id: int, day: date, time_slot: str) -> int: ...

    async def occupancy_by_slot(self, facility_id: int, day: date) -> dict[str, int]: ...

    def hold(self, facility_id: int, day: date, time_slot: str) -> AbstractAsyncContextManager[None]:
        """
        Exclusive hold on one (facility, date, slot) key. Bookings for the key are
        serialized while it is held; the SQL ledger keeps it until the transaction ends.
        """
        ...

    async def reserve(self, facility: Facility, day: date, time_slot: str, units: int) -> int:
        """Atomic check-and-increment; raises CapacityExceededError instead of overshooting."""
        ...

    async def release(self, facility_id: int, day: date, time_slot: str, units: int) -> int: ...

    async def max_occupancy_since(self, facility_id: int, day: date) -> int: ...
