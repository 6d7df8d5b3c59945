from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import date, datetime, time, timezone
from typing import Any, AsyncIterator, List, cast

from sqlalchemy import Select, case, func, select, update
from sqlalchemy.engine import CursorResult
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..domain.errors import CapacityExceededError, StaleStateError
from ..domain.repositories import CapacityLedger, FacilityRepository, ReservationRepository
from ..models import ACTIVE_STATUSES, Facility, FacilityStatus, Reservation, ReservationStatus, SlotOccupancy


def _utc_now_naive() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class SqlAlchemyFacilityRepository(FacilityRepository):
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, facility_id: int) -> Facility | None:
        return await self.session.get(Facility, facility_id)

    async def list_all(self, *, status: FacilityStatus | None = None) -> List[Facility]:
        stmt: Select[tuple[Facility]] = select(Facility).order_by(Facility.id)
        if status is not None:
            stmt = stmt.where(Facility.status == status)
        return list((await self.session.scalars(stmt)).all())

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
        self.session.add(facility)
        await self.session.flush()
        return facility

    async def update(self, facility: Facility, **changes: Any) -> Facility:
        for field, value in changes.items():
            setattr(facility, field, value)
        facility.updated_at = _utc_now_naive()
        self.session.add(facility)
        await self.session.flush()
        return facility


class SqlAlchemyReservationRepository(ReservationRepository):
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, reservation_id: int) -> Reservation | None:
        return await self.session.get(Reservation, reservation_id, populate_existing=True)

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
        now = _utc_now_naive()
        reservation = Reservation(
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
        # Savepoint keeps the outer transaction usable for the compensating release.
        async with self.session.begin_nested():
            self.session.add(reservation)
            await self.session.flush()
        return reservation

    async def update(self, reservation: Reservation, *, expected_version: int, **changes: Any) -> Reservation:
        values = dict(changes)
        values["version"] = expected_version + 1
        values["updated_at"] = _utc_now_naive()
        stmt = (
            update(Reservation)
            .where(Reservation.id == reservation.id, Reservation.version == expected_version)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = cast(CursorResult[Any], await self.session.execute(stmt))
        if result.rowcount != 1:
            raise StaleStateError("reservation was modified concurrently")
        await self.session.refresh(reservation)
        return reservation

    async def list_by_facility_and_date(self, facility_id: int, day: date) -> List[Reservation]:
        stmt: Select[tuple[Reservation]] = (
            select(Reservation)
            .where(Reservation.facility_id == facility_id, Reservation.reserved_on == day)
            .order_by(Reservation.time_slot, Reservation.id)
        )
        return list((await self.session.scalars(stmt)).all())

    async def list_by_requester(self, requester_id: str) -> List[Reservation]:
        stmt: Select[tuple[Reservation]] = (
            select(Reservation)
            .where(Reservation.requester_id == requester_id)
            .order_by(Reservation.reserved_on, Reservation.time_slot, Reservation.id)
        )
        return list((await self.session.scalars(stmt)).all())

    async def list_active_since(self, facility_id: int, day: date) -> List[Reservation]:
        stmt: Select[tuple[Reservation]] = (
            select(Reservation)
            .where(
                Reservation.facility_id == facility_id,
                Reservation.reserved_on >= day,
                Reservation.status.in_(ACTIVE_STATUSES),
            )
            .order_by(Reservation.reserved_on, Reservation.time_slot, Reservation.id)
        )
        return list((await self.session.scalars(stmt)).all())

    async def has_active(
        self, facility_id: int, day: date, time_slot: str, requester_id: str, *, locking: bool = False
    ) -> bool:
        stmt = select(Reservation.id).where(
            Reservation.facility_id == facility_id,
            Reservation.reserved_on == day,
            Reservation.time_slot == time_slot,
            Reservation.requester_id == requester_id,
            Reservation.status.in_(ACTIVE_STATUSES),
        ).limit(1)
        if locking:
            stmt = stmt.with_for_update(read=True)
        return await self.session.scalar(stmt) is not None

    async def count_active_for_day(
        self, facility_id: int, day: date, requester_id: str, *, locking: bool = False
    ) -> int:
        conditions = (
            Reservation.facility_id == facility_id,
            Reservation.reserved_on == day,
            Reservation.requester_id == requester_id,
            Reservation.status.in_(ACTIVE_STATUSES),
        )
        if locking:
            # Locking reads cannot aggregate on every backend.
            ids = await self.session.scalars(select(Reservation.id).where(*conditions).with_for_update(read=True))
            return len(ids.all())
        return int(await self.session.scalar(select(func.count(Reservation.id)).where(*conditions)) or 0)

    async def sum_active_units(self, facility_id: int, day: date, time_slot: str) -> int:
        stmt = select(func.coalesce(func.sum(Reservation.units), 0)).where(
            Reservation.facility_id == facility_id,
            Reservation.reserved_on == day,
            Reservation.time_slot == time_slot,
            Reservation.status.in_(ACTIVE_STATUSES),
        )
        return int(await self.session.scalar(stmt) or 0)


class SqlAlchemyCapacityLedger(CapacityLedger):
    """
    Occupancy counter kept in `slot_occupancy`. `reserve` is a conditional UPDATE,
    so the database row lock serializes concurrent reservations on one key. `hold`
    takes that row lock up front with SELECT ... FOR UPDATE.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    def _key(self, facility_id: int, day: date, time_slot: str) -> Any:
        return (
            (SlotOccupancy.facility_id == facility_id)
            & (SlotOccupancy.reserved_on == day)
            & (SlotOccupancy.time_slot == time_slot)
        )

    async def occupancy(self, facility_id: int, day: date, time_slot: str) -> int:
        stmt = select(SlotOccupancy.booked).where(self._key(facility_id, day, time_slot))
        return int(await self.session.scalar(stmt) or 0)

    async def occupancy_by_slot(self, facility_id: int, day: date) -> dict[str, int]:
        stmt = select(SlotOccupancy.time_slot, SlotOccupancy.booked).where(
            SlotOccupancy.facility_id == facility_id,
            SlotOccupancy.reserved_on == day,
        )
        rows = await self.session.execute(stmt)
        return {time_slot: int(booked) for time_slot, booked in rows.all()}

    async def _ensure_row(self, facility_id: int, day: date, time_slot: str) -> None:
        if await self.session.scalar(select(SlotOccupancy.booked).where(self._key(facility_id, day, time_slot))) is not None:
            return
        try:
            async with self.session.begin_nested():
                self.session.add(
                    SlotOccupancy(facility_id=facility_id, reserved_on=day, time_slot=time_slot, booked=0)
                )
                await self.session.flush()
        except IntegrityError:
            # Another transaction created the row first.
            pass

    @asynccontextmanager
    async def hold(self, facility_id: int, day: date, time_slot: str) -> AsyncIterator[None]:
        await self._ensure_row(facility_id, day, time_slot)
        # The row lock is released by the enclosing commit or rollback, not on exit.
        await self.session.execute(
            select(SlotOccupancy.booked).where(self._key(facility_id, day, time_slot)).with_for_update()
        )
        yield

    async def reserve(self, facility: Facility, day: date, time_slot: str, units: int) -> int:
        await self._ensure_row(facility.id, day, time_slot)
        stmt = (
            update(SlotOccupancy)
            .where(
                self._key(facility.id, day, time_slot),
                SlotOccupancy.booked + units <= facility.capacity,
            )
            .values(booked=SlotOccupancy.booked + units)
            .execution_options(synchronize_session=False)
        )
        result = cast(CursorResult[Any], await self.session.execute(stmt))
        if result.rowcount != 1:
            raise CapacityExceededError("capacity exceeded")
        return await self.occupancy(facility.id, day, time_slot)

    async def release(self, facility_id: int, day: date, time_slot: str, units: int) -> int:
        stmt = (
            update(SlotOccupancy)
            .where(self._key(facility_id, day, time_slot))
            .values(booked=case((SlotOccupancy.booked > units, SlotOccupancy.booked - units), else_=0))
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(stmt)
        return await self.occupancy(facility_id, day, time_slot)

    async def max_occupancy_since(self, facility_id: int, day: date) -> int:
        stmt = select(func.coalesce(func.max(SlotOccupancy.booked), 0)).where(
            SlotOccupancy.facility_id == facility_id,
            SlotOccupancy.reserved_on >= day,
        )
        return int(await self.session.scalar(stmt) or 0)
