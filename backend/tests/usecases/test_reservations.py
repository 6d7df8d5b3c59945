import asyncio
import logging
from datetime import date
from typing import Any, Callable

import pytest
from facility_booking.domain import notifications
from facility_booking.domain.errors import (
    DailyLimitExceededError,
    DuplicateBookingError,
    FacilityClosedError,
    ForbiddenError,
    InconsistentLedgerError,
    InvalidSlotError,
    NotFoundError,
    SlotFullError,
    ValidationError,
)
from facility_booking.domain.identity import Actor
from facility_booking.infrastructure.memory import InMemoryCapacityLedger, InMemoryReservationRepository
from facility_booking.models import Facility, FacilityStatus, Reservation, ReservationStatus
from facility_booking.usecases import reservations as uc

TODAY = date(2030, 3, 16)
DAY = date(2030, 3, 17)
PEAK = "17:00-18:00"


async def _book(
    repos: Any,
    facility: Facility,
    actor: Actor,
    time_slot: str = PEAK,
    *,
    day: date = DAY,
    **kwargs: Any,
) -> Reservation:
    return await uc.create_reservation(
        repos.facilities,
        repos.reservations,
        repos.ledger,
        facility_id=facility.id,
        day=day,
        time_slot=time_slot,
        actor=actor,
        today=TODAY,
        **kwargs,
    )


async def _ledger_matches_store(repos: Any, facility: Facility, time_slot: str = PEAK) -> bool:
    booked = await repos.ledger.occupancy(facility.id, DAY, time_slot)
    return booked == await repos.reservations.sum_active_units(facility.id, DAY, time_slot)


class RecordingNotifier:
    def __init__(self) -> None:
        self.events: list[tuple[str, int]] = []

    async def notify(self, event: str, reservation: Reservation) -> None:
        self.events.append((event, reservation.id))


async def _drain_notifications() -> None:
    await asyncio.gather(*list(notifications._pending))


@pytest.mark.asyncio
async def test_create_confirms_and_consumes_units(repos: Any, make_facility: Callable, resident: Callable) -> None:
    gym = await make_facility()
    reservation = await _book(repos, gym, resident(), companions=2, purpose="training")

    assert reservation.status == ReservationStatus.CONFIRMED
    assert reservation.units == 3
    assert reservation.time_slot == PEAK
    assert reservation.requester_name == "Hong"
    assert reservation.version == 1
    assert await repos.ledger.occupancy(gym.id, DAY, PEAK) == 3


@pytest.mark.asyncio
async def test_full_slot_rejected_until_a_cancel_frees_a_unit(
    repos: Any, make_facility: Callable, resident: Callable
) -> None:
    gym = await make_facility(capacity=10)
    booked = [await _book(repos, gym, resident(f"U{i:03d}")) for i in range(10)]

    with pytest.raises(SlotFullError):
        await _book(repos, gym, resident("U999"))
    assert await repos.ledger.occupancy(gym.id, DAY, PEAK) == 10

    await uc.cancel_reservation(repos.reservations, repos.ledger, reservation_id=booked[0].id, actor=resident("U000"))
    retried = await _book(repos, gym, resident("U999"))

    assert retried.status == ReservationStatus.CONFIRMED
    assert await repos.ledger.occupancy(gym.id, DAY, PEAK) == 10
    assert await _ledger_matches_store(repos, gym)


@pytest.mark.asyncio
async def test_party_larger_than_remaining_capacity_is_rejected(
    repos: Any, make_facility: Callable, resident: Callable
) -> None:
    room = await make_facility(capacity=4)
    await _book(repos, room, resident("U001"), companions=2)
    with pytest.raises(SlotFullError):
        await _book(repos, room, resident("U002"), companions=1)
    assert await repos.ledger.occupancy(room.id, DAY, PEAK) == 3


@pytest.mark.asyncio
async def test_party_larger_than_facility_is_invalid_not_full(
    repos: Any, make_facility: Callable, resident: Callable
) -> None:
    room = await make_facility(capacity=2)
    with pytest.raises(ValidationError):
        await _book(repos, room, resident(), companions=5)
    assert await repos.ledger.occupancy_by_slot(room.id, DAY) == {}


@pytest.mark.asyncio
async def test_duplicate_booking_rejected(repos: Any, make_facility: Callable, resident: Callable) -> None:
    gym = await make_facility()
    await _book(repos, gym, resident())
    with pytest.raises(DuplicateBookingError):
        await _book(repos, gym, resident())
    assert await repos.ledger.occupancy(gym.id, DAY, PEAK) == 1


@pytest.mark.asyncio
async def test_rebooking_allowed_after_cancel(repos: Any, make_facility: Callable, resident: Callable) -> None:
    gym = await make_facility()
    first = await _book(repos, gym, resident())
    await uc.cancel_reservation(repos.reservations, repos.ledger, reservation_id=first.id, actor=resident())
    second = await _book(repos, gym, resident())
    assert second.id != first.id
    assert await repos.ledger.occupancy(gym.id, DAY, PEAK) == 1


@pytest.mark.asyncio
async def test_create_then_cancel_restores_occupancy_and_keeps_record(
    repos: Any, make_facility: Callable, resident: Callable
) -> None:
    gym = await make_facility()
    await _book(repos, gym, resident("U002"))
    before = await repos.ledger.occupancy(gym.id, DAY, PEAK)

    reservation = await _book(repos, gym, resident(), companions=1)
    cancelled, previous = await uc.cancel_reservation(
        repos.reservations, repos.ledger, reservation_id=reservation.id, actor=resident()
    )

    assert previous == ReservationStatus.CONFIRMED
    assert cancelled.status == ReservationStatus.CANCELLED
    assert cancelled.version == 2
    assert await repos.ledger.occupancy(gym.id, DAY, PEAK) == before
    stored = await repos.reservations.get(reservation.id)
    assert stored is not None and stored.status == ReservationStatus.CANCELLED


@pytest.mark.asyncio
async def test_cancel_is_idempotent(repos: Any, make_facility: Callable, resident: Callable) -> None:
    gym = await make_facility()
    await _book(repos, gym, resident("U002"))
    reservation = await _book(repos, gym, resident())

    await uc.cancel_reservation(repos.reservations, repos.ledger, reservation_id=reservation.id, actor=resident())
    again, previous = await uc.cancel_reservation(
        repos.reservations, repos.ledger, reservation_id=reservation.id, actor=resident()
    )

    assert again.status == ReservationStatus.CANCELLED
    assert previous == ReservationStatus.CANCELLED
    assert again.version == 2
    assert await repos.ledger.occupancy(gym.id, DAY, PEAK) == 1


@pytest.mark.asyncio
async def test_concurrent_cancels_release_once(repos: Any, make_facility: Callable, resident: Callable) -> None:
    gym = await make_facility()
    await _book(repos, gym, resident("U002"))
    reservation = await _book(repos, gym, resident())

    results = await asyncio.gather(
        uc.cancel_reservation(repos.reservations, repos.ledger, reservation_id=reservation.id, actor=resident()),
        uc.cancel_reservation(repos.reservations, repos.ledger, reservation_id=reservation.id, actor=resident()),
    )

    assert all(r.status == ReservationStatus.CANCELLED for r, _ in results)
    assert [previous for _, previous in results].count(ReservationStatus.CONFIRMED) == 1
    assert await repos.ledger.occupancy(gym.id, DAY, PEAK) == 1
    assert await _ledger_matches_store(repos, gym)


@pytest.mark.asyncio
async def test_concurrent_creates_grant_exactly_capacity(
    repos: Any, make_facility: Callable, resident: Callable
) -> None:
    room = await make_facility(capacity=3)

    results = await asyncio.gather(
        *(_book(repos, room, resident(f"U{i:03d}")) for i in range(12)),
        return_exceptions=True,
    )
    created = [r for r in results if isinstance(r, Reservation)]
    rejected = [r for r in results if isinstance(r, SlotFullError)]

    assert len(created) == 3
    assert len(rejected) == 9
    assert len({r.id for r in created}) == 3
    assert await repos.ledger.occupancy(room.id, DAY, PEAK) == 3
    assert await _ledger_matches_store(repos, room)


@pytest.mark.asyncio
async def test_concurrent_creates_by_one_requester_book_once(
    repos: Any, make_facility: Callable, resident: Callable
) -> None:
    gym = await make_facility()

    results = await asyncio.gather(
        *(_book(repos, gym, resident(), "10:00-11:00") for _ in range(3)),
        return_exceptions=True,
    )
    created = [r for r in results if isinstance(r, Reservation)]
    duplicates = [r for r in results if isinstance(r, DuplicateBookingError)]

    assert len(created) == 1
    assert len(duplicates) == 2
    assert await repos.ledger.occupancy(gym.id, DAY, "10:00-11:00") == 1
    assert await _ledger_matches_store(repos, gym, "10:00-11:00")


@pytest.mark.asyncio
async def test_ledger_tracks_store_across_mixed_operations(
    repos: Any, make_facility: Callable, resident: Callable
) -> None:
    gym = await make_facility(capacity=10)
    made = []
    for i in range(5):
        made.append(await _book(repos, gym, resident(f"U{i:03d}"), companions=i % 2))
        assert await _ledger_matches_store(repos, gym)
    for reservation in made[::2]:
        await uc.cancel_reservation(
            repos.reservations, repos.ledger, reservation_id=reservation.id, actor=resident(reservation.requester_id)
        )
        assert await _ledger_matches_store(repos, gym)
    assert 0 <= await repos.ledger.occupancy(gym.id, DAY, PEAK) <= gym.capacity


@pytest.mark.asyncio
async def test_approval_facility_creates_pending_that_holds_capacity(
    repos: Any, make_facility: Callable, resident: Callable
) -> None:
    hall = await make_facility(name="Hall", capacity=1, requires_approval=True)
    reservation = await _book(repos, hall, resident())

    assert reservation.status == ReservationStatus.PENDING
    with pytest.raises(SlotFullError):
        await _book(repos, hall, resident("U002"))


@pytest.mark.asyncio
async def test_daily_limit_counts_active_reservations(
    repos: Any, make_facility: Callable, resident: Callable
) -> None:
    gym = await make_facility(max_reservations_per_day=1)
    first = await _book(repos, gym, resident(), "09:00-10:00")
    with pytest.raises(DailyLimitExceededError):
        await _book(repos, gym, resident(), "10:00-11:00")

    await uc.cancel_reservation(repos.reservations, repos.ledger, reservation_id=first.id, actor=resident())
    second = await _book(repos, gym, resident(), "10:00-11:00")
    assert second.status == ReservationStatus.CONFIRMED


@pytest.mark.asyncio
async def test_validation_errors_leave_ledger_untouched(
    repos: Any, make_facility: Callable, resident: Callable
) -> None:
    gym = await make_facility()
    closed = await make_facility(name="Pool", status=FacilityStatus.MAINTENANCE)

    with pytest.raises(InvalidSlotError):
        await _book(repos, gym, resident(), "21:30-22:30")
    with pytest.raises(ValidationError):
        await _book(repos, gym, resident(), "nonsense")
    with pytest.raises(ValidationError):
        await _book(repos, gym, resident(), day=date(2030, 3, 1))
    with pytest.raises(ValidationError):
        await _book(repos, gym, resident(), companions=-1)
    with pytest.raises(FacilityClosedError):
        await _book(repos, closed, resident())

    assert await repos.ledger.occupancy_by_slot(gym.id, DAY) == {}


@pytest.mark.asyncio
async def test_unknown_facility_and_reservation(repos: Any, resident: Callable) -> None:
    with pytest.raises(NotFoundError):
        await uc.create_reservation(
            repos.facilities,
            repos.reservations,
            repos.ledger,
            facility_id=42,
            day=DAY,
            time_slot=PEAK,
            actor=resident(),
            today=TODAY,
        )
    with pytest.raises(NotFoundError):
        await uc.cancel_reservation(repos.reservations, repos.ledger, reservation_id=42, actor=resident())


@pytest.mark.asyncio
async def test_only_owner_or_staff_may_cancel(
    repos: Any, make_facility: Callable, resident: Callable, admin: Actor
) -> None:
    gym = await make_facility()
    reservation = await _book(repos, gym, resident())

    with pytest.raises(ForbiddenError):
        await uc.cancel_reservation(repos.reservations, repos.ledger, reservation_id=reservation.id, actor=resident("U002"))
    with pytest.raises(ForbiddenError):
        await uc.get_reservation(repos.reservations, reservation_id=reservation.id, actor=resident("U002"))

    cancelled, _ = await uc.cancel_reservation(
        repos.reservations, repos.ledger, reservation_id=reservation.id, actor=admin
    )
    assert cancelled.status == ReservationStatus.CANCELLED


class FailingStore(InMemoryReservationRepository):
    def __init__(self, error: BaseException) -> None:
        super().__init__()
        self.error = error

    async def create(self, **kwargs: Any) -> Reservation:
        raise self.error


class BrokenReleaseLedger(InMemoryCapacityLedger):
    def __init__(self) -> None:
        super().__init__()
        self.release_calls = 0

    async def release(self, facility_id: int, day: date, time_slot: str, units: int) -> int:
        self.release_calls += 1
        raise OSError("ledger unavailable")


@pytest.mark.asyncio
async def test_store_failure_releases_reserved_units(repos: Any, make_facility: Callable, resident: Callable) -> None:
    gym = await make_facility()
    repos.reservations = FailingStore(RuntimeError("insert failed"))

    with pytest.raises(RuntimeError, match="insert failed"):
        await _book(repos, gym, resident(), companions=2)
    assert await repos.ledger.occupancy(gym.id, DAY, PEAK) == 0


@pytest.mark.asyncio
async def test_cancelled_create_releases_reserved_units(
    repos: Any, make_facility: Callable, resident: Callable
) -> None:
    gym = await make_facility()
    repos.reservations = FailingStore(asyncio.CancelledError())

    with pytest.raises(asyncio.CancelledError):
        await _book(repos, gym, resident())
    assert await repos.ledger.occupancy(gym.id, DAY, PEAK) == 0


@pytest.mark.asyncio
async def test_failed_compensation_escalates_as_inconsistent(
    repos: Any, make_facility: Callable, resident: Callable, caplog: pytest.LogCaptureFixture
) -> None:
    gym = await make_facility()
    repos.reservations = FailingStore(RuntimeError("insert failed"))
    repos.ledger = BrokenReleaseLedger()

    with caplog.at_level(logging.WARNING, logger="facility_booking.usecases.reservations"):
        with pytest.raises(InconsistentLedgerError) as excinfo:
            await _book(repos, gym, resident(), release_attempts=2)

    assert excinfo.value.code == "Inconsistent"
    assert repos.ledger.release_calls == 2
    assert any("ledger.inconsistent" in r.getMessage() for r in caplog.records)


@pytest.mark.asyncio
async def test_notifications_fire_and_failures_do_not_affect_booking(
    repos: Any, make_facility: Callable, resident: Callable, caplog: pytest.LogCaptureFixture
) -> None:
    gym = await make_facility()
    notifier = RecordingNotifier()
    reservation = await _book(repos, gym, resident(), notifier=notifier)
    await uc.cancel_reservation(
        repos.reservations, repos.ledger, reservation_id=reservation.id, actor=resident(), notifier=notifier
    )
    await _drain_notifications()
    assert notifier.events == [("reservation.created", reservation.id), ("reservation.cancelled", reservation.id)]

    class BrokenNotifier:
        async def notify(self, event: str, reservation: Reservation) -> None:
            raise ConnectionError("smtp down")

    with caplog.at_level(logging.WARNING, logger="facility_booking.domain.notifications"):
        second = await _book(repos, gym, resident("U002"), notifier=BrokenNotifier())
        await _drain_notifications()

    assert second.status == ReservationStatus.CONFIRMED
    assert any("failed" in r.getMessage() for r in caplog.records)


@pytest.mark.asyncio
async def test_listings(repos: Any, make_facility: Callable, resident: Callable, admin: Actor) -> None:
    gym = await make_facility()
    a = await _book(repos, gym, resident(), "09:00-10:00")
    b = await _book(repos, gym, resident(), "10:00-11:00")
    await _book(repos, gym, resident("U002"), "09:00-10:00")
    await uc.cancel_reservation(repos.reservations, repos.ledger, reservation_id=a.id, actor=resident())

    mine = await uc.list_user_reservations(repos.reservations, actor=resident())
    assert [r.id for r in mine] == [a.id, b.id]
    active = await uc.list_user_reservations(repos.reservations, actor=resident(), status=ReservationStatus.CONFIRMED)
    assert [r.id for r in active] == [b.id]

    day_rows = await uc.list_facility_reservations(repos.reservations, facility_id=gym.id, day=DAY, actor=admin)
    assert len(day_rows) == 3
    with pytest.raises(ForbiddenError):
        await uc.list_facility_reservations(repos.reservations, facility_id=gym.id, day=DAY, actor=resident())
