"""Staff-only overrides layered on the booking usecases."""

from datetime import date
from typing import Optional

from ..domain.errors import InvalidTransitionError, NotFoundError, StaleStateError
from ..domain.identity import Actor
from ..domain.notifications import Notifier, dispatch
from ..domain.repositories import CapacityLedger, FacilityRepository, ReservationRepository
from ..domain.services import ensure_can_act, ensure_staff
from ..models import Facility, FacilityStatus, Reservation, ReservationStatus
from .reservations import DEFAULT_RELEASE_ATTEMPTS, apply_status

_UNSET = object()


async def _load_for_staff(res_repo: ReservationRepository, reservation_id: int, actor: Actor) -> Reservation:
    reservation = await res_repo.get(reservation_id)
    if reservation is None:
        raise NotFoundError("reservation not found")
    ensure_can_act(actor, reservation, override=True)
    return reservation


async def force_status(
    res_repo: ReservationRepository,
    ledger: CapacityLedger,
    *,
    reservation_id: int,
    status: ReservationStatus,
    actor: Actor,
    expected_version: Optional[int] = None,
    notifier: Optional[Notifier] = None,
    release_attempts: int = DEFAULT_RELEASE_ATTEMPTS,
) -> tuple[Reservation, ReservationStatus]:
    reservation = await _load_for_staff(res_repo, reservation_id, actor)
    updated, previous = await apply_status(
        res_repo,
        ledger,
        reservation,
        status,
        expected_version=expected_version,
        release_attempts=release_attempts,
    )
    if status == ReservationStatus.CANCELLED and previous != ReservationStatus.CANCELLED:
        dispatch(notifier, "reservation.cancelled", updated)
    return updated, previous


async def set_note(
    res_repo: ReservationRepository,
    *,
    reservation_id: int,
    note: Optional[str],
    actor: Actor,
    expected_version: Optional[int] = None,
) -> Reservation:
    reservation = await _load_for_staff(res_repo, reservation_id, actor)
    return await _write_note(res_repo, reservation, note, expected_version)


async def check_in(
    res_repo: ReservationRepository,
    *,
    reservation_id: int,
    actor: Actor,
    expected_version: Optional[int] = None,
) -> Reservation:
    reservation = await _load_for_staff(res_repo, reservation_id, actor)
    return await _write_check_in(res_repo, reservation, True, expected_version)


async def patch_reservation(
    res_repo: ReservationRepository,
    ledger: CapacityLedger,
    *,
    reservation_id: int,
    actor: Actor,
    status: Optional[ReservationStatus] = None,
    note: object = _UNSET,
    checked_in: Optional[bool] = None,
    expected_version: Optional[int] = None,
    notifier: Optional[Notifier] = None,
    release_attempts: int = DEFAULT_RELEASE_ATTEMPTS,
) -> tuple[Reservation, ReservationStatus]:
    """
    Apply a staff PATCH in order: status, then note, then check-in.
    `note=None` clears the note; omitting it leaves the note untouched.
    """
    reservation = await _load_for_staff(res_repo, reservation_id, actor)
    previous = reservation.status
    if expected_version is not None and expected_version != reservation.version:
        raise StaleStateError("reservation version does not match")

    if status is not None:
        reservation, previous = await apply_status(
            res_repo, ledger, reservation, status, release_attempts=release_attempts
        )
        if status == ReservationStatus.CANCELLED and previous != ReservationStatus.CANCELLED:
            dispatch(notifier, "reservation.cancelled", reservation)
    if note is not _UNSET:
        reservation = await _write_note(res_repo, reservation, note, None)  # type: ignore[arg-type]
    if checked_in is not None:
        reservation = await _write_check_in(res_repo, reservation, checked_in, None)
    return reservation, previous


async def _write_note(
    res_repo: ReservationRepository,
    reservation: Reservation,
    note: Optional[str],
    expected_version: Optional[int],
) -> Reservation:
    if expected_version is not None and expected_version != reservation.version:
        raise StaleStateError("reservation version does not match")
    cleaned = note.strip() if note else None
    if (cleaned or None) == (reservation.note or None):
        return reservation
    return await res_repo.update(reservation, expected_version=reservation.version, note=cleaned or None)


async def _write_check_in(
    res_repo: ReservationRepository,
    reservation: Reservation,
    checked_in: bool,
    expected_version: Optional[int],
) -> Reservation:
    if expected_version is not None and expected_version != reservation.version:
        raise StaleStateError("reservation version does not match")
    if not checked_in:
        if reservation.checked_in:
            raise InvalidTransitionError("check-in cannot be cleared")
        return reservation
    if reservation.status != ReservationStatus.CONFIRMED:
        raise InvalidTransitionError("only confirmed reservations can be checked in")
    if reservation.checked_in:
        return reservation
    return await res_repo.update(reservation, expected_version=reservation.version, checked_in=True)


async def schedule_maintenance(
    facility_repo: FacilityRepository,
    res_repo: ReservationRepository,
    *,
    facility_id: int,
    actor: Actor,
    since: date,
) -> tuple[Facility, list[Reservation]]:
    """
    Block new bookings on a facility. Existing reservations are left untouched and
    returned so staff can resolve them.
    """
    ensure_staff(actor, facility_id)
    facility = await facility_repo.get(facility_id)
    if facility is None:
        raise NotFoundError("facility not found")
    if facility.status != FacilityStatus.MAINTENANCE:
        facility = await facility_repo.update(facility, status=FacilityStatus.MAINTENANCE)
    affected = await res_repo.list_active_since(facility_id, since)
    return facility, affected


async def reopen_facility(
    facility_repo: FacilityRepository,
    *,
    facility_id: int,
    actor: Actor,
) -> Facility:
    ensure_staff(actor, facility_id)
    facility = await facility_repo.get(facility_id)
    if facility is None:
        raise NotFoundError("facility not found")
    if facility.status == FacilityStatus.OPEN:
        return facility
    return await facility_repo.update(facility, status=FacilityStatus.OPEN)
