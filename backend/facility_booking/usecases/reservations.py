import asyncio
import logging
from dataclasses import replace
from datetime import date
from typing import Optional

from ..domain.calendar import find_slot
from ..domain.errors import (
    CapacityExceededError,
    InconsistentLedgerError,
    NotFoundError,
    SlotFullError,
    StaleStateError,
)
from ..domain.identity import Actor
from ..domain.notifications import Notifier, dispatch
from ..domain.repositories import CapacityLedger, FacilityRepository, ReservationRepository
from ..domain.services import BookingSnapshot, ensure_can_act, ensure_staff, ensure_transition, validate_booking
from ..models import ACTIVE_STATUSES, Reservation, ReservationStatus

logger = logging.getLogger(__name__)

DEFAULT_RELEASE_ATTEMPTS = 3


async def create_reservation(
    facility_repo: FacilityRepository,
    res_repo: ReservationRepository,
    ledger: CapacityLedger,
    *,
    facility_id: int,
    day: date,
    time_slot: str,
    actor: Actor,
    today: date,
    companions: int = 0,
    purpose: Optional[str] = None,
    notifier: Optional[Notifier] = None,
    release_attempts: int = DEFAULT_RELEASE_ATTEMPTS,
) -> Reservation:
    facility = await facility_repo.get(facility_id)
    if facility is None:
        raise NotFoundError("facility not found")

    slot = find_slot(facility, day, time_slot)
    label = slot.label if slot is not None else time_slot
    snapshot = BookingSnapshot(
        facility_status=facility.status,
        day=day,
        today=today,
        slot_exists=slot is not None,
        requester_has_active_reservation=await res_repo.has_active(facility_id, day, label, actor.actor_id),
        requester_reservations_that_day=await res_repo.count_active_for_day(facility_id, day, actor.actor_id),
        max_reservations_per_day=facility.max_reservations_per_day,
        capacity=facility.capacity,
    )
    validate_booking(snapshot, companions=companions)

    async with ledger.hold(facility_id, day, label):
        # Requester checks are repeated under the hold.
        snapshot = replace(
            snapshot,
            requester_has_active_reservation=await res_repo.has_active(
                facility_id, day, label, actor.actor_id, locking=True
            ),
            requester_reservations_that_day=await res_repo.count_active_for_day(
                facility_id, day, actor.actor_id, locking=True
            ),
        )
        units = validate_booking(snapshot, companions=companions)

        try:
            await ledger.reserve(facility, day, label, units)
        except CapacityExceededError as exc:
            raise SlotFullError(f"slot {label} on {day} is full") from exc

        status = ReservationStatus.PENDING if facility.requires_approval else ReservationStatus.CONFIRMED
        try:
            reservation = await res_repo.create(
                facility_id=facility_id,
                requester_id=actor.actor_id,
                requester_name=actor.display_name,
                reserved_on=day,
                time_slot=label,
                status=status,
                companions=companions,
                purpose=purpose,
            )
        except (Exception, asyncio.CancelledError) as exc:
            await release_units(ledger, facility_id, day, label, units, attempts=release_attempts, cause=exc)
            raise

    logger.info(
        "reservation %s created facility=%s day=%s slot=%s units=%s status=%s",
        reservation.id,
        facility_id,
        day,
        label,
        units,
        status,
    )
    dispatch(notifier, "reservation.created", reservation)
    return reservation


async def release_units(
    ledger: CapacityLedger,
    facility_id: int,
    day: date,
    time_slot: str,
    units: int,
    *,
    attempts: int = DEFAULT_RELEASE_ATTEMPTS,
    cause: Optional[BaseException] = None,
) -> None:
    """Release ledger units, retrying a bounded number of times before escalating."""
    last_error: Optional[Exception] = None
    for attempt in range(1, attempts + 1):
        try:
            await ledger.release(facility_id, day, time_slot, units)
            return
        except Exception as exc:
            last_error = exc
            logger.warning(
                "release attempt %s/%s failed facility=%s day=%s slot=%s units=%s",
                attempt,
                attempts,
                facility_id,
                day,
                time_slot,
                units,
                exc_info=True,
            )
    logger.error(
        "ledger.inconsistent facility=%s day=%s slot=%s units=%s: manual reconciliation required",
        facility_id,
        day,
        time_slot,
        units,
    )
    raise InconsistentLedgerError(
        f"could not release {units} units for facility {facility_id} {day} {time_slot}"
    ) from (last_error or cause)


async def apply_status(
    res_repo: ReservationRepository,
    ledger: CapacityLedger,
    reservation: Reservation,
    target: ReservationStatus,
    *,
    expected_version: Optional[int] = None,
    release_attempts: int = DEFAULT_RELEASE_ATTEMPTS,
) -> tuple[Reservation, ReservationStatus]:
    """
    Move a reservation to `target`, keeping the ledger in step.
    Returns the reservation and its previous status. Same-state moves are no-ops.
    """
    previous = reservation.status
    version = reservation.version
    if expected_version is not None and expected_version != version:
        raise StaleStateError("reservation version does not match")
    if not ensure_transition(previous, target):
        return reservation, previous

    try:
        updated = await res_repo.update(reservation, expected_version=version, status=target)
    except StaleStateError:
        current = await res_repo.get(reservation.id)
        # A concurrent cancel already won; cancelling is idempotent.
        if current is not None and target == ReservationStatus.CANCELLED == current.status:
            return current, current.status
        raise

    if target == ReservationStatus.CANCELLED and previous in ACTIVE_STATUSES:
        await release_units(
            ledger,
            updated.facility_id,
            updated.reserved_on,
            updated.time_slot,
            updated.units,
            attempts=release_attempts,
        )
    logger.info("reservation %s status %s -> %s", updated.id, previous, target)
    return updated, previous


async def cancel_reservation(
    res_repo: ReservationRepository,
    ledger: CapacityLedger,
    *,
    reservation_id: int,
    actor: Actor,
    notifier: Optional[Notifier] = None,
    release_attempts: int = DEFAULT_RELEASE_ATTEMPTS,
) -> tuple[Reservation, ReservationStatus]:
    reservation = await _load(res_repo, reservation_id)
    ensure_can_act(actor, reservation)
    # Idempotent: already cancelled returns as-is
    if reservation.status == ReservationStatus.CANCELLED:
        return reservation, reservation.status

    updated, previous = await apply_status(
        res_repo,
        ledger,
        reservation,
        ReservationStatus.CANCELLED,
        release_attempts=release_attempts,
    )
    if previous != ReservationStatus.CANCELLED:
        dispatch(notifier, "reservation.cancelled", updated)
    return updated, previous


async def get_reservation(
    res_repo: ReservationRepository,
    *,
    reservation_id: int,
    actor: Actor,
) -> Reservation:
    reservation = await _load(res_repo, reservation_id)
    ensure_can_act(actor, reservation)
    return reservation


async def list_user_reservations(
    res_repo: ReservationRepository,
    *,
    actor: Actor,
    status: Optional[ReservationStatus] = None,
) -> list[Reservation]:
    rows = await res_repo.list_by_requester(actor.actor_id)
    if status is not None:
        rows = [r for r in rows if r.status == status]
    return rows


async def list_facility_reservations(
    res_repo: ReservationRepository,
    *,
    facility_id: int,
    day: date,
    actor: Actor,
    status: Optional[ReservationStatus] = None,
) -> list[Reservation]:
    ensure_staff(actor, facility_id)
    rows = await res_repo.list_by_facility_and_date(facility_id, day)
    if status is not None:
        rows = [r for r in rows if r.status == status]
    return rows


async def _load(res_repo: ReservationRepository, reservation_id: int) -> Reservation:
    reservation = await res_repo.get(reservation_id)
    if reservation is None:
        raise NotFoundError("reservation not found")
    return reservation
