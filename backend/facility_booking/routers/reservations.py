import re
from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import Settings, get_settings
from ..deps import get_current_actor, get_notifier, get_session, get_today
from ..domain.errors import BookingError
from ..domain.identity import Actor
from ..domain.notifications import Notifier
from ..infrastructure.repositories import (
    SqlAlchemyCapacityLedger,
    SqlAlchemyFacilityRepository,
    SqlAlchemyReservationRepository,
)
from ..models import Reservation, ReservationStatus
from ..schemas import ReservationCreate, ReservationPatch, ReservationRead
from ..usecases import admin as admin_usecase
from ..usecases import reservations as reservation_usecase
from ..utils.audit_log import AuditAction, audit_reservation
from .errors import to_http_exception

router = APIRouter(prefix="", tags=["reservations"], dependencies=[Depends(get_current_actor)])

_ETAG_RE = re.compile(r'^(?:W/)?"?(\d+)"?$')


def _extract_version(if_match: Optional[str], payload: Optional[ReservationPatch]) -> Optional[int]:
    """Expected reservation version from If-Match (preferred) or the body; None when absent."""
    if if_match is not None:
        match = _ETAG_RE.match(if_match.strip())
        if match is None or int(match.group(1)) < 1:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="invalid If-Match header")
        return int(match.group(1))
    if payload is not None and payload.version is not None:
        if payload.version < 1:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="version must be >= 1")
        return payload.version
    return None


def _audit(
    action: AuditAction,
    *,
    actor: Actor,
    reservation: Reservation,
    status_from: Optional[ReservationStatus] = None,
) -> None:
    try:
        audit_reservation(action, actor=actor, reservation=reservation, status_from=status_from)
    except RuntimeError as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="audit log failed") from exc


@router.post("/reservations", response_model=ReservationRead, status_code=status.HTTP_201_CREATED)
async def create_reservation(
    payload: ReservationCreate,
    session: AsyncSession = Depends(get_session),
    actor: Actor = Depends(get_current_actor),
    today: date = Depends(get_today),
    notifier: Notifier = Depends(get_notifier),
    settings: Settings = Depends(get_settings),
) -> ReservationRead:
    facility_repo = SqlAlchemyFacilityRepository(session)
    res_repo = SqlAlchemyReservationRepository(session)
    ledger = SqlAlchemyCapacityLedger(session)
    async with session.begin():
        try:
            reservation = await reservation_usecase.create_reservation(
                facility_repo,
                res_repo,
                ledger,
                facility_id=payload.facility_id,
                day=payload.date,
                time_slot=payload.slot,
                actor=actor,
                today=today,
                companions=payload.companions,
                purpose=payload.purpose,
                notifier=notifier,
                release_attempts=settings.release_retry_attempts,
            )
        except BookingError as exc:
            raise to_http_exception(exc) from exc

    _audit("reservation.created", actor=actor, reservation=reservation)
    return ReservationRead.from_db(reservation=reservation)


@router.get("/me/reservations", response_model=List[ReservationRead])
async def list_my_reservations(
    status_filter: Optional[ReservationStatus] = Query(default=None, alias="status"),
    session: AsyncSession = Depends(get_session),
    actor: Actor = Depends(get_current_actor),
) -> list[ReservationRead]:
    res_repo = SqlAlchemyReservationRepository(session)
    rows = await reservation_usecase.list_user_reservations(res_repo, actor=actor, status=status_filter)
    return [ReservationRead.from_db(reservation=row) for row in rows]


@router.get("/facilities/{facility_id}/reservations", response_model=List[ReservationRead])
async def list_facility_reservations(
    facility_id: int,
    day: date = Query(..., alias="date"),
    status_filter: Optional[ReservationStatus] = Query(default=None, alias="status"),
    session: AsyncSession = Depends(get_session),
    actor: Actor = Depends(get_current_actor),
) -> list[ReservationRead]:
    res_repo = SqlAlchemyReservationRepository(session)
    try:
        rows = await reservation_usecase.list_facility_reservations(
            res_repo, facility_id=facility_id, day=day, actor=actor, status=status_filter
        )
    except BookingError as exc:
        raise to_http_exception(exc) from exc
    return [ReservationRead.from_db(reservation=row) for row in rows]


@router.get("/reservations/{reservation_id}", response_model=ReservationRead)
async def get_reservation(
    reservation_id: int = Path(..., ge=1),
    session: AsyncSession = Depends(get_session),
    actor: Actor = Depends(get_current_actor),
) -> ReservationRead:
    res_repo = SqlAlchemyReservationRepository(session)
    try:
        reservation = await reservation_usecase.get_reservation(res_repo, reservation_id=reservation_id, actor=actor)
    except BookingError as exc:
        raise to_http_exception(exc) from exc
    return ReservationRead.from_db(reservation=reservation)


@router.delete("/reservations/{reservation_id}", response_model=ReservationRead)
async def cancel_reservation(
    reservation_id: int = Path(..., ge=1),
    session: AsyncSession = Depends(get_session),
    actor: Actor = Depends(get_current_actor),
    notifier: Notifier = Depends(get_notifier),
    settings: Settings = Depends(get_settings),
) -> ReservationRead:
    res_repo = SqlAlchemyReservationRepository(session)
    ledger = SqlAlchemyCapacityLedger(session)
    async with session.begin():
        try:
            updated, previous = await reservation_usecase.cancel_reservation(
                res_repo,
                ledger,
                reservation_id=reservation_id,
                actor=actor,
                notifier=notifier,
                release_attempts=settings.release_retry_attempts,
            )
        except BookingError as exc:
            raise to_http_exception(exc) from exc

    if previous != ReservationStatus.CANCELLED:
        _audit("reservation.cancelled", actor=actor, reservation=updated, status_from=previous)
    return ReservationRead.from_db(reservation=updated)


@router.patch("/reservations/{reservation_id}", response_model=ReservationRead)
async def patch_reservation(
    payload: ReservationPatch,
    reservation_id: int = Path(..., ge=1),
    if_match: Optional[str] = Header(default=None, alias="If-Match"),
    session: AsyncSession = Depends(get_session),
    actor: Actor = Depends(get_current_actor),
    notifier: Notifier = Depends(get_notifier),
    settings: Settings = Depends(get_settings),
) -> ReservationRead:
    expected_version = _extract_version(if_match, payload)
    res_repo = SqlAlchemyReservationRepository(session)
    ledger = SqlAlchemyCapacityLedger(session)
    fields = payload.model_fields_set
    note_kwargs = {"note": payload.note} if "note" in fields else {}
    async with session.begin():
        try:
            before = await reservation_usecase.get_reservation(res_repo, reservation_id=reservation_id, actor=actor)
            note_before, checked_in_before = before.note, before.checked_in
            updated, previous = await admin_usecase.patch_reservation(
                res_repo,
                ledger,
                reservation_id=reservation_id,
                actor=actor,
                status=payload.status,
                checked_in=payload.checked_in,
                expected_version=expected_version,
                notifier=notifier,
                release_attempts=settings.release_retry_attempts,
                **note_kwargs,
            )
        except BookingError as exc:
            raise to_http_exception(exc) from exc

    if updated.status != previous:
        _audit("reservation.status_changed", actor=actor, reservation=updated, status_from=previous)
    if updated.note != note_before:
        _audit("reservation.note_updated", actor=actor, reservation=updated)
    if updated.checked_in and not checked_in_before:
        _audit("reservation.checked_in", actor=actor, reservation=updated)
    return ReservationRead.from_db(reservation=updated)
