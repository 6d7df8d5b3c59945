from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from ..deps import get_current_actor, get_session, get_today
from ..domain.errors import BookingError
from ..domain.identity import Actor
from ..infrastructure.repositories import (
    SqlAlchemyCapacityLedger,
    SqlAlchemyFacilityRepository,
    SqlAlchemyReservationRepository,
)
from ..models import Facility, FacilityStatus
from ..schemas import (
    FacilityCreate,
    FacilityDayStats,
    FacilityRead,
    FacilitySettingsUpdate,
    MaintenanceRead,
    MaintenanceRequest,
    ReservationRead,
)
from ..usecases import admin as admin_usecase
from ..usecases import facilities as facility_usecase
from ..usecases import stats as stats_usecase
from ..utils.audit_log import AuditAction, audit_facility
from .errors import to_http_exception

router = APIRouter(prefix="/facilities", tags=["facilities"], dependencies=[Depends(get_current_actor)])


def _audit(action: AuditAction, *, actor: Actor, facility: Facility, extra: dict | None = None) -> None:
    try:
        audit_facility(action, actor=actor, facility=facility, extra=extra)
    except RuntimeError as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="audit log failed") from exc


@router.post("", response_model=FacilityRead, status_code=status.HTTP_201_CREATED)
async def create_facility(
    payload: FacilityCreate,
    session: AsyncSession = Depends(get_session),
    actor: Actor = Depends(get_current_actor),
) -> FacilityRead:
    facility_repo = SqlAlchemyFacilityRepository(session)
    async with session.begin():
        try:
            facility = await facility_usecase.create_facility(facility_repo, actor=actor, **payload.model_dump())
        except BookingError as exc:
            raise to_http_exception(exc) from exc

    _audit("facility.created", actor=actor, facility=facility)
    return FacilityRead.from_db(facility=facility)


@router.get("", response_model=List[FacilityRead])
async def list_facilities(
    status_filter: Optional[FacilityStatus] = Query(default=None, alias="status"),
    session: AsyncSession = Depends(get_session),
) -> List[FacilityRead]:
    facilities = await facility_usecase.list_facilities(SqlAlchemyFacilityRepository(session), status=status_filter)
    return [FacilityRead.from_db(facility=f) for f in facilities]


@router.get("/{facility_id}", response_model=FacilityRead)
async def get_facility(
    facility_id: int,
    session: AsyncSession = Depends(get_session),
) -> FacilityRead:
    facility_repo = SqlAlchemyFacilityRepository(session)
    try:
        facility = await facility_usecase.get_facility(facility_repo, facility_id=facility_id)
    except BookingError as exc:
        raise to_http_exception(exc) from exc
    return FacilityRead.from_db(facility=facility)


@router.put("/{facility_id}/settings", response_model=FacilityRead)
async def update_facility_settings(
    facility_id: int,
    payload: FacilitySettingsUpdate,
    session: AsyncSession = Depends(get_session),
    actor: Actor = Depends(get_current_actor),
    today: date = Depends(get_today),
) -> FacilityRead:
    facility_repo = SqlAlchemyFacilityRepository(session)
    ledger = SqlAlchemyCapacityLedger(session)
    changes = payload.model_dump(exclude_unset=True)
    async with session.begin():
        try:
            facility = await facility_usecase.update_settings(
                facility_repo,
                ledger,
                facility_id=facility_id,
                actor=actor,
                today=today,
                changes=changes,
            )
        except BookingError as exc:
            raise to_http_exception(exc) from exc

    _audit("facility.updated", actor=actor, facility=facility, extra={"changed": sorted(changes)})
    return FacilityRead.from_db(facility=facility)


@router.post("/{facility_id}/maintenance", response_model=MaintenanceRead)
async def schedule_maintenance(
    facility_id: int,
    payload: MaintenanceRequest,
    session: AsyncSession = Depends(get_session),
    actor: Actor = Depends(get_current_actor),
    today: date = Depends(get_today),
) -> MaintenanceRead:
    facility_repo = SqlAlchemyFacilityRepository(session)
    res_repo = SqlAlchemyReservationRepository(session)
    async with session.begin():
        try:
            facility, affected = await admin_usecase.schedule_maintenance(
                facility_repo,
                res_repo,
                facility_id=facility_id,
                actor=actor,
                since=payload.since or today,
            )
        except BookingError as exc:
            raise to_http_exception(exc) from exc

    _audit(
        "facility.maintenance_scheduled",
        actor=actor,
        facility=facility,
        extra={"affected_reservations": len(affected), "reason": payload.reason},
    )
    return MaintenanceRead(
        facility=FacilityRead.from_db(facility=facility),
        affected_reservations=[ReservationRead.from_db(reservation=r) for r in affected],
    )


@router.post("/{facility_id}/reopen", response_model=FacilityRead)
async def reopen_facility(
    facility_id: int,
    session: AsyncSession = Depends(get_session),
    actor: Actor = Depends(get_current_actor),
) -> FacilityRead:
    facility_repo = SqlAlchemyFacilityRepository(session)
    async with session.begin():
        try:
            facility = await admin_usecase.reopen_facility(facility_repo, facility_id=facility_id, actor=actor)
        except BookingError as exc:
            raise to_http_exception(exc) from exc

    _audit("facility.reopened", actor=actor, facility=facility)
    return FacilityRead.from_db(facility=facility)


@router.get("/{facility_id}/stats", response_model=FacilityDayStats)
async def facility_stats(
    facility_id: int,
    day: date = Query(..., alias="date"),
    session: AsyncSession = Depends(get_session),
    actor: Actor = Depends(get_current_actor),
) -> FacilityDayStats:
    try:
        summary = await stats_usecase.facility_day_stats(
            SqlAlchemyFacilityRepository(session),
            SqlAlchemyReservationRepository(session),
            SqlAlchemyCapacityLedger(session),
            facility_id=facility_id,
            day=day,
            actor=actor,
        )
    except BookingError as exc:
        raise to_http_exception(exc) from exc
    return FacilityDayStats.from_summary(summary)
