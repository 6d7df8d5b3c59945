from datetime import date
from typing import List

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from ..deps import get_current_actor, get_session
from ..domain.errors import BookingError
from ..infrastructure.repositories import SqlAlchemyCapacityLedger, SqlAlchemyFacilityRepository
from ..schemas import SlotAvailability
from ..usecases import slots as slot_usecase
from .errors import to_http_exception

router = APIRouter(prefix="/facilities", tags=["slots"], dependencies=[Depends(get_current_actor)])


@router.get("/{facility_id}/availability", response_model=List[SlotAvailability])
async def get_availability(
    facility_id: int,
    day: date = Query(..., alias="date", description="Local calendar date (YYYY-MM-DD)"),
    session: AsyncSession = Depends(get_session),
) -> list[SlotAvailability]:
    facility_repo = SqlAlchemyFacilityRepository(session)
    ledger = SqlAlchemyCapacityLedger(session)
    try:
        rows = await slot_usecase.get_availability(facility_repo, ledger, facility_id=facility_id, day=day)
    except BookingError as exc:
        raise to_http_exception(exc) from exc
    return [SlotAvailability(**row) for row in rows]
