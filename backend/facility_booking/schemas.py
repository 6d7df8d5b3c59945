from datetime import date, datetime, time
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator

from .models import Facility, FacilityStatus, Reservation, ReservationStatus
from .utils.time import utc_naive_to_local


class SlotAvailability(BaseModel):
    slot: str
    capacity: int
    booked: int
    available: int
    is_bookable: bool


class FacilityCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    capacity: int = Field(ge=1)
    opens_at: time
    closes_at: time
    slot_interval_minutes: int = Field(default=60, ge=1)
    status: FacilityStatus = FacilityStatus.OPEN
    requires_approval: bool = False
    max_reservations_per_day: Optional[int] = Field(default=None, ge=1)


class FacilitySettingsUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    capacity: Optional[int] = Field(default=None, ge=1)
    opens_at: Optional[time] = None
    closes_at: Optional[time] = None
    slot_interval_minutes: Optional[int] = Field(default=None, ge=1)
    status: Optional[FacilityStatus] = None
    requires_approval: Optional[bool] = None
    max_reservations_per_day: Optional[int] = Field(default=None, ge=1)

    @field_validator(
        "name", "capacity", "opens_at", "closes_at", "slot_interval_minutes", "status", "requires_approval"
    )
    @classmethod
    def _not_null(cls, value: Any) -> Any:
        # Only the daily limit may be cleared with null.
        if value is None:
            raise ValueError("must not be null")
        return value


class FacilityRead(BaseModel):
    facility_id: int
    name: str
    capacity: int
    opens_at: time
    closes_at: time
    slot_interval_minutes: int
    status: FacilityStatus
    requires_approval: bool
    max_reservations_per_day: Optional[int]

    @field_serializer("opens_at", "closes_at")
    def _ser_time(self, value: time) -> str:
        return value.strftime("%H:%M")

    @classmethod
    def from_db(cls, *, facility: Facility) -> "FacilityRead":
        return cls(
            facility_id=facility.id,
            name=facility.name,
            capacity=facility.capacity,
            opens_at=facility.opens_at,
            closes_at=facility.closes_at,
            slot_interval_minutes=facility.slot_interval_minutes,
            status=facility.status,
            requires_approval=facility.requires_approval,
            max_reservations_per_day=facility.max_reservations_per_day,
        )


class MaintenanceRequest(BaseModel):
    since: Optional[date] = None
    reason: Optional[str] = Field(default=None, max_length=255)


class ReservationCreate(BaseModel):
    facility_id: int = Field(ge=1)
    date: date
    slot: str = Field(min_length=11, max_length=11, examples=["17:00-18:00"])
    companions: int = Field(default=0, ge=0)
    purpose: Optional[str] = Field(default=None, max_length=255)


class ReservationPatch(BaseModel):
    model_config = ConfigDict(extra="forbid")

    status: Optional[ReservationStatus] = None
    note: Optional[str] = Field(default=None, max_length=2000)
    checked_in: Optional[bool] = None
    version: Optional[int] = Field(default=None, ge=1)


class ReservationRead(BaseModel):
    reservation_id: int
    facility_id: int
    requester_id: str
    requester_name: str
    date: date
    slot: str
    status: ReservationStatus
    units: int
    companions: int
    purpose: Optional[str]
    note: Optional[str]
    checked_in: bool
    version: int
    created_at: datetime

    @field_serializer("created_at")
    def _ser_datetime(self, dt: datetime) -> str:
        return dt.isoformat()

    @classmethod
    def from_db(cls, *, reservation: Reservation) -> "ReservationRead":
        return cls(
            reservation_id=reservation.id,
            facility_id=reservation.facility_id,
            requester_id=reservation.requester_id,
            requester_name=reservation.requester_name,
            date=reservation.reserved_on,
            slot=reservation.time_slot,
            status=reservation.status,
            units=reservation.units,
            companions=reservation.companions,
            purpose=reservation.purpose,
            note=reservation.note,
            checked_in=bool(reservation.checked_in),
            version=reservation.version,
            created_at=utc_naive_to_local(reservation.created_at),
        )


class MaintenanceRead(BaseModel):
    facility: FacilityRead
    affected_reservations: List[ReservationRead]


class SlotUsage(BaseModel):
    slot: str
    booked: int
    usage: float


class FacilityDayStats(BaseModel):
    facility_id: int
    date: date
    total_reservations: int
    active_reservations: int
    pending: int
    confirmed: int
    cancelled: int
    checked_in: int
    cancellation_rate: float
    booked_units: int
    popular_slots: List[SlotUsage]
    time_distribution: Dict[str, float]

    @classmethod
    def from_summary(cls, summary: Dict[str, Any]) -> "FacilityDayStats":
        return cls.model_validate(summary)
