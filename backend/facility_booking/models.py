from __future__ import annotations

from datetime import date, datetime, time
from enum import StrEnum
from typing import Optional

from sqlalchemy import Boolean, CheckConstraint, Date, Enum, ForeignKey, Index, Text, Time
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.sql.sqltypes import BigInteger, DateTime, Integer, String


class Base(DeclarativeBase):
    pass


# SQLite only autoincrements an INTEGER primary key.
IdType = BigInteger().with_variant(Integer, "sqlite")


class FacilityStatus(StrEnum):
    OPEN = "open"
    MAINTENANCE = "maintenance"
    CLOSED = "closed"


class ReservationStatus(StrEnum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


ACTIVE_STATUSES = (ReservationStatus.PENDING, ReservationStatus.CONFIRMED)


def _enum_column(enum_cls: type[StrEnum]) -> Enum:
    return Enum(
        enum_cls,
        values_callable=lambda cls: [e.value for e in cls],
        native_enum=False,
    )


class Facility(Base):
    __tablename__ = "facilities"
    __table_args__ = (
        CheckConstraint("capacity >= 1", name="chk_facilities_capacity"),
        CheckConstraint("slot_interval_minutes >= 1", name="chk_facilities_interval"),
        CheckConstraint("opens_at <= closes_at", name="chk_facilities_hours"),
    )

    id: Mapped[int] = mapped_column(IdType, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    capacity: Mapped[int] = mapped_column(Integer, nullable=False)
    opens_at: Mapped[time] = mapped_column(Time, nullable=False)
    closes_at: Mapped[time] = mapped_column(Time, nullable=False)
    slot_interval_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=60)
    status: Mapped[FacilityStatus] = mapped_column(
        _enum_column(FacilityStatus),
        nullable=False,
        default=FacilityStatus.OPEN,
    )
    requires_approval: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    max_reservations_per_day: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)

    reservations: Mapped[list["Reservation"]] = relationship(back_populates="facility")


class Reservation(Base):
    __tablename__ = "reservations"
    __table_args__ = (
        CheckConstraint("units >= 1", name="chk_res_units"),
        CheckConstraint("companions >= 0", name="chk_res_companions"),
        Index("idx_res_facility_day", "facility_id", "reserved_on"),
        Index("idx_res_requester", "requester_id"),
    )

    id: Mapped[int] = mapped_column(IdType, primary_key=True, autoincrement=True)
    facility_id: Mapped[int] = mapped_column(ForeignKey("facilities.id"), nullable=False)
    requester_id: Mapped[str] = mapped_column(String(64), nullable=False)
    requester_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    reserved_on: Mapped[date] = mapped_column(Date, nullable=False)
    time_slot: Mapped[str] = mapped_column(String(11), nullable=False)
    status: Mapped[ReservationStatus] = mapped_column(
        _enum_column(ReservationStatus),
        nullable=False,
        default=ReservationStatus.CONFIRMED,
    )
    companions: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    units: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    purpose: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    checked_in: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)

    facility: Mapped["Facility"] = relationship(back_populates="reservations")

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES


class SlotOccupancy(Base):
    """Denormalized occupancy counter, written in the same transaction as reservations."""

    __tablename__ = "slot_occupancy"
    __table_args__ = (CheckConstraint("booked >= 0", name="chk_occupancy_booked"),)

    facility_id: Mapped[int] = mapped_column(ForeignKey("facilities.id"), primary_key=True)
    reserved_on: Mapped[date] = mapped_column(Date, primary_key=True)
    time_slot: Mapped[str] = mapped_column(String(11), primary_key=True)
    booked: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
