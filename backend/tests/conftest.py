from datetime import time
from typing import Any, Awaitable, Callable

import pytest
from facility_booking.domain.identity import Actor, Role
from facility_booking.infrastructure.memory import (
    InMemoryCapacityLedger,
    InMemoryFacilityRepository,
    InMemoryReservationRepository,
)
from facility_booking.models import Facility, FacilityStatus


class Repos:
    def __init__(self) -> None:
        self.facilities = InMemoryFacilityRepository()
        self.reservations = InMemoryReservationRepository()
        self.ledger = InMemoryCapacityLedger()


@pytest.fixture
def repos() -> Repos:
    return Repos()


@pytest.fixture
def make_facility(repos: Repos) -> Callable[..., Awaitable[Facility]]:
    """Factory for a facility in the in-memory store. Defaults describe a 06:00-22:00 gym of capacity 10."""

    async def _make(**overrides: Any) -> Facility:
        fields: dict[str, Any] = {
            "name": "Gym",
            "capacity": 10,
            "opens_at": time(6, 0),
            "closes_at": time(22, 0),
            "slot_interval_minutes": 60,
            "status": FacilityStatus.OPEN,
            "requires_approval": False,
            "max_reservations_per_day": None,
        }
        fields.update(overrides)
        return await repos.facilities.create(**fields)

    return _make


@pytest.fixture
def resident() -> Callable[..., Actor]:
    def _resident(actor_id: str = "U001", name: str = "Hong") -> Actor:
        return Actor(actor_id=actor_id, role=Role.RESIDENT, display_name=name)

    return _resident


@pytest.fixture
def admin() -> Actor:
    return Actor(actor_id="A001", role=Role.ADMIN, display_name="Manager")
