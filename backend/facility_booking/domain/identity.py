from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import FrozenSet, Optional


class Role(StrEnum):
    RESIDENT = "resident"
    TRAINER = "trainer"
    ADMIN = "admin"


@dataclass(frozen=True)
class Actor:
    """Resolved caller identity. `facility_scope=None` means every facility."""

    actor_id: str
    role: Role
    display_name: str = ""
    facility_scope: Optional[FrozenSet[int]] = None

    @property
    def is_staff(self) -> bool:
        return self.role == Role.ADMIN

    def manages(self, facility_id: int) -> bool:
        if not self.is_staff:
            return False
        return self.facility_scope is None or facility_id in self.facility_scope
