from __future__ import annotations

import asyncio
import logging
from typing import Literal, Optional, Protocol

from ..models import Reservation

NotificationEvent = Literal["reservation.created", "reservation.cancelled"]

logger = logging.getLogger(__name__)

_pending: set[asyncio.Task[None]] = set()


class Notifier(Protocol):
    async def notify(self, event: NotificationEvent, reservation: Reservation) -> None: ...


class LoggingNotifier:
    """Default notifier; delivery channels plug in behind the same interface."""

    async def notify(self, event: NotificationEvent, reservation: Reservation) -> None:
        logger.info(
            "notify %s reservation=%s requester=%s facility=%s slot=%s %s",
            event,
            reservation.id,
            reservation.requester_id,
            reservation.facility_id,
            reservation.reserved_on,
            reservation.time_slot,
        )


async def _deliver(notifier: Notifier, event: NotificationEvent, reservation: Reservation) -> None:
    try:
        await notifier.notify(event, reservation)
    except Exception:
        logger.warning("notification %s for reservation %s failed", event, reservation.id, exc_info=True)


def dispatch(
    notifier: Optional[Notifier], event: NotificationEvent, reservation: Reservation
) -> Optional[asyncio.Task[None]]:
    """Fire and forget. A failed delivery is logged and never affects the reservation."""
    if notifier is None:
        return None
    task = asyncio.create_task(_deliver(notifier, event, reservation))
    _pending.add(task)
    task.add_done_callback(_pending.discard)
    return task
