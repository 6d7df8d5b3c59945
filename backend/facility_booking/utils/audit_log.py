from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Literal, Optional

from ..domain.identity import Actor
from ..models import Facility, Reservation
from .request_id import get_request_id

AuditAction = Literal[
    "reservation.created",
    "reservation.cancelled",
    "reservation.status_changed",
    "reservation.note_updated",
    "reservation.checked_in",
    "facility.created",
    "facility.updated",
    "facility.maintenance_scheduled",
    "facility.reopened",
]
AuditInitiator = Literal["resident", "staff", "system"]

_audit_logger = logging.getLogger("audit")
_audit_logger.setLevel(logging.INFO)
if not _audit_logger.handlers:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(message)s"))
    _audit_logger.addHandler(handler)
_audit_logger.propagate = False


def _enum_to_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    if hasattr(value, "value"):
        return str(value.value)
    return str(value)


def initiator_for(actor: Actor) -> AuditInitiator:
    return "staff" if actor.is_staff else "resident"


def emit_audit_log(
    *,
    action: AuditAction,
    initiator: AuditInitiator,
    actor_id: Optional[str],
    facility_id: Optional[int],
    reservation_id: Optional[int] = None,
    reserved_on: Optional[str] = None,
    time_slot: Optional[str] = None,
    units: Optional[int] = None,
    status_from: Optional[Any] = None,
    status_to: Optional[Any] = None,
    version: Optional[int] = None,
    message: Optional[str] = None,
    extra: Optional[dict[str, Any]] = None,
) -> None:
    """Emit structured JSON audit log. Raises RuntimeError if logging fails."""
    payload: dict[str, Any] = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "level": "info",
        "action": action,
        "initiator": initiator,
        "request_id": get_request_id(),
        "actor_id": actor_id,
        "facility_id": facility_id,
        "reservation_id": reservation_id,
        "reserved_on": reserved_on,
        "time_slot": time_slot,
        "units": units,
        "status_from": _enum_to_str(status_from),
        "status_to": _enum_to_str(status_to),
        "version": version,
    }
    if message is not None:
        payload["message"] = message
    if extra:
        payload.update(extra)

    # Drop None values to keep the log compact.
    compact_payload = {k: v for k, v in payload.items() if v is not None}
    try:
        _audit_logger.info(json.dumps(compact_payload, ensure_ascii=True, default=str))
    except Exception as exc:  # pragma: no cover
        raise RuntimeError("failed to emit audit log") from exc


def audit_reservation(
    action: AuditAction,
    *,
    actor: Actor,
    reservation: Reservation,
    status_from: Optional[Any] = None,
    extra: Optional[dict[str, Any]] = None,
) -> None:
    emit_audit_log(
        action=action,
        initiator=initiator_for(actor),
        actor_id=actor.actor_id,
        facility_id=reservation.facility_id,
        reservation_id=reservation.id,
        reserved_on=reservation.reserved_on.isoformat(),
        time_slot=reservation.time_slot,
        units=reservation.units,
        status_from=status_from,
        status_to=reservation.status,
        version=reservation.version,
        extra=extra,
    )


def audit_facility(
    action: AuditAction,
    *,
    actor: Actor,
    facility: Facility,
    extra: Optional[dict[str, Any]] = None,
) -> None:
    emit_audit_log(
        action=action,
        initiator=initiator_for(actor),
        actor_id=actor.actor_id,
        facility_id=facility.id,
        status_to=facility.status,
        extra=extra,
    )
