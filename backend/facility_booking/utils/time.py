from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo

from ..config import get_settings


def facility_tz() -> ZoneInfo:
    return ZoneInfo(get_settings().facility_timezone)


def facility_today(now: datetime | None = None) -> date:
    """Calendar date at the facility, used for the no-retroactive-booking rule."""
    current = now or datetime.now(timezone.utc)
    if current.tzinfo is None:
        raise ValueError("datetime must be timezone-aware")
    return current.astimezone(facility_tz()).date()


def utc_naive_to_local(dt: datetime) -> datetime:
    return dt.replace(tzinfo=timezone.utc).astimezone(facility_tz())
