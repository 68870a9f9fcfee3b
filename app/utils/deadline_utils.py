"""
Timezone-aware deadline arithmetic for ritual days.

A ritual day is stored as a date-only ``local_date`` that is meaningful only
in the owning user's IANA timezone. Every function here turns such a date
into an absolute UTC instant, using the zone offset in force on that
specific date so daylight-saving transitions are honoured.
"""

from datetime import date, datetime, time, timedelta, timezone
from functools import lru_cache
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from app.utils.logging import get_logger

logger = get_logger()

UTC_ZONE = ZoneInfo("UTC")
DEADLINE_AFTER_START_OF_DAY = timedelta(hours=24)


@lru_cache(maxsize=512)
def _lookup_zone(name: str) -> Optional[ZoneInfo]:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError, TypeError, OSError):
        # OSError covers zone directory names such as "America"
        # Cached, so each distinct bad name is reported once per process
        logger.warning(f"Unknown timezone '{name}', falling back to UTC")
        return None


def resolve_zone(name: Optional[str]) -> ZoneInfo:
    """Resolve an IANA timezone name, falling back to UTC when empty or invalid."""
    if not name or not name.strip():
        return UTC_ZONE
    return _lookup_zone(name.strip()) or UTC_ZONE


def _local_to_utc(local_date: date, wall_clock: time, zone: ZoneInfo) -> datetime:
    # fold=0 maps a wall-clock time inside a DST gap forward by the gap size
    # and picks the first occurrence of an ambiguous time.
    local = datetime.combine(local_date, wall_clock).replace(tzinfo=zone)
    return local.astimezone(timezone.utc)


def start_of_day(local_date: date, tz_name: Optional[str]) -> datetime:
    """
    First instant of ``local_date`` in ``tz_name``, as an aware UTC datetime.

    Examples:
    - 2024-03-10 in America/New_York -> 2024-03-10T05:00:00Z
    - 2024-03-31 in Europe/Berlin   -> 2024-03-30T23:00:00Z
    """
    return _local_to_utc(local_date, time(0, 0), resolve_zone(tz_name))


def reminder_instant(
    local_date: date, tz_name: Optional[str], hour: int, minute: int
) -> datetime:
    """
    UTC instant of the user's check-in reminder on ``local_date``.

    The reminder is the wall-clock time ``hour:minute:00.000`` on that date
    in the user's zone.

    Raises:
        ValueError: hour or minute outside 0..23 / 0..59
    """
    if not 0 <= hour <= 23 or not 0 <= minute <= 59:
        raise ValueError(f"Invalid check-in time {hour}:{minute}")
    return _local_to_utc(local_date, time(hour, minute), resolve_zone(tz_name))


def deadline_instant(local_date: date, tz_name: Optional[str]) -> datetime:
    """
    UTC instant at which ``local_date`` is over for the user.

    Always start-of-day plus 24 elapsed hours, independent of the user's
    check-in time. On DST transition days this differs from the next local
    midnight by the size of the shift.
    """
    return start_of_day(local_date, tz_name) + DEADLINE_AFTER_START_OF_DAY


def is_deadline_passed(
    local_date: date, tz_name: Optional[str], now: datetime
) -> bool:
    """Whether ``now`` (aware) is at or past the ritual day's deadline."""
    return now >= deadline_instant(local_date, tz_name)


def is_within_window(
    instant: datetime, now: datetime, late: timedelta, early: timedelta
) -> bool:
    """Whether ``instant`` lies inside ``[now - late, now + early]``."""
    return now - late <= instant <= now + early
