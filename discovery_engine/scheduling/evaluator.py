"""Cron schedule evaluation in a configuration's timezone."""

import logging
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

from discovery_engine.errors import InvalidConfigurationError
from discovery_engine.utils.timeutils import as_utc

logger = logging.getLogger(__name__)

DEFAULT_WINDOW = timedelta(minutes=2)

# Windows zone ids mapped to their primary IANA zone (CLDR windowsZones, territory 001)
WINDOWS_TIMEZONES = {
    "UTC": "Etc/UTC",
    "GMT Standard Time": "Europe/London",
    "Greenwich Standard Time": "Atlantic/Reykjavik",
    "W. Europe Standard Time": "Europe/Berlin",
    "Central Europe Standard Time": "Europe/Budapest",
    "Central European Standard Time": "Europe/Warsaw",
    "Romance Standard Time": "Europe/Paris",
    "E. Europe Standard Time": "Europe/Chisinau",
    "FLE Standard Time": "Europe/Kiev",
    "GTB Standard Time": "Europe/Bucharest",
    "Russian Standard Time": "Europe/Moscow",
    "Turkey Standard Time": "Europe/Istanbul",
    "Israel Standard Time": "Asia/Jerusalem",
    "South Africa Standard Time": "Africa/Johannesburg",
    "Arabian Standard Time": "Asia/Dubai",
    "India Standard Time": "Asia/Calcutta",
    "SE Asia Standard Time": "Asia/Bangkok",
    "China Standard Time": "Asia/Shanghai",
    "Singapore Standard Time": "Asia/Singapore",
    "Tokyo Standard Time": "Asia/Tokyo",
    "Korea Standard Time": "Asia/Seoul",
    "AUS Eastern Standard Time": "Australia/Sydney",
    "E. Australia Standard Time": "Australia/Brisbane",
    "W. Australia Standard Time": "Australia/Perth",
    "New Zealand Standard Time": "Pacific/Auckland",
    "Hawaiian Standard Time": "Pacific/Honolulu",
    "Alaskan Standard Time": "America/Anchorage",
    "Pacific Standard Time": "America/Los_Angeles",
    "US Mountain Standard Time": "America/Phoenix",
    "Mountain Standard Time": "America/Denver",
    "Central Standard Time": "America/Chicago",
    "Canada Central Standard Time": "America/Regina",
    "Eastern Standard Time": "America/New_York",
    "US Eastern Standard Time": "America/Indianapolis",
    "Atlantic Standard Time": "America/Halifax",
    "Newfoundland Standard Time": "America/St_Johns",
    "SA Pacific Standard Time": "America/Bogota",
    "E. South America Standard Time": "America/Sao_Paulo",
    "Argentina Standard Time": "America/Buenos_Aires",
    "Central Standard Time (Mexico)": "America/Mexico_City",
}


def get_timezone(name: str) -> tzinfo:
    """
    Resolve an IANA or Windows timezone identifier.

    Raises:
        InvalidConfigurationError: If the identifier is unknown
    """
    if not name or not name.strip():
        raise InvalidConfigurationError("Timezone is required")

    key = WINDOWS_TIMEZONES.get(name.strip(), name.strip())
    if key.upper() in ("UTC", "ETC/UTC", "Z"):
        return timezone.utc
    try:
        return ZoneInfo(key)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise InvalidConfigurationError(f"Unknown timezone '{name}'") from e


def validate_cron(expression: str) -> None:
    """
    Validate a standard 5-field cron expression.

    Raises:
        InvalidConfigurationError: If the expression is malformed
    """
    if not expression or len(expression.split()) != 5:
        raise InvalidConfigurationError(
            f"Cron expression '{expression}' must have exactly 5 fields "
            "(minute hour day-of-month month day-of-week)"
        )
    if not croniter.is_valid(expression):
        raise InvalidConfigurationError(f"Invalid cron expression '{expression}'")


def validate_schedule(expression: str, timezone_name: str) -> None:
    validate_cron(expression)
    get_timezone(timezone_name)


def next_due(expression: str, timezone_name: str, after: datetime) -> datetime:
    """
    First scheduled occurrence strictly after the given instant.

    Args:
        expression: 5-field cron expression, interpreted in local time
        timezone_name: IANA or Windows timezone id
        after: Reference instant (naive values are treated as UTC)

    Returns:
        Occurrence as an aware UTC datetime
    """
    zone = get_timezone(timezone_name)
    local_start = as_utc(after).astimezone(zone)
    try:
        occurrence = croniter(expression, local_start).get_next(datetime)
    except (ValueError, KeyError) as e:
        raise InvalidConfigurationError(f"Invalid cron expression '{expression}'") from e
    return as_utc(occurrence)


def due_occurrence(
    expression: str,
    timezone_name: str,
    now: datetime,
    window: timedelta = DEFAULT_WINDOW,
) -> Optional[datetime]:
    """
    Occurrence that falls inside [now - window, now], if any.

    When several occurrences fall inside the window the earliest is returned.
    """
    now_utc = as_utc(now)
    candidate = next_due(
        expression,
        timezone_name,
        now_utc - window - timedelta(microseconds=1),
    )
    if candidate <= now_utc:
        return candidate
    return None


def is_due(
    expression: str,
    timezone_name: str,
    now: datetime,
    window: timedelta = DEFAULT_WINDOW,
) -> bool:
    """Whether a scheduled occurrence falls within the window ending at now."""
    return due_occurrence(expression, timezone_name, now, window) is not None
