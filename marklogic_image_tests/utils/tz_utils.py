"""Conversion of UTC offsets to the `xs:dayTimeDuration` notation reported by the server.

>>> offset_to_duration(datetime.timedelta(hours=-3, minutes=-30))
'-PT3H30M'
>>> offset_to_duration(datetime.timedelta(hours=5))
'PT5H'
"""

import datetime
import logging
import re
import time
import zoneinfo

from marklogic_image_tests.utils import helpers

LOGGER = logging.getLogger(__name__)

# Numeric offset as printed by `strftime("%z")` or `date +%z`, e.g. "-0330"
_NUMERIC_OFFSET_RE = re.compile(r"^([+-])(\d{2}):?(\d{2})$")


def parse_numeric_offset(offset: str) -> datetime.timedelta:
    """Parse numeric UTC offset like `-0330` or `+05:00`."""
    match = _NUMERIC_OFFSET_RE.match(offset.strip())
    if not match:
        msg = f"Invalid numeric UTC offset '{offset}'"
        raise ValueError(msg)
    sign, hours, minutes = match.groups()
    delta = datetime.timedelta(hours=int(hours), minutes=int(minutes))
    return -delta if sign == "-" else delta


def offset_to_duration(offset: datetime.timedelta) -> str:
    """Convert UTC offset to duration notation, e.g. `-PT3H30M` or `PT5H`.

    Positive offsets have no sign, minutes are omitted when zero and zero offset is `PT0S`.
    """
    total_minutes = round(offset.total_seconds() / 60)
    if total_minutes == 0:
        return "PT0S"

    sign = "-" if total_minutes < 0 else ""
    hours, minutes = divmod(abs(total_minutes), 60)

    duration = f"{sign}PT"
    if hours:
        duration += f"{hours}H"
    if minutes:
        duration += f"{minutes}M"
    return duration


def get_zone_offset(tz_name: str, *, when: datetime.datetime | None = None) -> datetime.timedelta:
    """Return UTC offset of IANA timezone `tz_name` at the given time (now by default)."""
    try:
        zone = zoneinfo.ZoneInfo(tz_name)
    except (zoneinfo.ZoneInfoNotFoundError, ValueError) as exc:
        msg = f"Unknown timezone '{tz_name}'"
        raise ValueError(msg) from exc

    when = when or datetime.datetime.now(tz=datetime.UTC)
    offset = when.astimezone(zone).utcoffset()
    if offset is None:
        msg = f"No UTC offset for timezone '{tz_name}' at {when.isoformat()}"
        raise ValueError(msg)
    return offset


def get_os_offset(tz_name: str) -> datetime.timedelta:
    """Return UTC offset the OS reports for the current time when `TZ` is set to `tz_name`."""
    try:
        with helpers.environ({"TZ": tz_name}):
            time.tzset()
            numeric_offset = time.strftime("%z", time.localtime())
    finally:
        time.tzset()
    LOGGER.debug(f"OS reported offset '{numeric_offset}' for timezone '{tz_name}'.")
    return parse_numeric_offset(numeric_offset)


def tz_to_duration(tz_name: str) -> str:
    """Convert IANA timezone name to duration notation of its current UTC offset.

    The OS falls back to UTC for timezones it doesn't know, so the name is checked first.
    """
    get_zone_offset(tz_name)
    return offset_to_duration(get_os_offset(tz_name))
