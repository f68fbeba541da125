from __future__ import annotations

import re
from collections.abc import Callable
from datetime import UTC, date, datetime, time

from .errors import InvalidDate, InvalidTime

Clock = Callable[[], datetime]

_DATE_FORMAT = "%Y-%m-%d"
_MINUTE_FORMAT = "%H:%M"
_SECOND_FORMAT = "%H:%M:%S"

# strptime alone also accepts unpadded fields such as "2026-3-3" or "9:5"
_DATE_RE = re.compile(r"[0-9]{4}-[0-9]{2}-[0-9]{2}")
_MINUTE_RE = re.compile(r"[0-9]{2}:[0-9]{2}")
_SECOND_RE = re.compile(r"[0-9]{2}:[0-9]{2}:[0-9]{2}")


def utc_now() -> datetime:
    return datetime.now(UTC)


def parse_date(value: str) -> date:
    if not isinstance(value, str) or not _DATE_RE.fullmatch(value):
        raise InvalidDate()
    try:
        return datetime.strptime(value, _DATE_FORMAT).date()
    except ValueError as exc:
        raise InvalidDate() from exc


def parse_time_of_day(value: str, allow_seconds: bool = False) -> time:
    """Parse a submitted ``HH:MM`` time.

    Values read back from storage may carry seconds (``HH:MM:SS``); pass
    ``allow_seconds=True`` for those.
    """
    formats = [(_MINUTE_RE, _MINUTE_FORMAT)]
    if allow_seconds:
        formats.append((_SECOND_RE, _SECOND_FORMAT))
    for pattern, fmt in formats:
        if not isinstance(value, str) or not pattern.fullmatch(value):
            continue
        try:
            return datetime.strptime(value, fmt).time()
        except ValueError:
            break
    raise InvalidTime()


def truncate_to_minute(value: time) -> time:
    return value.replace(second=0, microsecond=0)


def times_equal(a: time | None, b: time | None) -> bool:
    if a is None and b is None:
        return True
    if a is None or b is None:
        return False
    return truncate_to_minute(a) == truncate_to_minute(b)


def is_ordered(start: time, end: time) -> bool:
    return truncate_to_minute(start) < truncate_to_minute(end)


def format_time(value: time | None) -> str | None:
    if value is None:
        return None
    return value.strftime(_MINUTE_FORMAT)
