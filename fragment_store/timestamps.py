"""
Timestamp helpers.

Mining state rows were written in more than one textual format over time.
Parsing tries each known format in order and stops at the first success;
stored data is never rewritten.
"""

import re
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

# 2026-02-14 10:30:00.123456789 +0000 UTC m=+0.000123
_LEGACY_PATTERN = re.compile(
    r"^(?P<date>\d{4}-\d{2}-\d{2})[ T](?P<time>\d{2}:\d{2}:\d{2})"
    r"(?:\.(?P<frac>\d+))?"
    r"\s+(?P<offset>[+-]\d{2}:?\d{2})"
    r"(?:\s+[A-Za-z][A-Za-z0-9_+\-/]*)?"
    r"(?:\s+m=[+-]?\d+(?:\.\d+)?)?$"
)


def utc_now() -> datetime:
    """Timezone-aware UTC now."""
    return datetime.now(timezone.utc)


def utc_now_naive() -> datetime:
    """Naive UTC datetime, the form stored in every datetime column."""
    return utc_now().replace(tzinfo=None)


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def format_timestamp(value: datetime) -> str:
    """Strict ISO-8601 UTC text, e.g. 2026-10-18T12:00:00.000000Z."""
    naive = to_naive_utc(value)
    return naive.strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _parse_iso(value: str) -> Optional[datetime]:
    candidate = value
    if candidate.endswith(("Z", "z")):
        candidate = candidate[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(candidate)
    except ValueError:
        return None


def _parse_legacy(value: str) -> Optional[datetime]:
    match = _LEGACY_PATTERN.match(value)
    if not match:
        return None

    frac = (match.group("frac") or "")[:6].ljust(6, "0")
    offset = match.group("offset").replace(":", "")
    sign = -1 if offset[0] == "-" else 1
    delta = timedelta(hours=int(offset[1:3]), minutes=int(offset[3:5]))
    try:
        parsed = datetime.strptime(
            f"{match.group('date')} {match.group('time')}.{frac}",
            "%Y-%m-%d %H:%M:%S.%f",
        )
    except ValueError:
        return None
    return parsed.replace(tzinfo=timezone(sign * delta))


_PARSERS: List[Callable[[str], Optional[datetime]]] = [_parse_iso, _parse_legacy]


def parse_timestamp(value) -> Optional[datetime]:
    """Parse a stored timestamp into naive UTC, or None if no format matches."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return to_naive_utc(value)
    text_value = str(value).strip()
    if not text_value:
        return None
    for parser in _PARSERS:
        parsed = parser(text_value)
        if parsed is not None:
            return to_naive_utc(parsed)
    return None
