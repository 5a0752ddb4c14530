"""
Boost activation windows.

A boost record is either

  - daily (default): runs from the start of `start_date` to the end of
    `end_date`, or
  - hourly: runs for `duration_hours` from the moment it was created.

The window is derived on demand and never stored. Any timestamp without an
explicit offset is read as UTC, so every client computes the same window.
"""

from __future__ import annotations
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping, Optional, Union

HOURLY = "hourly"
DAILY = "daily"

_DATE_ONLY = re.compile(r"^\d{4}-\d{2}-\d{2}$")

Instant = Union[str, int, float, datetime, None]

# fractions of any length and "+HH" / "+HHMM" offsets, as Postgres prints them
_ISO_PARTS = re.compile(
    r"^(?P<base>\d{4}-\d{2}-\d{2}(?:[T ]\d{2}:\d{2}(?::\d{2})?)?)"
    r"(?:\.(?P<frac>\d+))?"
    r"(?P<tz>[+-]\d{2}(?::?\d{2})?)?$"
)


def _normalize_iso(s: str) -> str:
    """Rewrite `s` into the subset datetime.fromisoformat reads on 3.10."""
    m = _ISO_PARTS.match(s)
    if m is None:
        return s
    out = m["base"]
    if m["frac"]:
        out += "." + m["frac"][:6].ljust(6, "0")
    tz = m["tz"]
    if tz:
        digits = tz[1:].replace(":", "")
        out += f"{tz[0]}{digits[:2]}:{digits[2:4] or '00'}"
    return out


# accepted spellings of each field
_FIELDS = {
    "start_date": ("start_date", "startDate"),
    "end_date": ("end_date", "endDate"),
    "created_at": ("created_at", "createdAt"),
    "duration_mode": ("duration_mode", "durationMode"),
    "duration_hours": ("duration_hours", "durationHours"),
    "deactivated_at": ("deactivated_at", "deactivatedAt"),
}


@dataclass(frozen=True)
class BoostWindow:
    start: datetime
    end: datetime

    def as_dict(self) -> dict:
        return {
            "start": _iso_z(self.start),
            "end": _iso_z(self.end),
        }


def _iso_z(dt: datetime) -> str:
    return (
        dt.astimezone(timezone.utc)
        .isoformat(timespec="milliseconds")
        .replace("+00:00", "Z")
    )


def _field(record: Mapping[str, Any], name: str) -> Any:
    for key in _FIELDS[name]:
        value = record.get(key)
        if value not in (None, ""):
            return value
    return None


def _is_date_only(value: Instant) -> bool:
    return isinstance(value, str) and bool(_DATE_ONLY.match(value.strip()))


def parse_instant(value: Instant) -> Optional[datetime]:
    """
    str (ISO 8601, date-only or with time), epoch seconds, or datetime ->
    aware UTC datetime. None for anything unparseable.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    elif isinstance(value, str):
        s = value.strip()
        if not s:
            return None
        if s[-1] in "zZ":
            s = s[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(_normalize_iso(s))
        except ValueError:
            return None
    else:
        return None

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _start_of_day(value: Instant) -> Optional[datetime]:
    dt = parse_instant(value)
    if dt is None:
        return None
    return dt.replace(hour=0, minute=0, second=0, microsecond=0)


def _end_of_day(value: Instant) -> Optional[datetime]:
    dt = parse_instant(value)
    if dt is None:
        return None
    return dt.replace(hour=23, minute=59, second=59, microsecond=999000)


def _hours(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        hours = float(value)
    except (TypeError, ValueError):
        return None
    return hours if hours >= 0 else None


def compute_boost_window(record: Mapping[str, Any]) -> Optional[BoostWindow]:
    """
    Returns the active window for a boost record, or None when no sane
    window can be derived. None means "not active", never an error.
    """
    mode = (_field(record, "duration_mode") or DAILY).lower()
    created_at = parse_instant(_field(record, "created_at"))
    hours = _hours(_field(record, "duration_hours"))

    if mode == HOURLY:
        # hourly boosts ignore start_date on purpose
        start = created_at
        if start is None:
            return None
        end = start + timedelta(hours=hours) if hours is not None else start
    else:
        raw_start = _field(record, "start_date")
        raw_end = _field(record, "end_date")

        if raw_start is not None:
            start = (
                _start_of_day(raw_start) if _is_date_only(raw_start)
                else parse_instant(raw_start)
            )
        else:
            start = created_at

        if raw_end is not None:
            end = (
                _end_of_day(raw_end) if _is_date_only(raw_end)
                else parse_instant(raw_end)
            )
        elif created_at is not None and hours is not None:
            end = created_at + timedelta(hours=hours)
        else:
            end = created_at

    if start is None or end is None:
        return None

    deactivated_at = parse_instant(_field(record, "deactivated_at"))
    if deactivated_at is not None and deactivated_at < end:
        end = deactivated_at

    if start > end:
        return None
    return BoostWindow(start=start, end=end)


def is_active(window: Optional[BoostWindow], now: Instant = None) -> bool:
    if window is None:
        return False
    at = parse_instant(now) if now is not None else datetime.now(timezone.utc)
    if at is None:
        return False
    return window.start <= at <= window.end


def is_boost_active(record: Mapping[str, Any], now: Instant = None) -> bool:
    return is_active(compute_boost_window(record), now)
