from __future__ import annotations

import datetime as dt
import math
import re
from typing import Any, Dict, Iterable, List, Optional

NAN = float("nan")

SESSION_RACE = "race"
SESSION_QUALIFYING = "qualifying"
SESSION_PRACTICE = "practice"
SESSION_WARMUP = "warmup"
SESSION_UNKNOWN = "unknown"

SESSION_TYPES = (SESSION_RACE, SESSION_QUALIFYING, SESSION_PRACTICE, SESSION_WARMUP)

CLASS_PRIORITIES: Dict[str, int] = {
    "Hyper": 1,
    "LMP2_ELMS": 2,
    "LMP2": 3,
    "LMP3": 4,
    "GT3": 5,
    "GTE": 6,
}
UNKNOWN_CLASS_PRIORITY = 999

UNKNOWN_DATE = "Unknown date"

_NUMBER_RE = re.compile(r"^\s*([-+]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][-+]?\d+)?)")
_TIME_STRING_RE = re.compile(r"(\d{4})/(\d{2})/(\d{2}) (\d{2}):(\d{2}):(\d{2})")


def to_number(value: Any) -> float:
    """Coerce ``value`` to a float, returning NaN when it is absent or unparseable.

    Strings are read like a lenient decimal parser: a comma decimal separator
    is accepted and trailing garbage after a leading number is ignored.
    """

    if value is None or isinstance(value, bool):
        return NAN
    if isinstance(value, (int, float)):
        return float(value)
    match = _NUMBER_RE.match(str(value).replace(",", "."))
    if not match:
        return NAN
    try:
        return float(match.group(1))
    except ValueError:
        return NAN


def to_int(value: Any) -> Optional[int]:
    number = to_number(value)
    if not math.isfinite(number):
        return None
    return int(number)


def to_float(value: Any) -> Optional[float]:
    number = to_number(value)
    return number if math.isfinite(number) else None


def is_valid_time(value: float) -> bool:
    return isinstance(value, (int, float)) and math.isfinite(value) and value > 0


def finite_or_none(value: Any) -> Any:
    if isinstance(value, float) and not math.isfinite(value):
        return None
    return value


def mean(values: Iterable[float]) -> float:
    items = list(values)
    if not items:
        return NAN
    return sum(items) / len(items)


def fmt_time(seconds: float) -> str:
    """Format a lap time as ``m:ss.fff`` ("—" when not a valid time)."""

    if not is_valid_time(seconds):
        return "—"
    minutes = int(seconds // 60)
    rest = seconds - minutes * 60
    whole = int(rest)
    millis = int(round((rest - whole) * 1000))
    if millis == 1000:
        whole += 1
        millis = 0
    if whole == 60:
        minutes += 1
        whole = 0
    return f"{minutes}:{whole:02d}.{millis:03d}"


def class_priority(car_class: str | None) -> int:
    return CLASS_PRIORITIES.get(car_class or "", UNKNOWN_CLASS_PRIORITY)


def session_type(session_key: str) -> str:
    key = (session_key or "").lower()
    if "race" in key:
        return SESSION_RACE
    if "qual" in key:
        return SESSION_QUALIFYING
    if "practice" in key or "practise" in key:
        return SESSION_PRACTICE
    if "warm" in key:
        return SESSION_WARMUP
    return SESSION_UNKNOWN


_SESSION_PRIORITIES = {
    SESSION_RACE: 100,
    SESSION_QUALIFYING: 80,
    SESSION_PRACTICE: 60,
    SESSION_WARMUP: 50,
    SESSION_UNKNOWN: 10,
}


def session_priority(session_key: str) -> int:
    return _SESSION_PRIORITIES[session_type(session_key)]


def game_mode(root: Dict[str, Any] | None) -> str:
    setting = str((root or {}).get("Setting") or "")
    return "Multiplayer" if "multiplayer" in setting.lower() else "Solo"


def event_timestamp(root: Dict[str, Any] | None, fallback_mtime: float | None = None) -> float:
    """Event time in epoch seconds: ``DateTime`` first, then the file mtime, else 0."""

    stamp = to_number((root or {}).get("DateTime"))
    if math.isfinite(stamp):
        return float(int(stamp))
    if fallback_mtime is not None and math.isfinite(fallback_mtime):
        return float(fallback_mtime)
    return 0.0


def format_date_time(root: Dict[str, Any] | None, fallback_mtime: float | None = None) -> str:
    """Human readable event date (``DD/MM/YYYY HH:MM``)."""

    root = root or {}
    stamp = to_number(root.get("DateTime"))
    if math.isfinite(stamp):
        try:
            moment = dt.datetime.fromtimestamp(int(stamp))
        except (OverflowError, OSError, ValueError):
            moment = None
        if moment is not None:
            return moment.strftime("%d/%m/%Y %H:%M")
        time_string = str(root.get("TimeString") or "").strip()
        return time_string or UNKNOWN_DATE

    time_string = str(root.get("TimeString") or "").strip()
    if time_string:
        match = _TIME_STRING_RE.search(time_string)
        if match:
            year, month, day, hour, minute, _second = match.groups()
            return f"{day}/{month}/{year} {hour}:{minute}"
        return time_string

    if fallback_mtime is not None and math.isfinite(fallback_mtime):
        return dt.datetime.fromtimestamp(fallback_mtime).strftime("%d/%m/%Y %H:%M")
    return UNKNOWN_DATE


def split_names(raw: str | Iterable[str] | None) -> List[str]:
    """Split a comma separated pilot list into trimmed, non-empty names."""

    if raw is None:
        return []
    if isinstance(raw, str):
        parts = raw.split(",")
    else:
        parts = [part for item in raw for part in str(item).split(",")]
    names: List[str] = []
    for part in parts:
        name = part.strip()
        if name and name not in names:
            names.append(name)
    return names


def normalise_name(name: str | None) -> str:
    return (name or "").strip().casefold()
