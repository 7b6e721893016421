from __future__ import annotations

import datetime as dt
from typing import Any, Optional


# XRPL "date" fields count seconds from 2000-01-01T00:00:00Z
RIPPLE_EPOCH_OFFSET = 946684800


def ripple_time_to_datetime(seconds: Any) -> Optional[dt.datetime]:
    try:
        s = int(seconds)
    except (TypeError, ValueError):
        return None
    return dt.datetime.fromtimestamp(RIPPLE_EPOCH_OFFSET + s, tz=dt.timezone.utc)


def parse_iso_datetime(value: Any, end_of_day: bool = False) -> Optional[dt.datetime]:
    """
    Accepts a datetime, a date or an ISO-8601 string ("2024-01-31",
    "2024-01-31T10:00:00Z"). Naive values are taken as UTC. A date-only value
    with end_of_day=True maps to the last microsecond of that day.
    """
    if value is None or value == "":
        return None
    if isinstance(value, dt.datetime):
        return value if value.tzinfo else value.replace(tzinfo=dt.timezone.utc)
    if isinstance(value, dt.date):
        return _from_date(value, end_of_day)

    text = str(value).strip()
    if not text:
        return None
    if len(text) == 10:
        return _from_date(dt.date.fromisoformat(text), end_of_day)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = dt.datetime.fromisoformat(text)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=dt.timezone.utc)


def _from_date(d: dt.date, end_of_day: bool) -> dt.datetime:
    t = dt.time.max if end_of_day else dt.time.min
    return dt.datetime.combine(d, t, tzinfo=dt.timezone.utc)


def to_iso(value: Optional[dt.datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.astimezone(dt.timezone.utc).isoformat().replace("+00:00", "Z")


def utc_now() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)
