"""
Billing period extraction from Stripe resources.

Stripe has moved the period fields around between API versions (top-level
``current_period_start`` on older subscriptions, per-item fields on newer
ones, ``current_period`` sub-objects in some payloads) and encodes them as
unix seconds, milliseconds or strings. Everything here is total: bad input
yields ``None``, which callers treat as "unknown", never as epoch zero.
"""
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from dateutil import parser as date_parser

from app.utils.utils import get_path

# Values below this are unix seconds, at or above it unix milliseconds
MILLISECONDS_THRESHOLD = 1e12

# Keys checked, in order, when a timestamp arrives wrapped in an object
TIMESTAMP_KEYS = (
    "value",
    "values",
    "unix",
    "epoch",
    "epoch_time",
    "epoch_seconds",
    "seconds",
    "time",
    "timestamp",
)

START_CANDIDATES = (
    "current_period_start",
    "current_period.start",
    "current_period.start_date",
    "current_period.start_at",
    "current_period.start_time",
    "items.data[0].current_period_start",
)

END_CANDIDATES = (
    "current_period_end",
    "current_period.end",
    "current_period.end_date",
    "current_period.end_at",
    "current_period.end_time",
    "items.data[0].current_period_end",
)


@dataclass(frozen=True)
class StripePeriod:
    start: Optional[str] = None
    end: Optional[str] = None


def _from_number(value: float) -> Optional[str]:
    if not math.isfinite(value):
        return None
    seconds = value if abs(value) < MILLISECONDS_THRESHOLD else value / 1000.0
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc).isoformat()
    except (OverflowError, OSError, ValueError):
        return None


def _from_string(value: str) -> Optional[str]:
    text = value.strip()
    if not text:
        return None
    try:
        return _from_number(float(text))
    except ValueError:
        pass
    try:
        parsed = date_parser.parse(text)
    except (ValueError, OverflowError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc).isoformat()


def normalize_timestamp(value: Any) -> Optional[str]:
    """Canonical ISO-8601 UTC string for a Stripe timestamp in any known encoding"""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat()
    if isinstance(value, (int, float)):
        return _from_number(float(value))
    if isinstance(value, str):
        return _from_string(value)
    if isinstance(value, (list, tuple)):
        return _first_normalized(value)
    if isinstance(value, dict):
        return _first_normalized(value.get(key) for key in TIMESTAMP_KEYS)
    return None


def _first_normalized(values: Iterable[Any]) -> Optional[str]:
    for candidate in values:
        normalized = normalize_timestamp(candidate)
        if normalized:
            return normalized
    return None


def extract_period(resource: Any) -> StripePeriod:
    """Current billing period of a subscription-like resource"""
    if not isinstance(resource, dict):
        return StripePeriod()
    return StripePeriod(
        start=_first_normalized(get_path(resource, path) for path in START_CANDIDATES),
        end=_first_normalized(get_path(resource, path) for path in END_CANDIDATES),
    )


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    """ISO string -> naive UTC datetime as stored in the database"""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed
