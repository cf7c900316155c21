from datetime import datetime, timezone
from typing import Any


def utcnow() -> datetime:
    """Naive UTC now, matching how timestamps are stored"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def get_path(d: Any, path: str, default: Any = None) -> Any:
    """Walk a dotted path through nested dicts/lists ("items.data[0].price.id")"""
    current = d
    for part in path.split('.'):
        index = None
        if part.endswith(']') and '[' in part:
            part, _, raw_index = part[:-1].partition('[')
            try:
                index = int(raw_index)
            except ValueError:
                return default
        if part:
            if not isinstance(current, dict) or part not in current:
                return default
            current = current[part]
        if index is not None:
            if not isinstance(current, list) or not -len(current) <= index < len(current):
                return default
            current = current[index]
        if current is None:
            return default
    return current
