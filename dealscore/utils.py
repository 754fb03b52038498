"""Shared utility functions used across DealScore modules."""
from __future__ import annotations

import json
import math
from datetime import UTC, date, datetime
from typing import Any

_MISSING = object()


def json_parse(value: str | None, default: Any = _MISSING) -> Any:
    """Safely parse a JSON string, returning *default* on failure.

    If no default is given, returns ``{}`` on parse error.
    """
    try:
        return json.loads(value or "")
    except (json.JSONDecodeError, TypeError):
        return {} if default is _MISSING else default


def clean_text(value: Any) -> str | None:
    """Trim a value to text; ``None`` and blank strings become ``None``."""
    if value is None:
        return None
    s = str(value).strip()
    return s or None


def to_number(value: Any) -> float | None:
    """Coerce *value* to a finite float, or ``None`` if that is not possible."""
    if value is None:
        return None
    try:
        n = float(value)
    except (TypeError, ValueError):
        return None
    return n if math.isfinite(n) else None


def to_datetime(value: Any) -> datetime | None:
    """Coerce a datetime, date, or ISO-8601 string to an aware UTC datetime.

    Naive values are assumed to be UTC. Anything unparseable yields ``None``.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, date):
        dt = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        s = value.strip()
        if not s:
            return None
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(s)
        except ValueError:
            return None
    else:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)
