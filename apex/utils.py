"""Shared utility functions used across Apex modules."""
from __future__ import annotations

import json
import time
from datetime import UTC, datetime
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


def now_ms() -> int:
    """Wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def month_key(now: datetime | None = None) -> str:
    """Year-month string (``YYYYMM``) for usage counters."""
    return (now or datetime.now(UTC)).strftime("%Y%m")
