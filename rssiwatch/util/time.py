"""Time utilities shared across rssiwatch components."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional


def utc_now_str() -> str:
    """Return the current UTC timestamp as an ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


def utc_iso_ms(ts: Optional[float] = None) -> str:
    """Millisecond ISO-8601 timestamp with a ``Z`` suffix, as written to the workbook."""
    moment = datetime.now(timezone.utc) if ts is None else datetime.fromtimestamp(ts, timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def utc_stamp() -> str:
    """Compact UTC stamp usable inside file names."""
    return datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
