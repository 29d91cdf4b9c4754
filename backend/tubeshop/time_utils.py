from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    """Server-side 'now' in UTC (naive, canonical)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(dt: datetime) -> datetime:
    """Normalize an aware datetime to UTC-naive; naive values are assumed UTC."""
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def to_utc_z(dt: Optional[datetime]) -> Optional[str]:
    """
    Serializes datetime to ISO-8601 with trailing 'Z'.
    If dt is naive, it is treated as UTC.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt_utc = dt.astimezone(timezone.utc).replace(microsecond=0)
    return dt_utc.isoformat().replace("+00:00", "Z")
