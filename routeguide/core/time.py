from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def utc_now_iso() -> str:
    return utc_now().isoformat().replace("+00:00", "Z")


def parse_iso(value) -> datetime:
    """
    Accepts our own ISO strings ("...Z"), offset-aware ISO strings, or a
    datetime straight from a driver (Postgres TIMESTAMPTZ).
    Naive values are taken as UTC.
    """
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def is_fresh(fetched_at, ttl_days: float, *, now: Optional[datetime] = None) -> bool:
    if ttl_days <= 0:
        return False
    ref = now or utc_now()
    age_days = (ref - parse_iso(fetched_at)).total_seconds() / 86400.0
    return age_days < ttl_days
