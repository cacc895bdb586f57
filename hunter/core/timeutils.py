from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware_utc(value: datetime) -> datetime:
    """Naive values are taken as UTC; aware values are converted."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def is_past(value: Optional[datetime], now: Optional[datetime] = None) -> bool:
    if value is None:
        return False
    return ensure_aware_utc(value) <= (now or utcnow())


def iso_or_none(value: Optional[datetime]) -> Optional[str]:
    return ensure_aware_utc(value).isoformat() if value is not None else None
