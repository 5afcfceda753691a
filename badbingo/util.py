# badbingo/util.py
from datetime import datetime, timedelta, timezone
from typing import Optional

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
HOUR_MS = 3600 * 1000
DAY_MS = 24 * HOUR_MS


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_ms(dt: datetime) -> int:
    """Epoch milliseconds; naive datetimes are taken as UTC."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return (dt - EPOCH) // timedelta(milliseconds=1)


def from_ms(ms: Optional[int]) -> Optional[datetime]:
    if ms is None:
        return None
    return EPOCH + timedelta(milliseconds=int(ms))


def iso(ms: Optional[int]) -> Optional[str]:
    dt = from_ms(ms)
    return dt.isoformat() if dt else None


def now_ms(now: Optional[datetime] = None) -> int:
    return to_ms(now or utcnow())
