from datetime import date, datetime, timedelta, timezone
from typing import Optional

import pytz

IST = pytz.timezone('Asia/Kolkata')

def to_ist(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(IST)

def now_ist() -> datetime:
    """Return current time in IST as an aware datetime."""
    return datetime.now(timezone.utc).astimezone(IST)

def parse_hhmm(value: str) -> int:
    """'09:15' -> minute of day (555)."""
    hours, minutes = value.strip().split(":")
    return int(hours) * 60 + int(minutes)

def minute_of_day(dt: datetime) -> int:
    if dt.tzinfo is not None:
        dt = dt.astimezone(IST)
    return dt.hour * 60 + dt.minute

def is_weekend(d) -> bool:
    return d.weekday() >= 5

def previous_trading_day(d: date) -> date:
    """Step back one day, skipping Saturday and Sunday."""
    prev = d - timedelta(days=1)
    while is_weekend(prev):
        prev -= timedelta(days=1)
    return prev

def same_session_day(a: datetime, b: datetime) -> bool:
    """True when both instants fall on the same IST calendar day."""
    return to_ist(a).date() == to_ist(b).date()

def minute_floor(dt: datetime) -> datetime:
    return dt.replace(second=0, microsecond=0)

def parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    dt = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    if dt.tzinfo is None:
        dt = IST.localize(dt)
    return dt
