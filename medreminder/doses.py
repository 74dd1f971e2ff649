# medreminder/doses.py
#
# Pure dose arithmetic. Interval offsets are applied to the absolute instant
# (UTC) and converted back to the start time's zone, so a DST change never
# moves a dose relative to the first one. Comparisons are made on instants
# too: aware datetimes sharing a tzinfo compare as wall time and ignore fold.

from datetime import datetime, time, timedelta, timezone
from typing import Optional, List

from .models import Medication

def _instant(dt: datetime) -> datetime:
    return dt.astimezone(timezone.utc)

def _shift(start: datetime, delta: timedelta) -> datetime:
    return (_instant(start) + delta).astimezone(start.tzinfo)

def _since(start: datetime, now: datetime) -> timedelta:
    return _instant(now) - _instant(start)

def occurrence_at(med: Medication, k: int) -> datetime:
    return _shift(med.start_time, med.interval * k)

def window_end(med: Medication) -> datetime:
    """Local midnight `total_days` calendar days after the start date."""
    day = med.start_time.date() + timedelta(days=med.total_days)
    return datetime.combine(day, time(0), tzinfo=med.start_time.tzinfo)

def _doses_from(med: Medication, k: int) -> List[datetime]:
    end = _instant(window_end(med))
    out: List[datetime] = []
    dt = occurrence_at(med, k)
    while _instant(dt) < end:
        out.append(dt)
        k += 1
        dt = occurrence_at(med, k)
    return out

def compute_occurrences(med: Medication) -> List[datetime]:
    """Every dose in [start_time, window_end), regardless of is_active."""
    return _doses_from(med, 0)

def compute_next_dose(med: Medication, now: datetime) -> Optional[datetime]:
    """
    First occurrence at or after `now` that is still inside the window.
    An occurrence equal to `now` counts as the next dose; the window end
    never does.
    """
    if not med.is_active:
        return None
    end = _instant(window_end(med))
    if _instant(now) >= end:
        return None

    elapsed = _since(med.start_time, now)
    if elapsed <= timedelta(0):
        return med.start_time
    # ceil(elapsed / interval) without float error
    k = -((-elapsed) // med.interval)
    nxt = occurrence_at(med, k)
    return nxt if _instant(nxt) < end else None

def compute_remaining_doses(med: Medication, now: datetime) -> List[datetime]:
    if not med.is_active:
        return []
    elapsed = _since(med.start_time, now)
    k = 0 if elapsed < timedelta(0) else elapsed // med.interval + 1
    return _doses_from(med, k)

def is_currently_active(med: Medication, now: datetime) -> bool:
    # strict at start_time too; only used for display state
    if not med.is_active:
        return False
    return _instant(med.start_time) < _instant(now) < _instant(window_end(med))

def days_until_end(med: Medication, now: datetime) -> int:
    """Whole days left in the window, truncated toward zero."""
    secs = int(_since(now, window_end(med)).total_seconds())
    days = abs(secs) // 86400
    return days if secs >= 0 else -days
