from __future__ import annotations

import datetime
from typing import List, Optional, Tuple

from sqlalchemy import select

from database import ShiftType


WEEKDAY_TOKENS = ["Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun"]
MINUTES_PER_DAY = 24 * 60


def weekday_token(date_: datetime.date) -> str:
    return WEEKDAY_TOKENS[date_.weekday()]


def parse_time_label(value) -> Optional[int]:
    """Return minutes after midnight for ``HH:MM`` / ``HH:MM:SS`` labels or ``time`` values."""
    if value is None:
        return None
    if isinstance(value, datetime.time):
        return value.hour * 60 + value.minute
    label = str(value).strip()
    if not label or ":" not in label:
        return None
    parts = label.split(":")
    if len(parts) > 3:
        return None
    try:
        hours = int(parts[0])
        minutes = int(parts[1])
    except ValueError:
        return None
    if hours < 0 or minutes < 0 or minutes >= 60:
        return None
    total_minutes = hours * 60 + minutes
    if total_minutes > MINUTES_PER_DAY:
        return None
    return total_minutes


def format_minutes(minutes: int) -> str:
    hours, mins = divmod(int(minutes), 60)
    return f"{hours:02d}:{mins:02d}"


def time_label(value) -> Optional[str]:
    """Normalize a time value to ``HH:MM``; unparsable input is returned stripped so it can be reported."""
    if value is None:
        return None
    minutes = parse_time_label(value)
    if minutes is None:
        label = str(value).strip()
        return label or None
    return format_minutes(minutes)


def span_hours(start, end) -> Optional[float]:
    """Hours between two labels, or None when either side is unusable or the end precedes the start."""
    start_minutes = parse_time_label(start)
    end_minutes = parse_time_label(end)
    if start_minutes is None or end_minutes is None:
        return None
    if end_minutes < start_minutes:
        return None
    return (end_minutes - start_minutes) / 60


def shift_window(shift_type: Optional[ShiftType]) -> Tuple[Optional[str], Optional[str]]:
    if shift_type is None:
        return None, None
    return time_label(shift_type.start_time), time_label(shift_type.end_time)


def list_shift_types(session) -> List[ShiftType]:
    stmt = select(ShiftType).order_by(ShiftType.start_time, ShiftType.id)
    return list(session.scalars(stmt))
