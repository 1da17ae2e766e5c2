"""
Utility helper functions
"""
from datetime import date, datetime, time, timezone
from typing import Optional


def utcnow() -> datetime:
    """Naive UTC now, matching the TIMESTAMP columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def format_date(value: Optional[date], format_str: str = "%Y-%m-%d") -> Optional[str]:
    """Format date object"""
    if not value:
        return None
    return value.strftime(format_str)


def format_time(value: Optional[time]) -> Optional[str]:
    """Format wall-clock time as HH:MM:SS"""
    if value is None:
        return None
    return value.strftime("%H:%M:%S")


def format_datetime(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat()


def slot_dict(slot_date: Optional[date], slot_time: Optional[time]) -> dict:
    return {"date": format_date(slot_date), "time": format_time(slot_time)}
