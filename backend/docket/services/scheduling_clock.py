"""
services/scheduling_clock.py

Wall-clock to UTC conversion for case schedules.

A case stores its slot as local wall-clock date/time plus the offset (minutes
east of UTC) that was in effect when the attorney picked it:

    scheduled_utc = local - offset

The state -> offset table is injected (``TimezoneTable``) so it can be
corrected through configuration.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Mapping, Optional

from docket.core.config import settings

logger = logging.getLogger(__name__)


class TimezoneTable:
    """State name -> offset minutes. Unknown states resolve to UTC."""

    def __init__(self, offsets: Mapping[str, int]) -> None:
        self._offsets = {name.strip().lower(): int(minutes) for name, minutes in offsets.items()}

    def offset_for(self, state: Optional[str]) -> int:
        if not state:
            return 0
        return self._offsets.get(state.strip().lower(), 0)


def default_timezone_table() -> TimezoneTable:
    return TimezoneTable(settings.state_timezone_offsets)


def to_utc(local_date: date, local_time: time, offset_minutes: int) -> datetime:
    return datetime.combine(local_date, local_time) - timedelta(minutes=offset_minutes or 0)


def scheduled_utc(case) -> Optional[datetime]:
    if case.scheduled_date is None or case.scheduled_time is None:
        return None
    return to_utc(case.scheduled_date, case.scheduled_time, case.timezone_offset)


@dataclass
class JoinWindow:
    scheduled_at: datetime      # UTC
    opens_at: datetime          # UTC
    now: datetime               # UTC

    @property
    def is_open(self) -> bool:
        # Boundary inclusive: exactly N minutes before is allowed
        return self.now >= self.opens_at

    @property
    def minutes_until_open(self) -> int:
        if self.is_open:
            return 0
        seconds = (self.opens_at - self.now).total_seconds()
        return int(-(-seconds // 60))


def join_window(case, now: datetime, minutes: Optional[int] = None) -> Optional[JoinWindow]:
    scheduled = scheduled_utc(case)
    if scheduled is None:
        return None
    lead = settings.JOIN_WINDOW_MINUTES if minutes is None else minutes
    return JoinWindow(scheduled_at=scheduled, opens_at=scheduled - timedelta(minutes=lead), now=now)
