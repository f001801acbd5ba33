from datetime import datetime, time, timedelta
from typing import Optional

from vrc.config.models import ScheduleConfig, parse_clock


class RunWindow:
    """Time-of-day interval in which unattended work may proceed.

    `start == end` means the whole day. Windows wrap past midnight when
    end < start (23:00-07:00).
    """

    def __init__(self, start: Optional[time], end: Optional[time]):
        self.start = start
        self.end = end

    @classmethod
    def from_config(cls, schedule: ScheduleConfig) -> "RunWindow":
        if not schedule.has_window:
            return cls(None, None)
        return cls(parse_clock(schedule.window_start), parse_clock(schedule.window_end))

    @property
    def always_open(self) -> bool:
        return self.start is None or self.start == self.end

    def contains(self, now: datetime) -> bool:
        if self.always_open:
            return True
        current = now.time()
        if self.start < self.end:
            return self.start <= current < self.end
        return current >= self.start or current < self.end

    def seconds_until_open(self, now: datetime) -> float:
        if self.contains(now):
            return 0.0
        opening = datetime.combine(now.date(), self.start, tzinfo=now.tzinfo)
        if opening <= now:
            opening += timedelta(days=1)
        return (opening - now).total_seconds()

    def describe(self) -> str:
        if self.always_open:
            return "always"
        return f"{self.start.strftime('%H:%M')}-{self.end.strftime('%H:%M')}"
