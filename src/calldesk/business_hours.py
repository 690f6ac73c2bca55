"""Weekly business-hours schedule and the questions callers ask about it."""

import re
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from types import MappingProxyType
from typing import Mapping
from zoneinfo import ZoneInfo

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")

NEXT_WEEK = "next week"
LOOKAHEAD_DAYS = 7

_TIME_RE = re.compile(r"^\s*(\d{1,2}):(\d{2})\s*([AaPp][Mm])?\s*$")


def parse_clock(value: str) -> int:
    """Parse "8:00 AM" or "17:30" into an hhmm integer (800, 1730)."""
    match = _TIME_RE.match(value or "")
    if not match:
        raise ValueError(f"Unrecognized time of day: {value!r}")
    hours, minutes, period = int(match.group(1)), int(match.group(2)), match.group(3)
    if period:
        period = period.upper()
        if period == "PM" and hours != 12:
            hours += 12
        if period == "AM" and hours == 12:
            hours = 0
    if hours > 24 or minutes > 59:
        raise ValueError(f"Time of day out of range: {value!r}")
    return hours * 100 + minutes


def _clock_to_time(hhmm: int) -> time:
    if hhmm >= 2400:
        return time(23, 59, 59, 999999)
    return time(hhmm // 100, hhmm % 100)


@dataclass(frozen=True)
class DayHours:
    open: int = 800
    close: int = 1700
    is_closed: bool = False

    @classmethod
    def closed(cls) -> "DayHours":
        return cls(is_closed=True)

    @classmethod
    def from_dict(cls, data: dict) -> "DayHours":
        if data.get("isClosed") or data.get("is_closed"):
            return cls.closed()
        return cls(open=parse_clock(data["open"]), close=parse_clock(data["close"]))

    def contains(self, hhmm: int) -> bool:
        return not self.is_closed and self.open <= hhmm < self.close

    @property
    def open_time(self) -> time:
        return _clock_to_time(self.open)

    @property
    def close_time(self) -> time:
        return _clock_to_time(self.close)


def _default_week() -> Mapping[str, DayHours]:
    week = {day: DayHours() for day in WEEKDAYS}
    week["sunday"] = DayHours.closed()
    return MappingProxyType(week)


@dataclass(frozen=True)
class BusinessHours:
    """One company's weekly schedule, read as a snapshot per decision.

    The default is the simple model: 08:00-17:00 Monday to Saturday, closed
    Sunday.
    """

    days: Mapping[str, DayHours] = field(default_factory=_default_week)
    timezone: str = "America/Chicago"

    @classmethod
    def from_dict(cls, data: dict, timezone: str = "America/Chicago") -> "BusinessHours":
        week = dict(_default_week())
        for day in WEEKDAYS:
            if day in data:
                week[day] = DayHours.from_dict(data[day])
        return cls(days=MappingProxyType(week), timezone=timezone)

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    def for_date(self, day: date) -> DayHours:
        return self.days[WEEKDAYS[day.weekday()]]

    def localize(self, moment: datetime) -> datetime:
        if moment.tzinfo is None:
            return moment.replace(tzinfo=self.tz)
        return moment.astimezone(self.tz)

    def window(self, day: date) -> tuple[datetime, datetime] | None:
        """Opening and closing instants for a calendar day, or None if closed."""
        hours = self.for_date(day)
        if hours.is_closed:
            return None
        start = datetime.combine(day, hours.open_time, tzinfo=self.tz)
        if hours.close >= 2400:
            end = datetime.combine(day + timedelta(days=1), time(0), tzinfo=self.tz)
        else:
            end = datetime.combine(day, hours.close_time, tzinfo=self.tz)
        return start, end


def is_after_hours(hours: BusinessHours, now: datetime) -> bool:
    local = hours.localize(now)
    today = hours.for_date(local.date())
    if today.is_closed:
        return True
    return not today.contains(local.hour * 100 + local.minute)


def next_open_instant(hours: BusinessHours, now: datetime) -> datetime | None:
    """Opening time of the first open day after today, looking at most a week ahead."""
    local = hours.localize(now)
    for offset in range(1, LOOKAHEAD_DAYS + 1):
        window = hours.window(local.date() + timedelta(days=offset))
        if window is not None:
            return window[0]
    return None


def next_business_day_label(hours: BusinessHours, now: datetime) -> str:
    """Spoken description of the next open day, e.g. "Monday, Oct 20".

    Falls back to "next week" when nothing in the coming seven days is open.
    Callers should treat that as a low-confidence answer.
    """
    opening = next_open_instant(hours, now)
    if opening is None:
        return NEXT_WEEK
    return f"{opening:%A}, {opening:%b} {opening.day}"
