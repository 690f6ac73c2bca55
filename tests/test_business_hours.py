from datetime import UTC, datetime
from types import MappingProxyType

import pytest

from calldesk.business_hours import (
    NEXT_WEEK,
    WEEKDAYS,
    BusinessHours,
    DayHours,
    is_after_hours,
    next_business_day_label,
    next_open_instant,
    parse_clock,
)
from conftest import local


class TestParseClock:
    @pytest.mark.parametrize("text,expected", [
        ("8:00 AM", 800),
        ("5:30 PM", 1730),
        ("12:00 PM", 1200),
        ("12:00 AM", 0),
        ("17:30", 1730),
        ("08:00", 800),
    ])
    def test_accepted_forms(self, text, expected):
        assert parse_clock(text) == expected

    @pytest.mark.parametrize("text", ["", "noon", "25:00", "8:75"])
    def test_rejects_garbage(self, text):
        with pytest.raises(ValueError):
            parse_clock(text)


class TestDayHours:
    def test_open_is_inclusive_close_is_exclusive(self):
        hours = DayHours(open=800, close=1700)
        assert hours.contains(800)
        assert hours.contains(1659)
        assert not hours.contains(1700)
        assert not hours.contains(759)

    def test_closed_day_contains_nothing(self):
        assert not DayHours.closed().contains(1200)

    def test_from_dict(self):
        assert DayHours.from_dict({"open": "7:30 AM", "close": "6:00 PM"}) == DayHours(open=730, close=1800)
        assert DayHours.from_dict({"isClosed": True}).is_closed


class TestBusinessHours:
    def test_default_week_closes_sunday(self):
        hours = BusinessHours()
        assert hours.days["sunday"].is_closed
        assert all(not hours.days[day].is_closed for day in WEEKDAYS[:6])

    def test_from_dict_overrides_days(self):
        hours = BusinessHours.from_dict({"saturday": {"isClosed": True}, "monday": {"open": "9:00", "close": "12:00"}})
        assert hours.days["saturday"].is_closed
        assert hours.days["monday"] == DayHours(open=900, close=1200)
        assert hours.days["tuesday"] == DayHours()

    def test_window(self, hours):
        start, end = hours.window(local(2026, 10, 20).date())
        assert start == local(2026, 10, 20, 8)
        assert end == local(2026, 10, 20, 17)
        assert hours.window(local(2026, 10, 25).date()) is None


class TestIsAfterHours:
    def test_during_hours(self, hours):
        assert is_after_hours(hours, local(2026, 10, 20, 10, 15)) is False

    def test_at_close(self, hours):
        assert is_after_hours(hours, local(2026, 10, 20, 17)) is True

    def test_before_open(self, hours):
        assert is_after_hours(hours, local(2026, 10, 20, 7, 59)) is True

    def test_closed_day(self, hours):
        assert is_after_hours(hours, local(2026, 10, 25, 12)) is True

    def test_evaluated_in_schedule_time_zone(self, hours):
        # 15:30 UTC is 10:30 in Chicago
        assert is_after_hours(hours, datetime(2026, 10, 20, 15, 30, tzinfo=UTC)) is False
        # 23:30 UTC is 18:30 in Chicago
        assert is_after_hours(hours, datetime(2026, 10, 20, 23, 30, tzinfo=UTC)) is True


class TestNextBusinessDay:
    def test_skips_closed_sunday(self, hours):
        saturday_evening = local(2026, 10, 24, 18)
        assert next_open_instant(hours, saturday_evening) == local(2026, 10, 26, 8)
        assert next_business_day_label(hours, saturday_evening) == "Monday, Oct 26"

    def test_next_day(self, hours):
        assert next_business_day_label(hours, local(2026, 10, 20, 18)) == "Wednesday, Oct 21"

    def test_nothing_open_returns_sentinel(self):
        closed = BusinessHours(days=MappingProxyType({day: DayHours.closed() for day in WEEKDAYS}))
        assert next_open_instant(closed, local(2026, 10, 20, 12)) is None
        assert next_business_day_label(closed, local(2026, 10, 20, 12)) == NEXT_WEEK
