"""
tests/test_ranges.py — Date Range Parsing
==========================================
"""

from __future__ import annotations

from datetime import UTC, date, datetime, timedelta, timezone

import pytest

from beacon.engine.ranges import parse_bound, to_day


class TestParseBound:

    def test_empty_values(self):
        assert parse_bound(None) is None
        assert parse_bound("") is None

    def test_day_string(self):
        assert parse_bound("2025-01-31") == date(2025, 1, 31)

    def test_timestamp_string_with_z(self):
        assert parse_bound("2025-01-31T10:00:00Z") == datetime(2025, 1, 31, 10, tzinfo=UTC)

    def test_offset_converted_to_utc(self):
        value = datetime(2025, 1, 1, 1, 0, tzinfo=timezone(timedelta(hours=2)))
        assert parse_bound(value) == datetime(2024, 12, 31, 23, 0, tzinfo=UTC)

    def test_naive_datetime_taken_as_utc(self):
        assert parse_bound(datetime(2025, 1, 1, 5)).tzinfo is UTC

    def test_garbage(self):
        with pytest.raises(ValueError, match="Invalid date value"):
            parse_bound("yesterday")


def test_to_day_uses_utc_calendar():
    assert to_day("2025-01-01T01:00:00+02:00") == date(2024, 12, 31)
    assert to_day(date(2025, 3, 1)) == date(2025, 3, 1)
    assert to_day(None) is None
