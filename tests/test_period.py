"""
tests/test_period.py — Quota Period Windows
============================================
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

import pytest

from raidledger.engine.period import next_period, window_for


@dataclass
class _Config:
    created_at: datetime
    reset_at: datetime


class TestWindowFor:
    def test_window_is_config_bounds(self):
        start = datetime(2026, 1, 1, tzinfo=UTC)
        end = datetime(2026, 1, 8, tzinfo=UTC)
        window = window_for(_Config(start, end))
        assert window.start == start
        assert window.end == end

    def test_naive_bounds_are_treated_as_utc(self):
        window = window_for(_Config(datetime(2026, 1, 1), datetime(2026, 1, 8)))
        assert window.start.tzinfo is not None
        assert window.start == datetime(2026, 1, 1, tzinfo=UTC)

    def test_contains_is_inclusive(self):
        start = datetime(2026, 1, 1, tzinfo=UTC)
        end = datetime(2026, 1, 8, tzinfo=UTC)
        window = window_for(_Config(start, end))
        assert window.contains(start)
        assert window.contains(end)
        assert not window.contains(end + timedelta(microseconds=1))


class TestNextPeriod:
    def test_default_length_is_seven_days(self):
        now = datetime(2026, 3, 1, 12, tzinfo=UTC)
        window = next_period(now)
        assert window.start == now
        assert window.end == now + timedelta(days=7)

    def test_custom_length(self):
        now = datetime(2026, 3, 1, tzinfo=UTC)
        assert next_period(now, 14).end == now + timedelta(days=14)

    def test_rejects_non_positive_length(self):
        with pytest.raises(ValueError):
            next_period(datetime(2026, 3, 1, tzinfo=UTC), 0)
