"""
raidledger.engine.period — Quota Period Windows
================================================

A role's quota period runs from its config's ``created_at`` to its
``reset_at``.  Resetting is an explicit admin action that rewrites both
bounds; nothing here rolls periods over automatically.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Protocol

from raidledger.database.models import as_utc

DEFAULT_PERIOD_DAYS = 7


class _HasPeriod(Protocol):
    created_at: datetime
    reset_at: datetime


@dataclass(frozen=True, slots=True)
class PeriodWindow:
    start: datetime
    end: datetime

    def contains(self, ts: datetime) -> bool:
        """Inclusive on both ends, matching leaderboard ``since``/``until``."""
        return self.start <= as_utc(ts) <= self.end


def window_for(config: _HasPeriod) -> PeriodWindow:
    """Active accounting window for a role quota config."""
    return PeriodWindow(start=as_utc(config.created_at), end=as_utc(config.reset_at))


def next_period(now: datetime, days: int = DEFAULT_PERIOD_DAYS) -> PeriodWindow:
    """Bounds for a freshly created or reset period starting at *now*."""
    if days <= 0:
        raise ValueError("period length must be positive")
    start = as_utc(now)
    return PeriodWindow(start=start, end=start + timedelta(days=days))
