"""
tests/test_ledger_service.py — Quota Ledger
============================================
Idempotent crediting, clamped adjustments and the aggregate reads.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import func, select

from conftest import GUILD_ID, ORGANIZER_ID, RAIDER_A, RAIDER_B, RAIDER_C
from raidledger.database.engine import get_session
from raidledger.database.models import (
    LeaderboardCategory,
    PointCategory,
    QuotaActionType,
    QuotaEvent,
)
from raidledger.services import ledger_service

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _credit(session, user_id, subject, *, category=PointCategory.RAIDER, points="1",
            action=QuotaActionType.RUN_COMPLETED, dungeon="shatters", created_at=None):
    column = "organizer_points" if category is PointCategory.ORGANIZER else "raider_points"
    return ledger_service.record(
        session,
        guild_id=GUILD_ID,
        actor_id=user_id,
        action_type=action,
        point_category=category,
        subject_id=subject,
        dungeon_key=dungeon,
        created_at=created_at,
        **{column: Decimal(points)},
    )


class TestIdempotentRecord:
    def test_duplicate_subject_is_a_noop(self, engine, guild):
        with get_session(engine) as session:
            inserted, first = _credit(session, RAIDER_A, "raider:1:1:21")
            again, second = _credit(session, RAIDER_A, "raider:1:1:21", points="9")
            assert inserted is True
            assert again is False
            assert second.id == first.id

        with get_session(engine) as session:
            rows = session.scalar(select(func.count()).select_from(QuotaEvent))
            assert rows == 1
            assert ledger_service.total_for(
                session, GUILD_ID, RAIDER_A, PointCategory.RAIDER
            ) == Decimal("1.00")

    def test_same_subject_in_other_guild_is_independent(self, engine, guild):
        with get_session(engine) as session:
            _credit(session, RAIDER_A, "run:5", category=PointCategory.ORGANIZER)
            inserted, _ = ledger_service.record(
                session,
                guild_id=2000,
                actor_id=RAIDER_A,
                action_type=QuotaActionType.RUN_COMPLETED,
                point_category=PointCategory.ORGANIZER,
                subject_id="run:5",
                organizer_points=Decimal("1"),
            )
            assert inserted is True

    def test_manual_rows_without_subject_always_insert(self, engine, guild):
        with get_session(engine) as session:
            for _ in range(2):
                inserted, _ = ledger_service.record(
                    session,
                    guild_id=GUILD_ID,
                    actor_id=RAIDER_A,
                    action_type=QuotaActionType.MODERATION,
                    point_category=PointCategory.ORGANIZER,
                    subject_id=None,
                    organizer_points=Decimal("2"),
                )
                assert inserted is True
            assert ledger_service.total_for(
                session, GUILD_ID, RAIDER_A, PointCategory.ORGANIZER
            ) == Decimal("4.00")

    def test_unknown_members_are_created(self, engine, guild):
        with get_session(engine) as session:
            inserted, event = _credit(session, 999, "raider:1:1:999")
            assert inserted is True
            assert event.actor_user_id == 999


class TestAdjust:
    def test_clamps_at_zero(self, engine, guild):
        with get_session(engine) as session:
            ledger_service.adjust(
                session, guild_id=GUILD_ID, user_id=RAIDER_A,
                amount=Decimal("2"), category=PointCategory.RAIDER,
            )
            result = ledger_service.adjust(
                session, guild_id=GUILD_ID, user_id=RAIDER_A,
                amount=Decimal("-5"), category=PointCategory.RAIDER,
            )
            assert result.applied == Decimal("-2.00")
            assert result.new_total == Decimal("0.00")
            assert result.event.raider_points == Decimal("-2.00")
            assert ledger_service.total_for(
                session, GUILD_ID, RAIDER_A, PointCategory.RAIDER
            ) == Decimal("0.00")

    def test_noop_when_already_zero(self, engine, guild):
        with get_session(engine) as session:
            result = ledger_service.adjust(
                session, guild_id=GUILD_ID, user_id=RAIDER_B,
                amount=Decimal("-3"), category=PointCategory.ORGANIZER,
            )
            assert result.applied == Decimal("0.00")
            assert result.event is None
            assert session.scalar(select(func.count()).select_from(QuotaEvent)) == 0

    def test_categories_are_separate_columns(self, engine, guild):
        with get_session(engine) as session:
            ledger_service.adjust(
                session, guild_id=GUILD_ID, user_id=RAIDER_A,
                amount=Decimal("3.25"), category=PointCategory.ORGANIZER,
            )
            result = ledger_service.adjust(
                session, guild_id=GUILD_ID, user_id=RAIDER_A,
                amount=Decimal("-1"), category=PointCategory.RAIDER,
            )
            assert result.applied == Decimal("0.00")
            assert ledger_service.total_for(
                session, GUILD_ID, RAIDER_A, PointCategory.ORGANIZER
            ) == Decimal("3.25")

    def test_manual_subjects_are_unique(self, engine, guild):
        with get_session(engine) as session:
            a = ledger_service.adjust(
                session, guild_id=GUILD_ID, user_id=RAIDER_A,
                amount=Decimal("1"), category=PointCategory.RAIDER, now=T0,
            )
            b = ledger_service.adjust(
                session, guild_id=GUILD_ID, user_id=RAIDER_A,
                amount=Decimal("1"), category=PointCategory.RAIDER, now=T0,
            )
            assert a.event.subject_id != b.event.subject_id
            assert a.event.subject_id.startswith(f"manual_adjust:{int(T0.timestamp() * 1000)}:")


class TestLeaderboard:
    def _seed(self, session):
        _credit(session, ORGANIZER_ID, "run:1", category=PointCategory.ORGANIZER,
                points="2", created_at=T0)
        _credit(session, ORGANIZER_ID, "run:2", category=PointCategory.ORGANIZER,
                points="2", dungeon="nest", created_at=T0 + timedelta(days=2))
        _credit(session, RAIDER_B, "raider:1:1:22", created_at=T0)
        _credit(session, RAIDER_A, "raider:1:1:21", created_at=T0)
        _credit(session, RAIDER_A, "raider:2:1:21", dungeon="nest",
                created_at=T0 + timedelta(days=2))
        _credit(session, RAIDER_C, "key_pop:1:1:23", category=PointCategory.KEY_POP,
                points="5", action=QuotaActionType.KEY_POPPED, created_at=T0)

    def test_runs_organized(self, engine, guild):
        with get_session(engine) as session:
            self._seed(session)
            board = ledger_service.leaderboard(
                session, GUILD_ID, LeaderboardCategory.RUNS_ORGANIZED
            )
            assert [(e.user_id, e.count) for e in board] == [(ORGANIZER_ID, 2)]

    def test_dungeon_completions_ties_by_user_id(self, engine, guild):
        with get_session(engine) as session:
            self._seed(session)
            board = ledger_service.leaderboard(
                session, GUILD_ID, LeaderboardCategory.DUNGEON_COMPLETIONS, dungeon_key="shatters"
            )
            assert [(e.user_id, e.count) for e in board] == [(RAIDER_A, 1), (RAIDER_B, 1)]

            everything = ledger_service.leaderboard(
                session, GUILD_ID, LeaderboardCategory.DUNGEON_COMPLETIONS, dungeon_key="all"
            )
            assert [(e.user_id, e.count) for e in everything] == [(RAIDER_A, 2), (RAIDER_B, 1)]

    def test_keys_popped_and_points(self, engine, guild):
        with get_session(engine) as session:
            self._seed(session)
            keys = ledger_service.leaderboard(session, GUILD_ID, LeaderboardCategory.KEYS_POPPED)
            assert [(e.user_id, e.count) for e in keys] == [(RAIDER_C, 1)]

            points = ledger_service.leaderboard(session, GUILD_ID, LeaderboardCategory.POINTS)
            assert [(e.user_id, e.count) for e in points] == [
                (RAIDER_C, Decimal("5.00")),
                (RAIDER_A, Decimal("2.00")),
                (RAIDER_B, Decimal("1.00")),
            ]

    def test_time_window_and_limit(self, engine, guild):
        with get_session(engine) as session:
            self._seed(session)
            board = ledger_service.leaderboard(
                session, GUILD_ID, LeaderboardCategory.QUOTA_POINTS,
                since=T0 + timedelta(days=1),
            )
            assert [(e.user_id, e.count) for e in board] == [(ORGANIZER_ID, Decimal("2.00"))]

            top = ledger_service.leaderboard(
                session, GUILD_ID, LeaderboardCategory.POINTS, limit=1
            )
            assert len(top) == 1


class TestStatsAndEvents:
    def test_user_stats_breakdown(self, engine, guild):
        with get_session(engine) as session:
            _credit(session, RAIDER_A, "run:1", category=PointCategory.ORGANIZER, points="3")
            _credit(session, RAIDER_A, "raider:2:1:21")
            _credit(session, RAIDER_A, "raider:3:1:21", dungeon="nest")
            _credit(session, RAIDER_A, "key_pop:2:1:21", category=PointCategory.KEY_POP,
                    points="5", action=QuotaActionType.KEY_POPPED)

            stats = ledger_service.get_user_stats(session, GUILD_ID, RAIDER_A)
            assert stats.organizer_points == Decimal("3.00")
            assert stats.raider_points == Decimal("7.00")
            assert stats.runs_organized == 1
            assert stats.dungeon_completions == 2
            assert stats.keys_popped == 1
            assert stats.dungeons["shatters"] == {
                "runs_organized": 1, "dungeon_completions": 1, "keys_popped": 1,
            }
            assert stats.dungeons["nest"]["dungeon_completions"] == 1

    def test_list_events_newest_first(self, engine, guild):
        with get_session(engine) as session:
            _credit(session, RAIDER_A, "raider:1:1:21", created_at=T0)
            _credit(session, RAIDER_A, "raider:1:2:21", created_at=T0 + timedelta(minutes=5))
            _credit(session, RAIDER_B, "raider:1:2:22", created_at=T0 + timedelta(minutes=6))

            events = ledger_service.list_events(session, GUILD_ID, user_id=RAIDER_A)
            assert [e.subject_id for e in events] == ["raider:1:2:21", "raider:1:1:21"]
