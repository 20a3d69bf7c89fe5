"""
tests/test_run_service.py — Run Lifecycle & Crediting
======================================================
End-to-end through the service layer on in-memory SQLite: transitions,
key-pop snapshots, lagged raider crediting and the participation surface.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from conftest import (
    GUILD_ID,
    HARD_MODE_KEY,
    ORGANIZER_ID,
    ORGANIZER_ROLE,
    OTHER_GUILD_ID,
    RAIDER_A,
    RAIDER_B,
    RAIDER_C,
    STAFF_ID,
)
from raidledger.database.models import (
    KeyPopSnapshot,
    PointOverride,
    QuotaEvent,
    Reaction,
    Run,
    RunStatus,
    minutes_after,
)
from raidledger.errors import (
    AuthorizationError,
    NotFoundError,
    StateError,
    ValidationError,
)
from raidledger.services import run_service, snapshot_service


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def _create(engine, config, *, dungeon_key="shatters", **kwargs) -> int:
    kwargs.setdefault("party", "USEast")
    kwargs.setdefault("location", "Realm A")
    run = run_service.create_run(
        engine, config,
        guild_id=GUILD_ID,
        organizer_id=ORGANIZER_ID,
        organizer_role_ids=[ORGANIZER_ROLE],
        dungeon_key=dungeon_key,
        dungeon_label=dungeon_key.title(),
        **kwargs,
    )
    return run.id


def _go_live(engine, config, run_id):
    return run_service.transition(
        engine, config, run_id=run_id, actor_id=ORGANIZER_ID, status="live"
    )


def _end(engine, config, run_id):
    return run_service.transition(
        engine, config, run_id=run_id, actor_id=ORGANIZER_ID, status="ended"
    )


def _join(engine, run_id, *user_ids):
    for uid in user_ids:
        run_service.set_participation(engine, run_id=run_id, user_id=uid, state="join")


def _pop(engine, config, run_id, **kwargs):
    return run_service.trigger_checkpoint(
        engine, config, run_id=run_id, actor_id=ORGANIZER_ID, **kwargs
    )


def _events(engine, **filters) -> list[QuotaEvent]:
    with Session(engine) as session:
        stmt = select(QuotaEvent).filter_by(**filters).order_by(QuotaEvent.id)
        return list(session.scalars(stmt))


def _raider_counts(engine) -> dict[int, int]:
    counts: dict[int, int] = {}
    for e in _events(engine, action_type="run_completed", point_category="raider"):
        counts[e.actor_user_id] = counts.get(e.actor_user_id, 0) + e.quantity
    return counts


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------
class TestCreateRun:
    def test_creates_open_run(self, engine, config, guild):
        run_id = _create(engine, config)
        with Session(engine) as session:
            run = session.get(Run, run_id)
            assert run.status == RunStatus.OPEN
            assert run.key_pop_count == 0
            assert run.auto_end_minutes == config.default_auto_end_minutes

    def test_requires_organizer_role(self, engine, config, guild):
        with pytest.raises(AuthorizationError) as exc:
            run_service.create_run(
                engine, config,
                guild_id=GUILD_ID, organizer_id=RAIDER_A, organizer_role_ids=[],
                dungeon_key="shatters", dungeon_label="Shatters",
            )
        assert exc.value.code == "NOT_ORGANIZER"

    def test_auto_end_bounds(self, engine, config, guild):
        with pytest.raises(ValidationError) as exc:
            _create(engine, config, auto_end_minutes=config.max_auto_end_minutes + 1)
        assert "auto_end_minutes" in exc.value.fields


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------
class TestTransitions:
    def test_open_live_ended(self, engine, config, guild):
        run_id = _create(engine, config)
        live = _go_live(engine, config, run_id)
        assert live.previous_status == "open"
        assert live.run.started_at is not None

        ended = _end(engine, config, run_id)
        assert ended.previous_status == "live"
        assert ended.run.status == RunStatus.ENDED
        assert ended.organizer_credited is True

    def test_go_live_without_party_reports_fields(self, engine, config, guild):
        run_id = _create(engine, config, party=None, location=None)
        with pytest.raises(ValidationError) as exc:
            _go_live(engine, config, run_id)
        assert exc.value.code == "MISSING_PARTY_LOCATION"
        assert set(exc.value.fields) == {"party", "location"}

    def test_hard_mode_needs_screenshot(self, engine, config, guild):
        run_id = _create(engine, config, dungeon_key=HARD_MODE_KEY)
        with pytest.raises(ValidationError) as exc:
            _go_live(engine, config, run_id)
        assert exc.value.code == "MISSING_SCREENSHOT"

        run_service.submit_screenshot(
            engine, run_id=run_id, actor_id=ORGANIZER_ID,
            screenshot_url="https://cdn.example/clear.png",
        )
        assert _go_live(engine, config, run_id).run.status == RunStatus.LIVE

    def test_open_to_ended_is_rejected_for_humans(self, engine, config, guild):
        run_id = _create(engine, config)
        with pytest.raises(StateError) as exc:
            _end(engine, config, run_id)
        assert exc.value.code == "INVALID_TRANSITION"

    def test_system_auto_end_from_open(self, engine, config, guild):
        run_id = _create(engine, config)
        _join(engine, run_id, RAIDER_A)
        result = run_service.transition(
            engine, config, run_id=run_id, actor_id=None, status="ended",
            is_system_auto_end=True,
        )
        assert result.run.status == RunStatus.ENDED
        assert result.organizer_credited is True
        assert result.raiders_credited == 1

    def test_non_organizer_denied(self, engine, config, guild):
        run_id = _create(engine, config)
        with pytest.raises(AuthorizationError) as exc:
            run_service.transition(
                engine, config, run_id=run_id, actor_id=RAIDER_A, status="live"
            )
        assert exc.value.code == "NOT_ORGANIZER"

    def test_other_organizer_may_manage(self, engine, config, guild):
        run_id = _create(engine, config)
        result = run_service.transition(
            engine, config, run_id=run_id, actor_id=STAFF_ID, status="live",
            role_ids=[ORGANIZER_ROLE],
        )
        assert result.run.status == RunStatus.LIVE

    def test_guild_mismatch(self, engine, config, guild):
        run_id = _create(engine, config)
        with pytest.raises(AuthorizationError) as exc:
            run_service.transition(
                engine, config, run_id=run_id, actor_id=ORGANIZER_ID, status="live",
                guild_id=OTHER_GUILD_ID,
            )
        assert exc.value.code == "GUILD_MISMATCH"

    def test_unknown_run(self, engine, config, guild):
        with pytest.raises(NotFoundError) as exc:
            run_service.transition(engine, config, run_id=424242, actor_id=1, status="live")
        assert exc.value.code == "RUN_NOT_FOUND"

    def test_ending_twice_credits_organizer_once(self, engine, config, guild):
        run_id = _create(engine, config)
        _go_live(engine, config, run_id)
        _end(engine, config, run_id)
        with pytest.raises(StateError):
            _end(engine, config, run_id)
        assert len(_events(engine, point_category="organizer")) == 1

    def test_failure_rolls_back_status_and_credits(self, engine, config, guild, monkeypatch):
        run_id = _create(engine, config)
        _go_live(engine, config, run_id)
        _join(engine, run_id, RAIDER_A)

        def boom(session, run):
            raise RuntimeError("crediting failed")

        monkeypatch.setattr(snapshot_service, "credit_final", boom)
        with pytest.raises(RuntimeError):
            _end(engine, config, run_id)

        with Session(engine) as session:
            assert session.get(Run, run_id).status == RunStatus.LIVE
        assert _events(engine) == []


# ---------------------------------------------------------------------------
# Crediting scenarios
# ---------------------------------------------------------------------------
class TestRaiderCrediting:
    def test_no_key_pops_credits_every_joiner(self, engine, config, guild):
        run_id = _create(engine, config)
        _go_live(engine, config, run_id)
        _join(engine, run_id, RAIDER_A, RAIDER_B, RAIDER_C)

        result = _end(engine, config, run_id)
        assert result.raiders_credited == 3

        raiders = _events(engine, point_category="raider")
        assert sorted(e.subject_id for e in raiders) == [
            f"raider:{run_id}:{RAIDER_A}",
            f"raider:{run_id}:{RAIDER_B}",
            f"raider:{run_id}:{RAIDER_C}",
        ]
        organizer = _events(engine, point_category="organizer")
        assert [(e.actor_user_id, e.subject_id) for e in organizer] == [
            (ORGANIZER_ID, f"run:{run_id}")
        ]
        assert organizer[0].organizer_points == Decimal("1.00")

    def test_bench_and_leave_are_not_credited(self, engine, config, guild):
        run_id = _create(engine, config)
        _go_live(engine, config, run_id)
        _join(engine, run_id, RAIDER_A, RAIDER_B)
        run_service.set_participation(engine, run_id=run_id, user_id=RAIDER_B, state="bench")

        assert _end(engine, config, run_id).raiders_credited == 1
        assert _raider_counts(engine) == {RAIDER_A: 1}

    def test_lagged_crediting_across_two_pops(self, engine, config, guild):
        run_id = _create(engine, config)
        _go_live(engine, config, run_id)
        _join(engine, run_id, RAIDER_A, RAIDER_B)

        first = _pop(engine, config, run_id)
        assert (first.key_pop_number, first.snapshot_size, first.credited_previous) == (1, 2, 0)
        assert _raider_counts(engine) == {}

        _join(engine, run_id, RAIDER_C)
        second = _pop(engine, config, run_id)
        assert (second.key_pop_number, second.snapshot_size, second.credited_previous) == (2, 3, 2)
        assert _raider_counts(engine) == {RAIDER_A: 1, RAIDER_B: 1}

        ended = _end(engine, config, run_id)
        assert ended.raiders_credited == 3
        assert _raider_counts(engine) == {RAIDER_A: 2, RAIDER_B: 2, RAIDER_C: 1}

        with Session(engine) as session:
            rows = session.scalars(select(KeyPopSnapshot).where(KeyPopSnapshot.run_id == run_id))
            assert all(r.awarded for r in rows)

    def test_leaving_after_snapshot_keeps_that_credit(self, engine, config, guild):
        run_id = _create(engine, config)
        _go_live(engine, config, run_id)
        _join(engine, run_id, RAIDER_A, RAIDER_B)
        _pop(engine, config, run_id)
        run_service.set_participation(engine, run_id=run_id, user_id=RAIDER_B, state="leave")
        _end(engine, config, run_id)
        assert _raider_counts(engine) == {RAIDER_A: 1, RAIDER_B: 1}

    def test_zero_raider_points_skips_and_leaves_unawarded(self, engine, config, guild):
        with Session(engine) as session:
            session.add(PointOverride(
                guild_id=GUILD_ID, category="raider", dungeon_key="shatters",
                points=Decimal("0"),
            ))
            session.commit()

        run_id = _create(engine, config)
        _go_live(engine, config, run_id)
        _join(engine, run_id, RAIDER_A)
        _pop(engine, config, run_id)
        result = _end(engine, config, run_id)

        assert result.raiders_credited == 0
        assert result.organizer_credited is True
        assert _raider_counts(engine) == {}
        with Session(engine) as session:
            rows = list(session.scalars(select(KeyPopSnapshot)))
            assert [r.awarded for r in rows] == [False]

    def test_override_sets_raider_points(self, engine, config, guild):
        with Session(engine) as session:
            session.add(PointOverride(
                guild_id=GUILD_ID, category="raider", dungeon_key="shatters",
                points=Decimal("2.5"),
            ))
            session.commit()

        run_id = _create(engine, config)
        _go_live(engine, config, run_id)
        _join(engine, run_id, RAIDER_A)
        _end(engine, config, run_id)
        [row] = _events(engine, point_category="raider")
        assert row.raider_points == Decimal("2.50")

    def test_snapshot_failure_is_swallowed_and_left_unawarded(
        self, engine, config, guild, monkeypatch
    ):
        run_id = _create(engine, config)
        _go_live(engine, config, run_id)
        _join(engine, run_id, RAIDER_A)
        _pop(engine, config, run_id)

        def boom(session, run, key_pop_number, now=None):
            raise RuntimeError("ledger unavailable")

        with monkeypatch.context() as m:
            m.setattr(snapshot_service, "credit_snapshot", boom)
            second = _pop(engine, config, run_id)
        assert second.key_pop_number == 2
        assert second.credited_previous == 0
        assert _raider_counts(engine) == {}

        _end(engine, config, run_id)
        # Snapshot 1 stays unawarded; the final snapshot pays the clear.
        assert _raider_counts(engine) == {RAIDER_A: 1}
        with Session(engine) as session:
            first = session.get(KeyPopSnapshot, (run_id, 1, RAIDER_A))
            assert first.awarded is False


class TestKeyPops:
    def test_requires_live_run(self, engine, config, guild):
        run_id = _create(engine, config)
        with pytest.raises(StateError) as exc:
            _pop(engine, config, run_id)
        assert exc.value.code == "RUN_NOT_LIVE"

    def test_only_owner_may_pop(self, engine, config, guild):
        run_id = _create(engine, config)
        _go_live(engine, config, run_id)
        with pytest.raises(AuthorizationError):
            run_service.trigger_checkpoint(engine, config, run_id=run_id, actor_id=STAFF_ID)

    def test_key_window(self, engine, config, guild):
        run_id = _create(engine, config)
        _go_live(engine, config, run_id)
        before = datetime.now(timezone.utc)
        result = _pop(engine, config, run_id, window_seconds=60)
        ends = result.window_ends_at
        if ends.tzinfo is None:
            ends = ends.replace(tzinfo=timezone.utc)
        assert before + timedelta(seconds=59) <= ends <= before + timedelta(seconds=61)

        with pytest.raises(ValidationError):
            _pop(engine, config, run_id, window_seconds=config.max_key_window_seconds + 1)

    def test_popper_credited_once_per_pop(self, engine, config, guild):
        run_id = _create(engine, config)
        _go_live(engine, config, run_id)
        first = _pop(engine, config, run_id, popper_id=RAIDER_C)
        second = _pop(engine, config, run_id, popper_id=RAIDER_C)
        assert first.popper_credited and second.popper_credited

        keys = _events(engine, action_type="key_popped")
        assert [e.subject_id for e in keys] == [
            f"key_pop:{run_id}:1:{RAIDER_C}",
            f"key_pop:{run_id}:2:{RAIDER_C}",
        ]
        assert all(e.raider_points == Decimal("5.00") for e in keys)


# ---------------------------------------------------------------------------
# Participation surface
# ---------------------------------------------------------------------------
class TestParticipation:
    def test_counts_and_class_tags(self, engine, config, guild):
        run_id = _create(engine, config)
        _join(engine, run_id, RAIDER_A)
        counts = run_service.set_activity_tag(
            engine, run_id=run_id, user_id=RAIDER_B, class_name="Wizard"
        )
        assert counts.joined == 2
        assert counts.classes == {"Wizard": 1}

        counts = run_service.set_participation(
            engine, run_id=run_id, user_id=RAIDER_A, state="bench"
        )
        assert (counts.joined, counts.benched) == (1, 1)

    def test_class_edit_keeps_leave_state(self, engine, config, guild):
        run_id = _create(engine, config)
        _go_live(engine, config, run_id)
        _join(engine, run_id, RAIDER_A, RAIDER_B)
        run_service.set_participation(
            engine, run_id=run_id, user_id=RAIDER_B, state="leave"
        )
        counts = run_service.set_activity_tag(
            engine, run_id=run_id, user_id=RAIDER_B, class_name="Wizard"
        )
        assert counts.joined == 1
        with Session(engine) as session:
            assert session.get(Reaction, (run_id, RAIDER_B)).state == "leave"

        result = _end(engine, config, run_id)
        assert result.raiders_credited == 1
        assert _raider_counts(engine) == {RAIDER_A: 1}

    def test_class_edit_keeps_bench_state(self, engine, config, guild):
        run_id = _create(engine, config)
        run_service.set_participation(
            engine, run_id=run_id, user_id=RAIDER_A, state="bench"
        )
        counts = run_service.set_activity_tag(
            engine, run_id=run_id, user_id=RAIDER_A, class_name="Priest"
        )
        assert (counts.joined, counts.benched) == (0, 1)

    def test_unknown_state(self, engine, config, guild):
        run_id = _create(engine, config)
        with pytest.raises(ValidationError):
            run_service.set_participation(engine, run_id=run_id, user_id=RAIDER_A, state="maybe")

    def test_closed_after_end(self, engine, config, guild):
        run_id = _create(engine, config)
        _go_live(engine, config, run_id)
        _end(engine, config, run_id)
        with pytest.raises(StateError) as exc:
            _join(engine, run_id, RAIDER_A)
        assert exc.value.code == "RUN_CLOSED"

        with pytest.raises(StateError):
            run_service.update_party(engine, run_id=run_id, actor_id=ORGANIZER_ID, party="EU")

    def test_key_reaction_toggle(self, engine, config, guild):
        run_id = _create(engine, config)
        active, offers = run_service.toggle_key_reaction(
            engine, run_id=run_id, user_id=RAIDER_A, key_type="shatters_key"
        )
        assert active is True
        assert offers == {"shatters_key": [RAIDER_A]}

        active, offers = run_service.toggle_key_reaction(
            engine, run_id=run_id, user_id=RAIDER_A, key_type="shatters_key"
        )
        assert active is False
        assert offers == {}

    def test_screenshot_must_be_http(self, engine, config, guild):
        run_id = _create(engine, config)
        with pytest.raises(ValidationError):
            run_service.submit_screenshot(
                engine, run_id=run_id, actor_id=ORGANIZER_ID, screenshot_url="ftp://x/y.png"
            )


class TestExpiredRuns:
    def test_lists_only_overdue_non_ended_runs(self, engine, config, guild):
        overdue = _create(engine, config, auto_end_minutes=30)
        fresh = _create(engine, config, auto_end_minutes=600)
        finished = _create(engine, config, auto_end_minutes=30)
        _go_live(engine, config, finished)
        _end(engine, config, finished)

        later = datetime.now(timezone.utc) + timedelta(minutes=31)
        with Session(engine) as session:
            ids = [r.id for r in run_service.list_expired_runs(session, now=later)]
        assert ids == [overdue]
        assert fresh not in ids

    def test_deadline_is_per_run_and_guild_scoped(self, engine, config, guild):
        short = _create(engine, config, auto_end_minutes=30)
        long = _create(engine, config, auto_end_minutes=90)
        now = datetime.now(timezone.utc)

        with Session(engine) as session:
            assert run_service.list_expired_runs(session, now=now) == []
            ids = [
                r.id for r in run_service.list_expired_runs(
                    session, now=now + timedelta(minutes=91), guild_id=GUILD_ID
                )
            ]
            assert ids == [short, long]
            assert run_service.list_expired_runs(
                session, now=now + timedelta(minutes=91), guild_id=OTHER_GUILD_ID
            ) == []

    def test_deadline_filter_renders_per_dialect(self):
        expr = minutes_after(Run.created_at, Run.auto_end_minutes)
        pg = str(expr.compile(dialect=postgresql.dialect()))
        lite = str(expr.compile(dialect=sqlite.dialect()))
        assert "make_interval(mins => runs.auto_end_minutes)" in pg
        assert lite.startswith("strftime('%Y-%m-%d %H:%M:%f', runs.created_at")
