"""
tests/test_lifecycle.py — Run State Machine Rules
==================================================
Pure legality checks; no database involved.
"""

from __future__ import annotations

from dataclasses import dataclass

import pytest

from raidledger.database.models import RunStatus
from raidledger.engine.lifecycle import (
    assert_accepts_participation,
    assert_live,
    check_transition,
)
from raidledger.errors import StateError, ValidationError

HARD = "oryx_3"


@dataclass
class _Run:
    status: str = "open"
    dungeon_key: str = "shatters"
    party: str | None = "USEast"
    location: str | None = "Realm A"
    screenshot_url: str | None = None


class TestGoingLive:
    def test_open_to_live_with_party_and_location(self):
        assert check_transition(_Run(), "live") is RunStatus.LIVE

    def test_missing_party_and_location_is_field_level(self):
        with pytest.raises(ValidationError) as exc:
            check_transition(_Run(party=None, location="  "), "live")
        assert exc.value.code == "MISSING_PARTY_LOCATION"
        assert exc.value.fields == {"party": "required", "location": "required"}

    def test_missing_location_only(self):
        with pytest.raises(ValidationError) as exc:
            check_transition(_Run(location=None), "live")
        assert exc.value.fields == {"location": "required"}

    def test_hard_mode_requires_screenshot(self):
        run = _Run(dungeon_key=HARD)
        with pytest.raises(ValidationError) as exc:
            check_transition(run, "live", hard_mode_dungeon_key=HARD)
        assert exc.value.code == "MISSING_SCREENSHOT"

        run.screenshot_url = "https://cdn.example/shot.png"
        assert check_transition(run, "live", hard_mode_dungeon_key=HARD) is RunStatus.LIVE

    def test_screenshot_not_required_for_other_dungeons(self):
        assert check_transition(_Run(), "live", hard_mode_dungeon_key=HARD) is RunStatus.LIVE


class TestInvalidTransitions:
    @pytest.mark.parametrize(
        "current, requested",
        [
            ("open", "ended"),
            ("open", "open"),
            ("live", "open"),
            ("live", "live"),
            ("ended", "live"),
            ("ended", "open"),
            ("ended", "ended"),
        ],
    )
    def test_rejected_with_current_and_requested(self, current, requested):
        with pytest.raises(StateError) as exc:
            check_transition(_Run(status=current), requested)
        assert exc.value.code == "INVALID_TRANSITION"
        assert exc.value.fields == {"current": current, "requested": requested}

    def test_live_to_ended(self):
        assert check_transition(_Run(status="live"), "ended") is RunStatus.ENDED

    def test_unknown_status_is_validation_error(self):
        with pytest.raises(ValidationError):
            check_transition(_Run(), "paused")


class TestSystemAutoEnd:
    @pytest.mark.parametrize("current", ["open", "live"])
    def test_ends_from_any_non_terminal_state(self, current):
        run = _Run(status=current, party=None, location=None)
        assert check_transition(run, "ended", is_system_auto_end=True) is RunStatus.ENDED

    def test_cannot_end_twice(self):
        with pytest.raises(StateError):
            check_transition(_Run(status="ended"), "ended", is_system_auto_end=True)

    def test_only_ends(self):
        with pytest.raises(StateError):
            check_transition(_Run(status="open"), "live", is_system_auto_end=True)


class TestGuards:
    def test_key_pops_need_live_run(self):
        assert_live(_Run(status="live"))
        with pytest.raises(StateError) as exc:
            assert_live(_Run(status="open"))
        assert exc.value.code == "RUN_NOT_LIVE"

    def test_ended_runs_are_closed(self):
        assert_accepts_participation(_Run(status="live"))
        with pytest.raises(StateError) as exc:
            assert_accepts_participation(_Run(status="ended"))
        assert exc.value.code == "RUN_CLOSED"
