"""
raidledger.engine.lifecycle — Run State Machine Rules
======================================================

Pure legality checks for run transitions.  No DB I/O.

    open ──► live ──► ended
      └───────────────►  (system auto-end only)

``ended`` is terminal.  Every rejection carries a machine-readable code and
the fields that caused it, so callers can tell the organizer exactly what
is missing.
"""

from __future__ import annotations

from typing import Protocol

from raidledger.database.models import RunStatus
from raidledger.errors import StateError, ValidationError

__all__ = [
    "assert_accepts_participation",
    "assert_live",
    "check_transition",
]


class _RunLike(Protocol):
    status: str
    dungeon_key: str
    party: str | None
    location: str | None
    screenshot_url: str | None


_ALLOWED: dict[RunStatus, frozenset[RunStatus]] = {
    RunStatus.OPEN: frozenset({RunStatus.LIVE}),
    RunStatus.LIVE: frozenset({RunStatus.ENDED}),
    RunStatus.ENDED: frozenset(),
}


def _invalid(current: str, requested: str) -> StateError:
    return StateError(
        f"Cannot move a run from {current} to {requested}",
        code="INVALID_TRANSITION",
        fields={"current": current, "requested": requested},
    )


def check_transition(
    run: _RunLike,
    requested: RunStatus | str,
    *,
    is_system_auto_end: bool = False,
    hard_mode_dungeon_key: str | None = None,
) -> RunStatus:
    """Raise unless *run* may move to *requested*; return the parsed target.

    Raises
    ------
    StateError
        ``INVALID_TRANSITION`` for any edge not in the state machine.
    ValidationError
        ``MISSING_PARTY_LOCATION`` / ``MISSING_SCREENSHOT`` when going live
        without the required run details.
    """
    current = RunStatus(run.status)
    try:
        target = RunStatus(requested)
    except ValueError:
        raise ValidationError(
            f"Unknown run status {requested!r}",
            fields={"status": "must be one of open, live, ended"},
        ) from None

    if is_system_auto_end:
        if target is RunStatus.ENDED and current is not RunStatus.ENDED:
            return target
        raise _invalid(current, target)

    if target not in _ALLOWED[current]:
        raise _invalid(current, target)

    if target is RunStatus.LIVE:
        missing = {
            name: "required"
            for name in ("party", "location")
            if not (getattr(run, name) or "").strip()
        }
        if missing:
            raise ValidationError(
                "Party and location must be set before the run goes live",
                code="MISSING_PARTY_LOCATION",
                fields=missing,
            )
        if (
            hard_mode_dungeon_key
            and run.dungeon_key == hard_mode_dungeon_key
            and not run.screenshot_url
        ):
            raise ValidationError(
                "This dungeon requires a completion screenshot before going live",
                code="MISSING_SCREENSHOT",
                fields={"screenshot_url": "required"},
            )

    return target


def assert_live(run: _RunLike) -> None:
    """Key pops only happen inside live runs."""
    if run.status != RunStatus.LIVE:
        raise StateError(
            f"Run is {run.status}, key pops require a live run",
            code="RUN_NOT_LIVE",
            fields={"current": run.status},
        )


def assert_accepts_participation(run: _RunLike) -> None:
    if run.status == RunStatus.ENDED:
        raise StateError(
            "Run has ended",
            code="RUN_CLOSED",
            fields={"current": run.status},
        )
