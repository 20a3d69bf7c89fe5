"""
raidledger.services.run_service — Run Lifecycle Controller
===========================================================

Owns the run state machine (``open → live → ended``) and everything a
participant can do to a run.  Every mutating operation follows the same
shape:

  1. Validate input                 (no DB writes)
  2. Pre-read the run: scope + auth (no DB writes)
  3. ``run_in_transaction``: lock the run row, re-check its state, mutate

so validation and authorization failures never leave partial writes, and
anything that fails inside step 3 rolls the whole unit of work back.

Reaching ``ended`` credits the organizer (subject ``run:{id}``, once per
run) and the raiders (final snapshot, or every joiner when no key was
ever popped) in the same transaction as the status change.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from urllib.parse import urlparse

from sqlalchemy import Engine, delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from raidledger.config import RaidLedgerConfig
from raidledger.constants import (
    MAX_CLASS_NAME_LENGTH,
    MAX_KEY_TYPE_LENGTH,
    ROLE_ORGANIZER,
    organizer_subject,
)
from raidledger.database.engine import run_in_transaction
from raidledger.database.models import (
    KeyReaction,
    PointCategory,
    QuotaActionType,
    Reaction,
    ReactionState,
    Run,
    RunStatus,
    as_utc,
    minutes_after,
    utcnow,
)
from raidledger.engine.lifecycle import (
    assert_accepts_participation,
    assert_live,
    check_transition,
)
from raidledger.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from raidledger.services import ledger_service, snapshot_service
from raidledger.services.authorization import (
    AuthGate,
    assert_same_guild,
    authorize_run_actor,
    has_internal_role,
)
from raidledger.services.identity_service import ensure_guild, ensure_member
from raidledger.services.point_resolver import resolve_points

logger = logging.getLogger(__name__)

MANAGE_GATES = frozenset({AuthGate.OWNER, AuthGate.ORGANIZER_ROLE})
KEY_POP_GATES = frozenset({AuthGate.OWNER})


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class TransitionResult:
    run: Run
    previous_status: str
    organizer_credited: bool = False
    raiders_credited: int = 0


@dataclass(frozen=True, slots=True)
class KeyPopResult:
    key_pop_number: int
    window_ends_at: datetime
    snapshot_size: int
    credited_previous: int
    popper_credited: bool


@dataclass
class ParticipationCounts:
    joined: int = 0
    benched: int = 0
    classes: dict[str, int] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def _require_text(value: str | None, name: str, max_length: int) -> str:
    text = (value or "").strip()
    if not text:
        raise ValidationError(f"{name} is required", fields={name: "required"})
    if len(text) > max_length:
        raise ValidationError(
            f"{name} must be at most {max_length} characters",
            fields={name: "too long"},
        )
    return text


def _bounded_int(value: int, name: str, low: int, high: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{name} must be an integer", fields={name: "not an integer"})
    if not low <= value <= high:
        raise ValidationError(
            f"{name} must be between {low} and {high}",
            fields={name: f"out of range {low}..{high}"},
        )
    return value


def get_run(session: Session, run_id: int, guild_id: int | None = None) -> Run:
    """Load a run or raise ``RUN_NOT_FOUND``; enforce guild scope when given."""
    run = session.get(Run, run_id)
    if run is None:
        raise NotFoundError(f"Run {run_id} not found", fields={"run_id": run_id})
    assert_same_guild(run, guild_id)
    return run


def _lock_run(session: Session, run_id: int) -> Run:
    run = session.scalar(select(Run).where(Run.id == run_id).with_for_update())
    if run is None:
        raise NotFoundError(f"Run {run_id} not found", fields={"run_id": run_id})
    return run


def _pre_authorize(
    engine: Engine,
    run_id: int,
    *,
    actor_id: int,
    role_ids: Iterable[int] | None,
    guild_id: int | None,
    gates: frozenset[AuthGate] | None,
) -> None:
    """Scope and capability check against a read-only snapshot of the run."""
    with Session(engine) as session:
        run = get_run(session, run_id, guild_id)
        if gates is not None:
            authorize_run_actor(session, run, actor_id, role_ids, gates)


def participation_counts(session: Session, run_id: int) -> ParticipationCounts:
    counts = ParticipationCounts()
    for state, class_name, n in session.execute(
        select(Reaction.state, Reaction.class_name, func.count())
        .where(Reaction.run_id == run_id)
        .group_by(Reaction.state, Reaction.class_name)
    ):
        if state == ReactionState.JOIN:
            counts.joined += n
            if class_name:
                counts.classes[class_name] = counts.classes.get(class_name, 0) + n
        elif state == ReactionState.BENCH:
            counts.benched += n
    return counts


# ---------------------------------------------------------------------------
# Create
# ---------------------------------------------------------------------------
def create_run(
    engine: Engine,
    config: RaidLedgerConfig,
    *,
    guild_id: int,
    organizer_id: int,
    organizer_role_ids: Iterable[int] | None,
    dungeon_key: str,
    dungeon_label: str,
    channel_id: int | None = None,
    auto_end_minutes: int | None = None,
    party: str | None = None,
    location: str | None = None,
    description: str | None = None,
    guild_name: str | None = None,
    organizer_username: str | None = None,
) -> Run:
    """Create a run in ``open`` state; the organizer needs the organizer role."""
    dungeon_key = _require_text(dungeon_key, "dungeon_key", 50)
    dungeon_label = _require_text(dungeon_label, "dungeon_label", 100)
    if auto_end_minutes is None:
        auto_end_minutes = config.default_auto_end_minutes
    auto_end_minutes = _bounded_int(
        auto_end_minutes, "auto_end_minutes", 1, config.max_auto_end_minutes
    )
    role_ids = list(organizer_role_ids or ())

    with Session(engine) as session:
        if not has_internal_role(session, guild_id, ROLE_ORGANIZER, role_ids):
            logger.warning("Member %s may not organize in guild %s", organizer_id, guild_id)
            raise AuthorizationError(
                "Organizer role required to create runs", code="NOT_ORGANIZER"
            )

    def _create(session: Session) -> Run:
        ensure_guild(session, guild_id, guild_name)
        ensure_member(session, organizer_id, organizer_username)
        run = Run(
            guild_id=guild_id,
            organizer_id=organizer_id,
            dungeon_key=dungeon_key,
            dungeon_label=dungeon_label,
            channel_id=channel_id,
            description=description,
            party=(party or "").strip() or None,
            location=(location or "").strip() or None,
            status=RunStatus.OPEN.value,
            key_pop_count=0,
            auto_end_minutes=auto_end_minutes,
            created_at=utcnow(),
        )
        session.add(run)
        session.flush()
        return run

    try:
        run = run_in_transaction(engine, _create)
    except IntegrityError as exc:
        raise ConflictError("Run could not be created: duplicate identifier") from exc
    logger.info(
        "Run %s created in guild %s by %s (%s)",
        run.id, guild_id, organizer_id, dungeon_key,
    )
    return run


# ---------------------------------------------------------------------------
# Transition
# ---------------------------------------------------------------------------
def transition(
    engine: Engine,
    config: RaidLedgerConfig,
    *,
    run_id: int,
    actor_id: int | None,
    status: RunStatus | str,
    role_ids: Iterable[int] | None = None,
    guild_id: int | None = None,
    is_system_auto_end: bool = False,
) -> TransitionResult:
    """Move a run along ``open → live → ended``.

    ``is_system_auto_end`` skips the actor checks and allows ``ended``
    from any non-terminal state.  Only trusted system callers may set it;
    the HTTP layer enforces that.
    """
    role_ids = list(role_ids or ())
    if not is_system_auto_end and actor_id is None:
        raise ValidationError("actor_id is required", fields={"actor_id": "required"})

    _pre_authorize(
        engine,
        run_id,
        actor_id=actor_id,
        role_ids=role_ids,
        guild_id=guild_id,
        gates=None if is_system_auto_end else MANAGE_GATES,
    )

    def _transition(session: Session) -> TransitionResult:
        run = _lock_run(session, run_id)
        previous = run.status
        target = check_transition(
            run,
            status,
            is_system_auto_end=is_system_auto_end,
            hard_mode_dungeon_key=config.hard_mode_dungeon_key,
        )
        now = utcnow()

        if target is RunStatus.LIVE:
            run.status = target.value
            run.started_at = now
            session.flush()
            return TransitionResult(run=run, previous_status=previous)

        run.status = target.value
        run.ended_at = now
        session.flush()

        # Organizer overrides follow the organizer's own roles when they
        # ended the run themselves; otherwise the best configured value.
        organizer_roles = role_ids if actor_id == run.organizer_id and role_ids else None
        organizer_points = resolve_points(
            session, run.guild_id, run.dungeon_key, PointCategory.ORGANIZER, organizer_roles
        )
        organizer_credited, _ = ledger_service.record(
            session,
            guild_id=run.guild_id,
            actor_id=run.organizer_id,
            action_type=QuotaActionType.RUN_COMPLETED,
            point_category=PointCategory.ORGANIZER,
            subject_id=organizer_subject(run.id),
            dungeon_key=run.dungeon_key,
            organizer_points=organizer_points,
            quantity=1,
            created_at=now,
        )
        raiders_credited = snapshot_service.credit_final(session, run)
        return TransitionResult(
            run=run,
            previous_status=previous,
            organizer_credited=organizer_credited,
            raiders_credited=raiders_credited,
        )

    result = run_in_transaction(engine, _transition)
    logger.info(
        "Run %s: %s → %s by %s%s",
        run_id, result.previous_status, result.run.status,
        "system" if is_system_auto_end else actor_id,
        (
            f" (organizer credited={result.organizer_credited}, "
            f"raiders credited={result.raiders_credited})"
            if result.run.status == RunStatus.ENDED else ""
        ),
    )
    return result


# ---------------------------------------------------------------------------
# Key pops
# ---------------------------------------------------------------------------
def trigger_checkpoint(
    engine: Engine,
    config: RaidLedgerConfig,
    *,
    run_id: int,
    actor_id: int,
    guild_id: int | None = None,
    window_seconds: int | None = None,
    popper_id: int | None = None,
    popper_role_ids: Iterable[int] | None = None,
) -> KeyPopResult:
    """Pop a key: lagged-credit the previous snapshot and open a key window.

    Owner only.  Concurrent pops for the same run serialize on the run row.
    """
    if window_seconds is None:
        window_seconds = config.default_key_window_seconds
    window_seconds = _bounded_int(
        window_seconds, "window_seconds", 1, config.max_key_window_seconds
    )
    popper_roles = list(popper_role_ids or ())

    _pre_authorize(
        engine, run_id,
        actor_id=actor_id, role_ids=None, guild_id=guild_id, gates=KEY_POP_GATES,
    )

    def _pop(session: Session) -> KeyPopResult:
        run = _lock_run(session, run_id)
        assert_live(run)
        outcome = snapshot_service.on_checkpoint(
            session, run, popper_id=popper_id, popper_role_ids=popper_roles
        )
        run.key_window_ends_at = utcnow() + timedelta(seconds=window_seconds)
        session.flush()
        return KeyPopResult(
            key_pop_number=outcome.key_pop_number,
            window_ends_at=run.key_window_ends_at,
            snapshot_size=outcome.snapshot_size,
            credited_previous=outcome.credited_previous,
            popper_credited=outcome.popper_credited,
        )

    return run_in_transaction(engine, _pop)


# ---------------------------------------------------------------------------
# Participation
# ---------------------------------------------------------------------------
def set_participation(
    engine: Engine,
    *,
    run_id: int,
    user_id: int,
    state: ReactionState | str = ReactionState.JOIN,
    guild_id: int | None = None,
    username: str | None = None,
) -> ParticipationCounts:
    """Upsert the member's reaction state; rejected once the run has ended."""
    try:
        state = ReactionState(state)
    except ValueError:
        raise ValidationError(
            f"Unknown participation state {state!r}",
            fields={"state": "must be one of join, bench, leave"},
        ) from None

    def _set(session: Session) -> ParticipationCounts:
        run = get_run(session, run_id, guild_id)
        assert_accepts_participation(run)
        ensure_member(session, user_id, username)
        reaction = session.get(Reaction, (run_id, user_id))
        if reaction is None:
            session.add(Reaction(run_id=run_id, user_id=user_id, state=state.value))
        else:
            reaction.state = state.value
            reaction.updated_at = utcnow()
        session.flush()
        return participation_counts(session, run_id)

    return run_in_transaction(engine, _set)


def set_activity_tag(
    engine: Engine,
    *,
    run_id: int,
    user_id: int,
    class_name: str | None,
    guild_id: int | None = None,
    username: str | None = None,
) -> ParticipationCounts:
    """Set (or clear, with ``None``) the member's class.

    A first reaction defaults to ``join``; an existing one keeps its state.
    """
    tag = None
    if class_name is not None:
        tag = _require_text(class_name, "class_name", MAX_CLASS_NAME_LENGTH)

    def _tag(session: Session) -> ParticipationCounts:
        run = get_run(session, run_id, guild_id)
        assert_accepts_participation(run)
        ensure_member(session, user_id, username)
        reaction = session.get(Reaction, (run_id, user_id))
        if reaction is None:
            session.add(Reaction(
                run_id=run_id, user_id=user_id,
                state=ReactionState.JOIN.value, class_name=tag,
            ))
        else:
            reaction.class_name = tag
            reaction.updated_at = utcnow()
        session.flush()
        return participation_counts(session, run_id)

    return run_in_transaction(engine, _tag)


def key_reaction_counts(session: Session, run_id: int) -> dict[str, list[int]]:
    """key_type → member ids offering that key, oldest first."""
    users: dict[str, list[int]] = {}
    for key_type, user_id in session.execute(
        select(KeyReaction.key_type, KeyReaction.user_id)
        .where(KeyReaction.run_id == run_id)
        .order_by(KeyReaction.key_type, KeyReaction.created_at, KeyReaction.user_id)
    ):
        users.setdefault(key_type, []).append(user_id)
    return users


def toggle_key_reaction(
    engine: Engine,
    *,
    run_id: int,
    user_id: int,
    key_type: str,
    guild_id: int | None = None,
) -> tuple[bool, dict[str, list[int]]]:
    """Flip a key offer on or off.  Returns ``(now_active, offers_by_key)``.

    Delete-if-present then insert-if-nothing-was-deleted, so there is no
    window between a separate read and write.
    """
    key_type = _require_text(key_type, "key_type", MAX_KEY_TYPE_LENGTH)

    def _toggle(session: Session) -> tuple[bool, dict[str, list[int]]]:
        run = get_run(session, run_id, guild_id)
        assert_accepts_participation(run)
        ensure_member(session, user_id)
        deleted = session.execute(
            delete(KeyReaction).where(
                KeyReaction.run_id == run_id,
                KeyReaction.user_id == user_id,
                KeyReaction.key_type == key_type,
            )
        ).rowcount
        active = not deleted
        if active:
            session.add(KeyReaction(run_id=run_id, user_id=user_id, key_type=key_type))
            session.flush()
        return active, key_reaction_counts(session, run_id)

    return run_in_transaction(engine, _toggle)


# ---------------------------------------------------------------------------
# Run details
# ---------------------------------------------------------------------------
def _update_run(
    engine: Engine,
    *,
    run_id: int,
    actor_id: int,
    role_ids: Iterable[int] | None,
    guild_id: int | None,
    changes: dict[str, object],
) -> Run:
    _pre_authorize(
        engine, run_id,
        actor_id=actor_id, role_ids=list(role_ids or ()), guild_id=guild_id,
        gates=MANAGE_GATES,
    )

    def _update(session: Session) -> Run:
        run = _lock_run(session, run_id)
        assert_accepts_participation(run)
        for name, value in changes.items():
            setattr(run, name, value)
        session.flush()
        return run

    run = run_in_transaction(engine, _update)
    logger.info("Run %s updated by %s: %s", run_id, actor_id, sorted(changes))
    return run


def update_party(engine: Engine, *, run_id: int, actor_id: int, party: str,
                 role_ids: Iterable[int] | None = None, guild_id: int | None = None) -> Run:
    return _update_run(
        engine, run_id=run_id, actor_id=actor_id, role_ids=role_ids, guild_id=guild_id,
        changes={"party": _require_text(party, "party", 100)},
    )


def update_location(engine: Engine, *, run_id: int, actor_id: int, location: str,
                    role_ids: Iterable[int] | None = None, guild_id: int | None = None) -> Run:
    return _update_run(
        engine, run_id=run_id, actor_id=actor_id, role_ids=role_ids, guild_id=guild_id,
        changes={"location": _require_text(location, "location", 100)},
    )


def submit_screenshot(engine: Engine, *, run_id: int, actor_id: int, screenshot_url: str,
                      role_ids: Iterable[int] | None = None,
                      guild_id: int | None = None) -> Run:
    url = _require_text(screenshot_url, "screenshot_url", 2000)
    if urlparse(url).scheme not in ("http", "https"):
        raise ValidationError(
            "screenshot_url must be an http(s) URL",
            fields={"screenshot_url": "invalid url"},
        )
    return _update_run(
        engine, run_id=run_id, actor_id=actor_id, role_ids=role_ids, guild_id=guild_id,
        changes={"screenshot_url": url},
    )


def set_post_message(engine: Engine, *, run_id: int, actor_id: int, message_id: int,
                     role_ids: Iterable[int] | None = None,
                     guild_id: int | None = None) -> Run:
    return _update_run(
        engine, run_id=run_id, actor_id=actor_id, role_ids=role_ids, guild_id=guild_id,
        changes={"post_message_id": message_id},
    )


# ---------------------------------------------------------------------------
# Expiry (read side for the external auto-end poller)
# ---------------------------------------------------------------------------
def list_expired_runs(
    session: Session, now: datetime | None = None, guild_id: int | None = None
) -> list[Run]:
    """Non-ended runs whose ``created_at + auto_end_minutes`` has passed."""
    now = as_utc(now or utcnow())
    stmt = select(Run).where(
        Run.status != RunStatus.ENDED.value,
        minutes_after(Run.created_at, Run.auto_end_minutes) < now,
    )
    if guild_id is not None:
        stmt = stmt.where(Run.guild_id == guild_id)
    return list(session.scalars(stmt.order_by(Run.created_at, Run.id)))
