"""
raidledger.services.snapshot_service — Key-Pop Snapshots & Lagged Crediting
===========================================================================

Each key pop inside a live run freezes the current joiners into a
snapshot.  Raiders are **not** credited at the pop that snapshots them;
they are credited at the *next* pop (or at run end), once the clear they
were present for is confirmed.  Someone who joins between pop 1 and pop 2
is therefore not paid for the clear behind pop 1.

Crediting failures at a key pop are logged and swallowed so the run keeps
flowing; the snapshot rows stay ``awarded=False`` and are left for offline
reconciliation.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from raidledger.constants import (
    key_pop_subject,
    participant_raider_subject,
    snapshot_raider_subject,
)
from raidledger.database.models import (
    KeyPopSnapshot,
    PointCategory,
    QuotaActionType,
    Reaction,
    ReactionState,
    Run,
    utcnow,
)
from raidledger.services import ledger_service
from raidledger.services.identity_service import ensure_member
from raidledger.services.point_resolver import resolve_points

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class CheckpointResult:
    key_pop_number: int
    snapshot_size: int
    credited_previous: int
    popper_credited: bool


def _joiners(session: Session, run_id: int) -> list[Reaction]:
    return list(
        session.scalars(
            select(Reaction)
            .where(Reaction.run_id == run_id, Reaction.state == ReactionState.JOIN.value)
            .order_by(Reaction.user_id)
        )
    )


def _credit_raider(session: Session, run: Run, user_id: int, subject_id: str, points) -> bool:
    inserted, _ = ledger_service.record(
        session,
        guild_id=run.guild_id,
        actor_id=user_id,
        action_type=QuotaActionType.RUN_COMPLETED,
        point_category=PointCategory.RAIDER,
        subject_id=subject_id,
        dungeon_key=run.dungeon_key,
        raider_points=points,
        quantity=1,
    )
    return inserted


# ---------------------------------------------------------------------------
# Crediting
# ---------------------------------------------------------------------------
def credit_snapshot(
    session: Session, run: Run, key_pop_number: int, now: datetime | None = None
) -> int:
    """Credit every unawarded member of one snapshot; returns new credits.

    Rows whose subject was already on the ledger are marked awarded too,
    which repairs snapshots left behind by an interrupted request.
    """
    now = now or utcnow()
    pending = list(
        session.scalars(
            select(KeyPopSnapshot).where(
                KeyPopSnapshot.run_id == run.id,
                KeyPopSnapshot.key_pop_number == key_pop_number,
                KeyPopSnapshot.awarded.is_(False),
            )
        )
    )
    if not pending:
        return 0

    points = resolve_points(session, run.guild_id, run.dungeon_key, PointCategory.RAIDER)
    if points <= 0:
        logger.info(
            "Raider points for %s are 0 in guild %s, skipping snapshot %s of run %s",
            run.dungeon_key, run.guild_id, key_pop_number, run.id,
        )
        return 0

    credited = 0
    for row in pending:
        subject = snapshot_raider_subject(run.id, key_pop_number, row.user_id)
        if _credit_raider(session, run, row.user_id, subject, points):
            credited += 1
        row.awarded = True
        row.awarded_at = now
    session.flush()

    logger.info(
        "Credited %d/%d raiders from snapshot %s of run %s (%s pts each)",
        credited, len(pending), key_pop_number, run.id, points,
    )
    return credited


def credit_participants(session: Session, run: Run) -> int:
    """Credit every current joiner directly (runs that ended with no key pop)."""
    joiners = _joiners(session, run.id)
    if not joiners:
        return 0

    points = resolve_points(session, run.guild_id, run.dungeon_key, PointCategory.RAIDER)
    if points <= 0:
        logger.info(
            "Raider points for %s are 0 in guild %s, skipping participants of run %s",
            run.dungeon_key, run.guild_id, run.id,
        )
        return 0

    credited = sum(
        _credit_raider(
            session, run, r.user_id, participant_raider_subject(run.id, r.user_id), points
        )
        for r in joiners
    )
    logger.info("Credited %d/%d participants of run %s", credited, len(joiners), run.id)
    return credited


def credit_final(session: Session, run: Run) -> int:
    """Raider crediting at run end."""
    if run.key_pop_count > 0:
        return credit_snapshot(session, run, run.key_pop_count)
    return credit_participants(session, run)


def credit_key_popper(
    session: Session,
    run: Run,
    key_pop_number: int,
    popper_id: int,
    role_ids: Iterable[int] | None = None,
) -> bool:
    """Credit the member whose key was popped; once per (run, pop, popper)."""
    points = resolve_points(
        session, run.guild_id, run.dungeon_key, PointCategory.KEY_POP, role_ids
    )
    inserted, _ = ledger_service.record(
        session,
        guild_id=run.guild_id,
        actor_id=popper_id,
        action_type=QuotaActionType.KEY_POPPED,
        point_category=PointCategory.KEY_POP,
        subject_id=key_pop_subject(run.id, key_pop_number, popper_id),
        dungeon_key=run.dungeon_key,
        raider_points=points,
        quantity=1,
    )
    if inserted:
        logger.info(
            "Key popper %s credited %s pts for pop %s of run %s",
            popper_id, points, key_pop_number, run.id,
        )
    return inserted


# ---------------------------------------------------------------------------
# Key pop
# ---------------------------------------------------------------------------
def take_snapshot(session: Session, run: Run, key_pop_number: int) -> int:
    """Freeze the current joiners as snapshot *key_pop_number*."""
    joiners = _joiners(session, run.id)
    session.add_all(
        KeyPopSnapshot(
            run_id=run.id,
            key_pop_number=key_pop_number,
            user_id=r.user_id,
            class_name=r.class_name,
            awarded=False,
        )
        for r in joiners
    )
    session.flush()
    return len(joiners)


def on_checkpoint(
    session: Session,
    run: Run,
    *,
    popper_id: int | None = None,
    popper_role_ids: Iterable[int] | None = None,
) -> CheckpointResult:
    """Handle one key pop: credit the previous snapshot, then take the next.

    The caller owns the transaction and must hold the run row lock.
    """
    previous = run.key_pop_count
    credited_previous = 0

    if previous > 0:
        try:
            with session.begin_nested():
                credited_previous = credit_snapshot(session, run, previous)
        except Exception:
            logger.exception(
                "Crediting snapshot %s of run %s failed; left for reconciliation",
                previous, run.id,
            )

    current = previous + 1
    run.key_pop_count = current
    session.flush()
    snapshot_size = take_snapshot(session, run, current)

    popper_credited = False
    if popper_id is not None:
        try:
            with session.begin_nested():
                ensure_member(session, popper_id)
                popper_credited = credit_key_popper(
                    session, run, current, popper_id, popper_role_ids
                )
        except Exception:
            logger.exception(
                "Crediting key popper %s for pop %s of run %s failed",
                popper_id, current, run.id,
            )

    logger.info(
        "Run %s key pop #%d: snapshot of %d, credited %d from previous",
        run.id, current, snapshot_size, credited_previous,
    )
    return CheckpointResult(
        key_pop_number=current,
        snapshot_size=snapshot_size,
        credited_previous=credited_previous,
        popper_credited=popper_credited,
    )
