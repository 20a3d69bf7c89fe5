"""
raidledger.services.ledger_service — The Quota Ledger
======================================================

Append-only store of point-bearing events.  Rows are never updated or
deleted; corrections are new, signed rows.

Idempotency
-----------
``run_completed`` and ``key_popped`` rows carry a ``subject_id`` that is
unique per guild (partial unique index ``ix_quota_events_idempotent``).
:func:`record` inserts inside a SAVEPOINT and treats a violation of that
index as "already credited": the call reports ``inserted=False`` and the
existing row, and the outer transaction carries on.  Two concurrent
requests crediting the same subject race at the index; the loser sees a
no-op, never an error.

Clamped adjustments
-------------------
:func:`adjust` never lets an actor's total for a point column drop below
zero.  If ``current + delta < 0`` the row records ``-current`` instead.
The same clamp applies to manual run and key-pop logs, which pass their
own action type and quantity through here.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal

from sqlalchemy import and_, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from raidledger.constants import manual_subject
from raidledger.database.models import (
    IDEMPOTENT_ACTIONS,
    LeaderboardCategory,
    Member,
    PointCategory,
    QuotaActionType,
    QuotaEvent,
    utcnow,
)
from raidledger.engine.points import ZERO, PointAmount, quantize_points
from raidledger.errors import ValidationError
from raidledger.services.identity_service import ensure_guild, ensure_member

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class AdjustResult:
    applied: Decimal
    new_total: Decimal
    event: QuotaEvent | None = None


@dataclass(frozen=True, slots=True)
class LeaderboardEntry:
    user_id: int
    count: int | Decimal


@dataclass
class UserStats:
    """Aggregated ledger view of one member."""

    user_id: int
    raider_points: Decimal = ZERO
    organizer_points: Decimal = ZERO
    runs_organized: int = 0
    dungeon_completions: int = 0
    keys_popped: int = 0
    moderation_actions: int = 0
    dungeons: dict[str, dict[str, int]] = field(default_factory=dict)


def points_column(category: PointCategory):
    """Ledger column a category's points live in."""
    if category is PointCategory.ORGANIZER:
        return QuotaEvent.organizer_points
    return QuotaEvent.raider_points


def _time_bounds(since: datetime | None, until: datetime | None) -> list:
    conditions = []
    if since is not None:
        conditions.append(QuotaEvent.created_at >= since)
    if until is not None:
        conditions.append(QuotaEvent.created_at <= until)
    return conditions


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------
def record(
    session: Session,
    *,
    guild_id: int,
    actor_id: int,
    action_type: QuotaActionType,
    point_category: PointCategory,
    subject_id: str | None,
    dungeon_key: str | None = None,
    raider_points: Decimal = ZERO,
    organizer_points: Decimal = ZERO,
    quantity: int = 1,
    created_at: datetime | None = None,
) -> tuple[bool, QuotaEvent]:
    """Append one ledger row.

    Returns ``(inserted, event)``.  For idempotent action types a repeated
    ``subject_id`` yields ``(False, existing_event)`` and writes nothing.
    Any other integrity failure propagates.
    """
    ensure_guild(session, guild_id)
    ensure_member(session, actor_id)

    event = QuotaEvent(
        guild_id=guild_id,
        actor_user_id=actor_id,
        action_type=action_type.value,
        point_category=point_category.value,
        subject_id=subject_id,
        dungeon_key=dungeon_key,
        quantity=quantity,
        raider_points=quantize_points(raider_points),
        organizer_points=quantize_points(organizer_points),
        created_at=created_at or utcnow(),
    )

    if subject_id is None or action_type.value not in IDEMPOTENT_ACTIONS:
        session.add(event)
        session.flush()
        return True, event

    try:
        with session.begin_nested():   # SAVEPOINT
            session.add(event)
            session.flush()
    except IntegrityError:
        # The SAVEPOINT was rolled back; the outer txn is still alive.
        existing = session.scalar(
            select(QuotaEvent).where(
                QuotaEvent.guild_id == guild_id,
                QuotaEvent.subject_id == subject_id,
                QuotaEvent.action_type.in_(IDEMPOTENT_ACTIONS),
            )
        )
        if existing is None:
            raise
        logger.debug("Ledger subject %s already credited in guild %s", subject_id, guild_id)
        return False, existing

    return True, event


def _lock_member(session: Session, user_id: int) -> None:
    """Serialize read-modify-append sequences per member (no-op on SQLite)."""
    session.execute(select(Member.id).where(Member.id == user_id).with_for_update())


def adjust(
    session: Session,
    *,
    guild_id: int,
    user_id: int,
    amount: PointAmount | Decimal,
    category: PointCategory,
    action_type: QuotaActionType = QuotaActionType.MANUAL_ADJUST,
    dungeon_key: str | None = None,
    quantity: int = 0,
    subject_kind: str = "manual_adjust",
    now: datetime | None = None,
) -> AdjustResult:
    """Apply a signed point delta, clamped so the total never goes negative.

    ``quantity`` is recorded as-is; callers clamp their own counts.  When
    both the applied delta and the quantity are zero nothing is written.
    """
    delta = amount.value if isinstance(amount, PointAmount) else quantize_points(amount)
    now = now or utcnow()

    ensure_guild(session, guild_id)
    ensure_member(session, user_id)
    _lock_member(session, user_id)

    current = total_for(session, guild_id, user_id, category)
    applied = -current if current + delta < 0 else delta

    if applied == 0 and quantity == 0:
        logger.debug("Adjustment for %s in guild %s is a no-op", user_id, guild_id)
        return AdjustResult(applied=ZERO, new_total=current)

    column = "organizer_points" if category is PointCategory.ORGANIZER else "raider_points"
    _, event = record(
        session,
        guild_id=guild_id,
        actor_id=user_id,
        action_type=action_type,
        point_category=category,
        subject_id=manual_subject(subject_kind, user_id, now, uuid.uuid4().hex[:8]),
        dungeon_key=dungeon_key,
        quantity=quantity,
        created_at=now,
        **{column: applied},
    )
    if applied != delta:
        logger.info(
            "Clamped %s adjustment for %s in guild %s: requested %s, applied %s",
            category, user_id, guild_id, delta, applied,
        )
    return AdjustResult(
        applied=quantize_points(applied),
        new_total=quantize_points(current + applied),
        event=event,
    )


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------
def total_for(
    session: Session,
    guild_id: int,
    user_id: int,
    category: PointCategory,
    since: datetime | None = None,
    until: datetime | None = None,
) -> Decimal:
    """Sum of one point column for a member, optionally time-bounded."""
    column = points_column(category)
    total = session.scalar(
        select(func.coalesce(func.sum(column), 0)).where(
            QuotaEvent.guild_id == guild_id,
            QuotaEvent.actor_user_id == user_id,
            *_time_bounds(since, until),
        )
    )
    return quantize_points(total)


def quantity_for(
    session: Session,
    guild_id: int,
    user_id: int,
    action_type: QuotaActionType,
    category: PointCategory,
    dungeon_key: str | None = None,
) -> int:
    """Net count of runs / key pops a member has on record."""
    conditions = [
        QuotaEvent.guild_id == guild_id,
        QuotaEvent.actor_user_id == user_id,
        QuotaEvent.action_type == action_type.value,
        QuotaEvent.point_category == category.value,
    ]
    if dungeon_key is not None:
        conditions.append(QuotaEvent.dungeon_key == dungeon_key)
    total = session.scalar(
        select(func.coalesce(func.sum(QuotaEvent.quantity), 0)).where(*conditions)
    )
    return int(total or 0)


_LEADERBOARD_SOURCES = {
    LeaderboardCategory.RUNS_ORGANIZED: (
        QuotaEvent.quantity,
        (QuotaActionType.RUN_COMPLETED, PointCategory.ORGANIZER),
    ),
    LeaderboardCategory.DUNGEON_COMPLETIONS: (
        QuotaEvent.quantity,
        (QuotaActionType.RUN_COMPLETED, PointCategory.RAIDER),
    ),
    LeaderboardCategory.KEYS_POPPED: (
        QuotaEvent.quantity,
        (QuotaActionType.KEY_POPPED, PointCategory.KEY_POP),
    ),
    LeaderboardCategory.POINTS: (QuotaEvent.raider_points, None),
    LeaderboardCategory.QUOTA_POINTS: (QuotaEvent.organizer_points, None),
}


def leaderboard(
    session: Session,
    guild_id: int,
    category: LeaderboardCategory,
    dungeon_key: str | None = None,
    since: datetime | None = None,
    until: datetime | None = None,
    limit: int | None = None,
) -> list[LeaderboardEntry]:
    """Rank members by one aggregate; ties broken by user id ascending.

    * ``runs_organized`` / ``dungeon_completions`` — net run counts from
      ``run_completed`` rows on the organizer / raider side.
    * ``keys_popped`` — net key counts from ``key_popped`` rows.
    * ``points`` / ``quota_points`` — net raider / organizer point sums.

    *dungeon_key* of ``None`` or ``"all"`` spans every dungeon; *since* and
    *until* are inclusive.  Members whose aggregate is not positive are
    omitted.
    """
    measure, kind = _LEADERBOARD_SOURCES[category]
    agg = func.sum(measure)

    conditions = [QuotaEvent.guild_id == guild_id, *_time_bounds(since, until)]
    if kind is not None:
        action_type, point_category = kind
        conditions.append(
            and_(
                QuotaEvent.action_type == action_type.value,
                QuotaEvent.point_category == point_category.value,
            )
        )
    if dungeon_key and dungeon_key != "all":
        conditions.append(QuotaEvent.dungeon_key == dungeon_key)

    stmt = (
        select(QuotaEvent.actor_user_id, agg.label("total"))
        .where(*conditions)
        .group_by(QuotaEvent.actor_user_id)
        .having(agg > 0)
        .order_by(agg.desc(), QuotaEvent.actor_user_id.asc())
    )
    if limit is not None:
        stmt = stmt.limit(limit)

    is_points = kind is None
    return [
        LeaderboardEntry(
            user_id=row.actor_user_id,
            count=quantize_points(row.total) if is_points else int(row.total),
        )
        for row in session.execute(stmt)
    ]


def get_user_stats(
    session: Session,
    guild_id: int,
    user_id: int,
    since: datetime | None = None,
    until: datetime | None = None,
) -> UserStats:
    """Per-member totals plus a per-dungeon breakdown of run and key counts."""
    rows = session.execute(
        select(
            QuotaEvent.action_type,
            QuotaEvent.point_category,
            QuotaEvent.dungeon_key,
            func.count().label("rows"),
            func.coalesce(func.sum(QuotaEvent.quantity), 0).label("quantity"),
            func.coalesce(func.sum(QuotaEvent.raider_points), 0).label("raider"),
            func.coalesce(func.sum(QuotaEvent.organizer_points), 0).label("organizer"),
        )
        .where(
            QuotaEvent.guild_id == guild_id,
            QuotaEvent.actor_user_id == user_id,
            *_time_bounds(since, until),
        )
        .group_by(
            QuotaEvent.action_type, QuotaEvent.point_category, QuotaEvent.dungeon_key
        )
    ).all()

    stats = UserStats(user_id=user_id)
    raider = organizer = Decimal(0)
    for row in rows:
        raider += quantize_points(row.raider)
        organizer += quantize_points(row.organizer)
        quantity = int(row.quantity)

        if row.action_type == QuotaActionType.MODERATION:
            stats.moderation_actions += int(row.rows)
            continue

        counter = None
        if row.action_type == QuotaActionType.RUN_COMPLETED:
            counter = (
                "runs_organized"
                if row.point_category == PointCategory.ORGANIZER
                else "dungeon_completions"
            )
        elif row.action_type == QuotaActionType.KEY_POPPED:
            counter = "keys_popped"
        if counter is None:
            continue

        setattr(stats, counter, getattr(stats, counter) + quantity)
        if row.dungeon_key:
            per_dungeon = stats.dungeons.setdefault(
                row.dungeon_key,
                {"runs_organized": 0, "dungeon_completions": 0, "keys_popped": 0},
            )
            per_dungeon[counter] += quantity

    stats.raider_points = quantize_points(raider)
    stats.organizer_points = quantize_points(organizer)
    return stats


def list_events(
    session: Session,
    guild_id: int,
    *,
    user_id: int | None = None,
    action_types: Sequence[QuotaActionType] | None = None,
    limit: int = 50,
) -> list[QuotaEvent]:
    """Most recent ledger rows first, for audits and support."""
    if limit <= 0:
        raise ValidationError("limit must be positive", fields={"limit": "must be > 0"})
    stmt = select(QuotaEvent).where(QuotaEvent.guild_id == guild_id)
    if user_id is not None:
        stmt = stmt.where(QuotaEvent.actor_user_id == user_id)
    if action_types:
        stmt = stmt.where(QuotaEvent.action_type.in_([a.value for a in action_types]))
    stmt = stmt.order_by(QuotaEvent.created_at.desc(), QuotaEvent.id.desc()).limit(limit)
    return list(session.scalars(stmt))
