"""
raidledger.services.quota_service — Role Quotas, Overrides & Manual Credit
===========================================================================

Administrative side of the ledger:

* Role quota configs: thresholds, period bounds, moderation point values.
* Point overrides per (category, role, dungeon).
* Manual run / key-pop logs and point adjustments, all routed through
  :func:`raidledger.services.ledger_service.adjust` so no total can go
  negative.
* Moderation credit for staff commands.
* Period standings for a role.

Every function here opens its own unit of work; authorization is checked
before it begins.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import Engine, and_, case, func, select
from sqlalchemy.orm import Session

from raidledger.constants import (
    MODERATION_COMMANDS,
    QUOTA_MANAGER_ROLES,
    ROLE_ADMINISTRATOR,
    ROLE_ORGANIZER,
    manual_subject,
)
from raidledger.database.engine import get_session, run_in_transaction
from raidledger.database.models import (
    PointCategory,
    PointOverride,
    QuotaActionType,
    QuotaEvent,
    QuotaRoleConfig,
    as_utc,
    utcnow,
)
from raidledger.engine.period import DEFAULT_PERIOD_DAYS, PeriodWindow, next_period, window_for
from raidledger.engine.points import ZERO, PointAmount, quantize_points
from raidledger.errors import NotFoundError, ValidationError
from raidledger.services import ledger_service
from raidledger.services.authorization import require_any_role
from raidledger.services.identity_service import ensure_guild
from raidledger.services.point_resolver import resolve_points

logger = logging.getLogger(__name__)

MAX_MANUAL_COUNT = 100


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class ManualLogResult:
    requested: int
    applied: int
    credited_points: Decimal
    new_total: Decimal


@dataclass(frozen=True, slots=True)
class StandingEntry:
    user_id: int
    points: Decimal
    runs: int
    met_quota: bool


@dataclass(frozen=True, slots=True)
class PeriodStandings:
    role_id: int
    window: PeriodWindow
    required_points: Decimal
    entries: list[StandingEntry]


def _require_admin(session: Session, guild_id: int, actor_id: int,
                   role_ids: Iterable[int] | None) -> None:
    require_any_role(session, guild_id, actor_id, role_ids, (ROLE_ADMINISTRATOR,))


def _signed_count(count: int, name: str) -> int:
    if isinstance(count, bool) or not isinstance(count, int):
        raise ValidationError(f"{name} must be an integer", fields={name: "not an integer"})
    if count == 0 or abs(count) > MAX_MANUAL_COUNT:
        raise ValidationError(
            f"{name} must be a non-zero integer between "
            f"-{MAX_MANUAL_COUNT} and {MAX_MANUAL_COUNT}",
            fields={name: "out of range"},
        )
    return count


# ---------------------------------------------------------------------------
# Role quota configs
# ---------------------------------------------------------------------------
def get_role_config(session: Session, guild_id: int, role_id: int) -> QuotaRoleConfig:
    config = session.get(QuotaRoleConfig, (guild_id, role_id))
    if config is None:
        raise NotFoundError(
            f"No quota config for role {role_id}",
            code="QUOTA_CONFIG_NOT_FOUND",
            fields={"role_id": role_id},
        )
    return config


def list_role_configs(session: Session, guild_id: int) -> list[QuotaRoleConfig]:
    return list(
        session.scalars(
            select(QuotaRoleConfig)
            .where(QuotaRoleConfig.guild_id == guild_id)
            .order_by(QuotaRoleConfig.discord_role_id)
        )
    )


def upsert_role_config(
    engine: Engine,
    *,
    guild_id: int,
    role_id: int,
    actor_id: int,
    actor_role_ids: Iterable[int] | None,
    required_points: Any = None,
    created_at: datetime | None = None,
    reset_at: datetime | None = None,
    panel_message_id: int | None = None,
    moderation_points: dict[str, Any] | None = None,
    period_days: int = DEFAULT_PERIOD_DAYS,
) -> QuotaRoleConfig:
    """Create or partially update a role's quota config.

    Only the supplied fields change.  ``created_at`` of an existing config
    is preserved unless given; a new config's period defaults to
    ``now .. now + period_days``.
    """
    changes: dict[str, Any] = {}
    if required_points is not None:
        changes["required_points"] = PointAmount.parse(
            required_points, field="required_points"
        ).value
    for command, raw in (moderation_points or {}).items():
        column = MODERATION_COMMANDS.get(command)
        if column is None:
            raise ValidationError(
                f"Unknown moderation command {command!r}",
                fields={command: "unknown command"},
            )
        changes[column] = PointAmount.parse(raw, field=column).value
    if created_at is not None:
        changes["created_at"] = as_utc(created_at)
    if reset_at is not None:
        changes["reset_at"] = as_utc(reset_at)
    if panel_message_id is not None:
        changes["panel_message_id"] = panel_message_id

    with Session(engine) as session:
        _require_admin(session, guild_id, actor_id, actor_role_ids)

    def _upsert(session: Session) -> QuotaRoleConfig:
        ensure_guild(session, guild_id)
        config = session.get(QuotaRoleConfig, (guild_id, role_id))
        if config is None:
            period = next_period(utcnow(), period_days)
            config = QuotaRoleConfig(
                guild_id=guild_id,
                discord_role_id=role_id,
                created_at=period.start,
                reset_at=period.end,
            )
            session.add(config)
        for name, value in changes.items():
            setattr(config, name, value)

        window = window_for(config)
        if window.end <= window.start:
            raise ValidationError(
                "reset_at must be after the period start",
                fields={"reset_at": "must be after created_at"},
            )
        session.flush()
        return config

    config = run_in_transaction(engine, _upsert)
    logger.info(
        "Quota config for role %s in guild %s saved by %s: %s",
        role_id, guild_id, actor_id, sorted(changes),
    )
    return config


def reset_period(
    engine: Engine,
    *,
    guild_id: int,
    role_id: int,
    actor_id: int,
    actor_role_ids: Iterable[int] | None,
    period_days: int = DEFAULT_PERIOD_DAYS,
) -> QuotaRoleConfig:
    """Start a fresh period now.  Ledger rows are untouched."""
    with Session(engine) as session:
        _require_admin(session, guild_id, actor_id, actor_role_ids)

    def _reset(session: Session) -> QuotaRoleConfig:
        config = get_role_config(session, guild_id, role_id)
        period = next_period(utcnow(), period_days)
        config.created_at = period.start
        config.reset_at = period.end
        session.flush()
        return config

    config = run_in_transaction(engine, _reset)
    logger.info(
        "Quota period for role %s in guild %s reset by %s (until %s)",
        role_id, guild_id, actor_id, config.reset_at,
    )
    return config


def delete_role_config(
    engine: Engine,
    *,
    guild_id: int,
    role_id: int,
    actor_id: int,
    actor_role_ids: Iterable[int] | None,
) -> None:
    with get_session(engine) as session:
        _require_admin(session, guild_id, actor_id, actor_role_ids)
        session.delete(get_role_config(session, guild_id, role_id))
    logger.info("Quota config for role %s in guild %s deleted by %s", role_id, guild_id, actor_id)


# ---------------------------------------------------------------------------
# Point overrides
# ---------------------------------------------------------------------------
def _parse_category(category: PointCategory | str) -> PointCategory:
    try:
        return PointCategory(category)
    except ValueError:
        raise ValidationError(
            f"Unknown point category {category!r}",
            fields={"category": "must be one of organizer, raider, key_pop"},
        ) from None


def list_overrides(
    session: Session, guild_id: int, category: PointCategory | str | None = None
) -> list[PointOverride]:
    stmt = select(PointOverride).where(PointOverride.guild_id == guild_id)
    if category is not None:
        stmt = stmt.where(PointOverride.category == _parse_category(category).value)
    return list(
        session.scalars(
            stmt.order_by(
                PointOverride.category, PointOverride.dungeon_key, PointOverride.discord_role_id
            )
        )
    )


def _find_override(session: Session, guild_id: int, category: PointCategory,
                   dungeon_key: str, role_id: int | None) -> PointOverride | None:
    role_clause = (
        PointOverride.discord_role_id.is_(None)
        if role_id is None
        else PointOverride.discord_role_id == role_id
    )
    return session.scalar(
        select(PointOverride).where(
            PointOverride.guild_id == guild_id,
            PointOverride.category == category.value,
            PointOverride.dungeon_key == dungeon_key,
            role_clause,
        )
    )


def set_override(
    engine: Engine,
    *,
    guild_id: int,
    actor_id: int,
    actor_role_ids: Iterable[int] | None,
    category: PointCategory | str,
    dungeon_key: str,
    points: Any,
    role_id: int | None = None,
) -> PointOverride:
    """Create or replace one override.  ``role_id=None`` is community-wide."""
    category = _parse_category(category)
    dungeon_key = (dungeon_key or "").strip()
    if not dungeon_key:
        raise ValidationError("dungeon_key is required", fields={"dungeon_key": "required"})
    value = PointAmount.parse(points, field="points").value

    with Session(engine) as session:
        _require_admin(session, guild_id, actor_id, actor_role_ids)

    def _set(session: Session) -> PointOverride:
        ensure_guild(session, guild_id)
        override = _find_override(session, guild_id, category, dungeon_key, role_id)
        if override is None:
            override = PointOverride(
                guild_id=guild_id,
                category=category.value,
                discord_role_id=role_id,
                dungeon_key=dungeon_key,
                points=value,
            )
            session.add(override)
        else:
            override.points = value
        session.flush()
        return override

    override = run_in_transaction(engine, _set)
    logger.info(
        "%s override for %s (role %s) in guild %s set to %s by %s",
        category, dungeon_key, role_id, guild_id, value, actor_id,
    )
    return override


def delete_override(
    engine: Engine,
    *,
    guild_id: int,
    actor_id: int,
    actor_role_ids: Iterable[int] | None,
    category: PointCategory | str,
    dungeon_key: str,
    role_id: int | None = None,
) -> bool:
    """Remove an override; returns False when none existed."""
    category = _parse_category(category)
    with get_session(engine) as session:
        _require_admin(session, guild_id, actor_id, actor_role_ids)
        override = _find_override(session, guild_id, category, dungeon_key, role_id)
        if override is None:
            return False
        session.delete(override)
    logger.info(
        "%s override for %s (role %s) in guild %s removed by %s",
        category, dungeon_key, role_id, guild_id, actor_id,
    )
    return True


# ---------------------------------------------------------------------------
# Manual credit
# ---------------------------------------------------------------------------
def _authorize_manual(
    engine: Engine, guild_id: int, actor_id: int,
    actor_role_ids: Iterable[int] | None, user_id: int,
) -> None:
    """Members log their own runs as organizers; logging for others needs staff."""
    allowed = QUOTA_MANAGER_ROLES
    if user_id == actor_id:
        allowed = (*QUOTA_MANAGER_ROLES, ROLE_ORGANIZER)
    with Session(engine) as session:
        require_any_role(session, guild_id, actor_id, actor_role_ids, allowed)


def _log_manual(
    engine: Engine,
    *,
    guild_id: int,
    user_id: int,
    dungeon_key: str,
    count: int,
    role_ids: list[int] | None,
    action_type: QuotaActionType,
    category: PointCategory,
    subject_kind: str,
) -> ManualLogResult:
    def _log(session: Session) -> ManualLogResult:
        ensure_guild(session, guild_id)
        current = ledger_service.quantity_for(
            session, guild_id, user_id, action_type, category, dungeon_key
        )
        applied = max(count, -current)
        per_unit = resolve_points(session, guild_id, dungeon_key, category, role_ids)
        adjusted = ledger_service.adjust(
            session,
            guild_id=guild_id,
            user_id=user_id,
            amount=per_unit * applied,
            category=category,
            action_type=action_type,
            dungeon_key=dungeon_key,
            quantity=applied,
            subject_kind=subject_kind,
        )
        return ManualLogResult(
            requested=count,
            applied=applied,
            credited_points=adjusted.applied,
            new_total=adjusted.new_total,
        )

    result = run_in_transaction(engine, _log)
    logger.info(
        "Manual %s for %s in guild %s (%s): requested %+d, applied %+d, %s pts",
        subject_kind, user_id, guild_id, dungeon_key,
        result.requested, result.applied, result.credited_points,
    )
    return result


def log_manual_runs(
    engine: Engine,
    *,
    guild_id: int,
    actor_id: int,
    actor_role_ids: Iterable[int] | None,
    user_id: int,
    dungeon_key: str,
    count: int,
) -> ManualLogResult:
    """Add or remove organized runs for *user_id* with their organizer points.

    Run counts and organizer points are both clamped at zero.  The point
    value per run follows the target's roles when they log for themselves.
    """
    count = _signed_count(count, "count")
    dungeon_key = (dungeon_key or "").strip()
    if not dungeon_key:
        raise ValidationError("dungeon_key is required", fields={"dungeon_key": "required"})
    role_ids = list(actor_role_ids or ())
    _authorize_manual(engine, guild_id, actor_id, role_ids, user_id)
    return _log_manual(
        engine,
        guild_id=guild_id,
        user_id=user_id,
        dungeon_key=dungeon_key,
        count=count,
        role_ids=role_ids if user_id == actor_id else None,
        action_type=QuotaActionType.RUN_COMPLETED,
        category=PointCategory.ORGANIZER,
        subject_kind="manual_log_run",
    )


def log_manual_key_pops(
    engine: Engine,
    *,
    guild_id: int,
    actor_id: int,
    actor_role_ids: Iterable[int] | None,
    user_id: int,
    dungeon_key: str,
    count: int,
) -> ManualLogResult:
    """Add or remove popped keys for *user_id*.

    Every non-zero change moves key-pop points with it, in either
    direction, through the clamped adjustment.
    """
    count = _signed_count(count, "count")
    dungeon_key = (dungeon_key or "").strip()
    if not dungeon_key:
        raise ValidationError("dungeon_key is required", fields={"dungeon_key": "required"})
    role_ids = list(actor_role_ids or ())
    _authorize_manual(engine, guild_id, actor_id, role_ids, user_id)
    return _log_manual(
        engine,
        guild_id=guild_id,
        user_id=user_id,
        dungeon_key=dungeon_key,
        count=count,
        role_ids=None,
        action_type=QuotaActionType.KEY_POPPED,
        category=PointCategory.KEY_POP,
        subject_kind="manual_log_key",
    )


def adjust_points(
    engine: Engine,
    *,
    guild_id: int,
    actor_id: int,
    actor_role_ids: Iterable[int] | None,
    user_id: int,
    amount: Any,
    category: PointCategory | str,
) -> ledger_service.AdjustResult:
    """Signed correction of organizer (quota) or raider points."""
    category = _parse_category(category)
    if category is PointCategory.KEY_POP:
        raise ValidationError(
            "Adjust key-pop points through the key log",
            fields={"category": "must be organizer or raider"},
        )
    value = PointAmount.parse(amount, field="amount", signed=True)
    if value.value == 0:
        raise ValidationError("amount must be non-zero", fields={"amount": "zero"})

    with Session(engine) as session:
        require_any_role(session, guild_id, actor_id, actor_role_ids, QUOTA_MANAGER_ROLES)

    kind = "manual_adjust" if category is PointCategory.ORGANIZER else "manual_adjust_points"
    result = run_in_transaction(
        engine,
        lambda session: ledger_service.adjust(
            session,
            guild_id=guild_id,
            user_id=user_id,
            amount=value,
            category=category,
            subject_kind=kind,
        ),
    )
    logger.info(
        "%s points for %s in guild %s adjusted by %s: requested %s, applied %s",
        category, user_id, guild_id, actor_id, value, result.applied,
    )
    return result


# ---------------------------------------------------------------------------
# Moderation credit
# ---------------------------------------------------------------------------
def award_moderation_points(
    engine: Engine,
    *,
    guild_id: int,
    actor_id: int,
    actor_role_ids: Iterable[int] | None,
    command: str,
) -> tuple[Decimal, QuotaEvent]:
    """Credit a staff member for one moderation command.

    The value is the sum of the command's configured points across every
    role config the actor holds.  Exactly one ledger row is written, even
    when the sum is zero, so the action itself is counted.
    """
    column = MODERATION_COMMANDS.get(command)
    if column is None:
        raise ValidationError(
            f"Unknown moderation command {command!r}",
            fields={"command": f"must be one of {', '.join(MODERATION_COMMANDS)}"},
        )
    held = list(actor_role_ids or ())

    def _award(session: Session) -> tuple[Decimal, QuotaEvent]:
        total = ZERO
        if held:
            total = quantize_points(
                session.scalar(
                    select(func.coalesce(func.sum(getattr(QuotaRoleConfig, column)), 0)).where(
                        QuotaRoleConfig.guild_id == guild_id,
                        QuotaRoleConfig.discord_role_id.in_(held),
                    )
                )
            )
        now = utcnow()
        _, event = ledger_service.record(
            session,
            guild_id=guild_id,
            actor_id=actor_id,
            action_type=QuotaActionType.MODERATION,
            point_category=PointCategory.ORGANIZER,
            subject_id=manual_subject(f"moderation_{command}", actor_id, now, "0"),
            organizer_points=total,
            quantity=1,
            created_at=now,
        )
        return total, event

    total, event = run_in_transaction(engine, _award)
    logger.info(
        "Moderation %s by %s in guild %s credited %s pts", command, actor_id, guild_id, total
    )
    return total, event


# ---------------------------------------------------------------------------
# Standings
# ---------------------------------------------------------------------------
def get_period_standings(
    session: Session,
    guild_id: int,
    role_id: int,
    member_ids: Iterable[int],
) -> PeriodStandings:
    """Organizer points and runs of *member_ids* in the role's current period.

    Members with no activity are listed with zeros.  Ordered by points,
    then user id.
    """
    config = get_role_config(session, guild_id, role_id)
    window = window_for(config)
    members = list(dict.fromkeys(member_ids))

    totals: dict[int, tuple[Decimal, int]] = {}
    if members:
        runs = func.sum(
            case(
                (
                    and_(
                        QuotaEvent.action_type == QuotaActionType.RUN_COMPLETED.value,
                        QuotaEvent.point_category == PointCategory.ORGANIZER.value,
                    ),
                    QuotaEvent.quantity,
                ),
                else_=0,
            )
        )
        for row in session.execute(
            select(
                QuotaEvent.actor_user_id,
                func.coalesce(func.sum(QuotaEvent.organizer_points), 0).label("points"),
                func.coalesce(runs, 0).label("runs"),
            )
            .where(
                QuotaEvent.guild_id == guild_id,
                QuotaEvent.actor_user_id.in_(members),
                QuotaEvent.created_at >= window.start,
                QuotaEvent.created_at <= window.end,
            )
            .group_by(QuotaEvent.actor_user_id)
        ):
            totals[row.actor_user_id] = (quantize_points(row.points), int(row.runs))

    required = quantize_points(config.required_points)
    entries = []
    for user_id in members:
        points, run_count = totals.get(user_id, (ZERO, 0))
        entries.append(StandingEntry(
            user_id=user_id, points=points, runs=run_count, met_quota=points >= required,
        ))
    entries.sort(key=lambda e: (-e.points, e.user_id))
    return PeriodStandings(
        role_id=role_id, window=window, required_points=required, entries=entries
    )
