"""
raidledger.database.models — SQLAlchemy 2.0 Data Models
========================================================

Tables:
- guilds             — Community identity records
- members            — Member identity records (Discord snowflake PK)
- guild_roles        — Internal role key → community role id mapping
- runs               — Organized runs and their lifecycle state
- reactions          — Participation (join / bench / leave + class tag)
- key_reactions      — Per-run key offers, toggled on and off
- key_pop_snapshots  — Who was present at each key pop, and whether credited
- quota_events       — Append-only point ledger with idempotent insert
- quota_role_configs — Per-role quota thresholds, period bounds, moderation values
- point_overrides    — Per-role / per-dungeon point values
"""

from __future__ import annotations

import enum
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.sql.expression import FunctionElement


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on the way back)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class minutes_after(FunctionElement):
    """``minutes_after(ts, n)`` is the timestamp *n* minutes after *ts*, in SQL."""
    type = DateTime(timezone=True)
    name = "minutes_after"
    inherit_cache = True


@compiles(minutes_after)
def _minutes_after_default(element, compiler, **kw):
    ts, minutes = list(element.clauses)
    return "(%s + %s * INTERVAL '1 minute')" % (
        compiler.process(ts, **kw), compiler.process(minutes, **kw),
    )


@compiles(minutes_after, "postgresql")
def _minutes_after_pg(element, compiler, **kw):
    ts, minutes = list(element.clauses)
    return "(%s + make_interval(mins => %s))" % (
        compiler.process(ts, **kw), compiler.process(minutes, **kw),
    )


@compiles(minutes_after, "sqlite")
def _minutes_after_sqlite(element, compiler, **kw):
    # Same text layout SQLAlchemy stores, so the result compares lexically.
    ts, minutes = list(element.clauses)
    return "strftime('%%Y-%%m-%%d %%H:%%M:%%f', %s, '+' || %s || ' minutes')" % (
        compiler.process(ts, **kw), compiler.process(minutes, **kw),
    )


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------
class Base(DeclarativeBase):
    """Shared base for all RaidLedger ORM models."""


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class RunStatus(enum.StrEnum):
    """Run lifecycle states.  ``ended`` is terminal."""
    OPEN = "open"
    LIVE = "live"
    ENDED = "ended"


class ReactionState(enum.StrEnum):
    JOIN = "join"
    BENCH = "bench"
    LEAVE = "leave"


class QuotaActionType(enum.StrEnum):
    """Kinds of rows in the quota ledger."""
    RUN_COMPLETED = "run_completed"
    KEY_POPPED = "key_popped"
    MANUAL_ADJUST = "manual_adjust"
    MODERATION = "moderation"


class PointCategory(enum.StrEnum):
    """Point categories, each with its own default value."""
    ORGANIZER = "organizer"
    RAIDER = "raider"
    KEY_POP = "key_pop"


class LeaderboardCategory(enum.StrEnum):
    RUNS_ORGANIZED = "runs_organized"
    KEYS_POPPED = "keys_popped"
    DUNGEON_COMPLETIONS = "dungeon_completions"
    POINTS = "points"
    QUOTA_POINTS = "quota_points"


# Ledger action types guarded by the (guild_id, subject_id) unique index.
IDEMPOTENT_ACTIONS: tuple[str, ...] = (
    QuotaActionType.RUN_COMPLETED.value,
    QuotaActionType.KEY_POPPED.value,
)

_IDEMPOTENT_WHERE = (
    "subject_id IS NOT NULL AND action_type IN ('run_completed', 'key_popped')"
)


# ---------------------------------------------------------------------------
# Identity: guilds and members
# ---------------------------------------------------------------------------
class Guild(Base):
    __tablename__ = "guilds"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    def __repr__(self) -> str:
        return f"<Guild id={self.id} name={self.name!r}>"


class Member(Base):
    __tablename__ = "members"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    username: Mapped[str | None] = mapped_column(String(100), default=None)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    def __repr__(self) -> str:
        return f"<Member id={self.id} name={self.username!r}>"


class GuildRole(Base):
    __tablename__ = "guild_roles"

    guild_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("guilds.id", ondelete="CASCADE"), primary_key=True
    )
    role_key: Mapped[str] = mapped_column(String(30), primary_key=True)
    discord_role_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    def __repr__(self) -> str:
        return f"<GuildRole guild={self.guild_id} {self.role_key}={self.discord_role_id}>"


# ---------------------------------------------------------------------------
# Runs
# ---------------------------------------------------------------------------
class Run(Base):
    __tablename__ = "runs"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    guild_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("guilds.id"), nullable=False
    )
    organizer_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("members.id"), nullable=False
    )
    dungeon_key: Mapped[str] = mapped_column(String(50), nullable=False)
    dungeon_label: Mapped[str] = mapped_column(String(100), nullable=False)
    channel_id: Mapped[int | None] = mapped_column(BigInteger, default=None)
    post_message_id: Mapped[int | None] = mapped_column(BigInteger, default=None)
    description: Mapped[str | None] = mapped_column(Text, default=None)
    party: Mapped[str | None] = mapped_column(String(100), default=None)
    location: Mapped[str | None] = mapped_column(String(100), default=None)
    screenshot_url: Mapped[str | None] = mapped_column(Text, default=None)
    status: Mapped[str] = mapped_column(
        String(10), nullable=False, default=RunStatus.OPEN.value
    )
    key_pop_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    key_window_ends_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), default=None
    )
    auto_end_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=120)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), default=None
    )
    ended_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), default=None
    )

    reactions: Mapped[list[Reaction]] = relationship(
        back_populates="run", cascade="all, delete-orphan"
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('open', 'live', 'ended')", name="ck_runs_status"
        ),
        CheckConstraint("key_pop_count >= 0", name="ck_runs_key_pop_count"),
        Index("ix_runs_guild_status", "guild_id", "status"),
        Index("ix_runs_organizer", "organizer_id"),
    )

    def __repr__(self) -> str:
        return f"<Run id={self.id} dungeon={self.dungeon_key} status={self.status}>"


class Reaction(Base):
    __tablename__ = "reactions"

    run_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("runs.id", ondelete="CASCADE"), primary_key=True
    )
    user_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("members.id"), primary_key=True
    )
    state: Mapped[str] = mapped_column(
        String(10), nullable=False, default=ReactionState.JOIN.value
    )
    class_name: Mapped[str | None] = mapped_column(String(50), default=None)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    run: Mapped[Run] = relationship(back_populates="reactions")

    __table_args__ = (
        CheckConstraint(
            "state IN ('join', 'bench', 'leave')", name="ck_reactions_state"
        ),
        Index("ix_reactions_run_state", "run_id", "state"),
    )

    def __repr__(self) -> str:
        return f"<Reaction run={self.run_id} user={self.user_id} state={self.state}>"


class KeyReaction(Base):
    __tablename__ = "key_reactions"

    run_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("runs.id", ondelete="CASCADE"), primary_key=True
    )
    user_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("members.id"), primary_key=True
    )
    key_type: Mapped[str] = mapped_column(String(50), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )


class KeyPopSnapshot(Base):
    """Immutable membership of one key pop; only ``awarded`` ever flips."""

    __tablename__ = "key_pop_snapshots"

    run_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("runs.id", ondelete="CASCADE"), primary_key=True
    )
    key_pop_number: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("members.id"), primary_key=True
    )
    class_name: Mapped[str | None] = mapped_column(String(50), default=None)
    awarded: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    awarded_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), default=None
    )
    snapshot_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    __table_args__ = (
        Index("ix_key_pop_snapshots_unawarded", "run_id", "key_pop_number", "awarded"),
    )

    def __repr__(self) -> str:
        return (
            f"<KeyPopSnapshot run={self.run_id} pop={self.key_pop_number} "
            f"user={self.user_id} awarded={self.awarded}>"
        )


# ---------------------------------------------------------------------------
# QuotaEvent: append-only point ledger
# ---------------------------------------------------------------------------
class QuotaEvent(Base):
    __tablename__ = "quota_events"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    guild_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("guilds.id"), nullable=False
    )
    actor_user_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("members.id"), nullable=False
    )
    action_type: Mapped[str] = mapped_column(String(30), nullable=False)
    point_category: Mapped[str] = mapped_column(String(20), nullable=False)
    subject_id: Mapped[str | None] = mapped_column(String(200), nullable=True)
    dungeon_key: Mapped[str | None] = mapped_column(String(50), nullable=True)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    raider_points: Mapped[Decimal] = mapped_column(
        Numeric(10, 2), nullable=False, default=Decimal("0")
    )
    organizer_points: Mapped[Decimal] = mapped_column(
        Numeric(10, 2), nullable=False, default=Decimal("0")
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    __table_args__ = (
        # Exactly-once crediting per subject.  This index is the only thing
        # standing between a retried request and a double credit.
        Index(
            "ix_quota_events_idempotent",
            "guild_id",
            "subject_id",
            unique=True,
            postgresql_where=text(_IDEMPOTENT_WHERE),
            sqlite_where=text(_IDEMPOTENT_WHERE),
        ),
        Index("ix_quota_events_actor_time", "guild_id", "actor_user_id", "created_at"),
        Index("ix_quota_events_guild_action", "guild_id", "action_type", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<QuotaEvent id={self.id} user={self.actor_user_id} "
            f"type={self.action_type} subject={self.subject_id!r}>"
        )


# ---------------------------------------------------------------------------
# Role quota configuration
# ---------------------------------------------------------------------------
class QuotaRoleConfig(Base):
    __tablename__ = "quota_role_configs"

    guild_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("guilds.id", ondelete="CASCADE"), primary_key=True
    )
    discord_role_id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    required_points: Mapped[Decimal] = mapped_column(
        Numeric(10, 2), nullable=False, default=Decimal("0")
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    reset_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    panel_message_id: Mapped[int | None] = mapped_column(BigInteger, default=None)
    verify_points: Mapped[Decimal] = mapped_column(
        Numeric(10, 2), nullable=False, default=Decimal("0")
    )
    warn_points: Mapped[Decimal] = mapped_column(
        Numeric(10, 2), nullable=False, default=Decimal("0")
    )
    suspend_points: Mapped[Decimal] = mapped_column(
        Numeric(10, 2), nullable=False, default=Decimal("0")
    )
    modmail_reply_points: Mapped[Decimal] = mapped_column(
        Numeric(10, 2), nullable=False, default=Decimal("0")
    )
    editname_points: Mapped[Decimal] = mapped_column(
        Numeric(10, 2), nullable=False, default=Decimal("0")
    )
    addnote_points: Mapped[Decimal] = mapped_column(
        Numeric(10, 2), nullable=False, default=Decimal("0")
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    def __repr__(self) -> str:
        return (
            f"<QuotaRoleConfig guild={self.guild_id} role={self.discord_role_id} "
            f"required={self.required_points}>"
        )


# ---------------------------------------------------------------------------
# Per-activity point overrides
# ---------------------------------------------------------------------------
class PointOverride(Base):
    """Explicit point value for (category, role, dungeon).

    ``discord_role_id`` is NULL for community-wide values that apply to
    every member regardless of roles.
    """

    __tablename__ = "point_overrides"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    guild_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("guilds.id", ondelete="CASCADE"), nullable=False
    )
    category: Mapped[str] = mapped_column(String(20), nullable=False)
    discord_role_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    dungeon_key: Mapped[str] = mapped_column(String(50), nullable=False)
    points: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint("points >= 0", name="ck_point_overrides_non_negative"),
        UniqueConstraint(
            "guild_id", "category", "discord_role_id", "dungeon_key",
            name="uq_point_overrides_role",
        ),
        # NULLs are distinct in unique constraints, so role-less rows need
        # their own partial index.
        Index(
            "ix_point_overrides_guild_wide",
            "guild_id",
            "category",
            "dungeon_key",
            unique=True,
            postgresql_where=text("discord_role_id IS NULL"),
            sqlite_where=text("discord_role_id IS NULL"),
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<PointOverride {self.category} role={self.discord_role_id} "
            f"dungeon={self.dungeon_key} points={self.points}>"
        )
