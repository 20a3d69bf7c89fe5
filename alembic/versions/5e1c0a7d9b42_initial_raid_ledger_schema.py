"""Initial raid ledger schema

Revision ID: 5e1c0a7d9b42
Revises:
Create Date: 2026-10-19 09:12:31.418207

"""
from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = '5e1c0a7d9b42'
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

_POINTS = sa.Numeric(10, 2)


def _points(name: str) -> sa.Column:
    return sa.Column(name, _POINTS, nullable=False, server_default="0")


def upgrade() -> None:
    """Create identity, run, participation, ledger and quota config tables."""

    # --- identity ---
    op.create_table(
        "guilds",
        sa.Column("id", sa.BigInteger, primary_key=True),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), server_default=sa.func.now()
        ),
    )
    op.create_table(
        "members",
        sa.Column("id", sa.BigInteger, primary_key=True),
        sa.Column("username", sa.String(100), nullable=True),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), server_default=sa.func.now()
        ),
    )
    op.create_table(
        "guild_roles",
        sa.Column(
            "guild_id", sa.BigInteger,
            sa.ForeignKey("guilds.id", ondelete="CASCADE"), primary_key=True,
        ),
        sa.Column("role_key", sa.String(30), primary_key=True),
        sa.Column("discord_role_id", sa.BigInteger, nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )

    # --- runs ---
    op.create_table(
        "runs",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("guild_id", sa.BigInteger, sa.ForeignKey("guilds.id"), nullable=False),
        sa.Column(
            "organizer_id", sa.BigInteger, sa.ForeignKey("members.id"), nullable=False
        ),
        sa.Column("dungeon_key", sa.String(50), nullable=False),
        sa.Column("dungeon_label", sa.String(100), nullable=False),
        sa.Column("channel_id", sa.BigInteger, nullable=True),
        sa.Column("post_message_id", sa.BigInteger, nullable=True),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("party", sa.String(100), nullable=True),
        sa.Column("location", sa.String(100), nullable=True),
        sa.Column("screenshot_url", sa.Text, nullable=True),
        sa.Column("status", sa.String(10), nullable=False, server_default="open"),
        sa.Column("key_pop_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("key_window_ends_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("auto_end_minutes", sa.Integer, nullable=False, server_default="120"),
        sa.Column(
            "created_at", sa.DateTime(timezone=True),
            nullable=False, server_default=sa.func.now(),
        ),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("status IN ('open', 'live', 'ended')", name="ck_runs_status"),
        sa.CheckConstraint("key_pop_count >= 0", name="ck_runs_key_pop_count"),
    )
    op.create_index("ix_runs_guild_status", "runs", ["guild_id", "status"])
    op.create_index("ix_runs_organizer", "runs", ["organizer_id"])

    # --- participation ---
    op.create_table(
        "reactions",
        sa.Column(
            "run_id", sa.BigInteger,
            sa.ForeignKey("runs.id", ondelete="CASCADE"), primary_key=True,
        ),
        sa.Column("user_id", sa.BigInteger, sa.ForeignKey("members.id"), primary_key=True),
        sa.Column("state", sa.String(10), nullable=False, server_default="join"),
        sa.Column("class_name", sa.String(50), nullable=True),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True),
            nullable=False, server_default=sa.func.now(),
        ),
        sa.CheckConstraint(
            "state IN ('join', 'bench', 'leave')", name="ck_reactions_state"
        ),
    )
    op.create_index("ix_reactions_run_state", "reactions", ["run_id", "state"])

    op.create_table(
        "key_reactions",
        sa.Column(
            "run_id", sa.BigInteger,
            sa.ForeignKey("runs.id", ondelete="CASCADE"), primary_key=True,
        ),
        sa.Column("user_id", sa.BigInteger, sa.ForeignKey("members.id"), primary_key=True),
        sa.Column("key_type", sa.String(50), primary_key=True),
        sa.Column(
            "created_at", sa.DateTime(timezone=True),
            nullable=False, server_default=sa.func.now(),
        ),
    )

    op.create_table(
        "key_pop_snapshots",
        sa.Column(
            "run_id", sa.BigInteger,
            sa.ForeignKey("runs.id", ondelete="CASCADE"), primary_key=True,
        ),
        sa.Column("key_pop_number", sa.Integer, primary_key=True),
        sa.Column("user_id", sa.BigInteger, sa.ForeignKey("members.id"), primary_key=True),
        sa.Column("class_name", sa.String(50), nullable=True),
        sa.Column("awarded", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("awarded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "snapshot_at", sa.DateTime(timezone=True),
            nullable=False, server_default=sa.func.now(),
        ),
    )
    op.create_index(
        "ix_key_pop_snapshots_unawarded",
        "key_pop_snapshots",
        ["run_id", "key_pop_number", "awarded"],
    )

    # --- ledger ---
    op.create_table(
        "quota_events",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("guild_id", sa.BigInteger, sa.ForeignKey("guilds.id"), nullable=False),
        sa.Column(
            "actor_user_id", sa.BigInteger, sa.ForeignKey("members.id"), nullable=False
        ),
        sa.Column("action_type", sa.String(30), nullable=False),
        sa.Column("point_category", sa.String(20), nullable=False),
        sa.Column("subject_id", sa.String(200), nullable=True),
        sa.Column("dungeon_key", sa.String(50), nullable=True),
        sa.Column("quantity", sa.Integer, nullable=False, server_default="1"),
        _points("raider_points"),
        _points("organizer_points"),
        sa.Column(
            "created_at", sa.DateTime(timezone=True),
            nullable=False, server_default=sa.func.now(),
        ),
    )
    op.create_index(
        "ix_quota_events_idempotent",
        "quota_events",
        ["guild_id", "subject_id"],
        unique=True,
        postgresql_where=sa.text(
            "subject_id IS NOT NULL AND action_type IN ('run_completed', 'key_popped')"
        ),
    )
    op.create_index(
        "ix_quota_events_actor_time",
        "quota_events",
        ["guild_id", "actor_user_id", "created_at"],
    )
    op.create_index(
        "ix_quota_events_guild_action",
        "quota_events",
        ["guild_id", "action_type", "created_at"],
    )

    # --- quota configuration ---
    op.create_table(
        "quota_role_configs",
        sa.Column(
            "guild_id", sa.BigInteger,
            sa.ForeignKey("guilds.id", ondelete="CASCADE"), primary_key=True,
        ),
        sa.Column("discord_role_id", sa.BigInteger, primary_key=True),
        _points("required_points"),
        sa.Column(
            "created_at", sa.DateTime(timezone=True),
            nullable=False, server_default=sa.func.now(),
        ),
        sa.Column("reset_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("panel_message_id", sa.BigInteger, nullable=True),
        _points("verify_points"),
        _points("warn_points"),
        _points("suspend_points"),
        _points("modmail_reply_points"),
        _points("editname_points"),
        _points("addnote_points"),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True),
            nullable=False, server_default=sa.func.now(),
        ),
    )

    op.create_table(
        "point_overrides",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column(
            "guild_id", sa.BigInteger,
            sa.ForeignKey("guilds.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("category", sa.String(20), nullable=False),
        sa.Column("discord_role_id", sa.BigInteger, nullable=True),
        sa.Column("dungeon_key", sa.String(50), nullable=False),
        sa.Column("points", _POINTS, nullable=False),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True),
            nullable=False, server_default=sa.func.now(),
        ),
        sa.CheckConstraint("points >= 0", name="ck_point_overrides_non_negative"),
        sa.UniqueConstraint(
            "guild_id", "category", "discord_role_id", "dungeon_key",
            name="uq_point_overrides_role",
        ),
    )
    op.create_index(
        "ix_point_overrides_guild_wide",
        "point_overrides",
        ["guild_id", "category", "dungeon_key"],
        unique=True,
        postgresql_where=sa.text("discord_role_id IS NULL"),
    )


def downgrade() -> None:
    op.drop_table("point_overrides")
    op.drop_table("quota_role_configs")
    op.drop_table("quota_events")
    op.drop_table("key_pop_snapshots")
    op.drop_table("key_reactions")
    op.drop_table("reactions")
    op.drop_table("runs")
    op.drop_table("guild_roles")
    op.drop_table("members")
    op.drop_table("guilds")
