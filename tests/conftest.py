"""
tests/conftest.py — Shared Test Fixtures
=========================================
"""

from __future__ import annotations

import os

# ---------------------------------------------------------------------------
# Ensure a valid JWT_SECRET is always set for test runs.
# This must happen before any import of raidledger.api.deps which validates
# the secret at module-load time.
# ---------------------------------------------------------------------------
_TEST_JWT_SECRET = "test-secret-for-pytest-only-" + "x" * 40  # > 32 chars
os.environ.setdefault("JWT_SECRET", _TEST_JWT_SECRET)

import pytest  # noqa: E402
from sqlalchemy import BigInteger, Engine, create_engine, event  # noqa: E402
from sqlalchemy.ext.compiler import compiles  # noqa: E402
from sqlalchemy.orm import Session  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from raidledger.config import RaidLedgerConfig  # noqa: E402
from raidledger.constants import (  # noqa: E402
    ROLE_ADMINISTRATOR,
    ROLE_HEAD_ORGANIZER,
    ROLE_OFFICER,
    ROLE_ORGANIZER,
)
from raidledger.database.models import Base, Guild, GuildRole, Member  # noqa: E402

# ---------------------------------------------------------------------------
# Shared identifiers
# ---------------------------------------------------------------------------
GUILD_ID = 1000
OTHER_GUILD_ID = 2000

ORGANIZER_ROLE = 501
ADMIN_ROLE = 502
OFFICER_ROLE = 503
HEAD_ORGANIZER_ROLE = 504

ORGANIZER_ID = 11
RAIDER_A = 21
RAIDER_B = 22
RAIDER_C = 23
STAFF_ID = 31

HARD_MODE_KEY = "oryx_3"


# ---------------------------------------------------------------------------
# Map BigInteger → INTEGER so autoincrement works on SQLite.
# ---------------------------------------------------------------------------
@compiles(BigInteger, "sqlite")
def _compile_bigint_as_integer(type_, compiler, **kw):
    return "INTEGER"


@pytest.fixture
def db_engine() -> Engine:
    """Create an in-memory SQLite engine with all RaidLedger tables.

    Uses StaticPool so every session shares the same in-memory database.
    pysqlite's own transaction handling is switched off and BEGIN is
    emitted explicitly, which SQLite needs for SAVEPOINTs to nest inside
    the outer transaction instead of committing it.
    """
    engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(engine)
    return engine


@pytest.fixture
def engine(db_engine: Engine) -> Engine:
    """Alias used by service-level tests."""
    return db_engine


@pytest.fixture
def config() -> RaidLedgerConfig:
    return RaidLedgerConfig(
        community_name="Test Community",
        api_port=0,
        hard_mode_dungeon_key=HARD_MODE_KEY,
    )


@pytest.fixture
def guild(db_engine: Engine) -> int:
    """Seed the test guild with its role mapping and a few members."""
    with Session(db_engine) as session:
        session.add(Guild(id=GUILD_ID, name="Test Guild"))
        session.add(Guild(id=OTHER_GUILD_ID, name="Other Guild"))
        session.add_all(
            Member(id=uid, username=f"member{uid}")
            for uid in (ORGANIZER_ID, RAIDER_A, RAIDER_B, RAIDER_C, STAFF_ID)
        )
        session.add_all([
            GuildRole(guild_id=GUILD_ID, role_key=ROLE_ORGANIZER, discord_role_id=ORGANIZER_ROLE),
            GuildRole(guild_id=GUILD_ID, role_key=ROLE_ADMINISTRATOR, discord_role_id=ADMIN_ROLE),
            GuildRole(guild_id=GUILD_ID, role_key=ROLE_OFFICER, discord_role_id=OFFICER_ROLE),
            GuildRole(
                guild_id=GUILD_ID, role_key=ROLE_HEAD_ORGANIZER,
                discord_role_id=HEAD_ORGANIZER_ROLE,
            ),
        ])
        session.commit()
    return GUILD_ID


def make_token(sub: str = "raid-bot", *, is_system: bool = False) -> str:
    """Create a service JWT.  Usable as both a fixture helper and a factory."""
    from raidledger.api.auth import issue_token

    return issue_token(sub, is_system=is_system)
