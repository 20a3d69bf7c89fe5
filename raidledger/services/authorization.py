"""
raidledger.services.authorization — Capability Gates
=====================================================

Authorization is capability-based.  Two independent gates exist for run
operations:

* ``OWNER``          — the actor *is* the run's organizer.
* ``ORGANIZER_ROLE`` — the actor holds a community role mapped to the
  ``organizer`` capability in ``guild_roles``.

Each operation declares which gates it accepts (e.g. key pops accept only
``OWNER``).  Independently of the gates, every run mutation is scoped to
the run's own community: a caller asserting a different guild is denied.
"""

from __future__ import annotations

import enum
import logging
from collections.abc import Collection, Iterable

from sqlalchemy import Engine, select
from sqlalchemy.orm import Session

from raidledger.constants import ROLE_ADMINISTRATOR, ROLE_KEYS, ROLE_ORGANIZER
from raidledger.database.engine import get_session
from raidledger.database.models import GuildRole, Run
from raidledger.errors import AuthorizationError, ValidationError
from raidledger.services.identity_service import ensure_guild

logger = logging.getLogger(__name__)


class AuthGate(enum.StrEnum):
    OWNER = "owner"
    ORGANIZER_ROLE = "organizer_role"


# ---------------------------------------------------------------------------
# Role mapping
# ---------------------------------------------------------------------------
def get_role_mapping(session: Session, guild_id: int) -> dict[str, int]:
    """role_key → community role id for *guild_id*."""
    rows = session.execute(
        select(GuildRole.role_key, GuildRole.discord_role_id).where(
            GuildRole.guild_id == guild_id
        )
    ).all()
    return {row.role_key: row.discord_role_id for row in rows}


def set_role_mapping(
    session: Session, guild_id: int, mapping: dict[str, int | None]
) -> dict[str, int]:
    """Upsert (or clear, with ``None``) role mappings; returns the result."""
    unknown = sorted(set(mapping) - set(ROLE_KEYS))
    if unknown:
        raise ValidationError(
            f"Unknown role keys: {', '.join(unknown)}",
            fields={key: "unknown role key" for key in unknown},
        )
    for role_key, role_id in mapping.items():
        row = session.get(GuildRole, (guild_id, role_key))
        if role_id is None:
            if row is not None:
                session.delete(row)
        elif row is None:
            session.add(
                GuildRole(guild_id=guild_id, role_key=role_key, discord_role_id=role_id)
            )
        else:
            row.discord_role_id = role_id
    session.flush()
    return get_role_mapping(session, guild_id)


def has_internal_role(
    session: Session,
    guild_id: int,
    role_key: str,
    role_ids: Iterable[int] | None,
) -> bool:
    """True when any of *role_ids* is the role mapped to *role_key*."""
    return has_any_internal_role(session, guild_id, (role_key,), role_ids)


def has_any_internal_role(
    session: Session,
    guild_id: int,
    role_keys: Collection[str],
    role_ids: Iterable[int] | None,
) -> bool:
    held = set(role_ids or ())
    if not held:
        return False
    mapping = get_role_mapping(session, guild_id)
    return any(mapping.get(key) in held for key in role_keys)


# ---------------------------------------------------------------------------
# Gates
# ---------------------------------------------------------------------------
def assert_same_guild(run: Run, guild_id: int | None) -> None:
    """Deny cross-community access, whatever else the actor may hold."""
    if guild_id is not None and run.guild_id != guild_id:
        logger.warning(
            "Guild mismatch on run %s: asserted %s, actual %s",
            run.id, guild_id, run.guild_id,
        )
        raise AuthorizationError(
            "Run belongs to a different guild",
            code="GUILD_MISMATCH",
            fields={"guild_id": "does not match the run"},
        )


def authorize_run_actor(
    session: Session,
    run: Run,
    actor_id: int,
    role_ids: Iterable[int] | None,
    gates: Collection[AuthGate],
) -> AuthGate:
    """Return the first gate *actor_id* passes, or raise ``NOT_ORGANIZER``."""
    if AuthGate.OWNER in gates and run.organizer_id == actor_id:
        return AuthGate.OWNER
    if AuthGate.ORGANIZER_ROLE in gates and has_internal_role(
        session, run.guild_id, ROLE_ORGANIZER, role_ids
    ):
        return AuthGate.ORGANIZER_ROLE

    logger.warning("Actor %s denied on run %s (gates=%s)", actor_id, run.id, sorted(gates))
    if set(gates) == {AuthGate.OWNER}:
        message = "Only the run's organizer can do this"
    else:
        message = "Only the run's organizer or an organizer can do this"
    raise AuthorizationError(message, code="NOT_ORGANIZER")


def require_any_role(
    session: Session,
    guild_id: int,
    actor_id: int,
    role_ids: Iterable[int] | None,
    role_keys: Collection[str],
) -> None:
    if not has_any_internal_role(session, guild_id, role_keys, role_ids):
        logger.warning(
            "Actor %s in guild %s lacks any of %s", actor_id, guild_id, list(role_keys)
        )
        raise AuthorizationError(
            f"Requires one of the roles: {', '.join(role_keys)}",
            code="NOT_AUTHORIZED",
        )


def update_role_mapping(
    engine: Engine,
    *,
    guild_id: int,
    actor_id: int,
    actor_role_ids: Iterable[int] | None,
    actor_is_guild_admin: bool,
    mapping: dict[str, int | None],
) -> dict[str, int]:
    """Administrators (or the community's own admins, during setup) only."""
    with get_session(engine) as session:
        if not actor_is_guild_admin and not has_internal_role(
            session, guild_id, ROLE_ADMINISTRATOR, actor_role_ids
        ):
            logger.warning("Actor %s may not manage roles in guild %s", actor_id, guild_id)
            raise AuthorizationError(
                "Administrator role required to manage role mappings",
                code="NOT_AUTHORIZED",
            )
        ensure_guild(session, guild_id)
        result = set_role_mapping(session, guild_id, mapping)
    logger.info("Role mapping for guild %s updated by %s: %s", guild_id, actor_id, sorted(mapping))
    return result
