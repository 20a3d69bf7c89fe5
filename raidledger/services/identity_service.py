"""
raidledger.services.identity_service — Ensure-Exists for Identity Rows
======================================================================

Runs, reactions and ledger rows all reference ``guilds`` and ``members``.
Call these before any foreign-key-dependent write; both are idempotent
and safe under concurrent callers.
"""

from __future__ import annotations

import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from raidledger.database.models import Guild, Member

logger = logging.getLogger(__name__)


def ensure_guild(session: Session, guild_id: int, name: str | None = None) -> Guild:
    """Fetch or insert a Guild row, refreshing its name when one is given."""
    guild = session.get(Guild, guild_id)
    if guild is None:
        guild = Guild(id=guild_id, name=name or str(guild_id))
        try:
            with session.begin_nested():   # SAVEPOINT
                session.add(guild)
                session.flush()
        except IntegrityError:
            # Lost a race with another request inserting the same guild.
            guild = session.get(Guild, guild_id, populate_existing=True)
        else:
            logger.info("Registered guild %s", guild_id)
    elif name and guild.name != name:
        guild.name = name
    return guild


def ensure_member(session: Session, user_id: int, username: str | None = None) -> Member:
    """Fetch or insert a Member row."""
    member = session.get(Member, user_id)
    if member is None:
        member = Member(id=user_id, username=username)
        try:
            with session.begin_nested():
                session.add(member)
                session.flush()
        except IntegrityError:
            member = session.get(Member, user_id, populate_existing=True)
    elif username and member.username != username:
        member.username = username
    return member
