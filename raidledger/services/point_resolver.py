"""
raidledger.services.point_resolver — Point Value Lookups
========================================================

Reads ``point_overrides`` and delegates the choice to
:func:`raidledger.engine.resolver.pick_points`.  Read-only.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from raidledger.database.models import PointCategory, PointOverride
from raidledger.engine.resolver import pick_points

logger = logging.getLogger(__name__)


def resolve_points(
    session: Session,
    guild_id: int,
    dungeon_key: str | None,
    category: PointCategory,
    role_ids: Iterable[int] | None = None,
) -> Decimal:
    """Point value for one credit of *category* in *dungeon_key*."""
    rows: list[tuple[int | None, Decimal]] = []
    if dungeon_key:
        rows = [
            (row.discord_role_id, row.points)
            for row in session.execute(
                select(PointOverride.discord_role_id, PointOverride.points).where(
                    PointOverride.guild_id == guild_id,
                    PointOverride.category == category.value,
                    PointOverride.dungeon_key == dungeon_key,
                )
            )
        ]
    points = pick_points(rows, category, role_ids)
    if not rows:
        logger.debug(
            "No %s override for %s in guild %s, using default %s",
            category, dungeon_key, guild_id, points,
        )
    return points
