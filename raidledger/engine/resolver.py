"""
raidledger.engine.resolver — Point Override Selection
======================================================

Pure selection logic for per-role / per-dungeon point overrides.  The
service layer fetches candidate rows; this module decides which value wins.

Rules:
  * No roles supplied → highest override for the dungeon across *any*
    role in the community.
  * Roles supplied → highest override among exactly those roles, plus
    community-wide (role-less) rows, which apply to everyone.
  * Nothing matches → the category default.
"""

from __future__ import annotations

from collections.abc import Iterable
from decimal import Decimal

from raidledger.constants import DEFAULT_POINTS
from raidledger.database.models import PointCategory
from raidledger.engine.points import quantize_points

__all__ = ["OverrideRow", "pick_points"]

# (discord_role_id or None, points)
OverrideRow = tuple[int | None, Decimal]


def pick_points(
    rows: Iterable[OverrideRow],
    category: PointCategory,
    role_ids: Iterable[int] | None = None,
) -> Decimal:
    """Return the winning point value for *category* from *rows*."""
    roles = set(role_ids) if role_ids else set()

    if roles:
        candidates = [p for role, p in rows if role is None or role in roles]
    else:
        candidates = [p for _, p in rows]

    if not candidates:
        return DEFAULT_POINTS[category]
    return quantize_points(max(candidates))
