"""
raidledger.constants — Shared Constants & Helpers
==================================================

Single source of truth for point defaults, internal role keys and the
ledger subject-id formats.  Subject ids are the idempotency keys of the
quota ledger, so every builder here must stay stable across releases.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from raidledger.database.models import PointCategory

# ---------------------------------------------------------------------------
# Point defaults, one per category, applied when no override matches
# ---------------------------------------------------------------------------
DEFAULT_POINTS: dict[PointCategory, Decimal] = {
    PointCategory.ORGANIZER: Decimal("1"),
    PointCategory.RAIDER: Decimal("1"),
    PointCategory.KEY_POP: Decimal("5"),
}

# ---------------------------------------------------------------------------
# Internal role keys (mapped to community role ids in ``guild_roles``)
# ---------------------------------------------------------------------------
ROLE_ADMINISTRATOR = "administrator"
ROLE_MODERATOR = "moderator"
ROLE_HEAD_ORGANIZER = "head_organizer"
ROLE_OFFICER = "officer"
ROLE_SECURITY = "security"
ROLE_ORGANIZER = "organizer"
ROLE_VERIFIED_RAIDER = "verified_raider"

ROLE_KEYS: tuple[str, ...] = (
    ROLE_ADMINISTRATOR,
    ROLE_MODERATOR,
    ROLE_HEAD_ORGANIZER,
    ROLE_OFFICER,
    ROLE_SECURITY,
    ROLE_ORGANIZER,
    ROLE_VERIFIED_RAIDER,
)

# Roles allowed to log or correct quota on someone else's behalf.
QUOTA_MANAGER_ROLES: tuple[str, ...] = (
    ROLE_ADMINISTRATOR,
    ROLE_HEAD_ORGANIZER,
    ROLE_OFFICER,
)

# ---------------------------------------------------------------------------
# Moderation commands → QuotaRoleConfig column holding their point value
# ---------------------------------------------------------------------------
MODERATION_COMMANDS: dict[str, str] = {
    "verify": "verify_points",
    "warn": "warn_points",
    "suspend": "suspend_points",
    "modmail_reply": "modmail_reply_points",
    "editname": "editname_points",
    "addnote": "addnote_points",
}

# Participation tag limits
MAX_CLASS_NAME_LENGTH = 50
MAX_KEY_TYPE_LENGTH = 50


# ---------------------------------------------------------------------------
# Ledger subject ids
# ---------------------------------------------------------------------------
def _stamp(now: datetime) -> int:
    """Millisecond timestamp used in time-derived subject ids."""
    return int(now.timestamp() * 1000)


def organizer_subject(run_id: int) -> str:
    """One organizer credit per run, ever."""
    return f"run:{run_id}"


def snapshot_raider_subject(run_id: int, key_pop_number: int, user_id: int) -> str:
    return f"raider:{run_id}:{key_pop_number}:{user_id}"


def participant_raider_subject(run_id: int, user_id: int) -> str:
    """Raider credit for runs that ended without any key pop."""
    return f"raider:{run_id}:{user_id}"


def key_pop_subject(run_id: int, key_pop_number: int, user_id: int) -> str:
    return f"key_pop:{run_id}:{key_pop_number}:{user_id}"


def manual_subject(kind: str, user_id: int, now: datetime, nonce: str) -> str:
    """Unique, time-derived subject for manual corrections.

    *nonce* disambiguates two corrections for the same user landing in the
    same millisecond.
    """
    return f"{kind}:{_stamp(now)}:{user_id}:{nonce}"
