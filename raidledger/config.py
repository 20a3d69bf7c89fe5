"""
raidledger.config — YAML Configuration Loader
==============================================

Reads ``config.yaml`` for **infrastructure-only** settings: community
identity, the API port, run behaviour limits and the quota period length.
Per-activity point values and role quotas live in the database and are
edited through the quota endpoints.

Usage::

    from raidledger.config import load_config

    cfg = load_config()               # reads ./config.yaml by default
    print(cfg.community_name)         # "Raid Community"
    print(cfg.max_auto_end_minutes)   # 1440
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import yaml


# ---------------------------------------------------------------------------
# Typed settings object
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class RaidLedgerConfig:
    """Immutable configuration loaded from ``config.yaml``."""

    # Identity
    community_name: str

    # API
    api_port: int

    # Runs
    hard_mode_dungeon_key: str | None = None  # Requires a screenshot to go live
    default_auto_end_minutes: int = 120
    max_auto_end_minutes: int = 1440
    default_key_window_seconds: int = 25
    max_key_window_seconds: int = 300

    # Quota
    quota_period_days: int = 7


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def load_config(path: str | Path = "config.yaml") -> RaidLedgerConfig:
    """Read *path* and return a :class:`RaidLedgerConfig` instance.

    Parameters
    ----------
    path:
        Filesystem path to the YAML configuration file.
        Defaults to ``config.yaml`` in the current working directory.

    Raises
    ------
    FileNotFoundError
        If the YAML file doesn't exist.
    KeyError
        If a required key is missing from the YAML file.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path.resolve()}\n"
            "Hint: copy config.yaml.example → config.yaml and edit it."
        )

    with open(config_path, encoding="utf-8") as fh:
        raw: dict = yaml.safe_load(fh) or {}

    defaults = RaidLedgerConfig(community_name="", api_port=0)
    return RaidLedgerConfig(
        community_name=raw["community_name"],
        api_port=int(raw["api_port"]),
        hard_mode_dungeon_key=raw.get("hard_mode_dungeon_key") or None,
        default_auto_end_minutes=int(
            raw.get("default_auto_end_minutes", defaults.default_auto_end_minutes)
        ),
        max_auto_end_minutes=int(
            raw.get("max_auto_end_minutes", defaults.max_auto_end_minutes)
        ),
        default_key_window_seconds=int(
            raw.get("default_key_window_seconds", defaults.default_key_window_seconds)
        ),
        max_key_window_seconds=int(
            raw.get("max_key_window_seconds", defaults.max_key_window_seconds)
        ),
        quota_period_days=int(raw.get("quota_period_days", defaults.quota_period_days)),
    )
