"""
tests/test_config.py — YAML Configuration Loader
=================================================
"""

from __future__ import annotations

import pytest

from raidledger.config import RaidLedgerConfig, load_config


class TestLoadConfig:
    def test_reads_required_and_optional_keys(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(
            "community_name: Raiders\n"
            "api_port: 4100\n"
            "hard_mode_dungeon_key: oryx_3\n"
            "max_auto_end_minutes: 600\n"
            "quota_period_days: 14\n",
            encoding="utf-8",
        )
        cfg = load_config(path)
        assert cfg.community_name == "Raiders"
        assert cfg.api_port == 4100
        assert cfg.hard_mode_dungeon_key == "oryx_3"
        assert cfg.max_auto_end_minutes == 600
        assert cfg.quota_period_days == 14

    def test_defaults_for_missing_optional_keys(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("community_name: Raiders\napi_port: 4000\n", encoding="utf-8")
        cfg = load_config(path)
        assert cfg.hard_mode_dungeon_key is None
        assert cfg.default_auto_end_minutes == 120
        assert cfg.max_auto_end_minutes == 1440
        assert cfg.default_key_window_seconds == 25
        assert cfg.max_key_window_seconds == 300
        assert cfg.quota_period_days == 7

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "nope.yaml")

    def test_missing_required_key(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("community_name: Raiders\n", encoding="utf-8")
        with pytest.raises(KeyError):
            load_config(path)

    def test_config_is_frozen(self):
        cfg = RaidLedgerConfig(community_name="x", api_port=1)
        with pytest.raises(AttributeError):
            cfg.api_port = 2
