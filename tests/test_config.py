# Ticket Bridge
# Copyright (C) 2025 Phoenix Link (Pty) Ltd. All Rights Reserved.
#
# This file is part of Ticket Bridge.
#
# Ticket Bridge is dual-licensed:
#
# 1. Open Source: GNU Affero General Public License v3.0 (AGPL-3.0)
# 2. Commercial: Available from Phoenix Link (Pty) Ltd
#
# Contributions require a signed CLA. See COPYRIGHT.md and CLA.md.
"""Tests for bridge configuration loading and saving."""

from __future__ import annotations

import yaml

from ticketbridge.core.config import (
    DEFAULT_RATE_LIMITS,
    BridgeSettings,
    RateLimitRule,
    default_config_path,
    load_settings,
    save_settings,
)


class TestDefaults:
    def test_production_defaults(self):
        settings = BridgeSettings()
        assert settings.max_duplicates_allowed == 10
        assert settings.max_retry_attempts == 3
        assert settings.max_retry_queue_size == 1000
        assert settings.image_cache_max_bytes == 500 * 1024 * 1024
        assert settings.max_reconnect_attempts == 5
        assert settings.rate_limits["webhook"].capacity == DEFAULT_RATE_LIMITS["webhook"].capacity

    def test_rate_limits_not_shared_between_instances(self):
        first, second = BridgeSettings(), BridgeSettings()
        first.rate_limits["global"] = RateLimitRule(1, 1.0)
        assert second.rate_limits["global"].capacity == DEFAULT_RATE_LIMITS["global"].capacity

    def test_refill_rate(self):
        assert RateLimitRule(4, 5.0).refill_rate == 0.8

    def test_paths_follow_bridge_home(self, bridge_home):
        assert default_config_path() == bridge_home / "bridge.yaml"
        assert BridgeSettings().resolved_database_path() == bridge_home / "tickets.db"
        assert BridgeSettings(database_path="/srv/t.db").resolved_database_path().name == "t.db"


class TestLoadSettings:
    def test_missing_file_gives_defaults(self, tmp_path):
        settings = load_settings(tmp_path / "absent.yaml")
        assert settings == BridgeSettings()

    def test_sections_override_defaults(self, tmp_path):
        path = tmp_path / "bridge.yaml"
        path.write_text(yaml.dump({
            "telegram": {"token": "tg-token"},
            "api": {"port": "9000"},
            "dedup": {"max_duplicates_allowed": 3},
            "connection": {"backoff_max": 30},
            "rate_limits": {"webhook": {"capacity": 2, "period": 10}},
        }))
        settings = load_settings(path)
        assert settings.telegram_token == "tg-token"
        assert settings.api_port == 9000
        assert settings.max_duplicates_allowed == 3
        assert settings.backoff_max == 30.0
        assert settings.rate_limits["webhook"] == RateLimitRule(2, 10.0)
        assert settings.rate_limits["global"] == DEFAULT_RATE_LIMITS["global"]

    def test_invalid_rate_limit_ignored(self, tmp_path):
        path = tmp_path / "bridge.yaml"
        path.write_text(yaml.dump({"rate_limits": {"global": {"capacity": 0, "period": 1}}}))
        assert load_settings(path).rate_limits["global"] == DEFAULT_RATE_LIMITS["global"]

    def test_malformed_yaml_gives_defaults(self, tmp_path):
        path = tmp_path / "bridge.yaml"
        path.write_text("telegram: [unclosed")
        assert load_settings(path) == BridgeSettings()

    def test_non_mapping_gives_defaults(self, tmp_path):
        path = tmp_path / "bridge.yaml"
        path.write_text("- just\n- a list\n")
        assert load_settings(path) == BridgeSettings()

    def test_environment_wins(self, tmp_path, monkeypatch):
        path = tmp_path / "bridge.yaml"
        path.write_text(yaml.dump({"discord": {"token": "from-file", "guild_id": "1"}}))
        monkeypatch.setenv("DISCORD_BOT_TOKEN", "from-env")
        settings = load_settings(path)
        assert settings.discord_token == "from-env"
        assert settings.discord_guild_id == "1"
        assert load_settings(path, apply_env=False).discord_token == "from-file"


class TestSaveSettings:
    def test_save_then_load(self, tmp_path):
        path = tmp_path / "nested" / "bridge.yaml"
        original = BridgeSettings(telegram_token="t", webhook_idle_timeout=900.0)
        original.rate_limits["global"] = RateLimitRule(20, 1.0)
        save_settings(original, path)
        assert load_settings(path) == original

    def test_saved_file_is_sectioned(self, tmp_path):
        path = tmp_path / "bridge.yaml"
        save_settings(BridgeSettings(), path)
        raw = yaml.safe_load(path.read_text())
        assert raw["webhooks"]["relay_name"] == "Message Relay"
        assert raw["rate_limits"]["channel_create"] == {"capacity": 9, "period": 10.0}
