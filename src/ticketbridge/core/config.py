# Ticket Bridge
# Copyright (C) 2025 Phoenix Link (Pty) Ltd. All Rights Reserved.
#
# This file is part of Ticket Bridge.
#
# Ticket Bridge is dual-licensed:
#
# 1. Open Source: GNU Affero General Public License v3.0 (AGPL-3.0)
#    You may use, modify, and distribute this file under AGPL-3.0.
#    See LICENSE for the full text.
#
# 2. Commercial: Available from Phoenix Link (Pty) Ltd
#    For proprietary use, SaaS deployment, or enterprise licensing.
#    See LICENSE-ENTERPRISE.md or contact info@phoenixlink.co.za
#
# Contributions require a signed CLA. See COPYRIGHT.md and CLA.md.
"""Bridge configuration.

Settings live in a YAML file (default ~/.ticketbridge/bridge.yaml) with one
section per concern. Platform credentials may also come from the
environment, which wins over the file:

    TELEGRAM_BOT_TOKEN, DISCORD_BOT_TOKEN, DISCORD_GUILD_ID, TICKETBRIDGE_DB
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from ticketbridge.core.logging import bridge_home

logger = logging.getLogger("ticketbridge.core.config")

CONFIG_FILE_NAME = "bridge.yaml"


def default_config_path() -> Path:
    return bridge_home() / CONFIG_FILE_NAME


@dataclass
class RateLimitRule:
    """Token bucket shape: ``capacity`` operations per ``period`` seconds."""

    capacity: int
    period: float

    @property
    def refill_rate(self) -> float:
        """Tokens added per second."""
        return self.capacity / self.period


# Kept slightly under the documented platform limits.
DEFAULT_RATE_LIMITS: dict[str, RateLimitRule] = {
    "global": RateLimitRule(45, 1.0),
    "webhook": RateLimitRule(4, 5.0),
    "channel_create": RateLimitRule(9, 10.0),
    "channel_edit": RateLimitRule(4, 10.0),
    "messages_fetch": RateLimitRule(50, 1.0),
    "application": RateLimitRule(5, 20.0),
}


def _default_rate_limits() -> dict[str, RateLimitRule]:
    return {name: RateLimitRule(r.capacity, r.period) for name, r in DEFAULT_RATE_LIMITS.items()}


@dataclass
class BridgeSettings:
    """Every tunable of the bridge. Defaults are production values."""

    # Credentials / storage
    telegram_token: str = ""
    discord_token: str = ""
    discord_guild_id: str = ""
    database_path: str = ""

    # Operational HTTP surface
    api_host: str = "127.0.0.1"
    api_port: int = 8321

    # Deduplication
    max_duplicates_allowed: int = 10
    dedup_window_seconds: float = 600.0
    dedup_max_entries: int = 10_000

    # Retry queue
    max_retry_attempts: int = 3
    max_retry_queue_size: int = 1000
    retry_drain_interval: float = 5.0

    # Image cache
    image_cache_ttl: float = 24 * 60 * 60.0
    image_cache_max_bytes: int = 500 * 1024 * 1024
    image_cache_sweep_interval: float = 60 * 60.0
    min_image_bytes: int = 32
    max_image_bytes: int = 10 * 1024 * 1024

    # Connection supervision
    heartbeat_interval: float = 60.0
    max_failed_heartbeats: int = 3
    max_reconnect_attempts: int = 5
    backoff_initial: float = 1.0
    backoff_max: float = 60.0
    backoff_factor: float = 2.0
    backoff_jitter: float = 0.2
    session_conflict_cooldown: float = 15.0
    connect_timeout: float = 30.0
    start_timeout: float = 180.0

    # Bridge manager
    send_timeout: float = 30.0
    send_backoff_initial: float = 0.5
    send_backoff_max: float = 10.0
    restart_cooldown: float = 5.0
    health_check_interval: float = 15 * 60.0
    pending_retry_interval: float = 60.0
    intake_timeout: float = 30 * 60.0

    # Webhooks
    webhook_max_failures: int = 3
    webhook_idle_timeout: float = 30 * 60.0
    max_webhooks_per_channel: int = 5
    webhook_sweep_interval: float = 5 * 60.0
    relay_webhook_name: str = "Message Relay"
    system_display_name: str = "Ticket Bot"

    # Rate limiting
    rate_limits: dict[str, RateLimitRule] = field(default_factory=_default_rate_limits)
    rate_limit_wait_timeout: float = 30.0
    rate_limit_idle_timeout: float = 10 * 60.0

    def resolved_database_path(self) -> Path:
        if self.database_path:
            return Path(self.database_path).expanduser()
        return bridge_home() / "tickets.db"


# YAML section -> BridgeSettings attribute names. Keys inside a section are
# the attribute names without the section prefix where one exists.
_SECTIONS: dict[str, dict[str, str]] = {
    "telegram": {"token": "telegram_token"},
    "discord": {"token": "discord_token", "guild_id": "discord_guild_id"},
    "database": {"path": "database_path"},
    "api": {"host": "api_host", "port": "api_port"},
    "dedup": {
        "max_duplicates_allowed": "max_duplicates_allowed",
        "window_seconds": "dedup_window_seconds",
        "max_entries": "dedup_max_entries",
    },
    "retry": {
        "max_attempts": "max_retry_attempts",
        "max_queue_size": "max_retry_queue_size",
        "drain_interval": "retry_drain_interval",
    },
    "images": {
        "ttl": "image_cache_ttl",
        "max_bytes": "image_cache_max_bytes",
        "sweep_interval": "image_cache_sweep_interval",
        "min_image_bytes": "min_image_bytes",
        "max_image_bytes": "max_image_bytes",
    },
    "connection": {
        "heartbeat_interval": "heartbeat_interval",
        "max_failed_heartbeats": "max_failed_heartbeats",
        "max_reconnect_attempts": "max_reconnect_attempts",
        "backoff_initial": "backoff_initial",
        "backoff_max": "backoff_max",
        "backoff_factor": "backoff_factor",
        "backoff_jitter": "backoff_jitter",
        "session_conflict_cooldown": "session_conflict_cooldown",
        "connect_timeout": "connect_timeout",
        "start_timeout": "start_timeout",
    },
    "bridge": {
        "send_timeout": "send_timeout",
        "send_backoff_initial": "send_backoff_initial",
        "send_backoff_max": "send_backoff_max",
        "restart_cooldown": "restart_cooldown",
        "health_check_interval": "health_check_interval",
        "pending_retry_interval": "pending_retry_interval",
        "intake_timeout": "intake_timeout",
    },
    "webhooks": {
        "max_failures": "webhook_max_failures",
        "idle_timeout": "webhook_idle_timeout",
        "max_per_channel": "max_webhooks_per_channel",
        "sweep_interval": "webhook_sweep_interval",
        "relay_name": "relay_webhook_name",
        "system_display_name": "system_display_name",
    },
    "rate_limiting": {
        "wait_timeout": "rate_limit_wait_timeout",
        "idle_timeout": "rate_limit_idle_timeout",
    },
}

_ENV_OVERRIDES = {
    "TELEGRAM_BOT_TOKEN": "telegram_token",
    "DISCORD_BOT_TOKEN": "discord_token",
    "DISCORD_GUILD_ID": "discord_guild_id",
    "TICKETBRIDGE_DB": "database_path",
}


def load_settings(path: Path | str | None = None, apply_env: bool = True) -> BridgeSettings:
    """Load settings from YAML, then apply environment overrides.

    A missing or malformed file yields the defaults.
    """
    config_path = Path(path) if path else default_config_path()

    settings = BridgeSettings()
    if not config_path.exists():
        logger.info("No bridge config at %s -- using defaults", config_path)
    else:
        try:
            raw = yaml.safe_load(config_path.read_text(encoding="utf-8"))
            if isinstance(raw, dict):
                settings = _parse_settings(raw)
            else:
                logger.warning("Invalid bridge config (not a dict) -- using defaults")
        except (OSError, yaml.YAMLError, TypeError, ValueError) as exc:
            logger.error("Failed to load bridge config: %s -- using defaults", exc)
            settings = BridgeSettings()

    if apply_env:
        for env_name, attr in _ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value:
                setattr(settings, attr, value)
    return settings


def save_settings(settings: BridgeSettings, path: Path | str | None = None) -> None:
    """Save settings to YAML."""
    config_path = Path(path) if path else default_config_path()
    config_path.parent.mkdir(parents=True, exist_ok=True)

    data: dict[str, Any] = {}
    for section, mapping in _SECTIONS.items():
        data[section] = {key: getattr(settings, attr) for key, attr in mapping.items()}
    data["rate_limits"] = {
        name: {"capacity": rule.capacity, "period": rule.period}
        for name, rule in settings.rate_limits.items()
    }
    config_path.write_text(
        yaml.dump(data, default_flow_style=False, sort_keys=False), encoding="utf-8"
    )
    logger.info("Saved bridge config to %s", config_path)


def _parse_settings(raw: dict) -> BridgeSettings:
    """Parse raw YAML dict into BridgeSettings, coercing to the default's type."""
    defaults = BridgeSettings()
    types = {f.name: type(getattr(defaults, f.name)) for f in fields(BridgeSettings)}
    values: dict[str, Any] = {}

    for section, mapping in _SECTIONS.items():
        section_raw = raw.get(section) or {}
        if not isinstance(section_raw, dict):
            logger.warning("Ignoring config section %r (not a mapping)", section)
            continue
        for key, attr in mapping.items():
            if key in section_raw and section_raw[key] is not None:
                values[attr] = types[attr](section_raw[key])

    rate_limits = _default_rate_limits()
    for name, entry in (raw.get("rate_limits") or {}).items():
        if not isinstance(entry, dict):
            continue
        capacity = int(entry.get("capacity", 0))
        period = float(entry.get("period", 0))
        if capacity <= 0 or period <= 0:
            logger.warning("Ignoring rate limit %r: capacity and period must be positive", name)
            continue
        rate_limits[name] = RateLimitRule(capacity, period)
    values["rate_limits"] = rate_limits

    return BridgeSettings(**values)
