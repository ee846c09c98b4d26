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
"""
Ticket Bridge -- Live Relay Logger

Every relay, connection transition and retry-queue event is written to a
rotating log file that operators can tail while the bridge runs.

LOG LOCATION:
    ~/.ticketbridge/logs/bridge.log          (current)
    ~/.ticketbridge/logs/bridge.log.1        (previous rotation)

    Set TICKETBRIDGE_HOME to move the whole ~/.ticketbridge tree.

RULES:
    - Single log file, max 10 MB before rotation
    - Human-readable format with structured key=value fields
    - Every send is logged with its outcome
    - WARNING and above are mirrored to stderr

USAGE:
    from ticketbridge.core.logging import get_logger
    log = get_logger()
    log.relay("staff", ticket_id=42, outcome="sent")
    log.connection("Telegram", "connected", attempts=0)
    log.error("Webhooks", "Webhook creation failed", channel="123", error=str(e))
"""

from __future__ import annotations

import logging
import logging.handlers
import os
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

# =============================================================================
# CONSTANTS
# =============================================================================

MAX_LOG_FILE_BYTES = 10 * 1024 * 1024  # 10 MB per file
LOG_BACKUP_COUNT = 5
LOG_FILE_NAME = "bridge.log"


def bridge_home() -> Path:
    """Root of the bridge's on-disk state (config, logs, database)."""
    override = os.environ.get("TICKETBRIDGE_HOME")
    if override:
        return Path(override)
    return Path.home() / ".ticketbridge"


def log_dir() -> Path:
    return bridge_home() / "logs"


# =============================================================================
# FORMATTER -- human-readable + structured
# =============================================================================


class BridgeLogFormatter(logging.Formatter):
    """
    Format: TIMESTAMP | LEVEL | COMPONENT | MESSAGE | {structured fields}

    Example:
    2026-03-02T09:12:01.120Z | RELAY | Bridge       | Relayed to staff | ticket_id=42 outcome="sent"
    2026-03-02T09:12:05.004Z | CONN  | Telegram     | State connecting -> connected | attempts=0
    2026-03-02T09:13:40.771Z | WARN  | RetryQueue   | Queue full, dropped oldest | dropped_id="a1b2c3"
    """

    LEVEL_WIDTH = 5
    COMPONENT_WIDTH = 12

    def format(self, record: logging.LogRecord) -> str:
        now = datetime.now(timezone.utc)
        ts = now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"

        level = getattr(record, "bridge_level", record.levelname)
        component = getattr(record, "component", "System")
        message = record.getMessage()

        fields = getattr(record, "fields", {})
        field_str = ""
        if fields:
            parts = []
            for k, v in fields.items():
                if isinstance(v, str):
                    parts.append(f'{k}="{v}"')
                elif isinstance(v, float):
                    parts.append(f"{k}={v:.3f}")
                else:
                    parts.append(f"{k}={v}")
            field_str = " | " + " ".join(parts)

        return (
            f"{ts} | {level:<{self.LEVEL_WIDTH}} | "
            f"{component:<{self.COMPONENT_WIDTH}} | {message}{field_str}"
        )


# =============================================================================
# BRIDGE LOGGER
# =============================================================================


class BridgeLogger:
    """
    Production logger for the bridge.

    Writes to <TICKETBRIDGE_HOME>/logs/bridge.log with 10 MB rotation and
    component-tagged entries for filtering. Warnings and errors are also
    printed to stderr.
    """

    def __init__(self, directory: str | Path | None = None):
        self._log_dir = Path(directory) if directory else log_dir()
        self._log_dir.mkdir(parents=True, exist_ok=True)
        self._log_file = self._log_dir / LOG_FILE_NAME

        self._logger = logging.getLogger("ticketbridge.live")
        self._logger.setLevel(logging.DEBUG)
        self._logger.propagate = False

        # Remove existing handlers to avoid duplicates
        for handler in list(self._logger.handlers):
            self._logger.removeHandler(handler)
            handler.close()

        file_handler = logging.handlers.RotatingFileHandler(
            str(self._log_file),
            maxBytes=MAX_LOG_FILE_BYTES,
            backupCount=LOG_BACKUP_COUNT,
            encoding="utf-8",
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(BridgeLogFormatter())
        self._logger.addHandler(file_handler)

        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setLevel(logging.WARNING)
        stderr_handler.setFormatter(BridgeLogFormatter())
        self._logger.addHandler(stderr_handler)

        self._session_id = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
        self._relay_count = 0

        self.info("System", "Logger initialized", log_file=str(self._log_file))

    def _log(self, level: int, bridge_level: str, component: str, message: str, **fields):
        """Core log method."""
        fields["session"] = self._session_id
        record = self._logger.makeRecord(
            name="ticketbridge.live",
            level=level,
            fn="",
            lno=0,
            msg=message,
            args=(),
            exc_info=None,
        )
        record.component = component
        record.bridge_level = bridge_level
        record.fields = fields
        self._logger.handle(record)

    # =========================================================================
    # PUBLIC API -- Standard levels
    # =========================================================================

    def info(self, component: str, message: str, **fields):
        self._log(logging.INFO, "INFO", component, message, **fields)

    def warn(self, component: str, message: str, **fields):
        self._log(logging.WARNING, "WARN", component, message, **fields)

    def error(self, component: str, message: str, **fields):
        self._log(logging.ERROR, "ERROR", component, message, **fields)

    def debug(self, component: str, message: str, **fields):
        self._log(logging.DEBUG, "DEBUG", component, message, **fields)

    # =========================================================================
    # PUBLIC API -- Domain-specific log methods
    # =========================================================================

    def relay(self, target: str, ticket_id: int | None = None, outcome: str = "", **fields):
        """Log one send attempt and its outcome."""
        fields.update(target=target, ticket_id=ticket_id, outcome=outcome)
        level = logging.INFO if outcome in ("sent", "queued", "duplicate_message") else logging.WARNING
        self._log(level, "RELAY", "Bridge", f"Relay to {target}: {outcome}", **fields)
        self._relay_count += 1

    def connection(self, platform: str, state: str, previous: str = "", **fields):
        """Log a connection state transition."""
        fields.update(state=state, previous=previous)
        level = logging.WARNING if state in ("reconnecting", "disconnected") else logging.INFO
        message = f"State {previous} -> {state}" if previous else f"State {state}"
        self._log(level, "CONN", platform, message, **fields)

    def queue(self, action: str, platform: str = "", size: int = 0, **fields):
        """Log a retry-queue event (enqueue, deliver, drop, discard)."""
        fields.update(action=action, platform=platform, size=size)
        level = logging.WARNING if action in ("drop", "discard") else logging.INFO
        self._log(level, "QUEUE", "RetryQueue", f"Queue {action}", **fields)

    def startup(self, origin: bool = False, staff: bool = False, **fields):
        """Log bridge startup with per-platform results."""
        fields.update(origin=origin, staff=staff)
        self._log(logging.INFO, "BOOT", "Bridge", "Bridge started", **fields)

    def shutdown(self, **fields):
        fields.update(relays=self._relay_count)
        self._log(logging.INFO, "HALT", "Bridge", "Bridge stopped", **fields)

    def server_start(self, host: str = "", port: int = 0, **fields):
        """Log API server startup."""
        fields.update(host=host, port=port)
        self._log(logging.INFO, "BOOT", "Server", "API server started", **fields)

    # =========================================================================
    # UTILITY
    # =========================================================================

    @property
    def log_file(self) -> str:
        return str(self._log_file)

    @property
    def log_dir(self) -> str:
        return str(self._log_dir)

    def get_log_stats(self) -> dict[str, Any]:
        """Get statistics about the log folder."""
        try:
            log_files = [f for f in self._log_dir.iterdir() if f.is_file()]
            total_size = sum(f.stat().st_size for f in log_files)
            return {
                "log_file": str(self._log_file),
                "file_count": len(log_files),
                "total_size_mb": round(total_size / (1024 * 1024), 2),
                "session_id": self._session_id,
                "relays_logged": self._relay_count,
            }
        except OSError:
            return {"log_file": str(self._log_file), "error": "could not stat"}


# =============================================================================
# SINGLETON
# =============================================================================

_logger_instance: BridgeLogger | None = None


def get_logger() -> BridgeLogger:
    """Get or create the process-wide BridgeLogger."""
    global _logger_instance
    if _logger_instance is None:
        _logger_instance = BridgeLogger()
    return _logger_instance


def reset_logger() -> None:
    """Drop the cached logger (tests, or after TICKETBRIDGE_HOME changes)."""
    global _logger_instance
    _logger_instance = None
