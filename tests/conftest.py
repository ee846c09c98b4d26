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
"""Pytest configuration for Ticket Bridge tests."""

import sys
from pathlib import Path

import pytest

# Ensure src/ticketbridge is importable
src_path = str(Path(__file__).parent.parent / "src")
if src_path not in sys.path:
    sys.path.insert(0, src_path)


@pytest.fixture(autouse=True)
def bridge_home(tmp_path, monkeypatch):
    """Keep config, logs and databases inside the test's temp dir."""
    from ticketbridge.core.logging import reset_logger

    home = tmp_path / "bridge-home"
    monkeypatch.setenv("TICKETBRIDGE_HOME", str(home))
    for name in ("TELEGRAM_BOT_TOKEN", "DISCORD_BOT_TOKEN", "DISCORD_GUILD_ID", "TICKETBRIDGE_DB"):
        monkeypatch.delenv(name, raising=False)
    reset_logger()
    yield home
    reset_logger()
