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
"""Tests for the health, readiness, restart and stats routes."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from ticketbridge import __version__
from ticketbridge.api.server import create_app


def _bridge(origin: bool = True, staff: bool = True, enabled: bool = True) -> MagicMock:
    bridge = MagicMock()
    bridge.enabled = enabled
    bridge.health_check.return_value = {
        "origin_platform": origin,
        "staff_platform": staff,
        "uptime_seconds": 12.5,
    }
    bridge.restart = AsyncMock(return_value={"origin": True, "staff": True})
    bridge.restart_origin = AsyncMock(return_value=True)
    bridge.restart_staff = AsyncMock(return_value=False)
    bridge.stats.return_value = {"retry_queue": {"size": 0}}
    return bridge


def _client(bridge) -> TestClient:
    return TestClient(create_app(bridge))


class TestHealth:
    @pytest.mark.parametrize(
        "origin,staff,status,code",
        [
            (True, True, "healthy", 200),
            (True, False, "degraded", 200),
            (False, False, "down", 503),
        ],
    )
    def test_status_reflects_platforms(self, origin, staff, status, code):
        response = _client(_bridge(origin, staff)).get("/health")
        assert response.status_code == code
        body = response.json()
        assert body["status"] == status
        assert body["version"] == __version__
        assert body["origin_platform"] is origin
        assert body["uptime_seconds"] == 12.5

    def test_no_bridge_is_503(self):
        assert _client(None).get("/health").status_code == 503


class TestReady:
    def test_ready_with_one_platform(self):
        assert _client(_bridge(True, False)).get("/ready").status_code == 200

    def test_not_ready_when_down(self):
        assert _client(_bridge(False, False)).get("/ready").status_code == 503

    def test_not_ready_when_disabled(self):
        assert _client(_bridge(enabled=False)).get("/ready").status_code == 503


class TestRestart:
    def test_restart_all(self):
        bridge = _bridge()
        response = _client(bridge).post("/api/bridge/restart")
        assert response.status_code == 200
        assert response.json()["results"] == {"origin": True, "staff": True}
        bridge.restart.assert_awaited_once()

    @pytest.mark.parametrize("alias", ["telegram", "origin", "Telegram"])
    def test_restart_origin_aliases(self, alias):
        bridge = _bridge()
        response = _client(bridge).post(f"/api/bridge/restart/{alias}")
        assert response.json()["results"] == {"origin": True}
        bridge.restart_origin.assert_awaited_once()

    def test_restart_staff(self):
        bridge = _bridge()
        response = _client(bridge).post("/api/bridge/restart/discord")
        assert response.json()["results"] == {"staff": False}
        assert response.json()["health"]["staff_platform"] is True

    def test_unknown_platform_is_404(self):
        assert _client(_bridge()).post("/api/bridge/restart/slack").status_code == 404


class TestStats:
    def test_stats_passthrough(self):
        response = _client(_bridge()).get("/api/bridge/stats")
        assert response.json() == {"retry_queue": {"size": 0}}
