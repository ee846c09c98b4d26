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
"""Tests for the ticketbridge command line."""

from __future__ import annotations

import httpx
import pytest
import yaml

from ticketbridge.cli.app import main


class TestCommands:
    def test_no_command_prints_help(self, capsys):
        assert main([]) == 0
        assert "ticketbridge" in capsys.readouterr().out

    def test_version(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            main(["--version"])
        assert exc_info.value.code == 0
        assert "ticket-bridge" in capsys.readouterr().out

    def test_init_config_writes_yaml(self, tmp_path):
        path = tmp_path / "bridge.yaml"
        assert main(["init-config", "--config", str(path)]) == 0
        data = yaml.safe_load(path.read_text())
        assert isinstance(data, dict)
        assert data

    def test_init_config_leaves_out_env_tokens(self, tmp_path, monkeypatch):
        monkeypatch.setenv("TELEGRAM_BOT_TOKEN", "secret")
        path = tmp_path / "bridge.yaml"
        main(["init-config", "--config", str(path)])
        assert "secret" not in path.read_text()

    def test_run_without_tokens(self, capsys):
        assert main(["run"]) == 2
        assert "No platform tokens" in capsys.readouterr().err


class TestHealthCommand:
    def _patch(self, monkeypatch, status_code=200, payload=None, error=None):
        calls = []

        def fake_get(url, timeout=None):
            calls.append(url)
            if error is not None:
                raise error
            return httpx.Response(status_code, json=payload or {})

        monkeypatch.setattr(httpx, "get", fake_get)
        return calls

    def test_healthy(self, monkeypatch, capsys):
        calls = self._patch(monkeypatch, payload={"status": "healthy"})
        assert main(["health"]) == 0
        assert calls == ["http://127.0.0.1:8321/health"]
        assert '"healthy"' in capsys.readouterr().out

    def test_explicit_url(self, monkeypatch):
        calls = self._patch(monkeypatch, payload={"status": "degraded"})
        assert main(["health", "--url", "http://bridge:9000/health"]) == 0
        assert calls == ["http://bridge:9000/health"]

    def test_down(self, monkeypatch):
        self._patch(monkeypatch, status_code=503, payload={"status": "down"})
        assert main(["health"]) == 1

    def test_unreachable(self, monkeypatch, capsys):
        self._patch(monkeypatch, error=httpx.ConnectError("refused"))
        assert main(["health"]) == 1
        assert "unreachable" in capsys.readouterr().err
