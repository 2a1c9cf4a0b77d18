# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Tests for the pagecontext CLI (check-url and error exits; no browser)."""

from __future__ import annotations

import json

import pytest

from pagecontext import cli


def _run(monkeypatch, *argv: str) -> None:
    monkeypatch.setattr("sys.argv", ["pagecontext", *argv])
    cli.main()


class TestCheckUrl:
    def test_monitored_url(self, monkeypatch, capsys):
        _run(monkeypatch, "check-url", "https://example.com/docs")
        result = json.loads(capsys.readouterr().out)
        assert result == {
            "url": "https://example.com/docs",
            "monitored": True,
            "contains_sensitive_data": False,
            "consent_required": False,
        }

    def test_excluded_domain_from_config(self, monkeypatch, capsys, tmp_path):
        path = tmp_path / "monitor.yaml"
        path.write_text("privacy:\n  excluded_domains: [bank.example.com]\n", encoding="utf-8")
        _run(monkeypatch, "check-url", "https://bank.example.com/account?token=abc123", "--config", str(path))
        result = json.loads(capsys.readouterr().out)
        assert not result["monitored"]
        assert "abc123" not in result["url"]

    def test_consent_required(self, monkeypatch, capsys, tmp_path):
        path = tmp_path / "monitor.yaml"
        path.write_text("privacy:\n  require_consent: true\n", encoding="utf-8")
        _run(monkeypatch, "check-url", "https://example.com/", "--config", str(path))
        assert not json.loads(capsys.readouterr().out)["monitored"]
        _run(monkeypatch, "check-url", "https://example.com/", "--config", str(path), "--consent")
        assert json.loads(capsys.readouterr().out)["monitored"]


class TestErrors:
    def test_configuration_error_exits_2(self, monkeypatch, capsys, tmp_path):
        path = tmp_path / "monitor.yaml"
        path.write_text("telemetry: {}\n", encoding="utf-8")
        with pytest.raises(SystemExit) as exc_info:
            _run(monkeypatch, "check-url", "https://example.com/", "--config", str(path))
        assert exc_info.value.code == 2
        assert "Configuration error: unknown config sections: telemetry" in capsys.readouterr().err

    def test_missing_config_file_exits_2(self, monkeypatch, tmp_path):
        with pytest.raises(SystemExit) as exc_info:
            _run(monkeypatch, "check-url", "https://example.com/", "--config", str(tmp_path / "absent.yaml"))
        assert exc_info.value.code == 2

    def test_command_is_required(self, monkeypatch):
        with pytest.raises(SystemExit) as exc_info:
            _run(monkeypatch)
        assert exc_info.value.code == 2
