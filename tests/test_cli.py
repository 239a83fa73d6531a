from __future__ import annotations

import json
import logging
from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from syntropy import __version__
from syntropy.cli import app

runner = CliRunner()


@pytest.fixture(autouse=True)
def env(tmp_path, monkeypatch):
    monkeypatch.setenv("SYNTROPY_ROOT", str(tmp_path))
    monkeypatch.setenv("SYNTROPY_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("SYNTROPY_LOG_DIR", str(tmp_path / "logs"))
    root = logging.getLogger()
    saved = root.handlers[:], root.level
    yield
    for handler in root.handlers:
        if handler not in saved[0]:
            handler.close()
    root.handlers[:] = saved[0]
    root.setLevel(saved[1])


def test_version():
    result = runner.invoke(app, ["version"])
    assert result.exit_code == 0
    assert result.output.strip() == __version__


def test_guard_check_allowed():
    result = runner.invoke(app, ["guard-check", "git status"])
    assert result.exit_code == 0


def test_guard_check_blocked():
    result = runner.invoke(app, ["guard-check", "docker compose build syntropy"])
    assert result.exit_code == 1


def test_guard_check_rebuild_task(monkeypatch):
    monkeypatch.setenv("TASK_TYPE", "privileged-rebuild")
    result = runner.invoke(app, ["guard-check", "docker compose build syntropy"])
    assert result.exit_code == 0


def test_list_empty_ledger():
    result = runner.invoke(app, ["list"])
    assert result.exit_code == 0
    data, _ = json.JSONDecoder().raw_decode(result.output[result.output.index("{"):])
    assert data["total"] == 0


def test_status_unknown_task_exits_nonzero():
    result = runner.invoke(app, ["status", "nope"])
    assert result.exit_code == 1
    assert "not found" in result.output


def test_wait_healthy_timeout():
    with patch("syntropy.core.health.check_health", return_value=False):
        result = runner.invoke(app, ["wait-healthy", "--url", "http://x/health", "--timeout", "0", "--interval", "1"])
    assert result.exit_code == 1


def test_wait_healthy_ok():
    with patch("syntropy.core.health.check_health", return_value=True):
        result = runner.invoke(app, ["wait-healthy", "--url", "http://x/health"])
    assert result.exit_code == 0
