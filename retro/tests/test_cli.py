from __future__ import annotations

import json

import pytest
from typer.testing import CliRunner

from retro.cli import app
from retro.config import get_settings


@pytest.fixture()
def home(tmp_path, monkeypatch):
    monkeypatch.setenv("RETRO_HOME", str(tmp_path))
    for name in ("GITHUB_TOKEN", "LLM_PROVIDER", "LLM_MODEL", "RETRO_DB", "RETRO_CONFIG"):
        monkeypatch.delenv(name, raising=False)
    get_settings.cache_clear()
    yield tmp_path
    get_settings.cache_clear()


def _invoke(home, *args: str):
    return CliRunner().invoke(app, ["--json", "--home", str(home), *args])


def test_start_then_duplicate_is_refused(home) -> None:
    result = _invoke(home, "start", "acme", "alice", "2024", "--exclude-repo", "legacy-*")
    assert result.exit_code == 0
    payload = json.loads(result.stdout)
    assert payload["status"] == "QUEUED"

    again = _invoke(home, "start", "acme", "alice", "2024")
    assert again.exit_code == 1

    status = json.loads(_invoke(home, "status", str(payload["run_id"])).stdout)
    assert status["options"]["exclude_repos"] == ["legacy-*"]
    assert (home / "retro.db").exists()


def test_pause_resume_cancel(home) -> None:
    run_id = json.loads(_invoke(home, "start", "acme", "alice", "2024").stdout)["run_id"]

    paused = json.loads(_invoke(home, "pause", str(run_id)).stdout)
    assert paused["status"] == "PAUSED"
    resumed = json.loads(_invoke(home, "resume", str(run_id)).stdout)
    assert resumed["status"] == "QUEUED"
    cancelled = json.loads(_invoke(home, "cancel", str(run_id)).stdout)
    assert cancelled["status"] == "FAILED"

    assert _invoke(home, "cancel", str(run_id)).exit_code == 1
    assert _invoke(home, "report", str(run_id)).exit_code == 1


def test_status_lists_runs(home) -> None:
    _invoke(home, "start", "acme", "alice", "2024")
    _invoke(home, "start", "acme", "bob", "2024")
    runs = json.loads(_invoke(home, "status").stdout)
    assert sorted(r["user_login"] for r in runs) == ["alice", "bob"]


def test_offline_run_without_history_produces_placeholder(home) -> None:
    result = _invoke(home, "run", "acme", "alice", "2024", "--offline")
    assert result.exit_code == 0
    report = json.loads(result.stdout)
    assert report["is_placeholder"] is True
    assert report["stats"]["total_commits"] == 0


def test_unknown_run(home) -> None:
    assert _invoke(home, "status", "42").exit_code == 1


def test_interim_before_units_exist(home) -> None:
    run_id = json.loads(_invoke(home, "start", "acme", "alice", "2024").stdout)["run_id"]
    assert _invoke(home, "interim", str(run_id)).exit_code == 1
    assert _invoke(home, "interim", "42").exit_code == 1
