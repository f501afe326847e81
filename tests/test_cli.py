from __future__ import annotations

import importlib.util
import json
import os
import subprocess
import sys
from datetime import datetime, timezone
from pathlib import Path

import argparse
import pytest

from stream_status_mcp.storage import StreamStore
from stream_status_mcp.streams import StreamLifecycle

NOW = datetime(2025, 3, 14, 12, 0, tzinfo=timezone.utc)


def _load_diag(module_name: str):
    module_path = Path(__file__).resolve().parents[1] / "scripts" / "stream_status_diag.py"
    spec = importlib.util.spec_from_file_location(module_name, module_path)
    assert spec and spec.loader
    diag = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(diag)
    return diag


def _seeded_store(tmp_path: Path) -> StreamStore:
    store = StreamStore(tmp_path / "streams.db", clock=lambda: NOW)
    lifecycle = StreamLifecycle(store, clock=lambda: NOW)
    for stream_id in ("S1", "S2"):
        lifecycle.create_stream(
            stream_id=stream_id,
            number=stream_id[1:].zfill(4),
            title=f"Stream {stream_id}",
            category="backend",
            priority="high",
            worktree_path=str(tmp_path / stream_id),
            branch=stream_id,
        )
    lifecycle.update_stream("S1", status="active", progress=30)
    lifecycle.update_stream("S2", status="active")
    lifecycle.update_stream("S2", status="blocked", blocked_by="S1")
    lifecycle.record_commit(
        stream_id="S1", commit_hash="0123456789abcdef", message="Wire API", author="Ada", files_changed=2, timestamp=NOW
    )
    return store


def test_diagnostics_cli_reports_missing_database(tmp_path: Path) -> None:
    repo_root = Path(__file__).resolve().parents[1]
    script = repo_root / "scripts" / "stream_status_diag.py"
    env = os.environ.copy()
    env["PYTHONPATH"] = f"{repo_root / 'src'}" + os.pathsep + env.get("PYTHONPATH", "")
    env["PROJECT_ROOT"] = str(tmp_path)
    env["DATABASE_PATH"] = str(tmp_path / "missing" / "streams.db")
    process = subprocess.run(
        [sys.executable, str(script), "streams"],
        cwd=str(repo_root),
        capture_output=True,
        text=True,
        env=env,
    )
    assert process.returncode == 1
    assert "Database unavailable" in process.stdout


def test_streams_lists_text_and_json(tmp_path: Path, monkeypatch, capsys) -> None:
    store = _seeded_store(tmp_path)
    diag = _load_diag("stream_status_diag_streams_module")
    monkeypatch.setattr(diag, "load_store", lambda _settings: store)

    diag.cmd_streams(argparse.Namespace(status=None, json=False))
    lines = capsys.readouterr().out.splitlines()
    assert lines == [
        "S1 [active] 30% Stream S1",
        "S2 [blocked] 0% Stream S2 (blocked by S1)",
    ]

    diag.cmd_streams(argparse.Namespace(status="blocked", json=True))
    payload = json.loads(capsys.readouterr().out)
    assert [stream["id"] for stream in payload] == ["S2"]
    assert payload[0]["blockedBy"] == "S1"


def test_commits_and_stats(tmp_path: Path, monkeypatch, capsys) -> None:
    store = _seeded_store(tmp_path)
    diag = _load_diag("stream_status_diag_commits_module")
    monkeypatch.setattr(diag, "load_store", lambda _settings: store)

    diag.cmd_commits(argparse.Namespace(stream_id="S1", limit=5))
    output = capsys.readouterr().out
    assert "S1 0123456789 Ada: Wire API" in output

    diag.cmd_stats(argparse.Namespace())
    stats = json.loads(capsys.readouterr().out)
    assert stats["totalStreams"] == 2
    assert stats["totalCommits"] == 1
    assert stats["blocked"] == 1


def test_lock_reports_holder(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys) -> None:
    lock_path = tmp_path / ".api-server.lock"
    monkeypatch.setenv("PROJECT_ROOT", str(tmp_path))
    monkeypatch.setenv("LOCK_FILE_PATH", str(lock_path))
    diag = _load_diag("stream_status_diag_lock_module")

    diag.cmd_lock(argparse.Namespace())
    assert "No dashboard lock" in capsys.readouterr().out

    lock_path.write_text(json.dumps({"pid": os.getpid(), "port": 4321}), encoding="utf-8")
    diag.cmd_lock(argparse.Namespace())
    payload = json.loads(capsys.readouterr().out)
    assert payload["port"] == 4321
    assert payload["alive"] is True
    assert payload["lockPath"] == str(lock_path)


def test_main_without_command_prints_help(capsys) -> None:
    diag = _load_diag("stream_status_diag_help_module")

    diag.main([])

    assert "Stream status diagnostics" in capsys.readouterr().out
