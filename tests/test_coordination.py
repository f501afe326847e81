from __future__ import annotations

import json
import os
import socket
from pathlib import Path

import pytest

from stream_status_mcp.coordination import (
    CoordinationError,
    Discovered,
    Hosting,
    LockFileCoordinator,
    pid_alive,
    read_lock_record,
)

DEAD_PID = 99_999_999


def _coordinator(tmp_path: Path, **kwargs) -> LockFileCoordinator:
    return LockFileCoordinator(tmp_path / "locks" / ".api-server.lock", tmp_path / "project", **kwargs)


def test_pid_alive() -> None:
    assert pid_alive(os.getpid())
    assert not pid_alive(DEAD_PID)
    assert not pid_alive(0)


def test_first_caller_hosts_on_ephemeral_port(tmp_path: Path) -> None:
    coordinator = _coordinator(tmp_path)

    outcome = coordinator.try_acquire()
    try:
        assert isinstance(outcome, Hosting)
        assert outcome.port > 0
        assert outcome.socket.getsockname()[1] == outcome.port
        record = read_lock_record(coordinator.lock_path)
        assert record is not None
        assert record.pid == os.getpid()
        assert record.port == outcome.port
        assert record.project_name == "project"
    finally:
        outcome.socket.close()
        coordinator.release()

    assert not coordinator.lock_path.exists()


def test_second_caller_discovers_first(tmp_path: Path) -> None:
    first = _coordinator(tmp_path)
    second = _coordinator(tmp_path)

    hosting = first.try_acquire()
    try:
        discovered = second.try_acquire()
        assert isinstance(hosting, Hosting)
        assert discovered == Discovered(pid=os.getpid(), port=hosting.port)
        assert not second.is_hosting
    finally:
        hosting.socket.close()
        first.release()


def test_stale_lock_is_reclaimed(tmp_path: Path) -> None:
    coordinator = _coordinator(tmp_path)
    coordinator.lock_path.parent.mkdir(parents=True)
    coordinator.lock_path.write_text(json.dumps({"pid": DEAD_PID, "port": 1}), encoding="utf-8")

    outcome = coordinator.try_acquire()
    try:
        assert isinstance(outcome, Hosting)
        record = read_lock_record(coordinator.lock_path)
        assert record is not None
        assert record.pid == os.getpid()
        assert record.port == outcome.port
    finally:
        outcome.socket.close()
        coordinator.release()


def test_corrupt_lock_is_treated_as_stale(tmp_path: Path) -> None:
    coordinator = _coordinator(tmp_path)
    coordinator.lock_path.parent.mkdir(parents=True)
    coordinator.lock_path.write_text("{not json", encoding="utf-8")

    outcome = coordinator.try_acquire()
    try:
        assert isinstance(outcome, Hosting)
    finally:
        outcome.socket.close()
        coordinator.release()


def test_release_leaves_foreign_lock_alone(tmp_path: Path) -> None:
    coordinator = _coordinator(tmp_path)
    outcome = coordinator.try_acquire()
    outcome.socket.close()
    coordinator.lock_path.write_text(json.dumps({"pid": 1, "port": 4242}), encoding="utf-8")

    coordinator.release()

    assert coordinator.lock_path.exists()


def test_release_without_hosting_is_a_no_op(tmp_path: Path) -> None:
    coordinator = _coordinator(tmp_path)

    coordinator.release()

    assert not coordinator.lock_path.exists()


def _held_port() -> socket.socket:
    holder = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    holder.bind(("127.0.0.1", 0))
    holder.listen(1)
    return holder


def test_configured_port_held_without_lock_owner_raises(tmp_path: Path) -> None:
    holder = _held_port()
    port = holder.getsockname()[1]
    waits: list[float] = []
    try:
        with pytest.raises(CoordinationError):
            _coordinator(tmp_path, bind_retry_attempts=3, sleep=waits.append).try_acquire(port)
    finally:
        holder.close()

    assert len(waits) == 2
    assert not (tmp_path / "locks" / ".api-server.lock").exists()


def test_configured_port_race_discovers_late_lock_owner(tmp_path: Path) -> None:
    holder = _held_port()
    port = holder.getsockname()[1]
    lock_path = tmp_path / "locks" / ".api-server.lock"
    lock_path.parent.mkdir(parents=True)
    owner = os.getppid()

    def publish_after_first_wait(_delay: float) -> None:
        lock_path.write_text(json.dumps({"pid": owner, "port": port}), encoding="utf-8")

    coordinator = _coordinator(tmp_path, sleep=publish_after_first_wait)
    try:
        outcome = coordinator.try_acquire(port)
    finally:
        holder.close()

    assert outcome == Discovered(pid=owner, port=port)
    assert not coordinator.is_hosting


def test_stale_reclaim_leaves_no_side_files(tmp_path: Path) -> None:
    coordinator = _coordinator(tmp_path)
    coordinator.lock_path.parent.mkdir(parents=True)
    coordinator.lock_path.write_text(json.dumps({"pid": DEAD_PID, "port": 1}), encoding="utf-8")

    outcome = coordinator.try_acquire()
    try:
        assert isinstance(outcome, Hosting)
        assert sorted(p.name for p in coordinator.lock_path.parent.iterdir()) == [".api-server.lock"]
    finally:
        outcome.socket.close()
        coordinator.release()


def test_stale_reclaim_restores_a_record_published_meanwhile(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    coordinator = _coordinator(tmp_path)
    coordinator.lock_path.parent.mkdir(parents=True)
    live = json.dumps({"pid": os.getppid(), "port": 4242})
    stale = json.dumps({"pid": DEAD_PID, "port": 1})
    # the lock looks stale at the first check, then a live process replaces it
    coordinator.lock_path.write_text(stale, encoding="utf-8")
    reads = iter([stale])

    def read_raw() -> str | None:
        value = next(reads, None)
        if value is not None:
            coordinator.lock_path.write_text(live, encoding="utf-8")
            return value
        return coordinator.lock_path.read_text(encoding="utf-8")

    monkeypatch.setattr(coordinator, "_read_raw", read_raw)

    outcome = coordinator.try_acquire()

    assert outcome == Discovered(pid=os.getppid(), port=4242)
    assert coordinator.lock_path.read_text(encoding="utf-8") == live
    assert sorted(p.name for p in coordinator.lock_path.parent.iterdir()) == [".api-server.lock"]
