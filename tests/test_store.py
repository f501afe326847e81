from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from stream_status_mcp.storage import (
    CommitRecord,
    DuplicateStreamError,
    StreamNotFoundError,
    StreamRecord,
    StreamStore,
    StreamSummary,
)

NOW = datetime(2025, 3, 14, 12, 0, tzinfo=timezone.utc)


def _stream(stream_id: str, **overrides) -> StreamRecord:
    fields = dict(
        id=stream_id,
        number="0001",
        title=f"Stream {stream_id}",
        category="backend",
        priority="high",
        worktree_path=f"/tmp/worktrees/{stream_id}",
        branch=stream_id,
        created_at=NOW,
        updated_at=NOW,
    )
    fields.update(overrides)
    return StreamRecord(**fields)


def _commit(stream_id: str, commit_hash: str, *, when: datetime = NOW) -> CommitRecord:
    return CommitRecord(
        stream_id=stream_id,
        hash=commit_hash,
        message=f"commit {commit_hash}",
        author="Ada",
        files_changed=2,
        timestamp=when,
    )


def _store(tmp_path: Path) -> StreamStore:
    return StreamStore(tmp_path / "streams.db", clock=lambda: NOW)


def test_create_and_get_round_trip(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.create(_stream("S1", estimated_phases=["design", "build"], current_phase=1))

    loaded = store.get("S1")

    assert loaded.title == "Stream S1"
    assert loaded.status == "initializing"
    assert loaded.progress == 0
    assert loaded.estimated_phases == ["design", "build"]
    assert loaded.current_phase == 1
    assert loaded.created_at == NOW
    assert loaded.completed_at is None


def test_create_rejects_duplicate_id(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.create(_stream("S1"))

    with pytest.raises(DuplicateStreamError):
        store.create(_stream("S1"))


def test_get_unknown_stream_raises(tmp_path: Path) -> None:
    store = _store(tmp_path)

    with pytest.raises(StreamNotFoundError):
        store.get("missing")
    assert not store.exists("missing")


def test_list_preserves_creation_order_and_filters(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.create(_stream("zeta", category="frontend"))
    store.create(_stream("alpha", priority="low"))
    store.create(_stream("mid", category="frontend", priority="low"))

    assert [s.id for s in store.list()] == ["zeta", "alpha", "mid"]
    assert [s.id for s in store.list(category="frontend")] == ["zeta", "mid"]
    assert [s.id for s in store.list(category="frontend", priority="low")] == ["mid"]
    assert store.count_streams() == 3


def test_update_applies_only_given_fields_and_bumps_updated_at(tmp_path: Path) -> None:
    later = NOW + timedelta(hours=1)
    store = StreamStore(tmp_path / "streams.db", clock=lambda: later)
    store.create(_stream("S1"))

    updated = store.update("S1", progress=40)

    assert updated.progress == 40
    assert updated.status == "initializing"
    assert updated.updated_at == later


def test_update_rejects_unknown_columns(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.create(_stream("S1"))

    with pytest.raises(ValueError):
        store.update("S1", created_at=NOW)


def test_insert_commit_is_idempotent_per_stream(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.create(_stream("S1"))
    store.create(_stream("S2"))

    assert store.insert_commit(_commit("S1", "abc123")) is True
    assert store.insert_commit(_commit("S1", "abc123")) is False
    assert store.insert_commit(_commit("S2", "abc123")) is True

    assert store.count_commits("S1") == 1
    assert store.count_commits() == 2
    assert store.has_commit("S1", "abc123")


def test_insert_commit_for_unknown_stream_raises(tmp_path: Path) -> None:
    store = _store(tmp_path)

    with pytest.raises(StreamNotFoundError):
        store.insert_commit(_commit("ghost", "abc"))


def test_commits_are_returned_newest_first(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.create(_stream("S1"))
    store.create(_stream("S2"))
    store.insert_commit(_commit("S1", "old", when=NOW - timedelta(days=2)))
    store.insert_commit(_commit("S1", "new", when=NOW))
    store.insert_commit(_commit("S2", "mid", when=NOW - timedelta(days=1)))

    assert [c.hash for c in store.list_commits("S1")] == ["new", "old"]
    assert [c.hash for c in store.list_commits("S1", limit=1)] == ["new"]
    assert [c.hash for c in store.recent_commits(2)] == ["new", "mid"]

    latest = store.latest_commits()
    assert latest["S1"].hash == "new"
    assert latest["S2"].hash == "mid"


def test_history_and_summaries(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.create(_stream("S1"))
    store.add_history("S1", "status_changed", old_value="initializing", new_value="active")

    history = store.list_history("S1")
    assert [(e.event_type, e.old_value, e.new_value) for e in history] == [
        ("status_changed", "initializing", "active")
    ]

    store.save_summary(
        StreamSummary(stream_id="S1", summary="first", commit_count=0, last_commit_at=None, computed_at=NOW)
    )
    store.save_summary(
        StreamSummary(stream_id="S1", summary="second", commit_count=3, last_commit_at=NOW, computed_at=NOW)
    )
    summary = store.get_summary("S1")
    assert summary is not None
    assert summary.summary == "second"
    assert summary.commit_count == 3
    assert summary.last_commit_at == NOW
    assert store.get_summary("S2") is None


def test_quick_stats_counts_today_in_utc(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.create(_stream("A", status="active"))
    store.create(_stream("B", status="blocked", blocked_by="A"))
    store.create(_stream("C", status="paused"))
    store.create(_stream("D", status="completed", completed_at=NOW - timedelta(hours=2)))
    store.create(_stream("E", status="archived", completed_at=NOW - timedelta(days=3)))
    store.insert_commit(_commit("A", "today", when=NOW - timedelta(hours=1)))
    store.insert_commit(_commit("A", "yesterday", when=NOW - timedelta(days=1)))

    stats = store.quick_stats(NOW)

    assert stats.active_streams == 3
    assert stats.in_progress == 1
    assert stats.blocked == 1
    assert stats.ready_to_start == 1
    assert stats.completed_today == 1
    assert stats.total_commits == 2
    assert stats.commits_today == 1
    assert stats.to_dict()["activeStreams"] == 3


def test_nested_transactions_roll_back_together(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.create(_stream("S1"))

    with pytest.raises(RuntimeError):
        with store.transaction():
            store.update("S1", progress=10)
            with store.transaction():
                store.add_history("S1", "progress_changed", old_value="0", new_value="10")
            raise RuntimeError("abort")

    assert store.get("S1").progress == 0
    assert store.list_history("S1") == []


def test_concurrent_writers_do_not_lose_commits(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.create(_stream("S1"))

    def insert_range(offset: int) -> None:
        for index in range(25):
            store.insert_commit(_commit("S1", f"{offset}-{index}"))

    threads = [threading.Thread(target=insert_range, args=(n,)) for n in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert store.count_commits("S1") == 100


def test_store_is_shared_across_instances(tmp_path: Path) -> None:
    first = _store(tmp_path)
    second = _store(tmp_path)
    first.create(_stream("S1"))

    assert second.get("S1").id == "S1"
    first.close()
    second.close()
