from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

import pytest

from stream_status_mcp.storage import StreamStore
from stream_status_mcp.streams import (
    BlockedWithoutBlockerError,
    BlockerCycleError,
    DuplicateStreamIdError,
    InvalidFieldError,
    InvalidStatusError,
    InvalidTransitionError,
    PhaseOutOfRangeError,
    ProgressOutOfRangeError,
    StreamArchivedError,
    StreamLifecycle,
    UnknownBlockerError,
    UnknownStreamError,
    can_transition,
)

NOW = datetime(2025, 3, 14, 12, 0, tzinfo=timezone.utc)


def _lifecycle(tmp_path: Path) -> StreamLifecycle:
    store = StreamStore(tmp_path / "streams.db", clock=lambda: NOW)
    return StreamLifecycle(store, clock=lambda: NOW)


def _create(lifecycle: StreamLifecycle, stream_id: str, **overrides):
    fields = dict(
        stream_id=stream_id,
        number="0001",
        title=f"Stream {stream_id}",
        category="backend",
        priority="high",
        worktree_path=f"/tmp/worktrees/{stream_id}",
        branch=stream_id,
    )
    fields.update(overrides)
    return lifecycle.create_stream(**fields)


def _activate(lifecycle: StreamLifecycle, stream_id: str) -> None:
    _create(lifecycle, stream_id)
    lifecycle.update_stream(stream_id, status="active")


def test_transition_table() -> None:
    assert can_transition("initializing", "active")
    assert can_transition("active", "blocked")
    assert can_transition("blocked", "active")
    assert can_transition("completed", "archived")
    assert not can_transition("initializing", "completed")
    assert not can_transition("completed", "active")
    assert not can_transition("archived", "active")


def test_create_defaults_to_initializing_and_records_history(tmp_path: Path) -> None:
    lifecycle = _lifecycle(tmp_path)

    stream = _create(lifecycle, "S1", estimated_phases=["design", "build"])

    assert stream.status == "initializing"
    assert stream.progress == 0
    assert stream.created_at == NOW
    history = lifecycle.store.list_history("S1")
    assert [event.event_type for event in history] == ["created"]


@pytest.mark.parametrize(
    "overrides",
    [
        {"category": "ops"},
        {"priority": "urgent"},
        {"title": "  "},
        {"worktree_path": ""},
    ],
)
def test_create_rejects_invalid_fields(tmp_path: Path, overrides) -> None:
    lifecycle = _lifecycle(tmp_path)

    with pytest.raises(InvalidFieldError):
        _create(lifecycle, "S1", **overrides)
    assert lifecycle.store.count_streams() == 0


def test_create_duplicate_id_is_reported(tmp_path: Path) -> None:
    lifecycle = _lifecycle(tmp_path)
    _create(lifecycle, "S1")

    with pytest.raises(DuplicateStreamIdError) as excinfo:
        _create(lifecycle, "S1")
    assert excinfo.value.code == "DuplicateStream"


def test_update_status_and_progress(tmp_path: Path) -> None:
    lifecycle = _lifecycle(tmp_path)
    _create(lifecycle, "S1")

    updated = lifecycle.update_stream("S1", status="active", progress=40)

    assert updated.status == "active"
    assert updated.progress == 40
    events = [(e.event_type, e.old_value, e.new_value) for e in lifecycle.store.list_history("S1")]
    assert ("status_changed", "initializing", "active") in events
    assert ("progress_changed", "0", "40") in events


def test_apply_update_returns_the_replaced_record(tmp_path: Path) -> None:
    lifecycle = _lifecycle(tmp_path)
    _create(lifecycle, "S1")

    first = lifecycle.apply_update("S1", status="active", progress=10)
    second = lifecycle.apply_update("S1", status="paused")
    unchanged = lifecycle.apply_update("S1", status="paused")

    assert (first.previous_status, first.stream.status) == ("initializing", "active")
    assert first.previous.progress == 0
    assert (second.previous_status, second.stream.status) == ("active", "paused")
    assert second.previous.progress == 10
    assert unchanged.previous == unchanged.stream
    assert unchanged.previous_status == "paused"


@pytest.mark.parametrize("value", [-1, 101, 150])
def test_progress_outside_range_is_rejected_not_clamped(tmp_path: Path, value: int) -> None:
    lifecycle = _lifecycle(tmp_path)
    _activate(lifecycle, "S1")
    lifecycle.update_stream("S1", progress=30)

    with pytest.raises(ProgressOutOfRangeError):
        lifecycle.update_stream("S1", progress=value)
    assert lifecycle.get_stream("S1").progress == 30


def test_progress_bounds_are_inclusive(tmp_path: Path) -> None:
    lifecycle = _lifecycle(tmp_path)
    _activate(lifecycle, "S1")

    assert lifecycle.update_stream("S1", progress=0).progress == 0
    assert lifecycle.update_stream("S1", progress=100).progress == 100


def test_illegal_transition_is_rejected(tmp_path: Path) -> None:
    lifecycle = _lifecycle(tmp_path)
    _create(lifecycle, "S1")

    with pytest.raises(InvalidTransitionError):
        lifecycle.update_stream("S1", status="completed")


def test_unknown_status_is_rejected(tmp_path: Path) -> None:
    lifecycle = _lifecycle(tmp_path)
    _create(lifecycle, "S1")

    with pytest.raises(InvalidStatusError):
        lifecycle.update_stream("S1", status="done")


def test_rejected_update_applies_nothing(tmp_path: Path) -> None:
    lifecycle = _lifecycle(tmp_path)
    _activate(lifecycle, "S1")

    with pytest.raises(ProgressOutOfRangeError):
        lifecycle.update_stream("S1", status="paused", progress=500)

    stream = lifecycle.get_stream("S1")
    assert stream.status == "active"
    assert stream.progress == 0


def test_blocked_requires_blocker(tmp_path: Path) -> None:
    lifecycle = _lifecycle(tmp_path)
    _activate(lifecycle, "S1")

    with pytest.raises(BlockedWithoutBlockerError):
        lifecycle.update_stream("S1", status="blocked")


def test_blocker_must_exist(tmp_path: Path) -> None:
    lifecycle = _lifecycle(tmp_path)
    _activate(lifecycle, "S1")

    with pytest.raises(UnknownBlockerError):
        lifecycle.update_stream("S1", status="blocked", blocked_by="ghost")


def test_blocker_cycles_are_rejected(tmp_path: Path) -> None:
    lifecycle = _lifecycle(tmp_path)
    _activate(lifecycle, "A")
    _activate(lifecycle, "B")

    with pytest.raises(BlockerCycleError):
        lifecycle.update_stream("A", status="blocked", blocked_by="A")

    lifecycle.update_stream("A", status="blocked", blocked_by="B")
    with pytest.raises(BlockerCycleError):
        lifecycle.update_stream("B", status="blocked", blocked_by="A")


def test_leaving_blocked_clears_blocker(tmp_path: Path) -> None:
    lifecycle = _lifecycle(tmp_path)
    _activate(lifecycle, "A")
    _activate(lifecycle, "B")
    lifecycle.update_stream("A", status="blocked", blocked_by="B")

    assert lifecycle.get_stream("A").blocked_by == "B"
    resumed = lifecycle.update_stream("A", status="active")

    assert resumed.status == "active"
    assert resumed.blocked_by is None


def test_blocker_on_non_blocked_status_is_rejected(tmp_path: Path) -> None:
    lifecycle = _lifecycle(tmp_path)
    _activate(lifecycle, "A")
    _activate(lifecycle, "B")

    with pytest.raises(InvalidFieldError):
        lifecycle.update_stream("A", blocked_by="B")


def test_current_phase_must_index_estimated_phases(tmp_path: Path) -> None:
    lifecycle = _lifecycle(tmp_path)
    _create(lifecycle, "S1", estimated_phases=["design", "build", "ship"])

    assert lifecycle.update_stream("S1", current_phase=2).current_phase == 2
    with pytest.raises(PhaseOutOfRangeError):
        lifecycle.update_stream("S1", current_phase=3)


def test_completed_sets_completed_at(tmp_path: Path) -> None:
    lifecycle = _lifecycle(tmp_path)
    _activate(lifecycle, "S1")

    completed = lifecycle.update_stream("S1", status="completed", progress=100)

    assert completed.completed_at == NOW


def test_archive_is_terminal(tmp_path: Path) -> None:
    lifecycle = _lifecycle(tmp_path)
    _activate(lifecycle, "S1")

    archived = lifecycle.archive_stream("S1", "Shipped the API")

    assert archived.status == "archived"
    assert archived.completion_summary == "Shipped the API"
    assert archived.completed_at == NOW
    with pytest.raises(StreamArchivedError):
        lifecycle.update_stream("S1", progress=50)
    with pytest.raises(StreamArchivedError):
        lifecycle.archive_stream("S1")
    with pytest.raises(StreamArchivedError):
        lifecycle.record_commit(
            stream_id="S1", commit_hash="abc", message="late", author="Ada", files_changed=1
        )


def test_archive_without_summary_uses_default(tmp_path: Path) -> None:
    lifecycle = _lifecycle(tmp_path)
    _create(lifecycle, "S1")

    assert lifecycle.archive_stream("S1").completion_summary == "Stream archived"


def test_record_commit_dedupes_and_touches_stream(tmp_path: Path) -> None:
    lifecycle = _lifecycle(tmp_path)
    _activate(lifecycle, "S1")

    _, added = lifecycle.record_commit(
        stream_id="S1", commit_hash="abc", message="first", author="Ada", files_changed=3
    )
    _, again = lifecycle.record_commit(
        stream_id="S1", commit_hash="abc", message="first", author="Ada", files_changed=3
    )

    assert added is True
    assert again is False
    assert lifecycle.store.count_commits("S1") == 1


def test_record_commit_for_unknown_stream(tmp_path: Path) -> None:
    lifecycle = _lifecycle(tmp_path)

    with pytest.raises(UnknownStreamError) as excinfo:
        lifecycle.record_commit(
            stream_id="ghost", commit_hash="abc", message="m", author="Ada", files_changed=0
        )
    assert excinfo.value.code == "StreamNotFound"


def test_record_commit_validates_fields(tmp_path: Path) -> None:
    lifecycle = _lifecycle(tmp_path)
    _activate(lifecycle, "S1")

    with pytest.raises(InvalidFieldError):
        lifecycle.record_commit(
            stream_id="S1", commit_hash="abc", message="m", author="Ada", files_changed=-1
        )
