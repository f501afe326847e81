"""Stream state machine and field invariants layered over the store."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Iterable

from ..storage import (
    CATEGORIES,
    PRIORITIES,
    STATUSES,
    CommitRecord,
    DuplicateStreamError,
    StreamNotFoundError,
    StreamRecord,
    StreamStore,
)
from .errors import (
    BlockedWithoutBlockerError,
    BlockerCycleError,
    DuplicateStreamIdError,
    InvalidFieldError,
    InvalidStatusError,
    InvalidTransitionError,
    PhaseOutOfRangeError,
    ProgressOutOfRangeError,
    StreamArchivedError,
    UnknownBlockerError,
    UnknownStreamError,
)

logger = logging.getLogger(__name__)

TRANSITIONS: dict[str, frozenset[str]] = {
    "initializing": frozenset({"active", "archived"}),
    "active": frozenset({"blocked", "paused", "completed", "archived"}),
    "blocked": frozenset({"active", "archived"}),
    "paused": frozenset({"active", "archived"}),
    "completed": frozenset({"archived"}),
    "archived": frozenset(),
}

DEFAULT_COMPLETION_SUMMARY = "Stream archived"


def can_transition(current: str, requested: str) -> bool:
    """Return whether ``current -> requested`` is a legal status change."""

    return requested in TRANSITIONS.get(current, frozenset())


@dataclass(slots=True)
class StreamUpdate:
    """A stream as read and as written within one update transaction."""

    previous: StreamRecord
    stream: StreamRecord

    @property
    def previous_status(self) -> str:
        return self.previous.status


class StreamLifecycle:
    """Enforce the stream state machine on top of a :class:`StreamStore`.

    ``blocked_by`` only lives alongside ``status == "blocked"``: leaving the
    blocked state clears it, and naming a blocker for any other resulting
    status is rejected.
    """

    def __init__(
        self,
        store: StreamStore,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def store(self) -> StreamStore:
        return self._store

    def get_stream(self, stream_id: str) -> StreamRecord:
        try:
            return self._store.get(stream_id)
        except StreamNotFoundError as exc:
            raise UnknownStreamError(stream_id) from exc

    def list_streams(self, **filters: str | None) -> list[StreamRecord]:
        return self._store.list(**filters)

    def create_stream(
        self,
        *,
        stream_id: str,
        number: str,
        title: str,
        category: str,
        priority: str,
        worktree_path: str,
        branch: str,
        estimated_phases: Iterable[str] | None = None,
        status: str = "initializing",
        blocked_by: str | None = None,
    ) -> StreamRecord:
        for name, value in (
            ("stream_id", stream_id),
            ("stream_number", number),
            ("title", title),
            ("worktree_path", worktree_path),
            ("branch", branch),
        ):
            if not isinstance(value, str) or not value.strip():
                raise InvalidFieldError(f"{name} is required")
        if category not in CATEGORIES:
            raise InvalidFieldError(f"Invalid category '{category}'. Must be one of {list(CATEGORIES)}")
        if priority not in PRIORITIES:
            raise InvalidFieldError(f"Invalid priority '{priority}'. Must be one of {list(PRIORITIES)}")
        self._check_status(status)
        phases = [str(phase) for phase in (estimated_phases or [])]

        now = self._clock()
        with self._store.transaction():
            if status == "blocked":
                if not blocked_by:
                    raise BlockedWithoutBlockerError("A blocked stream requires blocked_by")
                self._check_blocker(stream_id.strip(), blocked_by)
            elif blocked_by:
                raise InvalidFieldError("blocked_by can only be set on a blocked stream")

            record = StreamRecord(
                id=stream_id.strip(),
                number=number.strip(),
                title=title.strip(),
                category=category,
                priority=priority,
                worktree_path=worktree_path,
                branch=branch.strip(),
                created_at=now,
                updated_at=now,
                status=status,
                estimated_phases=phases,
                blocked_by=blocked_by if status == "blocked" else None,
                completed_at=now if status in {"completed", "archived"} else None,
            )
            try:
                self._store.create(record)
            except DuplicateStreamError as exc:
                raise DuplicateStreamIdError(record.id) from exc
            self._store.add_history(record.id, "created", new_value=status)

        logger.info("Stream created", extra={"stream_id": record.id, "status": status})
        return record

    def update_stream(
        self,
        stream_id: str,
        *,
        status: str | None = None,
        progress: int | None = None,
        current_phase: int | None = None,
        blocked_by: str | None = None,
    ) -> StreamRecord:
        """Validate every supplied field, then apply them together."""

        return self.apply_update(
            stream_id,
            status=status,
            progress=progress,
            current_phase=current_phase,
            blocked_by=blocked_by,
        ).stream

    def apply_update(
        self,
        stream_id: str,
        *,
        status: str | None = None,
        progress: int | None = None,
        current_phase: int | None = None,
        blocked_by: str | None = None,
    ) -> StreamUpdate:
        """Like :meth:`update_stream`, also returning the record it replaced."""

        with self._store.transaction():
            stream = self.get_stream(stream_id)
            if stream.status == "archived":
                raise StreamArchivedError(stream_id)

            changes: dict[str, object] = {}

            target_status = stream.status
            if status is not None:
                self._check_status(status)
                if status != stream.status and not can_transition(stream.status, status):
                    raise InvalidTransitionError(stream.status, status)
                target_status = status

            if progress is not None:
                if isinstance(progress, bool) or not isinstance(progress, int):
                    raise InvalidFieldError("progress must be an integer")
                if not 0 <= progress <= 100:
                    raise ProgressOutOfRangeError(progress)
                changes["progress"] = progress

            if current_phase is not None:
                if isinstance(current_phase, bool) or not isinstance(current_phase, int):
                    raise InvalidFieldError("current_phase must be an integer")
                if not 0 <= current_phase < len(stream.estimated_phases):
                    raise PhaseOutOfRangeError(
                        f"current_phase {current_phase} is not a valid index into "
                        f"{len(stream.estimated_phases)} estimated phases"
                    )
                changes["current_phase"] = current_phase

            if target_status == "blocked":
                blocker = blocked_by if blocked_by is not None else stream.blocked_by
                if not blocker:
                    raise BlockedWithoutBlockerError(
                        f"Stream '{stream_id}' cannot be blocked without blocked_by"
                    )
                if blocker != stream.blocked_by:
                    self._check_blocker(stream_id, blocker)
                    changes["blocked_by"] = blocker
            else:
                if blocked_by:
                    raise InvalidFieldError(
                        "blocked_by can only be set when the resulting status is 'blocked'"
                    )
                if stream.blocked_by is not None:
                    changes["blocked_by"] = None

            if target_status != stream.status:
                changes["status"] = target_status
                if target_status in {"completed", "archived"} and stream.completed_at is None:
                    changes["completed_at"] = self._clock()

            if not changes:
                return StreamUpdate(previous=stream, stream=stream)

            updated = self._store.update(stream_id, **changes)
            if "status" in changes:
                self._store.add_history(
                    stream_id, "status_changed", old_value=stream.status, new_value=target_status
                )
            if "progress" in changes and changes["progress"] != stream.progress:
                self._store.add_history(
                    stream_id,
                    "progress_changed",
                    old_value=str(stream.progress),
                    new_value=str(changes["progress"]),
                )

        logger.info(
            "Stream updated",
            extra={"stream_id": stream_id, "fields": sorted(changes)},
        )
        return StreamUpdate(previous=stream, stream=updated)

    def archive_stream(self, stream_id: str, completion_summary: str | None = None) -> StreamRecord:
        summary = (completion_summary or "").strip() or DEFAULT_COMPLETION_SUMMARY
        with self._store.transaction():
            stream = self.get_stream(stream_id)
            if stream.status == "archived":
                raise StreamArchivedError(stream_id)
            changes: dict[str, object] = {
                "status": "archived",
                "completion_summary": summary,
                "blocked_by": None,
            }
            if stream.completed_at is None:
                changes["completed_at"] = self._clock()
            updated = self._store.update(stream_id, **changes)
            self._store.add_history(stream_id, "archived", old_value=stream.status, new_value=summary)

        logger.info("Stream archived", extra={"stream_id": stream_id, "previous_status": stream.status})
        return updated

    def record_commit(
        self,
        *,
        stream_id: str,
        commit_hash: str,
        message: str,
        author: str,
        files_changed: int,
        timestamp: datetime | None = None,
    ) -> tuple[CommitRecord, bool]:
        """Attribute a commit to a stream; the flag is ``False`` for a duplicate hash."""

        for name, value in (("commit_hash", commit_hash), ("message", message), ("author", author)):
            if not isinstance(value, str) or not value.strip():
                raise InvalidFieldError(f"{name} is required")
        if isinstance(files_changed, bool) or not isinstance(files_changed, int) or files_changed < 0:
            raise InvalidFieldError("files_changed must be a non-negative integer")

        commit = CommitRecord(
            stream_id=stream_id,
            hash=commit_hash.strip(),
            message=message.strip(),
            author=author.strip(),
            files_changed=files_changed,
            timestamp=timestamp or self._clock(),
        )
        with self._store.transaction():
            stream = self.get_stream(stream_id)
            if stream.status == "archived":
                raise StreamArchivedError(stream_id)
            added = self._store.insert_commit(commit)
            if added:
                self._store.touch(stream_id)
        return commit, added

    def _check_status(self, status: str) -> None:
        if status not in STATUSES:
            raise InvalidStatusError(f"Invalid status '{status}'. Must be one of {list(STATUSES)}")

    def _check_blocker(self, stream_id: str, blocker_id: str) -> None:
        if blocker_id == stream_id:
            raise BlockerCycleError(f"Stream '{stream_id}' cannot block itself")
        try:
            blocker = self._store.get(blocker_id)
        except StreamNotFoundError as exc:
            raise UnknownBlockerError(f"Blocking stream not found: {blocker_id}") from exc
        if blocker.status == "archived":
            raise UnknownBlockerError(f"Blocking stream '{blocker_id}' is archived")

        seen = {blocker_id}
        cursor = blocker.blocked_by
        while cursor:
            if cursor == stream_id:
                raise BlockerCycleError(
                    f"Blocking '{stream_id}' on '{blocker_id}' would create a dependency cycle"
                )
            if cursor in seen:
                break
            seen.add(cursor)
            try:
                cursor = self._store.get(cursor).blocked_by
            except StreamNotFoundError:
                break


__all__ = [
    "DEFAULT_COMPLETION_SUMMARY",
    "StreamLifecycle",
    "StreamUpdate",
    "TRANSITIONS",
    "can_transition",
]
