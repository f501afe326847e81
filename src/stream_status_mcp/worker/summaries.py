"""Background recomputation of per-stream activity summaries."""

from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime, timezone
from typing import Callable, Sequence

from ..storage import CommitRecord, StreamRecord, StreamStore, StreamSummary
from .periodic import PeriodicTask

logger = logging.getLogger(__name__)

DEFAULT_SUMMARY_INTERVAL = 10.0
TOP_AUTHORS = 3


def build_summary(
    stream: StreamRecord,
    commits: Sequence[CommitRecord],
    now: datetime,
) -> StreamSummary:
    """Describe a stream's progress and recent activity in one line of text.

    ``commits`` is expected newest first.
    """

    parts = [f"{stream.progress}% complete"]
    if stream.current_phase is not None and stream.current_phase < len(stream.estimated_phases):
        parts.append(
            f"phase {stream.current_phase + 1}/{len(stream.estimated_phases)}: "
            f"{stream.estimated_phases[stream.current_phase]}"
        )
    elif stream.estimated_phases:
        parts.append(f"{len(stream.estimated_phases)} phases planned")

    last_commit_at = commits[0].timestamp if commits else None
    if commits:
        noun = "commit" if len(commits) == 1 else "commits"
        parts.append(f"{len(commits)} {noun}")
        parts.append(f"last: {commits[0].message.splitlines()[0][:80]}")
        authors = Counter(commit.author for commit in commits if commit.author)
        if authors:
            parts.append("by " + ", ".join(name for name, _ in authors.most_common(TOP_AUTHORS)))
    else:
        parts.append("no commits yet")

    return StreamSummary(
        stream_id=stream.id,
        summary="; ".join(parts),
        commit_count=len(commits),
        last_commit_at=last_commit_at,
        computed_at=now,
    )


class SummaryWorker:
    """Refresh the stored summary of every active stream on a fixed interval."""

    def __init__(
        self,
        store: StreamStore,
        interval: float = DEFAULT_SUMMARY_INTERVAL,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._task = PeriodicTask("stream-summaries", interval, self.refresh)

    @property
    def task(self) -> PeriodicTask:
        return self._task

    def start(self) -> None:
        self._task.start()

    async def stop(self) -> None:
        await self._task.stop()

    def refresh(self) -> int:
        """Recompute summaries now; returns how many were written."""

        now = self._clock()
        written = 0
        for stream in self._store.list(status="active"):
            commits = self._store.list_commits(stream.id)
            self._store.save_summary(build_summary(stream, commits, now))
            written += 1
        logger.debug("Refreshed stream summaries", extra={"count": written})
        return written


__all__ = ["DEFAULT_SUMMARY_INTERVAL", "SummaryWorker", "build_summary"]
