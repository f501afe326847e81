"""Read-only comparison of tracked streams against the repository's worktrees."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from ..git import GitRunner
from ..storage import StreamRecord, StreamStore
from .commits import DEFAULT_BASE_BRANCH, MAIN_STREAM_ID, ScanError
from .worktrees import WorktreeInfo, list_worktrees

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ReconciliationEntry:
    stream_id: str
    title: str
    branch: str
    worktree_path: str
    status: str
    reason: str
    suggested_status: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "streamId": self.stream_id,
            "title": self.title,
            "branch": self.branch,
            "worktreePath": self.worktree_path,
            "status": self.status,
            "suggestedStatus": self.suggested_status,
            "reason": self.reason,
        }


@dataclass(slots=True)
class ReconciliationReport:
    """Streams grouped by what the repository says about them.

    ``active``: worktree present, branch not merged. ``completed``: branch
    merged into the base branch. ``stale``: no worktree on disk.
    ``orphaned``: worktrees no stream claims.
    """

    total_in_db: int = 0
    total_worktrees: int = 0
    active: list[ReconciliationEntry] = field(default_factory=list)
    completed: list[ReconciliationEntry] = field(default_factory=list)
    stale: list[ReconciliationEntry] = field(default_factory=list)
    orphaned: list[WorktreeInfo] = field(default_factory=list)
    errors: list[dict[str, str]] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "active": [entry.to_dict() for entry in self.active],
            "completed": [entry.to_dict() for entry in self.completed],
            "stale": [entry.to_dict() for entry in self.stale],
            "orphaned": [worktree.to_dict() for worktree in self.orphaned],
            "errors": list(self.errors),
            "summary": {
                "totalInDb": self.total_in_db,
                "totalWorktrees": self.total_worktrees,
                "active": len(self.active),
                "completed": len(self.completed),
                "stale": len(self.stale),
                "orphaned": len(self.orphaned),
                "errors": len(self.errors),
            },
        }


def parse_merged_branches(output: str, base_branch: str) -> set[str]:
    """Parse ``git branch --merged`` output, leaving out the base branch itself."""

    merged: set[str] = set()
    for line in output.splitlines():
        name = line.strip().lstrip("*+").strip()
        if name and name != base_branch and not name.startswith("("):
            merged.add(name)
    return merged


class WorktreeReconciler:
    """Classify non-archived streams as active, completed, or stale.

    A merged branch only counts as completed once the stream has recorded
    commits; a branch created from the base branch and never committed to is
    trivially "merged" and stays active.
    """

    def __init__(
        self,
        store: StreamStore,
        runner: GitRunner | None,
        project_root: Path,
        *,
        base_branch: str = DEFAULT_BASE_BRANCH,
    ) -> None:
        self._store = store
        self._runner = runner
        self._project_root = project_root
        self._base_branch = base_branch

    @property
    def base_branch(self) -> str:
        return self._base_branch

    async def worktrees(self) -> list[WorktreeInfo]:
        return await list_worktrees(self._require_runner(), self._project_root)

    async def merged_branches(self) -> set[str]:
        result = await self._require_runner().merged_branches(self._project_root, self._base_branch)
        if not result.ok:
            logger.warning(
                "git branch --merged failed",
                extra={"base_branch": self._base_branch, "stderr": result.stderr.strip()[:400]},
            )
            return set()
        return parse_merged_branches(result.stdout, self._base_branch)

    async def report(self) -> ReconciliationReport:
        worktrees = [info for info in await self.worktrees() if not info.is_main]
        merged = await self.merged_branches()
        streams = [
            stream
            for stream in self._store.list()
            if stream.status != "archived" and stream.id != MAIN_STREAM_ID
        ]

        report = ReconciliationReport(total_in_db=len(streams), total_worktrees=len(worktrees))
        by_name = {info.path.name: info for info in worktrees}
        by_branch = {info.branch: info for info in worktrees if info.branch}
        claimed: set[Path] = set()

        for stream in streams:
            worktree = by_name.get(stream.id) or by_branch.get(stream.branch)
            if worktree is not None:
                claimed.add(worktree.path)
            try:
                self._classify(stream, worktree, merged, report)
            except OSError as exc:
                report.errors.append({"streamId": stream.id, "error": str(exc)})

        report.orphaned = [info for info in worktrees if info.path not in claimed]
        logger.debug(
            "Reconciled streams against worktrees",
            extra={
                "active": len(report.active),
                "completed": len(report.completed),
                "stale": len(report.stale),
                "orphaned": len(report.orphaned),
            },
        )
        return report

    def _classify(
        self,
        stream: StreamRecord,
        worktree: WorktreeInfo | None,
        merged: set[str],
        report: ReconciliationReport,
    ) -> None:
        def entry(reason: str, suggested: str | None) -> ReconciliationEntry:
            return ReconciliationEntry(
                stream_id=stream.id,
                title=stream.title,
                branch=stream.branch,
                worktree_path=stream.worktree_path,
                status=stream.status,
                reason=reason,
                suggested_status=suggested if suggested != stream.status else None,
            )

        if stream.branch in merged and self._store.count_commits(stream.id) > 0:
            report.completed.append(entry(f"Branch merged into {self._base_branch}", "completed"))
        elif worktree is None and not Path(stream.worktree_path).expanduser().is_dir():
            report.stale.append(entry("Worktree does not exist", "archived"))
        else:
            report.active.append(entry("Worktree exists and branch not merged", None))

    def _require_runner(self) -> GitRunner:
        if self._runner is None:
            raise ScanError("git executable not available; reconciliation is disabled")
        return self._runner


__all__ = [
    "ReconciliationEntry",
    "ReconciliationReport",
    "WorktreeReconciler",
    "parse_merged_branches",
]
