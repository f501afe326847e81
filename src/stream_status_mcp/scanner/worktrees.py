"""Discovery of git worktrees attached to the project repository."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from ..git import GitRunner

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class WorktreeInfo:
    path: Path
    branch: str | None
    head: str | None
    is_main: bool = False

    def to_dict(self) -> dict[str, object]:
        return {
            "path": str(self.path),
            "branch": self.branch,
            "commitHash": self.head,
            "isMain": self.is_main,
        }


def parse_worktree_list(output: str) -> list[WorktreeInfo]:
    """Parse ``git worktree list --porcelain`` output.

    The first entry git reports is the main worktree.
    """

    worktrees: list[WorktreeInfo] = []
    current: dict[str, str] = {}

    def flush() -> None:
        if "worktree" in current:
            branch = current.get("branch")
            if branch and branch.startswith("refs/heads/"):
                branch = branch[len("refs/heads/"):]
            worktrees.append(
                WorktreeInfo(
                    path=Path(current["worktree"]),
                    branch=branch,
                    head=current.get("HEAD"),
                    is_main=not worktrees,
                )
            )
        current.clear()

    for line in output.splitlines():
        if not line.strip():
            flush()
            continue
        key, _, value = line.partition(" ")
        current[key] = value.strip()
    flush()
    return worktrees


async def list_worktrees(runner: GitRunner, project_root: Path) -> list[WorktreeInfo]:
    """Return every worktree of the project repository, main worktree first.

    Returns an empty list when the project is not a git repository.
    """

    result = await runner.worktree_list(project_root)
    if not result.ok:
        logger.warning(
            "git worktree list failed",
            extra={"project_root": str(project_root), "stderr": result.stderr.strip()[:400]},
        )
        return []
    return parse_worktree_list(result.stdout)


async def discover_worktrees(runner: GitRunner, project_root: Path) -> dict[str, WorktreeInfo]:
    """Map worktree directory names and branch names to worktrees.

    Returns an empty mapping when the project is not a git repository.
    """

    mapping: dict[str, WorktreeInfo] = {}
    for info in await list_worktrees(runner, project_root):
        if info.is_main:
            continue
        mapping.setdefault(info.path.name, info)
        if info.branch:
            mapping.setdefault(info.branch, info)
    return mapping


__all__ = ["WorktreeInfo", "discover_worktrees", "list_worktrees", "parse_worktree_list"]
