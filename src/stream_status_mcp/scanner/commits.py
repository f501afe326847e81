"""Incremental ingestion of worktree commit history into the store."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable

from ..git import GitRunner
from ..storage import (
    CommitRecord,
    DuplicateStreamError,
    StreamNotFoundError,
    StreamRecord,
    StreamStore,
)
from .log_parser import CommitLogParser, NumstatLogParser, ParsedCommit

logger = logging.getLogger(__name__)

DEFAULT_MAX_COMMITS = 50
DEFAULT_LOOKBACK_DAYS = 7
DEFAULT_BASE_BRANCH = "main"
MAIN_STREAM_ID = "main"
MAIN_BRANCH_MAX_COMMITS = 20


class ScanError(RuntimeError):
    """Raised when a single stream's worktree cannot be scanned."""

    code = "ScanFailed"


@dataclass(slots=True)
class StreamScanResult:
    stream_id: str
    commits_found: int
    commits_added: int

    def as_dict(self) -> dict[str, int | str]:
        return {
            "streamId": self.stream_id,
            "commitsFound": self.commits_found,
            "commitsAdded": self.commits_added,
        }


@dataclass(slots=True)
class ScanSummary:
    scanned: int = 0
    commits_added: int = 0
    errors: int = 0
    main_commits_added: int = 0
    failures: dict[str, str] = field(default_factory=dict)

    def as_dict(self) -> dict[str, object]:
        return {
            "scanned": self.scanned,
            "commitsAdded": self.commits_added,
            "mainCommitsAdded": self.main_commits_added,
            "errors": self.errors,
            "failures": dict(self.failures),
        }


class CommitScanner:
    """Walk each stream's worktree history, newest first, and store new commits.

    Only commits on the stream's branch that are not yet on ``base_branch``
    are attributed to the stream. A scan stops at ``max_commits`` or at the
    ``lookback_days`` window, whichever comes first. Every insert is
    individually idempotent, so an abandoned scan leaves the store consistent.

    When ``main_repo`` is set, ``scan_all`` also ingests recent commits made
    directly on ``base_branch`` into a dedicated ``main`` stream.
    """

    def __init__(
        self,
        store: StreamStore,
        runner: GitRunner | None,
        *,
        parser: CommitLogParser | None = None,
        max_commits: int = DEFAULT_MAX_COMMITS,
        lookback_days: int = DEFAULT_LOOKBACK_DAYS,
        base_branch: str = DEFAULT_BASE_BRANCH,
        main_repo: Path | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._runner = runner
        self._parser = parser or NumstatLogParser()
        self._max_commits = max_commits
        self._lookback = timedelta(days=lookback_days)
        self._base_branch = base_branch
        self._main_repo = main_repo
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def base_branch(self) -> str:
        return self._base_branch

    async def scan_stream(self, stream: StreamRecord) -> StreamScanResult:
        worktree = Path(stream.worktree_path).expanduser()
        if not worktree.is_dir():
            raise ScanError(f"Worktree not found for stream {stream.id}: {worktree}")

        commits = await self._read_log(
            worktree, f"{self._base_branch}..HEAD", self._max_commits, label=stream.id
        )
        added = self._store_commits(stream.id, commits)
        logger.debug(
            "Scanned stream worktree",
            extra={"stream_id": stream.id, "found": len(commits), "added": added},
        )
        return StreamScanResult(stream_id=stream.id, commits_found=len(commits), commits_added=added)

    async def scan_main(self) -> StreamScanResult:
        """Ingest recent commits made directly on the base branch."""

        if self._main_repo is None:
            raise ScanError("No main repository configured for base branch scanning")
        stream = self._ensure_main_stream(self._main_repo)
        if stream.status == "archived":
            return StreamScanResult(stream_id=stream.id, commits_found=0, commits_added=0)

        commits = await self._read_log(
            self._main_repo,
            self._base_branch,
            min(self._max_commits, MAIN_BRANCH_MAX_COMMITS),
            label=self._base_branch,
        )
        added = self._store_commits(stream.id, commits)
        logger.debug(
            "Scanned base branch",
            extra={"branch": self._base_branch, "found": len(commits), "added": added},
        )
        return StreamScanResult(stream_id=stream.id, commits_found=len(commits), commits_added=added)

    async def scan_by_id(self, stream_id: str) -> StreamScanResult:
        try:
            stream = self._store.get(stream_id)
        except StreamNotFoundError as exc:
            raise ScanError(str(exc)) from exc
        if stream.status == "archived":
            raise ScanError(f"Stream {stream_id} is archived")
        if stream_id == MAIN_STREAM_ID and self._main_repo is not None:
            return await self.scan_main()
        return await self.scan_stream(stream)

    async def scan_all(self) -> ScanSummary:
        """Scan every non-archived stream; failures are counted, never raised."""

        summary = ScanSummary()
        if self._main_repo is not None:
            try:
                summary.main_commits_added = (await self.scan_main()).commits_added
            except Exception as exc:
                summary.errors += 1
                summary.failures[MAIN_STREAM_ID] = str(exc)
                logger.warning(
                    "Base branch scan failed",
                    extra={"branch": self._base_branch, "error": str(exc)},
                )

        for stream in self._store.list():
            if stream.status == "archived" or not stream.worktree_path:
                continue
            if stream.id == MAIN_STREAM_ID and self._main_repo is not None:
                continue
            summary.scanned += 1
            try:
                result = await self.scan_stream(stream)
            except Exception as exc:
                summary.errors += 1
                summary.failures[stream.id] = str(exc)
                logger.warning(
                    "Commit scan failed for stream",
                    extra={"stream_id": stream.id, "error": str(exc)},
                )
                continue
            summary.commits_added += result.commits_added

        logger.info(
            "Commit scan complete",
            extra={
                "scanned": summary.scanned,
                "commits_added": summary.commits_added,
                "main_commits_added": summary.main_commits_added,
                "errors": summary.errors,
            },
        )
        return summary

    async def _read_log(self, cwd: Path, revision: str, limit: int, *, label: str) -> list[ParsedCommit]:
        if self._runner is None:
            raise ScanError("git executable not available; commit scanning is disabled")
        cutoff = self._clock() - self._lookback
        result = await self._runner.log(
            cwd,
            *self._parser.log_arguments(),
            f"-n{limit}",
            f"--since={cutoff.isoformat()}",
            revision,
        )
        if not result.ok:
            raise ScanError(
                f"git log failed for {label} (exit {result.returncode}): "
                f"{result.stderr.strip()[:400]}"
            )
        parsed = sorted(self._parser.parse(result.stdout), key=lambda c: c.timestamp, reverse=True)
        return [commit for commit in parsed if commit.timestamp >= cutoff][:limit]

    def _store_commits(self, stream_id: str, commits: list[ParsedCommit]) -> int:
        added = 0
        for commit in commits:
            stored = self._store.insert_commit(
                CommitRecord(
                    stream_id=stream_id,
                    hash=commit.hash,
                    message=commit.message,
                    author=commit.author,
                    files_changed=commit.files_changed,
                    timestamp=commit.timestamp,
                )
            )
            if stored:
                added += 1
        if added:
            self._store.touch(stream_id)
        return added

    def _ensure_main_stream(self, repo: Path) -> StreamRecord:
        try:
            return self._store.get(MAIN_STREAM_ID)
        except StreamNotFoundError:
            pass
        now = self._clock()
        record = StreamRecord(
            id=MAIN_STREAM_ID,
            number="0000",
            title="Main Branch",
            category="infrastructure",
            priority="high",
            worktree_path=str(repo),
            branch=self._base_branch,
            created_at=now,
            updated_at=now,
            status="active",
            progress=100,
        )
        try:
            with self._store.transaction():
                self._store.create(record)
                self._store.add_history(record.id, "created", new_value=record.status)
        except DuplicateStreamError:
            return self._store.get(MAIN_STREAM_ID)
        logger.info("Created base branch stream", extra={"branch": self._base_branch})
        return record


__all__ = [
    "CommitScanner",
    "DEFAULT_BASE_BRANCH",
    "DEFAULT_LOOKBACK_DAYS",
    "DEFAULT_MAX_COMMITS",
    "MAIN_STREAM_ID",
    "ScanError",
    "ScanSummary",
    "StreamScanResult",
]
