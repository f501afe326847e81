"""Data models for persistent stream tracking."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

CATEGORIES = ("frontend", "backend", "infrastructure", "testing", "documentation", "refactoring")
PRIORITIES = ("critical", "high", "medium", "low")
STATUSES = ("initializing", "active", "blocked", "paused", "completed", "archived")


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


@dataclass(slots=True)
class StreamRecord:
    id: str
    number: str
    title: str
    category: str
    priority: str
    worktree_path: str
    branch: str
    created_at: datetime
    updated_at: datetime
    status: str = "initializing"
    progress: int = 0
    current_phase: int | None = None
    estimated_phases: list[str] = field(default_factory=list)
    blocked_by: str | None = None
    completion_summary: str | None = None
    completed_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "streamNumber": self.number,
            "title": self.title,
            "category": self.category,
            "priority": self.priority,
            "status": self.status,
            "progress": self.progress,
            "currentPhase": self.current_phase,
            "estimatedPhases": list(self.estimated_phases),
            "worktreePath": self.worktree_path,
            "branch": self.branch,
            "blockedBy": self.blocked_by,
            "completionSummary": self.completion_summary,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
            "completedAt": _iso(self.completed_at),
        }


@dataclass(slots=True)
class CommitRecord:
    stream_id: str
    hash: str
    message: str
    author: str
    files_changed: int
    timestamp: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "streamId": self.stream_id,
            "commitHash": self.hash,
            "message": self.message,
            "author": self.author,
            "filesChanged": self.files_changed,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(slots=True)
class HistoryEvent:
    stream_id: str
    event_type: str
    timestamp: datetime
    old_value: str | None = None
    new_value: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "streamId": self.stream_id,
            "eventType": self.event_type,
            "oldValue": self.old_value,
            "newValue": self.new_value,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(slots=True)
class StreamSummary:
    stream_id: str
    summary: str
    commit_count: int
    last_commit_at: datetime | None
    computed_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "streamId": self.stream_id,
            "summary": self.summary,
            "commitCount": self.commit_count,
            "lastCommitAt": _iso(self.last_commit_at),
            "computedAt": self.computed_at.isoformat(),
        }


@dataclass(slots=True)
class QuickStats:
    active_streams: int
    in_progress: int
    blocked: int
    ready_to_start: int
    completed_today: int
    total_commits: int
    commits_today: int

    def to_dict(self) -> dict[str, int]:
        return {
            "activeStreams": self.active_streams,
            "inProgress": self.in_progress,
            "blocked": self.blocked,
            "readyToStart": self.ready_to_start,
            "completedToday": self.completed_today,
            "totalCommits": self.total_commits,
            "commitsToday": self.commits_today,
        }


__all__ = [
    "CATEGORIES",
    "PRIORITIES",
    "STATUSES",
    "CommitRecord",
    "HistoryEvent",
    "QuickStats",
    "StreamRecord",
    "StreamSummary",
]
