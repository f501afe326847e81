"""SQLite-backed persistence for streams, commits, history, and summaries."""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Iterator

from .models import CommitRecord, HistoryEvent, QuickStats, StreamRecord, StreamSummary

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS streams (
    id TEXT PRIMARY KEY,
    stream_number TEXT NOT NULL,
    title TEXT NOT NULL,
    category TEXT NOT NULL,
    priority TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'initializing',
    progress INTEGER NOT NULL DEFAULT 0,
    current_phase INTEGER,
    phases TEXT NOT NULL DEFAULT '[]',
    worktree_path TEXT NOT NULL,
    branch TEXT NOT NULL,
    blocked_by TEXT,
    completion_summary TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    completed_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_streams_status ON streams(status);
CREATE INDEX IF NOT EXISTS idx_streams_category ON streams(category);

CREATE TABLE IF NOT EXISTS commits (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    stream_id TEXT NOT NULL REFERENCES streams(id),
    commit_hash TEXT NOT NULL,
    message TEXT NOT NULL,
    author TEXT NOT NULL DEFAULT '',
    files_changed INTEGER NOT NULL DEFAULT 0,
    timestamp TEXT NOT NULL,
    UNIQUE (stream_id, commit_hash)
);
CREATE INDEX IF NOT EXISTS idx_commits_stream ON commits(stream_id);
CREATE INDEX IF NOT EXISTS idx_commits_timestamp ON commits(timestamp DESC);

CREATE TABLE IF NOT EXISTS stream_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    stream_id TEXT NOT NULL REFERENCES streams(id),
    event_type TEXT NOT NULL,
    old_value TEXT,
    new_value TEXT,
    timestamp TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_history_stream ON stream_history(stream_id);

CREATE TABLE IF NOT EXISTS stream_summaries (
    stream_id TEXT PRIMARY KEY REFERENCES streams(id),
    summary TEXT NOT NULL,
    commit_count INTEGER NOT NULL DEFAULT 0,
    last_commit_at TEXT,
    computed_at TEXT NOT NULL
);
"""

_UPDATABLE_COLUMNS = {
    "number": "stream_number",
    "title": "title",
    "category": "category",
    "priority": "priority",
    "status": "status",
    "progress": "progress",
    "current_phase": "current_phase",
    "blocked_by": "blocked_by",
    "completion_summary": "completion_summary",
    "completed_at": "completed_at",
}


class StoreError(RuntimeError):
    """Raised when the stream database cannot be read or written."""


class DuplicateStreamError(StoreError):
    """Raised when creating a stream whose id already exists."""

    def __init__(self, stream_id: str) -> None:
        super().__init__(f"Stream already exists: {stream_id}")
        self.stream_id = stream_id


class StreamNotFoundError(StoreError):
    """Raised when a stream id is unknown."""

    def __init__(self, stream_id: str) -> None:
        super().__init__(f"Stream not found: {stream_id}")
        self.stream_id = stream_id


def to_db_time(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_db_time(value: str | None) -> datetime | None:
    if value is None:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class StreamStore:
    """Durable table of streams and their commits.

    Each thread gets its own connection so readers run alongside writers under
    WAL. Writers are serialized in-process by a re-entrant lock and across
    processes by ``BEGIN IMMEDIATE`` plus SQLite's busy timeout.
    """

    def __init__(
        self,
        path: Path | str,
        *,
        busy_timeout: float = 10.0,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._path = Path(path).expanduser()
        self._busy_timeout = busy_timeout
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._write_lock = threading.RLock()
        self._local = threading.local()
        self._connections: list[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            conn = self._connection()
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(_SCHEMA)
        except (OSError, sqlite3.Error) as exc:
            raise StoreError(f"Failed to open stream database at {self._path}: {exc}") from exc

    @property
    def path(self) -> Path:
        return self._path

    def _connection(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = sqlite3.connect(
                str(self._path),
                timeout=self._busy_timeout,
                isolation_level=None,
                check_same_thread=False,
            )
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys=ON")
            self._local.conn = conn
            self._local.depth = 0
            with self._connections_lock:
                self._connections.append(conn)
        return conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block of reads and writes as one serialized write transaction.

        Nested calls on the same thread join the outer transaction.
        """

        with self._write_lock:
            conn = self._connection()
            outermost = self._local.depth == 0
            if outermost:
                conn.execute("BEGIN IMMEDIATE")
            self._local.depth += 1
            try:
                yield conn
            except BaseException:
                self._local.depth -= 1
                if outermost:
                    conn.execute("ROLLBACK")
                raise
            else:
                self._local.depth -= 1
                if outermost:
                    conn.execute("COMMIT")

    def close(self) -> None:
        with self._connections_lock:
            for conn in self._connections:
                conn.close()
            self._connections.clear()
        self._local = threading.local()

    # streams

    def create(self, stream: StreamRecord) -> StreamRecord:
        with self.transaction() as conn:
            if self._fetch_stream_row(conn, stream.id) is not None:
                raise DuplicateStreamError(stream.id)
            conn.execute(
                """INSERT INTO streams (
                       id, stream_number, title, category, priority, status, progress,
                       current_phase, phases, worktree_path, branch, blocked_by,
                       completion_summary, created_at, updated_at, completed_at
                   ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    stream.id,
                    stream.number,
                    stream.title,
                    stream.category,
                    stream.priority,
                    stream.status,
                    stream.progress,
                    stream.current_phase,
                    json.dumps(list(stream.estimated_phases)),
                    stream.worktree_path,
                    stream.branch,
                    stream.blocked_by,
                    stream.completion_summary,
                    to_db_time(stream.created_at),
                    to_db_time(stream.updated_at),
                    to_db_time(stream.completed_at) if stream.completed_at else None,
                ),
            )
        return stream

    def get(self, stream_id: str) -> StreamRecord:
        row = self._fetch_stream_row(self._connection(), stream_id)
        if row is None:
            raise StreamNotFoundError(stream_id)
        return self._row_to_stream(row)

    def exists(self, stream_id: str) -> bool:
        return self._fetch_stream_row(self._connection(), stream_id) is not None

    def list(
        self,
        *,
        status: str | None = None,
        category: str | None = None,
        priority: str | None = None,
    ) -> list[StreamRecord]:
        """Return streams in creation order, optionally filtered."""

        clauses: list[str] = []
        params: list[Any] = []
        for column, value in (("status", status), ("category", category), ("priority", priority)):
            if value is not None:
                clauses.append(f"{column} = ?")
                params.append(value)
        query = "SELECT * FROM streams"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY rowid"
        rows = self._connection().execute(query, params).fetchall()
        return [self._row_to_stream(row) for row in rows]

    def count_streams(self) -> int:
        row = self._connection().execute("SELECT COUNT(*) FROM streams").fetchone()
        return int(row[0])

    def update(self, stream_id: str, **fields: Any) -> StreamRecord:
        """Apply only the provided fields and bump ``updated_at``."""

        unknown = set(fields) - set(_UPDATABLE_COLUMNS)
        if unknown:
            raise ValueError(f"Cannot update stream fields: {sorted(unknown)}")

        assignments: list[str] = []
        values: list[Any] = []
        for name, value in fields.items():
            if isinstance(value, datetime):
                value = to_db_time(value)
            assignments.append(f"{_UPDATABLE_COLUMNS[name]} = ?")
            values.append(value)
        assignments.append("updated_at = ?")
        values.append(to_db_time(self._clock()))

        with self.transaction() as conn:
            cursor = conn.execute(
                f"UPDATE streams SET {', '.join(assignments)} WHERE id = ?",
                (*values, stream_id),
            )
            if cursor.rowcount == 0:
                raise StreamNotFoundError(stream_id)
            row = self._fetch_stream_row(conn, stream_id)
        return self._row_to_stream(row)

    def touch(self, stream_id: str) -> None:
        self.update(stream_id)

    # commits

    def insert_commit(self, commit: CommitRecord) -> bool:
        """Store a commit; returns ``False`` when ``(stream_id, hash)`` already exists."""

        with self.transaction() as conn:
            if self._fetch_stream_row(conn, commit.stream_id) is None:
                raise StreamNotFoundError(commit.stream_id)
            cursor = conn.execute(
                """INSERT OR IGNORE INTO commits
                   (stream_id, commit_hash, message, author, files_changed, timestamp)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (
                    commit.stream_id,
                    commit.hash,
                    commit.message,
                    commit.author,
                    commit.files_changed,
                    to_db_time(commit.timestamp),
                ),
            )
        return cursor.rowcount == 1

    def has_commit(self, stream_id: str, commit_hash: str) -> bool:
        row = self._connection().execute(
            "SELECT 1 FROM commits WHERE stream_id = ? AND commit_hash = ?",
            (stream_id, commit_hash),
        ).fetchone()
        return row is not None

    def list_commits(self, stream_id: str, *, limit: int | None = None) -> list[CommitRecord]:
        query = "SELECT * FROM commits WHERE stream_id = ? ORDER BY timestamp DESC, id DESC"
        params: list[Any] = [stream_id]
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        rows = self._connection().execute(query, params).fetchall()
        return [self._row_to_commit(row) for row in rows]

    def recent_commits(self, limit: int = 20) -> list[CommitRecord]:
        rows = self._connection().execute(
            "SELECT * FROM commits ORDER BY timestamp DESC, id DESC LIMIT ?", (limit,)
        ).fetchall()
        return [self._row_to_commit(row) for row in rows]

    def latest_commits(self) -> dict[str, CommitRecord]:
        """Return the newest commit of every stream that has one."""

        rows = self._connection().execute(
            """SELECT * FROM (
                   SELECT c.*, ROW_NUMBER() OVER (
                       PARTITION BY stream_id ORDER BY timestamp DESC, id DESC
                   ) AS rn
                   FROM commits c
               ) WHERE rn = 1"""
        ).fetchall()
        return {row["stream_id"]: self._row_to_commit(row) for row in rows}

    def count_commits(self, stream_id: str | None = None) -> int:
        if stream_id is None:
            row = self._connection().execute("SELECT COUNT(*) FROM commits").fetchone()
        else:
            row = self._connection().execute(
                "SELECT COUNT(*) FROM commits WHERE stream_id = ?", (stream_id,)
            ).fetchone()
        return int(row[0])

    # history

    def add_history(
        self,
        stream_id: str,
        event_type: str,
        *,
        old_value: str | None = None,
        new_value: str | None = None,
    ) -> HistoryEvent:
        event = HistoryEvent(
            stream_id=stream_id,
            event_type=event_type,
            timestamp=self._clock(),
            old_value=old_value,
            new_value=new_value,
        )
        with self.transaction() as conn:
            conn.execute(
                """INSERT INTO stream_history (stream_id, event_type, old_value, new_value, timestamp)
                   VALUES (?, ?, ?, ?, ?)""",
                (stream_id, event_type, old_value, new_value, to_db_time(event.timestamp)),
            )
        return event

    def list_history(self, stream_id: str) -> list[HistoryEvent]:
        rows = self._connection().execute(
            "SELECT * FROM stream_history WHERE stream_id = ? ORDER BY id",
            (stream_id,),
        ).fetchall()
        return [
            HistoryEvent(
                stream_id=row["stream_id"],
                event_type=row["event_type"],
                timestamp=from_db_time(row["timestamp"]),
                old_value=row["old_value"],
                new_value=row["new_value"],
            )
            for row in rows
        ]

    # summaries

    def save_summary(self, summary: StreamSummary) -> None:
        with self.transaction() as conn:
            conn.execute(
                """INSERT INTO stream_summaries
                       (stream_id, summary, commit_count, last_commit_at, computed_at)
                   VALUES (?, ?, ?, ?, ?)
                   ON CONFLICT(stream_id) DO UPDATE SET
                       summary = excluded.summary,
                       commit_count = excluded.commit_count,
                       last_commit_at = excluded.last_commit_at,
                       computed_at = excluded.computed_at""",
                (
                    summary.stream_id,
                    summary.summary,
                    summary.commit_count,
                    to_db_time(summary.last_commit_at) if summary.last_commit_at else None,
                    to_db_time(summary.computed_at),
                ),
            )

    def get_summary(self, stream_id: str) -> StreamSummary | None:
        row = self._connection().execute(
            "SELECT * FROM stream_summaries WHERE stream_id = ?", (stream_id,)
        ).fetchone()
        if row is None:
            return None
        return StreamSummary(
            stream_id=row["stream_id"],
            summary=row["summary"],
            commit_count=row["commit_count"],
            last_commit_at=from_db_time(row["last_commit_at"]),
            computed_at=from_db_time(row["computed_at"]),
        )

    # stats

    def quick_stats(self, now: datetime | None = None) -> QuickStats:
        current = now or self._clock()
        if current.tzinfo is None:
            current = current.replace(tzinfo=timezone.utc)
        current = current.astimezone(timezone.utc)
        today_start = to_db_time(current.replace(hour=0, minute=0, second=0, microsecond=0))
        tomorrow_start = to_db_time(
            current.replace(hour=0, minute=0, second=0, microsecond=0) + timedelta(days=1)
        )

        conn = self._connection()
        status_counts = {
            row["status"]: row["count"]
            for row in conn.execute(
                "SELECT status, COUNT(*) AS count FROM streams GROUP BY status"
            ).fetchall()
        }
        active_streams = sum(
            count for status, count in status_counts.items() if status not in {"completed", "archived"}
        )
        completed_today = conn.execute(
            "SELECT COUNT(*) FROM streams WHERE completed_at >= ? AND completed_at < ?",
            (today_start, tomorrow_start),
        ).fetchone()[0]
        commits_today = conn.execute(
            "SELECT COUNT(*) FROM commits WHERE timestamp >= ? AND timestamp < ?",
            (today_start, tomorrow_start),
        ).fetchone()[0]

        return QuickStats(
            active_streams=active_streams,
            in_progress=status_counts.get("active", 0),
            blocked=status_counts.get("blocked", 0),
            ready_to_start=status_counts.get("paused", 0),
            completed_today=int(completed_today),
            total_commits=self.count_commits(),
            commits_today=int(commits_today),
        )

    # row helpers

    @staticmethod
    def _fetch_stream_row(conn: sqlite3.Connection, stream_id: str) -> sqlite3.Row | None:
        return conn.execute("SELECT * FROM streams WHERE id = ?", (stream_id,)).fetchone()

    @staticmethod
    def _row_to_stream(row: sqlite3.Row) -> StreamRecord:
        try:
            phases = json.loads(row["phases"]) if row["phases"] else []
        except json.JSONDecodeError:
            logger.warning("Discarding malformed phases column", extra={"stream_id": row["id"]})
            phases = []
        return StreamRecord(
            id=row["id"],
            number=row["stream_number"],
            title=row["title"],
            category=row["category"],
            priority=row["priority"],
            status=row["status"],
            progress=row["progress"],
            current_phase=row["current_phase"],
            estimated_phases=list(phases),
            worktree_path=row["worktree_path"],
            branch=row["branch"],
            blocked_by=row["blocked_by"],
            completion_summary=row["completion_summary"],
            created_at=from_db_time(row["created_at"]),
            updated_at=from_db_time(row["updated_at"]),
            completed_at=from_db_time(row["completed_at"]),
        )

    @staticmethod
    def _row_to_commit(row: sqlite3.Row) -> CommitRecord:
        return CommitRecord(
            stream_id=row["stream_id"],
            hash=row["commit_hash"],
            message=row["message"],
            author=row["author"],
            files_changed=row["files_changed"],
            timestamp=from_db_time(row["timestamp"]),
        )


__all__ = [
    "DuplicateStreamError",
    "StoreError",
    "StreamNotFoundError",
    "StreamStore",
    "from_db_time",
    "to_db_time",
]
