"""Tool registration for the stream status MCP server."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from fastmcp import Context, FastMCP
from pydantic import BaseModel, Field, ValidationError, field_validator

from .. import SERVICE_NAME, __version__
from ..config import StreamStatusSettings
from ..scanner import CommitScanner, ScanError
from ..storage import STATUSES, StoreError, StreamStore
from ..streams import LifecycleError, StreamLifecycle
from ..sync import StreamFileImporter

logger = logging.getLogger(__name__)

TOOL_NAMES = (
    "add_stream",
    "update_stream",
    "add_commit",
    "remove_stream",
    "get_stream_stats",
    "get_version",
    "sync_from_files",
    "scan_commits",
)


@dataclass(slots=True)
class ToolHandles:
    add_stream: Any
    update_stream: Any
    add_commit: Any
    remove_stream: Any
    get_stream_stats: Any
    get_version: Any
    sync_from_files: Any
    scan_commits: Any


class AddStreamRequest(BaseModel):
    stream_id: str
    stream_number: str
    title: str
    category: str
    priority: str
    worktree_path: str
    branch: str
    estimated_phases: list[str] = Field(default_factory=list)


class UpdateStreamRequest(BaseModel):
    stream_id: str
    status: str | None = None
    progress: int | None = None
    current_phase: int | None = None
    blocked_by: str | None = None


class AddCommitRequest(BaseModel):
    stream_id: str
    commit_hash: str
    message: str
    author: str
    files_changed: int
    timestamp: datetime | None = None

    @field_validator("timestamp")
    @classmethod
    def _assume_utc(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class RemoveStreamRequest(BaseModel):
    stream_id: str
    completion_summary: str | None = None


class ScanCommitsRequest(BaseModel):
    stream_id: str | None = None


def _success(tool: str, result: Any) -> dict[str, Any]:
    return {"ok": True, "tool": tool, "result": result}


def _failure(tool: str, code: str, message: str) -> dict[str, Any]:
    return {"ok": False, "tool": tool, "error": {"code": code, "message": message}}


def _format_validation_error(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error.get("loc", ())) or "request"
        parts.append(f"{location}: {error.get('msg', 'invalid value')}")
    return "; ".join(parts)


def _handle_error(tool: str, context: Context | None, exc: Exception) -> dict[str, Any]:
    if isinstance(exc, ValidationError):
        message = _format_validation_error(exc)
        _emit_log(context, "warning", "Rejected tool input", extra={"tool": tool, "error": message})
        return _failure(tool, "ValidationError", message)
    if isinstance(exc, (LifecycleError, ScanError)):
        _emit_log(context, "warning", "Tool call failed", extra={"tool": tool, "code": exc.code, "error": str(exc)})
        return _failure(tool, exc.code, str(exc))
    if isinstance(exc, StoreError):
        logger.error("Storage failure during tool call", extra={"tool": tool, "error": str(exc)})
        return _failure(tool, "StorageError", str(exc))
    logger.exception("Unhandled error during tool call", extra={"tool": tool})
    return _failure(tool, "InternalError", str(exc) or exc.__class__.__name__)


def _envelope(tool: str, context: Context | None, action: Callable[[], Any]) -> dict[str, Any]:
    try:
        return _success(tool, action())
    except Exception as exc:
        return _handle_error(tool, context, exc)


async def _envelope_async(
    tool: str,
    context: Context | None,
    action: Callable[[], Awaitable[Any]],
) -> dict[str, Any]:
    try:
        return _success(tool, await action())
    except Exception as exc:
        return _handle_error(tool, context, exc)


def register_tools(
    server: FastMCP,
    *,
    settings: StreamStatusSettings,
    store: StreamStore,
    lifecycle: StreamLifecycle,
    scanner: CommitScanner,
    importer: StreamFileImporter,
    dashboard_info: Callable[[], dict[str, Any] | None] | None = None,
) -> ToolHandles:
    """Register the stream status tools on the server."""

    def _add_stream(
        stream_id: str,
        stream_number: str,
        title: str,
        category: str,
        priority: str,
        worktree_path: str,
        branch: str,
        estimated_phases: list[str] | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Register a new workflow stream; it starts in the initializing state."""

        def action() -> dict[str, Any]:
            request = AddStreamRequest(
                stream_id=stream_id,
                stream_number=stream_number,
                title=title,
                category=category,
                priority=priority,
                worktree_path=worktree_path,
                branch=branch,
                estimated_phases=estimated_phases or [],
            )
            record = lifecycle.create_stream(
                stream_id=request.stream_id,
                number=request.stream_number,
                title=request.title,
                category=request.category,
                priority=request.priority,
                worktree_path=request.worktree_path,
                branch=request.branch,
                estimated_phases=request.estimated_phases,
            )
            _emit_log(context, "info", "Stream added", extra={"stream_id": record.id})
            return {"stream": record.to_dict()}

        return _envelope("add_stream", context, action)

    def _update_stream(
        stream_id: str,
        status: str | None = None,
        progress: int | None = None,
        current_phase: int | None = None,
        blocked_by: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Change a stream's status, progress, current phase, or blocker."""

        def action() -> dict[str, Any]:
            request = UpdateStreamRequest(
                stream_id=stream_id,
                status=status,
                progress=progress,
                current_phase=current_phase,
                blocked_by=blocked_by,
            )
            update = lifecycle.apply_update(
                request.stream_id,
                status=request.status,
                progress=request.progress,
                current_phase=request.current_phase,
                blocked_by=request.blocked_by,
            )
            record = update.stream
            _emit_log(
                context,
                "info",
                "Stream updated",
                extra={"stream_id": record.id, "status": record.status, "progress": record.progress},
            )
            return {"stream": record.to_dict(), "previousStatus": update.previous_status}

        return _envelope("update_stream", context, action)

    def _add_commit(
        stream_id: str,
        commit_hash: str,
        message: str,
        author: str,
        files_changed: int,
        timestamp: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Attribute a commit to a stream; a repeated hash is accepted as a no-op."""

        def action() -> dict[str, Any]:
            request = AddCommitRequest(
                stream_id=stream_id,
                commit_hash=commit_hash,
                message=message,
                author=author,
                files_changed=files_changed,
                timestamp=timestamp,
            )
            commit, added = lifecycle.record_commit(
                stream_id=request.stream_id,
                commit_hash=request.commit_hash,
                message=request.message,
                author=request.author,
                files_changed=request.files_changed,
                timestamp=request.timestamp,
            )
            _emit_log(
                context,
                "debug",
                "Commit recorded" if added else "Duplicate commit ignored",
                extra={"stream_id": commit.stream_id, "commit_hash": commit.hash},
            )
            return {"commit": commit.to_dict(), "added": added}

        return _envelope("add_commit", context, action)

    def _remove_stream(
        stream_id: str,
        completion_summary: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Archive a stream. Archived streams accept no further updates or commits."""

        def action() -> dict[str, Any]:
            request = RemoveStreamRequest(stream_id=stream_id, completion_summary=completion_summary)
            record = lifecycle.archive_stream(request.stream_id, request.completion_summary)
            _emit_log(context, "info", "Stream archived", extra={"stream_id": record.id})
            return {"stream": record.to_dict()}

        return _envelope("remove_stream", context, action)

    def _get_stream_stats(context: Context | None = None) -> dict[str, Any]:
        """Return aggregate counts of streams by status and of commits."""

        def action() -> dict[str, Any]:
            streams = lifecycle.list_streams()
            by_status = {status: 0 for status in STATUSES}
            for stream in streams:
                by_status[stream.status] = by_status.get(stream.status, 0) + 1
            stats = store.quick_stats()
            return {
                **stats.to_dict(),
                "totalStreams": len(streams),
                "byStatus": by_status,
            }

        return _envelope("get_stream_stats", context, action)

    def _get_version(context: Context | None = None) -> dict[str, Any]:
        """Report the server version, project binding, and dashboard location."""

        def action() -> dict[str, Any]:
            return {
                "service": SERVICE_NAME,
                "version": __version__,
                "project": settings.project_name,
                "projectRoot": str(settings.project_root),
                "databasePath": str(settings.database_path),
                "capabilities": list(TOOL_NAMES),
                "dashboard": dashboard_info() if dashboard_info is not None else None,
            }

        return _envelope("get_version", context, action)

    async def _sync_from_files(context: Context | None = None) -> dict[str, Any]:
        """Create or refresh streams from the project's plan files."""

        async def action() -> dict[str, Any]:
            result = await importer.sync()
            _emit_log(context, "info", "Stream files synced", extra={"synced": result.synced})
            return result.as_dict()

        return await _envelope_async("sync_from_files", context, action)

    async def _scan_commits(stream_id: str | None = None, context: Context | None = None) -> dict[str, Any]:
        """Ingest recent git commits from stream worktrees (one stream when stream_id is set)."""

        async def action() -> dict[str, Any]:
            request = ScanCommitsRequest(stream_id=stream_id)
            if request.stream_id is not None:
                return (await scanner.scan_by_id(request.stream_id)).as_dict()
            return (await scanner.scan_all()).as_dict()

        return await _envelope_async("scan_commits", context, action)

    tool_add_stream = server.tool(
        name="add_stream",
        description=(
            "Register a new development stream with its number, title, category, priority, "
            "worktree path, and branch. Optional estimated_phases lists the planned phases."
        ),
    )(_add_stream)

    tool_update_stream = server.tool(
        name="update_stream",
        description=(
            "Update a stream's status (state machine enforced), progress 0-100, current phase "
            "index, or blocked_by (required when the status is blocked)."
        ),
    )(_update_stream)

    tool_add_commit = server.tool(
        name="add_commit",
        description="Attribute a commit to a stream. Duplicate hashes are ignored and reported as added=false.",
    )(_add_commit)

    tool_remove_stream = server.tool(
        name="remove_stream",
        description="Archive a stream with an optional completion summary. Archiving is terminal.",
    )(_remove_stream)

    tool_stats = server.tool(
        name="get_stream_stats",
        description="Summarize streams by status along with today's completions and commit counts.",
    )(_get_stream_stats)

    tool_version = server.tool(
        name="get_version",
        description="Return the server version, project binding, tool list, and dashboard port.",
    )(_get_version)

    tool_sync = server.tool(
        name="sync_from_files",
        description="Import stream definitions from the project's plan directory. Safe to repeat.",
    )(_sync_from_files)

    tool_scan = server.tool(
        name="scan_commits",
        description="Scan stream worktrees for recent commits; pass stream_id to scan a single stream.",
    )(_scan_commits)

    return ToolHandles(
        add_stream=tool_add_stream,
        update_stream=tool_update_stream,
        add_commit=tool_add_commit,
        remove_stream=tool_remove_stream,
        get_stream_stats=tool_stats,
        get_version=tool_version,
        sync_from_files=tool_sync,
        scan_commits=tool_scan,
    )


__all__ = ["TOOL_NAMES", "ToolHandles", "register_tools"]


def _emit_log(
    context: Context | None,
    level: str,
    message: str,
    *,
    extra: dict[str, Any] | None = None,
) -> None:
    """Best-effort logging that prefers the MCP context logger when available."""

    payload = extra or {}

    if context is not None:
        ctx_logger = getattr(context, "logger", None)
        if ctx_logger is not None:
            log_method = getattr(ctx_logger, level, None)
            if callable(log_method):
                log_method(message, extra=payload)
                return

    fallback = getattr(logger, level, logger.info)
    fallback(message, extra=payload)
