"""HTTP routes of the read-mostly stream dashboard."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from fastapi import FastAPI, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .. import SERVICE_NAME, __version__
from ..scanner import ScanError, WorktreeReconciler
from ..storage import CATEGORIES, PRIORITIES, STATUSES, StreamRecord, StreamStore
from ..streams import LifecycleError, StreamLifecycle, UnknownStreamError

RECENT_COMMITS_PER_STREAM = 10


class UpdateStreamModel(BaseModel):
    """Body of ``PATCH /api/streams/{id}``."""

    status: str | None = Field(default=None, description="New lifecycle status")
    progress: int | None = Field(default=None, description="Completion percentage 0-100")
    current_phase: int | None = Field(default=None, alias="currentPhase")
    blocked_by: str | None = Field(default=None, alias="blockedBy")

    model_config = {"populate_by_name": True, "extra": "forbid"}


def _check_filter(name: str, value: str | None, allowed: tuple[str, ...]) -> None:
    if value is not None and value not in allowed:
        raise HTTPException(
            status_code=400,
            detail=f"Invalid {name}. Must be one of: {', '.join(allowed)}",
        )


def create_dashboard_app(
    store: StreamStore,
    lifecycle: StreamLifecycle,
    project_name: str,
    *,
    reconciler: WorktreeReconciler | None = None,
) -> FastAPI:
    """Build the dashboard application over a shared store."""

    app = FastAPI(title=f"Stream Status Dashboard ({project_name})", version=__version__)

    def _stream_payload(stream: StreamRecord, latest: dict[str, Any]) -> dict[str, Any]:
        payload = stream.to_dict()
        commit = latest.get(stream.id)
        payload["recentActivity"] = commit.to_dict() if commit is not None else None
        summary = store.get_summary(stream.id)
        payload["summary"] = summary.to_dict() if summary is not None else None
        return payload

    def _require_stream(stream_id: str) -> StreamRecord:
        try:
            return lifecycle.get_stream(stream_id)
        except UnknownStreamError as exc:
            raise HTTPException(status_code=404, detail="Stream not found") from exc

    @app.exception_handler(LifecycleError)
    async def _lifecycle_error(_request, exc: LifecycleError) -> JSONResponse:
        status_code = 404 if isinstance(exc, UnknownStreamError) else 400
        return JSONResponse(status_code=status_code, content={"error": str(exc), "code": exc.code})

    @app.exception_handler(ScanError)
    async def _scan_error(_request, exc: ScanError) -> JSONResponse:
        return JSONResponse(status_code=503, content={"error": str(exc), "code": exc.code})

    @app.get("/api/health")
    def health() -> dict[str, Any]:
        return {
            "status": "ok",
            "service": SERVICE_NAME,
            "project": project_name,
            "version": __version__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    @app.get("/api/streams")
    def list_streams(
        status: str | None = Query(default=None),
        category: str | None = Query(default=None),
        priority: str | None = Query(default=None),
    ) -> dict[str, Any]:
        """List streams in creation order with their latest commit and summary."""
        _check_filter("status", status, STATUSES)
        _check_filter("category", category, CATEGORIES)
        _check_filter("priority", priority, PRIORITIES)
        streams = store.list(status=status, category=category, priority=priority)
        latest = store.latest_commits()
        return {
            "streams": [_stream_payload(stream, latest) for stream in streams],
            "total": len(streams),
        }

    @app.get("/api/streams/{stream_id}")
    def get_stream(stream_id: str) -> dict[str, Any]:
        stream = _require_stream(stream_id)
        payload = _stream_payload(stream, store.latest_commits())
        payload["recentCommits"] = [
            commit.to_dict() for commit in store.list_commits(stream_id, limit=RECENT_COMMITS_PER_STREAM)
        ]
        payload["commitCount"] = store.count_commits(stream_id)
        return payload

    @app.patch("/api/streams/{stream_id}")
    def update_stream(stream_id: str, data: UpdateStreamModel) -> dict[str, Any]:
        update = lifecycle.apply_update(
            stream_id,
            status=data.status,
            progress=data.progress,
            current_phase=data.current_phase,
            blocked_by=data.blocked_by,
        )
        previous, updated = update.previous, update.stream
        changes: dict[str, Any] = {}
        if updated.status != previous.status:
            changes["status"] = {"from": previous.status, "to": updated.status}
        if updated.progress != previous.progress:
            changes["progress"] = {"from": previous.progress, "to": updated.progress}
        if updated.current_phase != previous.current_phase:
            changes["currentPhase"] = {"from": previous.current_phase, "to": updated.current_phase}
        if updated.blocked_by != previous.blocked_by:
            changes["blockedBy"] = {"from": previous.blocked_by, "to": updated.blocked_by}
        return {"success": True, "stream": updated.to_dict(), "changes": changes}

    @app.get("/api/streams/{stream_id}/history")
    def stream_history(stream_id: str) -> dict[str, Any]:
        _require_stream(stream_id)
        events = store.list_history(stream_id)
        return {"streamId": stream_id, "history": [event.to_dict() for event in events], "total": len(events)}

    @app.get("/api/commits")
    def list_commits(
        limit: int = Query(default=20, ge=1, le=500),
        stream_id: str | None = Query(default=None, alias="streamId"),
    ) -> dict[str, Any]:
        if stream_id is not None:
            commits = store.list_commits(stream_id, limit=limit)
        else:
            commits = store.recent_commits(limit)
        return {"commits": [commit.to_dict() for commit in commits], "total": len(commits)}

    @app.get("/api/stats")
    def stats() -> dict[str, int]:
        return store.quick_stats().to_dict()

    def _require_reconciler() -> WorktreeReconciler:
        if reconciler is None:
            raise HTTPException(status_code=503, detail="Worktree reconciliation is not available")
        return reconciler

    @app.get("/api/reconciliation/status")
    async def reconciliation_status() -> dict[str, Any]:
        """Compare tracked streams with worktrees and merged branches without changing anything."""
        report = await _require_reconciler().report()
        payload = report.as_dict()
        payload["timestamp"] = datetime.now(timezone.utc).isoformat()
        payload["dryRun"] = True
        return payload

    @app.get("/api/reconciliation/worktrees")
    async def reconciliation_worktrees() -> dict[str, Any]:
        worktrees = await _require_reconciler().worktrees()
        return {"worktrees": [info.to_dict() for info in worktrees], "total": len(worktrees)}

    @app.get("/api/reconciliation/merged")
    async def reconciliation_merged() -> dict[str, Any]:
        current = _require_reconciler()
        branches = sorted(await current.merged_branches())
        return {"baseBranch": current.base_branch, "branches": branches, "total": len(branches)}

    return app


__all__ = ["UpdateStreamModel", "create_dashboard_app"]
