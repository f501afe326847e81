"""FastMCP server bootstrap for the stream status service."""

import asyncio
import logging
import sys
from typing import Optional

from fastmcp import FastMCP
from pydantic import ValidationError

from . import SERVICE_NAME, __version__
from .config import StreamStatusSettings, get_settings
from .coordination import LockFileCoordinator
from .dashboard import DashboardConfig, DashboardServer
from .git import GitNotFoundError, GitRunner
from .runtime import ServiceRuntime
from .scanner import CommitScanner, WorktreeReconciler, discover_worktrees
from .storage import StoreError, StreamStore
from .streams import StreamLifecycle
from .sync import StreamFileImporter
from .tools import register_tools
from .worker import SummaryWorker

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    """Configure root logging; records go to stderr so stdio MCP traffic stays clean."""

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )


def create_server(
    settings: Optional[StreamStatusSettings] = None,
    git_runner: GitRunner | None = None,
    store: StreamStore | None = None,
) -> FastMCP:
    """Wire the store, domain components, and tools into a FastMCP server."""

    settings = settings or get_settings()

    git_metadata = {"available": False, "path": None, "error": None}
    if git_runner is None:
        try:
            git_runner = GitRunner()
        except GitNotFoundError as exc:
            git_metadata["error"] = str(exc)
            git_runner = None
    if git_runner is not None:
        git_metadata["available"] = True
        git_metadata["path"] = str(git_runner.executable)

    store = store or StreamStore(settings.database_path)
    lifecycle = StreamLifecycle(store)
    scanner = CommitScanner(
        store,
        git_runner,
        max_commits=settings.scan_max_commits,
        lookback_days=settings.scan_lookback_days,
        base_branch=settings.base_branch,
        main_repo=settings.project_root,
    )
    reconciler = WorktreeReconciler(
        store, git_runner, settings.project_root, base_branch=settings.base_branch
    )

    worktree_lookup = None
    if git_runner is not None:
        runner = git_runner

        async def worktree_lookup():
            return await discover_worktrees(runner, settings.project_root)

    importer = StreamFileImporter(
        lifecycle,
        settings.streams_dir,
        settings.worktree_root,
        worktree_lookup=worktree_lookup,
    )

    dashboard: DashboardServer | None = None
    if settings.api_enabled:
        coordinator = LockFileCoordinator(settings.lock_file_path, settings.project_root)
        dashboard = DashboardServer(
            DashboardConfig.from_settings(settings),
            store,
            lifecycle,
            coordinator,
            scanner=scanner,
            reconciler=reconciler,
        )

    runtime = ServiceRuntime(
        store=store,
        scanner=scanner,
        importer=importer,
        summary_worker=SummaryWorker(store, settings.summary_interval),
        dashboard=dashboard,
    )

    server = FastMCP(
        name="Stream Workflow Status",
        version=__version__,
        instructions=(
            "Tracks parallel development streams for one project: their lifecycle status, "
            "progress, blockers, and the git commits made in each stream's worktree. "
            "Use the tools to register, update, and archive streams and to ingest commits."
        ),
    )

    handles = register_tools(
        server,
        settings=settings,
        store=store,
        lifecycle=lifecycle,
        scanner=scanner,
        importer=importer,
        dashboard_info=runtime.dashboard_info,
    )

    setattr(server, "stream_settings", settings)
    setattr(server, "stream_store", store)
    setattr(server, "lifecycle", lifecycle)
    setattr(server, "git_metadata", git_metadata)
    setattr(server, "runtime", runtime)
    setattr(server, "tool_handles", handles)
    return server


async def serve(server: FastMCP) -> None:
    """Run background components for as long as the MCP transport is open."""

    runtime: ServiceRuntime = getattr(server, "runtime")
    await runtime.start()
    try:
        await server.run_async()
    finally:
        await runtime.stop()


def main() -> None:
    """Entry point for running the stream status MCP server via CLI."""

    try:
        settings = get_settings()
    except ValidationError as exc:
        print(f"{SERVICE_NAME}: invalid configuration\n{exc}", file=sys.stderr)
        sys.exit(2)
    configure_logging(settings.log_level)

    try:
        server = create_server(settings)
    except StoreError as exc:
        logger.critical("Cannot open stream database", extra={"error": str(exc)})
        sys.exit(1)

    logger.info(
        "Launching stream status MCP server",
        extra={
            "version": __version__,
            "project": settings.project_name,
            "database_path": str(settings.database_path),
            "api_enabled": settings.api_enabled,
            "git_available": getattr(server, "git_metadata", {}).get("available"),
        },
    )
    asyncio.run(serve(server))


if __name__ == "__main__":
    main()
