from __future__ import annotations

import asyncio
from pathlib import Path

from stream_status_mcp.config import StreamStatusSettings
from stream_status_mcp.git import FakeGitRunner
from stream_status_mcp.runtime import ServiceRuntime
from stream_status_mcp.scanner import MAIN_STREAM_ID, CommitScanner
from stream_status_mcp.server import create_server
from stream_status_mcp.storage import StreamStore
from stream_status_mcp.streams import StreamLifecycle
from stream_status_mcp.sync import StreamFileImporter
from stream_status_mcp.worker import SummaryWorker


def _settings(tmp_path: Path, **overrides) -> StreamStatusSettings:
    project_root = tmp_path / "demo"
    project_root.mkdir(exist_ok=True)
    values = {
        "project_root": project_root,
        "database_path": tmp_path / "streams.db",
        "lock_file_path": tmp_path / ".api-server.lock",
        "api_enabled": False,
    }
    values.update(overrides)
    return StreamStatusSettings(**values)


def _write_plan(settings: StreamStatusSettings) -> None:
    settings.streams_dir.mkdir(parents=True, exist_ok=True)
    (settings.streams_dir / "stream-0001-api.md").write_text(
        "---\ntitle: API\ncategory: backend\n---\n", encoding="utf-8"
    )


def _runtime(tmp_path: Path, settings: StreamStatusSettings) -> tuple[ServiceRuntime, StreamStore]:
    store = StreamStore(settings.database_path)
    lifecycle = StreamLifecycle(store)
    runtime = ServiceRuntime(
        store=store,
        scanner=CommitScanner(store, FakeGitRunner()),
        importer=StreamFileImporter(lifecycle, settings.streams_dir, settings.worktree_root),
        summary_worker=SummaryWorker(store, 60),
    )
    return runtime, store


def test_create_server_wires_components(tmp_path: Path) -> None:
    settings = _settings(tmp_path)

    server = create_server(settings, git_runner=FakeGitRunner())

    assert server.stream_settings is settings
    assert server.git_metadata["available"] is True
    assert server.runtime.dashboard is None
    assert server.tool_handles.add_stream is not None
    server.stream_store.close()


def test_runtime_bootstraps_empty_store_from_plan_files(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    _write_plan(settings)
    runtime, store = _runtime(tmp_path, settings)

    async def scenario() -> list[str]:
        await runtime.start()
        await runtime.bootstrap_task
        streams = [stream.id for stream in store.list()]
        await runtime.stop()
        return streams

    assert asyncio.run(scenario()) == ["stream-0001-api"]
    assert runtime.dashboard_info() is None


def test_runtime_skips_sync_when_streams_exist(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    runtime, store = _runtime(tmp_path, settings)
    StreamLifecycle(store).create_stream(
        stream_id="manual",
        number="0009",
        title="Manual",
        category="testing",
        priority="low",
        worktree_path=str(tmp_path / "manual"),
        branch="manual",
    )
    _write_plan(settings)

    async def scenario() -> list[str]:
        await runtime.start()
        await runtime.bootstrap_task
        streams = [stream.id for stream in store.list()]
        await runtime.stop()
        return streams

    assert asyncio.run(scenario()) == ["manual"]


def test_runtime_stop_without_start_is_a_no_op(tmp_path: Path) -> None:
    runtime, store = _runtime(tmp_path, _settings(tmp_path))

    asyncio.run(runtime.stop())

    assert store.count_streams() == 0


def test_runtime_bootstrap_ignores_main_branch_stream(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    _write_plan(settings)
    store = StreamStore(settings.database_path)
    lifecycle = StreamLifecycle(store)
    runner = FakeGitRunner()
    scanner = CommitScanner(store, runner, main_repo=settings.project_root)
    asyncio.run(scanner.scan_main())
    runtime = ServiceRuntime(
        store=store,
        scanner=scanner,
        importer=StreamFileImporter(lifecycle, settings.streams_dir, settings.worktree_root),
        summary_worker=SummaryWorker(store, 60),
    )

    async def scenario() -> list[str]:
        await runtime.start()
        await runtime.bootstrap_task
        streams = [stream.id for stream in store.list()]
        await runtime.stop()
        return streams

    assert asyncio.run(scenario()) == [MAIN_STREAM_ID, "stream-0001-api"]
