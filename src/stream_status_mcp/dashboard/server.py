"""Hosting of the dashboard for whichever process wins the project lock."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import socket
from dataclasses import dataclass
from pathlib import Path

import uvicorn

from ..config import StreamStatusSettings
from ..coordination import DEFAULT_HOST, CoordinationError, Discovered, LeaderDiscovery
from ..scanner import CommitScanner, WorktreeReconciler
from ..storage import StreamStore
from ..streams import StreamLifecycle
from ..worker import PeriodicTask
from .app import create_dashboard_app

logger = logging.getLogger(__name__)

DEFAULT_SCAN_INTERVAL = 60.0
STARTUP_TIMEOUT = 10.0
SHUTDOWN_TIMEOUT = 5.0


@dataclass(slots=True)
class DashboardConfig:
    project_root: Path
    worktree_root: Path
    lock_file_path: Path
    database_path: Path
    port: int | None = None
    host: str = DEFAULT_HOST
    scan_interval: float = DEFAULT_SCAN_INTERVAL

    @classmethod
    def from_settings(cls, settings: StreamStatusSettings) -> "DashboardConfig":
        return cls(
            project_root=settings.project_root,
            worktree_root=settings.worktree_root,
            lock_file_path=settings.lock_file_path,
            database_path=settings.database_path,
            port=settings.api_port,
        )


@dataclass(slots=True)
class DashboardInfo:
    port: int
    existing: bool

    def as_dict(self) -> dict[str, object]:
        return {"port": self.port, "existing": self.existing, "url": f"http://localhost:{self.port}"}


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves process signal handling to the MCP host."""

    def install_signal_handlers(self) -> None:
        return None

    @contextlib.contextmanager
    def capture_signals(self):
        yield


class DashboardServer:
    """Serve the dashboard if this process wins the lock, otherwise report the winner.

    While hosting, a full commit scan also runs on ``scan_interval``.
    """

    def __init__(
        self,
        config: DashboardConfig,
        store: StreamStore,
        lifecycle: StreamLifecycle,
        coordinator: LeaderDiscovery,
        *,
        scanner: CommitScanner | None = None,
        reconciler: WorktreeReconciler | None = None,
    ) -> None:
        self._config = config
        self._store = store
        self._lifecycle = lifecycle
        self._coordinator = coordinator
        self._scanner = scanner
        self._reconciler = reconciler
        self._server: _EmbeddedServer | None = None
        self._serve_task: asyncio.Task[None] | None = None
        self._scan_task: PeriodicTask | None = None
        self._socket: socket.socket | None = None
        self._info: DashboardInfo | None = None

    @property
    def info(self) -> DashboardInfo | None:
        return self._info

    @property
    def hosting(self) -> bool:
        return self._server is not None

    async def start(self) -> DashboardInfo:
        if self._info is not None:
            return self._info

        outcome = self._coordinator.try_acquire(self._config.port)
        if isinstance(outcome, Discovered):
            logger.info(
                "Dashboard already hosted by another process",
                extra={"pid": outcome.pid, "port": outcome.port},
            )
            self._info = DashboardInfo(port=outcome.port, existing=True)
            return self._info

        app = create_dashboard_app(
            self._store,
            self._lifecycle,
            self._config.project_root.name,
            reconciler=self._reconciler,
        )
        server = _EmbeddedServer(
            uvicorn.Config(app, host=self._config.host, port=outcome.port, log_level="warning", lifespan="off")
        )
        serve_task = asyncio.get_running_loop().create_task(
            server.serve(sockets=[outcome.socket]), name="dashboard-server"
        )

        try:
            await self._wait_started(server, serve_task)
        except BaseException:
            server.should_exit = True
            serve_task.cancel()
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await serve_task
            outcome.socket.close()
            self._coordinator.release()
            raise

        self._server = server
        self._serve_task = serve_task
        self._socket = outcome.socket
        if self._scanner is not None:
            self._scan_task = PeriodicTask("dashboard-commit-scan", self._config.scan_interval, self._scanner.scan_all)
            self._scan_task.start()

        logger.info("Dashboard listening", extra={"url": f"http://localhost:{outcome.port}"})
        self._info = DashboardInfo(port=outcome.port, existing=False)
        return self._info

    async def stop(self) -> None:
        if self._scan_task is not None:
            await self._scan_task.stop()
            self._scan_task = None

        server, serve_task = self._server, self._serve_task
        self._server = None
        self._serve_task = None
        if server is not None and serve_task is not None:
            server.should_exit = True
            try:
                await asyncio.wait_for(serve_task, timeout=SHUTDOWN_TIMEOUT)
            except asyncio.TimeoutError:
                logger.warning("Dashboard did not stop in time; cancelling")
                serve_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await serve_task
            if self._socket is not None:
                self._socket.close()
                self._socket = None
            self._coordinator.release()
        self._info = None

    @staticmethod
    async def _wait_started(server: uvicorn.Server, serve_task: asyncio.Task[None]) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + STARTUP_TIMEOUT
        while not server.started:
            if serve_task.done():
                exc = serve_task.exception()
                raise CoordinationError(f"Dashboard server exited during startup: {exc}")
            if loop.time() > deadline:
                raise CoordinationError("Dashboard server did not start in time")
            await asyncio.sleep(0.05)


__all__ = ["DashboardConfig", "DashboardInfo", "DashboardServer"]
