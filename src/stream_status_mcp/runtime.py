"""Startup and shutdown of the service's background components."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from .dashboard import DashboardServer
from .scanner import MAIN_STREAM_ID, CommitScanner
from .storage import StreamStore
from .sync import StreamFileImporter
from .worker import SummaryWorker

logger = logging.getLogger(__name__)


class ServiceRuntime:
    """Own the background work that runs alongside tool traffic.

    ``start`` returns as soon as the work is scheduled: the initial sync and
    commit scan run as a background task, so tool calls are served while they
    are still in flight.
    """

    def __init__(
        self,
        *,
        store: StreamStore,
        scanner: CommitScanner,
        importer: StreamFileImporter,
        summary_worker: SummaryWorker,
        dashboard: DashboardServer | None = None,
    ) -> None:
        self._store = store
        self._scanner = scanner
        self._importer = importer
        self._summary_worker = summary_worker
        self._dashboard = dashboard
        self._bootstrap_task: asyncio.Task[None] | None = None
        self._started = False

    @property
    def dashboard(self) -> DashboardServer | None:
        return self._dashboard

    @property
    def bootstrap_task(self) -> asyncio.Task[None] | None:
        return self._bootstrap_task

    def dashboard_info(self) -> dict[str, Any] | None:
        if self._dashboard is None or self._dashboard.info is None:
            return None
        return self._dashboard.info.as_dict()

    async def start(self) -> None:
        if self._started:
            return
        self._started = True

        self._bootstrap_task = asyncio.get_running_loop().create_task(
            self._bootstrap(), name="stream-status-bootstrap"
        )

        if self._dashboard is not None:
            try:
                info = await self._dashboard.start()
            except Exception as exc:
                logger.error("Dashboard failed to start; continuing without it", extra={"error": str(exc)})
            else:
                logger.info(
                    "Dashboard available",
                    extra={"port": info.port, "existing": info.existing},
                )

        self._summary_worker.start()

    async def stop(self) -> None:
        if not self._started:
            return
        self._started = False

        task, self._bootstrap_task = self._bootstrap_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        await self._summary_worker.stop()
        if self._dashboard is not None:
            try:
                await self._dashboard.stop()
            except Exception as exc:
                logger.error("Dashboard shutdown failed", extra={"error": str(exc)})
        self._store.close()

    async def _bootstrap(self) -> None:
        if not any(stream.id != MAIN_STREAM_ID for stream in self._store.list()):
            try:
                result = await self._importer.sync()
            except Exception:
                logger.exception("Initial stream sync failed")
            else:
                logger.info("Bootstrapped streams from plan files", extra={"synced": result.synced})

        try:
            await self._scanner.scan_all()
        except Exception:
            logger.exception("Initial commit scan failed")


__all__ = ["ServiceRuntime"]
