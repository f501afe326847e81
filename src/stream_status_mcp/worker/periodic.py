"""Cancellable periodic asyncio jobs."""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Callable

logger = logging.getLogger(__name__)

Callback = Callable[[], Any]


class PeriodicTask:
    """Run ``callback`` every ``interval`` seconds until stopped.

    A failing tick is logged and the loop keeps going; only cancellation ends it.
    """

    def __init__(
        self,
        name: str,
        interval: float,
        callback: Callback,
        *,
        run_immediately: bool = False,
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be > 0")
        self._name = name
        self._interval = interval
        self._callback = callback
        self._run_immediately = run_immediately
        self._task: asyncio.Task[None] | None = None
        self.ticks = 0
        self.failures = 0

    @property
    def name(self) -> str:
        return self._name

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._loop(), name=self._name)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def run_once(self) -> Any:
        """Invoke the callback once; exceptions propagate to the caller."""

        result = self._callback()
        if inspect.isawaitable(result):
            result = await result
        return result

    async def _loop(self) -> None:
        if not self._run_immediately:
            await asyncio.sleep(self._interval)
        while True:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                self.failures += 1
                logger.exception("Periodic task tick failed", extra={"task": self._name})
            self.ticks += 1
            await asyncio.sleep(self._interval)


__all__ = ["PeriodicTask"]
