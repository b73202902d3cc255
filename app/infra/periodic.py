# app/infra/periodic.py
"""
In-process periodic task runner.

Runs one coroutine function on a fixed interval as an asyncio task, used
for the dispatch cycle and the reconciliation sweep.  A failing run is
logged and counted; the next run still happens on schedule.
"""
from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable

from app.infra.logging_config import get_logger
from app.infra.metrics import Timer, inc_counter

logger = get_logger(__name__)


class PeriodicTask:
    """
    Usage:
        task = PeriodicTask("dispatch", scheduler.run_dispatch_cycle, interval=1800)
        await task.start()
        ...
        await task.stop()
    """

    def __init__(
        self,
        name: str,
        func: Callable[[], Awaitable[Any]],
        *,
        interval: float,
        run_immediately: bool = False,
    ):
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.name = name
        self._func = func
        self._interval = interval
        self._run_immediately = run_immediately
        self._task: asyncio.Task | None = None
        self._running = False
        self.runs = 0
        self.failures = 0
        self.last_result: Any = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the loop as an asyncio task."""
        if self.is_running:
            return
        self._running = True
        self._task = asyncio.create_task(self._loop(), name=f"periodic:{self.name}")
        self._task.add_done_callback(self._on_task_done)
        logger.info(f"Periodic task started: {self.name}, interval={self._interval:.0f}s")

    async def stop(self) -> None:
        """Cancel the loop and wait for it to unwind."""
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info(f"Periodic task stopped: {self.name}")

    async def run_once(self) -> Any:
        """Run the function once, recording the outcome. Exceptions are logged, not raised."""
        self.runs += 1
        try:
            with Timer("periodic_run_seconds", task=self.name):
                self.last_result = await self._func()
            inc_counter("periodic_runs_total", task=self.name, outcome="ok")
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.failures += 1
            inc_counter("periodic_runs_total", task=self.name, outcome="error")
            logger.error(f"Periodic task {self.name} failed: {exc}", exc_info=True)
        return self.last_result

    async def _loop(self) -> None:
        if not self._run_immediately:
            await asyncio.sleep(self._interval)
        while self._running:
            await self.run_once()
            await asyncio.sleep(self._interval)

    def _on_task_done(self, task: asyncio.Task) -> None:
        """Log unexpected loop death."""
        if task.cancelled():
            return
        exc = task.exception()
        if exc:
            logger.error(
                f"Periodic task {self.name} died unexpectedly: {exc}",
                exc_info=(type(exc), exc, exc.__traceback__),
            )
