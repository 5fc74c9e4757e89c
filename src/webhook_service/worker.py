"""Periodic background worker hooked into the aiohttp lifecycle.

Usage::

    worker = BackgroundWorker(
        interval_seconds=60.0,
        tasks=[WorkerTask(name="webhook_reclaim", fn=reclaim)],
    )

    app.on_startup.append(worker.start)
    app.on_cleanup.append(worker.stop)
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Sequence

import structlog
from aiohttp import web

logger = structlog.get_logger(__name__)

# Receives the current UTC time, returns an optional summary that is logged
# when non-empty.
TaskFn = Callable[[datetime], Awaitable[str | None]]


@dataclass
class WorkerTask:
    name: str
    fn: TaskFn


_WORKER_TASK_KEY = "__background_worker_task__"


@dataclass
class BackgroundWorker:
    """Runs its tasks every ``interval_seconds``; a failing task does not stop the others."""

    interval_seconds: float = 60.0
    tasks: Sequence[WorkerTask] = field(default_factory=list)

    async def start(self, app: web.Application) -> None:
        app[_WORKER_TASK_KEY] = asyncio.create_task(self._loop())

    async def stop(self, app: web.Application) -> None:
        task = app.get(_WORKER_TASK_KEY)
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def run_once(self, now: datetime | None = None) -> dict[str, str | None]:
        """Run every task once; returns summaries keyed by task name."""
        now = now or datetime.now(timezone.utc)
        summaries: dict[str, str | None] = {}
        for task in self.tasks:
            try:
                summary = await task.fn(now)
            except Exception:
                logger.exception("background_task_failed", task=task.name)
                summaries[task.name] = None
                continue
            if summary:
                logger.info("background_task_completed", task=task.name, summary=summary)
            summaries[task.name] = summary
        return summaries

    async def _loop(self) -> None:
        logger.info(
            "background_worker_started",
            interval_seconds=self.interval_seconds,
            tasks=[t.name for t in self.tasks],
        )
        while True:
            try:
                await asyncio.sleep(self.interval_seconds)
                await self.run_once()
            except asyncio.CancelledError:
                logger.info("background_worker_stopped")
                raise
            except Exception:
                logger.exception("background_worker_sweep_failed")
