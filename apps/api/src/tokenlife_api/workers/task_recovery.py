"""One-shot worker that recovers jobs missed while the service was down."""

from __future__ import annotations

import asyncio
from typing import Dict

from loguru import logger

from tokenlife_api.core.settings import settings
from tokenlife_api.scheduling.recovery import TaskRecoveryPlanner
from tokenlife_api.scheduling.scheduler import TaskScheduler


class TaskRecoveryWorker:
    """Waits out a start-up delay, then checks every recoverable job once.

    Runs as a background task so recovery never blocks application start-up.
    """

    def __init__(
        self,
        scheduler: TaskScheduler,
        *,
        planner: TaskRecoveryPlanner | None = None,
        delay_seconds: float | None = None,
    ) -> None:
        self._scheduler = scheduler
        self._planner = planner or TaskRecoveryPlanner(scheduler)
        self.delay_seconds = settings.task_recovery_delay_seconds if delay_seconds is None else delay_seconds
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None
        self.is_running: bool = False
        self.last_summary: Dict[str, int] | None = None

    def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run())
        self.is_running = True
        logger.info("Task recovery worker started", delay_seconds=self.delay_seconds)

    async def stop(self) -> None:
        if not self._task:
            return
        self._stop_event.set()
        await self._task
        self._task = None
        self.is_running = False
        logger.info("Task recovery worker stopped")

    async def run_once(self) -> Dict[str, int]:
        summary = await self._planner.recover_missed_runs()
        self.last_summary = summary
        logger.bind(summary=summary).info("Task recovery pass completed")
        return summary

    async def _run(self) -> None:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=self.delay_seconds)
            return
        except asyncio.TimeoutError:
            pass

        try:
            await self.run_once()
        except Exception as exc:  # pragma: no cover
            logger.exception("Task recovery pass failed", error=str(exc))
        finally:
            self.is_running = False
