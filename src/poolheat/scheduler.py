"""Periodic trigger for control cycles.

Kept apart from the orchestrator so deployments can drive run_cycle from
cron, a systemd timer or the manual API instead.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from poolheat.exceptions import CycleInProgressError, SetpointBoundsViolation
from poolheat.logging import get_logger

if TYPE_CHECKING:
    from poolheat.orchestrator import Orchestrator

logger = get_logger(__name__)


class CycleScheduler:
    """Runs orchestrator cycles every ``interval`` seconds.

    A cycle already in progress (manual trigger) makes the tick a no-op. A
    setpoint bounds violation stops the scheduler: automation must not keep
    running on a logic bug.

    Args:
        orchestrator: Orchestrator whose run_cycle is called.
        interval: Seconds between cycle starts.
    """

    def __init__(self, orchestrator: Orchestrator, interval: float = 300.0) -> None:
        self._orchestrator = orchestrator
        self._interval = interval
        self._running = False
        self._task: asyncio.Task | None = None  # type: ignore[type-arg]

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Begin running cycles in the background."""
        if self._running:
            logger.warning("scheduler_already_running")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("scheduler_started", interval=self._interval)

    async def stop(self) -> None:
        """Stop scheduling; a cycle in progress is cancelled."""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("scheduler_stopped")

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await self._orchestrator.run_cycle()
            except asyncio.CancelledError:
                raise
            except CycleInProgressError:
                logger.info("scheduled_cycle_skipped", reason="cycle in progress")
            except SetpointBoundsViolation:
                logger.critical("scheduler_halted_bounds_violation")
                self._running = False
                return
            except Exception as e:
                logger.error("scheduled_cycle_error", error=str(e), exc_info=True)
            if self._running:
                await asyncio.sleep(self._interval)
