"""
Periodic circulation jobs.

Overdue status, hold expiry and due-date reminders are deadline driven: an
explicit scheduler runs each job on a fixed interval instead of arming a
timer per loan or per hold. Each run gets a fresh session from
``engine_factory`` and runs in a worker thread, so the blocking database
work never stalls the event loop the tool handlers share.
"""

import asyncio
import logging
from collections.abc import Callable
from contextlib import AbstractContextManager

from ..config import CirculationConfig, get_config
from ..observability import logfire
from .engine import CirculationEngine, engine_scope

logger = logging.getLogger(__name__)

EngineFactory = Callable[[], AbstractContextManager[CirculationEngine]]

JOBS: dict[str, Callable[[CirculationEngine], int]] = {
    "overdue_sweep": lambda engine: engine.run_overdue_sweep(),
    "reservation_expiry": lambda engine: engine.expire_old_reservations(),
    "due_reminders": lambda engine: engine.send_due_date_reminders(),
}


class CirculationScheduler:
    """Runs the circulation jobs on their configured intervals until stopped."""

    def __init__(
        self,
        engine_factory: EngineFactory = engine_scope,
        config: CirculationConfig | None = None,
    ):
        self.engine_factory = engine_factory
        self.config = config or get_config()
        self._stop = asyncio.Event()
        self._tasks: list[asyncio.Task] = []

    @property
    def intervals(self) -> dict[str, float]:
        return {
            "overdue_sweep": self.config.overdue_sweep_interval_seconds,
            "reservation_expiry": self.config.reservation_expiry_interval_seconds,
            "due_reminders": self.config.due_reminder_interval_seconds,
        }

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    def _run_job(self, job: str) -> int:
        with logfire.span(f"scheduler.{job}", job=job), self.engine_factory() as engine:
            return JOBS[job](engine)

    async def run_once(self, job: str) -> int:
        """Run one job to completion and return its count."""
        if job not in JOBS:
            raise ValueError(f"Unknown circulation job: {job}")
        result = await asyncio.to_thread(self._run_job, job)
        logger.debug("Job %s processed %d record(s)", job, result)
        return result

    async def _loop(self, job: str, interval: float) -> None:
        while not self._stop.is_set():
            try:
                await self.run_once(job)
            except Exception:
                # A failed run is retried on the next tick.
                logger.exception("Circulation job %s failed", job)
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=interval)
            except TimeoutError:
                continue

    def start(self) -> None:
        """Start one task per job on the running event loop."""
        if self.running:
            return
        self._stop = asyncio.Event()
        self._tasks = [
            asyncio.create_task(self._loop(job, interval), name=f"circulation-{job}")
            for job, interval in self.intervals.items()
        ]
        logger.info("Circulation scheduler started: %s", self.intervals)

    async def stop(self) -> None:
        """Signal every job loop to finish and wait for in-flight runs."""
        self._stop.set()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Circulation scheduler stopped")

    async def __aenter__(self) -> "CirculationScheduler":
        self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()
