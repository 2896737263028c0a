"""Background task that runs the reconciliation sweep on an interval."""

import asyncio
import contextlib
import logging

from .job import ReconciliationJob


logger = logging.getLogger(__name__)


class ReconciliationScheduler:
    """Runs ``ReconciliationJob.run_once`` every ``interval_seconds`` until stopped."""

    def __init__(self, job: ReconciliationJob, interval_seconds: float) -> None:
        self.job = job
        self.interval_seconds = interval_seconds
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="reconciliation-scheduler")
        logger.info(f"Reconciliation scheduler started (every {self.interval_seconds}s)")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info("Reconciliation scheduler stopped")

    async def _run(self) -> None:
        while True:
            try:
                await self.job.run_once()
            except Exception as e:
                # A failed sweep is retried on the next tick
                logger.exception(f"Reconciliation sweep failed: {e}")
            await asyncio.sleep(self.interval_seconds)
