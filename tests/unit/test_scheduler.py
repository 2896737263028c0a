import asyncio

import pytest

from learnchain.reconciliation import ReconciliationReport, ReconciliationScheduler


class CountingJob:
    def __init__(self, fail_first: bool = False) -> None:
        self.runs = 0
        self.fail_first = fail_first

    async def run_once(self) -> ReconciliationReport:
        self.runs += 1
        if self.fail_first and self.runs == 1:
            msg = "database went away"
            raise RuntimeError(msg)
        return ReconciliationReport()


@pytest.mark.asyncio
async def test_scheduler_runs_until_stopped() -> None:
    job = CountingJob()
    scheduler = ReconciliationScheduler(job, interval_seconds=0.01)

    scheduler.start()
    assert scheduler.running is True
    await asyncio.sleep(0.05)
    await scheduler.stop()

    assert scheduler.running is False
    runs = job.runs
    assert runs >= 2
    await asyncio.sleep(0.03)
    assert job.runs == runs


@pytest.mark.asyncio
async def test_failed_sweep_does_not_stop_the_scheduler() -> None:
    job = CountingJob(fail_first=True)
    scheduler = ReconciliationScheduler(job, interval_seconds=0.01)

    scheduler.start()
    await asyncio.sleep(0.05)
    await scheduler.stop()

    assert job.runs >= 2
