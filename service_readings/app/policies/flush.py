"""
Deferred persistence for write-behind readings.

Each accepted write-behind reading becomes a ``FlushJob`` run as its own
asyncio task after a fixed delay. The task belongs to the scheduler, not to
the request that queued it, and it cannot be cancelled once scheduled.

Job lifecycle::

    queued -> flushing -> persisted
                       -> lost

A lost job is final. Its provisional cache entry is left in place and nothing
retries the insert; the failure is only logged, counted, and kept on the job.
"""

import asyncio
import uuid
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, Optional, Set, TYPE_CHECKING

from shared.logging import get_logger
from .models import FlushRecord, FlushState, Reading

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


class FlushJob:
    """A single deferred persistence of a provisional reading."""

    def __init__(self, provisional_id: str, reading: Reading):
        self.job_id = uuid.uuid4().hex
        self.provisional_id = provisional_id
        self.reading = reading
        self.state = FlushState.QUEUED
        self.queued_at = datetime.now(timezone.utc)
        self.finished_at: Optional[datetime] = None
        self.persisted_id: Optional[str] = None
        self.error: Optional[str] = None
        self._done = asyncio.Event()

    @property
    def done(self) -> bool:
        return self.state in (FlushState.PERSISTED, FlushState.LOST)

    async def wait(self) -> "FlushJob":
        """Wait until the job is persisted or lost."""
        await self._done.wait()
        return self

    def _finish(self, state: FlushState, error: Optional[str] = None):
        self.state = state
        if error is not None:
            self.error = error
        self.finished_at = datetime.now(timezone.utc)
        self._done.set()

    def to_record(self) -> FlushRecord:
        return FlushRecord(
            job_id=self.job_id,
            provisional_id=self.provisional_id,
            state=self.state,
            queued_at=self.queued_at,
            finished_at=self.finished_at,
            persisted_id=self.persisted_id,
            error=self.error,
        )


FlushHandler = Callable[[FlushJob], Awaitable[str]]


class FlushScheduler:
    """Runs write-behind flush jobs in the background."""

    def __init__(
        self,
        delay_seconds: float = 0.1,
        *,
        history_size: int = 1000,
        metrics: Optional["MetricsCollector"] = None,
    ):
        self.delay_seconds = delay_seconds
        self.history_size = history_size
        self.metrics = metrics
        self.logger = get_logger("readings.write_behind")
        self._jobs: "OrderedDict[str, FlushJob]" = OrderedDict()
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        """Number of jobs that are queued or flushing."""
        return len(self._tasks)

    def schedule(self, provisional_id: str, reading: Reading, handler: FlushHandler) -> FlushJob:
        """Queue a flush and return immediately.

        ``handler`` performs the actual persistence and returns the
        store-assigned identifier; any exception it raises marks the job lost.
        """
        job = FlushJob(provisional_id, reading)
        self._jobs[job.job_id] = job
        self._trim_history()

        task = asyncio.create_task(self._run(job, handler), name=f"write-behind-{job.job_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        self._update_pending_gauge()

        self.logger.debug("Write-behind flush queued", job_id=job.job_id, provisional_id=provisional_id)
        return job

    async def _run(self, job: FlushJob, handler: FlushHandler):
        try:
            if self.delay_seconds > 0:
                await asyncio.sleep(self.delay_seconds)

            job.state = FlushState.FLUSHING
            job.persisted_id = await handler(job)
            job._finish(FlushState.PERSISTED)

            self.logger.info(
                "Write-behind persisted",
                job_id=job.job_id,
                provisional_id=job.provisional_id,
                persisted_id=job.persisted_id
            )
        except Exception as e:
            job._finish(FlushState.LOST, str(e))
            self.logger.error(
                "Write-behind flush failed; reading lost",
                job_id=job.job_id,
                provisional_id=job.provisional_id,
                error=str(e)
            )
        except asyncio.CancelledError:
            job._finish(FlushState.LOST, "cancelled at shutdown")
            self.logger.error(
                "Write-behind flush cancelled; reading lost",
                job_id=job.job_id,
                provisional_id=job.provisional_id
            )
            raise
        finally:
            if self.metrics and job.done:
                self.metrics.increment_counter("write_behind_flushes_total", outcome=job.state.value)
            self._tasks.discard(asyncio.current_task())
            self._update_pending_gauge()

    def get_job(self, job_id: str) -> Optional[FlushJob]:
        return self._jobs.get(job_id)

    async def wait(self, job_id: str, timeout: Optional[float] = None) -> FlushJob:
        """Wait for one job to finish.

        Raises KeyError for unknown jobs and asyncio.TimeoutError when the job
        is still running after ``timeout`` seconds.
        """
        job = self._jobs[job_id]
        await asyncio.wait_for(job.wait(), timeout)
        return job

    async def drain(self, timeout: Optional[float] = None) -> int:
        """Wait for every scheduled job to finish.

        Returns the number of jobs still running when ``timeout`` expired.
        """
        if not self._tasks:
            return 0
        _, still_running = await asyncio.wait(set(self._tasks), timeout=timeout)
        return len(still_running)

    async def stop(self, timeout: Optional[float] = None):
        """Drain outstanding flushes before the stores are closed."""
        remaining = await self.drain(timeout)
        if remaining:
            self.logger.warning("Write-behind flushes still pending at shutdown", pending=remaining)

    def _trim_history(self):
        # Only finished jobs are evicted; running jobs stay addressable.
        excess = len(self._jobs) - self.history_size
        if excess <= 0:
            return
        for job_id in [job_id for job_id, job in self._jobs.items() if job.done][:excess]:
            del self._jobs[job_id]

    def _update_pending_gauge(self):
        if self.metrics:
            self.metrics.set_gauge("write_behind_pending", len(self._tasks))

    def stats(self) -> Dict[str, int]:
        counts = {state.value: 0 for state in FlushState}
        for job in self._jobs.values():
            counts[job.state.value] += 1
        return counts
