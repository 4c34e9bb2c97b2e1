"""Worker pool executing queued jobs with per-queue concurrency caps."""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Dict, List, Mapping, Optional

import structlog

from notewatch.errors import is_retryable
from notewatch.observability import JOBS_PROCESSED, collect_queue_metrics
from notewatch.payloads import JobPayload
from notewatch.queue import Job, QueueRuntime

logger = structlog.get_logger(__name__)

Handler = Callable[[JobPayload, Job], Optional[Dict[str, Any]]]

POLL_INTERVAL_SECONDS = 1.0


class WorkerPool:
    """Runs handlers for claimed jobs.

    ``start()`` spawns ``concurrency[queue]`` worker coroutines per queue plus
    a scheduler loop that turns due triggers into jobs.  Handlers are plain
    blocking callables and run in threads via :func:`asyncio.to_thread`.
    ``run_next()`` processes a single job synchronously for tests and the CLI.
    """

    def __init__(
        self,
        runtime: QueueRuntime,
        handlers: Mapping[str, Handler],
        *,
        concurrency: Optional[Mapping[str, int]] = None,
        poll_interval: float = POLL_INTERVAL_SECONDS,
    ) -> None:
        self.runtime = runtime
        self.handlers = dict(handlers)
        self.concurrency = {queue: 1 for queue in self.handlers}
        self.concurrency.update(concurrency or {})
        self.poll_interval = poll_interval
        self._tasks: List[asyncio.Task] = []
        self._stopping: Optional[asyncio.Event] = None

    @property
    def queues(self) -> List[str]:
        return list(self.handlers)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def execute(self, job: Job) -> Job:
        """Run the handler for an already claimed job and settle it."""

        structlog.contextvars.bind_contextvars(queue=job.queue_name, job_id=job.id, attempt=job.attempt)
        try:
            try:
                payload = job.typed_payload()
                result = self.handlers[job.queue_name](payload, job)
            except Exception as exc:
                retryable = is_retryable(exc)
                logger.exception("job_attempt_failed", retryable=retryable)
                settled = self.runtime.fail(job.id, f"{type(exc).__name__}: {exc}", retryable=retryable)
                outcome = "retry" if settled.state == "waiting" else "failed"
                JOBS_PROCESSED.labels(queue=job.queue_name, outcome=outcome).inc()
                return settled
            settled = self.runtime.complete(job.id, result)
            JOBS_PROCESSED.labels(queue=job.queue_name, outcome="completed").inc()
            logger.info("job_completed")
            return settled
        finally:
            structlog.contextvars.unbind_contextvars("queue", "job_id", "attempt")

    def run_next(self, queue: str) -> Optional[Job]:
        """Claim and run one due job from ``queue``; ``None`` when nothing is due."""

        if queue not in self.handlers:
            raise KeyError(f"No handler registered for {queue!r}")
        job = self.runtime.claim(queue)
        if job is None:
            return None
        return self.execute(job)

    def run_until_idle(self, queue: str, limit: int = 100) -> List[Job]:
        """Synchronously run due jobs of ``queue`` until none is left."""

        finished: List[Job] = []
        while len(finished) < limit:
            job = self.run_next(queue)
            if job is None:
                break
            finished.append(job)
        return finished

    # ------------------------------------------------------------------
    # Async lifecycle
    # ------------------------------------------------------------------

    async def _sleep(self) -> None:
        assert self._stopping is not None
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=self.poll_interval)
        except asyncio.TimeoutError:
            pass

    async def _worker(self, queue: str) -> None:
        assert self._stopping is not None
        while not self._stopping.is_set():
            try:
                job = await asyncio.to_thread(self.runtime.claim, queue)
                if job is None:
                    await self._sleep()
                    continue
                await asyncio.to_thread(self.execute, job)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("worker_loop_error", queue=queue)
                await self._sleep()

    async def _scheduler(self) -> None:
        assert self._stopping is not None
        while not self._stopping.is_set():
            try:
                await asyncio.to_thread(self.runtime.enqueue_due_schedules)
                stats = await asyncio.to_thread(self.runtime.all_stats, self.queues)
                collect_queue_metrics(stats)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("scheduler_loop_error")
            await self._sleep()

    async def start(self) -> None:
        if self._tasks:
            raise RuntimeError("Worker pool already started")
        self._stopping = asyncio.Event()
        for queue in self.queues:
            for _ in range(max(self.concurrency.get(queue, 1), 1)):
                self._tasks.append(asyncio.create_task(self._worker(queue)))
        self._tasks.append(asyncio.create_task(self._scheduler()))
        logger.info("worker_pool_started", concurrency=self.concurrency)

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait until no job in the pool's queues is active or due."""

        async def _wait() -> None:
            while not await asyncio.to_thread(self.runtime.is_idle, self.queues):
                await asyncio.sleep(self.poll_interval / 2)

        await asyncio.wait_for(_wait(), timeout=timeout)

    async def stop(self, grace_seconds: float = 30) -> None:
        """Stop claiming new jobs and wait for in-flight attempts to settle."""

        if self._stopping is not None:
            self._stopping.set()
        if not self._tasks:
            return
        _done, pending = await asyncio.wait(self._tasks, timeout=grace_seconds)
        for task in pending:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info("worker_pool_stopped", cancelled=len(pending))


__all__ = ["Handler", "WorkerPool"]
