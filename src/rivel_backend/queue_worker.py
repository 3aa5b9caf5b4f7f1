"""
Single background worker that drains the generation queue.

One asyncio task polls the JobStore, runs the popped job against the
generation Space and records the outcome. Because the task awaits the remote
call before polling again, at most one job is ever RUNNING.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, Awaitable, Callable, Mapping, Optional

from .job_store import JobRecord, JobStore
from .models import GenerationResult

logger = logging.getLogger(__name__)

GenerateFn = Callable[[Any], Awaitable[Mapping[str, Any]]]

DEFAULT_POLL_INTERVAL = 0.2
WORKER_STOPPED = "Worker stopped"


def normalize_result(output: Mapping[str, Any]) -> GenerationResult:
    return GenerationResult(
        endpoint_used=str(output.get("endpoint_used") or ""),
        meta=output.get("meta"),
        image_url=output.get("image_url"),
    )


class QueueWorker:
    """
    Executes queued generation jobs one at a time.

    The worker imposes no timeout or retry on the generator; a slow call
    simply holds the queue until it settles.

    Attributes:
        store: The JobStore to drain
        poll_interval: Seconds to wait between ticks
    """

    def __init__(
        self,
        store: JobStore,
        generate: GenerateFn,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ) -> None:
        self.store = store
        self.poll_interval = poll_interval
        self._generate = generate
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task:
        """
        Spawn the polling loop on the running event loop.

        Calling start again while the loop is alive returns the existing task.
        """
        if self.running:
            return self._task  # type: ignore[return-value]
        self._task = asyncio.create_task(self._run(), name="generation-queue-worker")
        logger.info("Generation queue worker started")
        return self._task

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        logger.info("Generation queue worker stopped")

    async def run_once(self) -> Optional[JobRecord]:
        """
        Run a single tick: execute the next queued job, if any.

        Generator failures are recorded on the job as ERROR and never raised.
        Cancellation also ends the in-flight job as ERROR, so the worker slot
        is free when the loop is started again, and then propagates.

        Returns:
            The job in its terminal state, or None when nothing was executed
        """
        job = self.store.pop_next_job()
        if job is None:
            return None

        self.store.mark_running(job.id)
        logger.info(f"Job {job.id} started")

        try:
            output = await self._generate(job.input)
            result = normalize_result(output)
        except asyncio.CancelledError:
            self.store.mark_error(job.id, WORKER_STOPPED)
            logger.warning(f"Job {job.id} interrupted: worker stopped")
            raise
        except Exception as exc:  # noqa: BLE001 - any generator failure ends the job
            logger.warning(f"Job {job.id} failed: {exc}")
            return self.store.mark_error(job.id, exc)

        record = self.store.mark_done(job.id, result)
        if record is not None:
            logger.info(f"Job {job.id} completed in {record.duration_ms} ms")
        return record

    async def _run(self) -> None:
        while True:
            try:
                await self.run_once()
            except Exception:  # noqa: BLE001
                logger.exception("Queue worker tick failed")
            await asyncio.sleep(self.poll_interval)
