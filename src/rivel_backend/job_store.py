"""
In-memory job registry and FIFO queue for prompt-to-image generation.

This module owns every generation job submitted to the API:
- Job creation and FIFO enqueueing
- Lifecycle transitions (queued -> running -> done | error)
- Queue position and wait-time estimates for polling clients
- A rolling window of recent execution durations
- Lazy time-to-live eviction of idle records

The store is designed for a single process with a single cooperative worker.
Every method runs to completion without awaiting, so no lock is taken: under
the asyncio event loop nothing else can observe the store mid-update.
"""

from __future__ import annotations

import math
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional
from uuid import uuid4

from .models import GenerationResult, JobDetail, JobStatus, round_ms

Clock = Callable[[], int]

DEFAULT_TTL_MS = 2 * 60 * 60 * 1000
DEFAULT_ROLLING_WINDOW = 20
DEFAULT_AVG_FALLBACK_MS = 60_000

RUNNING_POSITION = -1


def wall_clock_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class JobRecord:
    """
    Internal representation of one generation request and its lifecycle.

    Attributes:
        id: Unique job identifier (hex UUID), immutable
        status: Current lifecycle state
        input: Submitted parameters, passed through untouched to the generator
        result: Normalized generator output, set only when status is DONE
        error: Failure message, set only when status is ERROR
        created_at: Submission time (epoch ms)
        updated_at: Time of the last mutation (epoch ms), drives TTL eviction
        started_at: Time the worker picked the job up (epoch ms)
        finished_at: Time of the terminal transition (epoch ms)
        duration_ms: finished_at minus started_at (created_at if never started)
    """

    id: str
    status: JobStatus
    input: Any
    created_at: int
    updated_at: int
    result: Optional[GenerationResult] = None
    error: Optional[str] = None
    started_at: Optional[int] = None
    finished_at: Optional[int] = None
    duration_ms: Optional[int] = None

    def elapsed_ms(self, now: int) -> int:
        return now - (self.started_at if self.started_at is not None else self.created_at)

    def to_detail(
        self,
        now: int,
        queue_position: Optional[int],
        eta_ms: float,
        avg_duration_ms: Optional[float],
    ) -> JobDetail:
        """
        Convert to the polling response, enriched with queue information.

        Args:
            now: Current time (epoch ms) used for the elapsed time
            queue_position: Result of JobStore.get_queue_position
            eta_ms: Result of JobStore.estimate_wait_ms
            avg_duration_ms: Result of JobStore.get_avg_duration_ms

        Returns:
            JobDetail ready to be serialised by the API
        """
        return JobDetail(
            id=self.id,
            status=self.status,
            created_at=self.created_at,
            started_at=self.started_at,
            finished_at=self.finished_at,
            duration_ms=self.duration_ms,
            elapsed_ms=self.elapsed_ms(now),
            queue_position=queue_position,
            eta_ms=round_ms(eta_ms),
            avg_duration_ms=round_ms(avg_duration_ms),
            result=self.result,
            error=self.error,
        )


def find_expired(jobs: Mapping[str, JobRecord], now: int, ttl_ms: int) -> List[str]:
    """
    Return the ids of records idle for longer than the time-to-live.

    Pure function over the record collection so it can be driven either by
    store access or by a scheduled sweep.
    """
    return [job_id for job_id, job in jobs.items() if now - job.updated_at > ttl_ms]


def _error_message(error: Any) -> str:
    if isinstance(error, BaseException):
        return str(error) or error.__class__.__name__
    return str(error)


class JobStore:
    """
    Registry of generation jobs with a single-concurrency FIFO queue.

    The record collection is the only owner of JobRecord objects. The queue
    and ``current_job_id`` hold identifiers only, and may briefly point at
    records that were evicted or already consumed; every reader skips those.

    Lookups that fail ("not found", "already running") return None or a
    sentinel instead of raising. Callers branch on the return value.

    Attributes:
        ttl_ms: Idle time after which a record becomes unreachable
        rolling_window: Number of recent durations averaged for estimates
        avg_fallback_ms: Assumed job duration before any job has finished
        current_job_id: Id of the running job, or None
    """

    def __init__(
        self,
        ttl_ms: int = DEFAULT_TTL_MS,
        rolling_window: int = DEFAULT_ROLLING_WINDOW,
        avg_fallback_ms: int = DEFAULT_AVG_FALLBACK_MS,
        clock: Optional[Clock] = None,
    ) -> None:
        if rolling_window < 1:
            raise ValueError("rolling_window must be at least 1")
        self.ttl_ms = ttl_ms
        self.rolling_window = rolling_window
        self.avg_fallback_ms = avg_fallback_ms
        self.current_job_id: Optional[str] = None
        self._clock: Clock = clock or wall_clock_ms
        self._jobs: Dict[str, JobRecord] = {}
        self._queue: Deque[str] = deque()
        self._durations: Deque[int] = deque(maxlen=rolling_window)

    def now(self) -> int:
        return self._clock()

    # ---- lifecycle ----

    def create_job(self, input: Any) -> JobRecord:
        """
        Register a new job in the QUEUED state and append it to the queue.

        The input is stored as-is; validation belongs to the submitting layer.

        Args:
            input: Generation parameters for the worker

        Returns:
            The newly created JobRecord
        """
        now = self.now()
        record = JobRecord(
            id=uuid4().hex,
            status=JobStatus.QUEUED,
            input=input,
            created_at=now,
            updated_at=now,
        )
        self._jobs[record.id] = record
        self._queue.append(record.id)
        self.sweep()
        return record

    def get_job(self, job_id: str) -> Optional[JobRecord]:
        """
        Look up a job, evicting it on the spot when its TTL has elapsed.

        Args:
            job_id: The job identifier

        Returns:
            The JobRecord, or None when unknown or expired
        """
        self.sweep()
        record = self._jobs.get(job_id)
        if record is None:
            return None
        if self.now() - record.updated_at > self.ttl_ms:
            self._evict(job_id)
            return None
        return record

    def update_job(self, job_id: str, **changes: Any) -> Optional[JobRecord]:
        """
        Apply attribute changes to a job and refresh its updated_at timestamp.

        Transition rules are not enforced here; callers must not patch
        terminal jobs back into an active state.
        """
        record = self.get_job(job_id)
        if record is None:
            return None
        for key, value in changes.items():
            setattr(record, key, value)
        record.updated_at = self.now()
        return record

    def mark_running(self, job_id: str) -> Optional[JobRecord]:
        record = self.get_job(job_id)
        if record is None:
            return None
        record.status = JobStatus.RUNNING
        record.started_at = self.now()
        record.updated_at = record.started_at
        self.current_job_id = job_id
        return record

    def mark_done(self, job_id: str, result: GenerationResult) -> Optional[JobRecord]:
        record = self.get_job(job_id)
        if record is None:
            return None
        record.status = JobStatus.DONE
        record.result = result
        self._finish(record)
        return record

    def mark_error(self, job_id: str, error: Any) -> Optional[JobRecord]:
        """
        Move a job to the ERROR state.

        Args:
            job_id: The job that failed
            error: Exception raised by the generator, or a plain message

        Returns:
            The updated JobRecord, or None if the job no longer exists
        """
        record = self.get_job(job_id)
        if record is None:
            return None
        record.status = JobStatus.ERROR
        record.error = _error_message(error)
        self._finish(record)
        return record

    # ---- queue (single worker) ----

    def pop_next_job(self) -> Optional[JobRecord]:
        """
        Take the next QUEUED job off the head of the queue.

        Returns None while another job is running. Stale ids (evicted or no
        longer queued) are dropped from the queue without being returned.
        """
        if self.current_job_id is not None:
            return None

        while self._queue:
            next_id = self._queue.popleft()
            record = self.get_job(next_id)
            if record is None or record.status is not JobStatus.QUEUED:
                continue
            return record
        return None

    def get_queue_position(self, job_id: str) -> Optional[int]:
        """
        Zero-based position of a job in the queue.

        Returns:
            -1 for the running job, 0 for the next job to run, and None when
            the id is neither running nor queued (unknown, finished, evicted)
        """
        if job_id == self.current_job_id:
            return RUNNING_POSITION
        try:
            return self._queue.index(job_id)
        except ValueError:
            return None

    def get_avg_duration_ms(self) -> Optional[float]:
        if not self._durations:
            return None
        return sum(self._durations) / len(self._durations)

    def estimate_wait_ms(self, job_id: str) -> float:
        """
        Estimate how long until the given job finishes (running) or starts (queued).

        The running job gets the average minus its elapsed time, floored at
        zero. A queued job at position p waits for the running job (one
        average, if any job runs) plus p averages. Any other id waits 0.
        The fallback duration stands in for the average until a job finishes.
        """
        avg = self.get_avg_duration_ms()
        if avg is None:
            avg = self.avg_fallback_ms

        if job_id == self.current_job_id:
            record = self.get_job(job_id)
            if record is None or record.started_at is None:
                return avg
            return max(0.0, avg - (self.now() - record.started_at))

        position = self.get_queue_position(job_id)
        if position is None or position < 0:
            return 0
        running_remaining = avg if self.current_job_id is not None else 0
        return running_remaining + position * avg

    def stats(self) -> Dict[str, Any]:
        self.sweep()
        counts = {status.value: 0 for status in JobStatus}
        for record in self._jobs.values():
            counts[record.status.value] += 1
        return {
            **counts,
            "queue_length": len(self._queue),
            "current_job_id": self.current_job_id,
        }

    # ---- garbage collection ----

    def sweep(self) -> List[str]:
        """
        Evict every record idle for longer than the TTL.

        Returns:
            Ids that were evicted
        """
        expired = find_expired(self._jobs, self.now(), self.ttl_ms)
        for job_id in expired:
            self._evict(job_id)
        return expired

    def __len__(self) -> int:
        return len(self._jobs)

    def __contains__(self, job_id: object) -> bool:
        return job_id in self._jobs

    # ---- helpers ----

    def _finish(self, record: JobRecord) -> None:
        record.finished_at = self.now()
        started_at = record.started_at if record.started_at is not None else record.created_at
        record.duration_ms = record.finished_at - started_at
        record.updated_at = record.finished_at
        self._push_duration(record.duration_ms)
        self._remove_from_queue(record.id)
        if self.current_job_id == record.id:
            self.current_job_id = None

    def _push_duration(self, duration_ms: float) -> None:
        if not math.isfinite(duration_ms) or duration_ms < 0:
            return
        self._durations.append(duration_ms)

    def _evict(self, job_id: str) -> None:
        self._jobs.pop(job_id, None)
        self._remove_from_queue(job_id)
        if self.current_job_id == job_id:
            self.current_job_id = None

    def _remove_from_queue(self, job_id: str) -> None:
        # deque.remove drops the first match; ids are never enqueued twice
        if job_id in self._queue:
            self._queue.remove(job_id)
