"""
Job Queue
=========

Priority queue and state machine for asynchronous jobs.

The queue is the single owner of job state. Every transition goes through
`claim_next`, `complete` or `fail`, all serialized by one asyncio lock so
that two workers can never claim the same job.

Ordering: numerically higher priority first, FIFO within a priority band.
Failed attempts go back to `pending` with a backoff deadline and keep their
original position in the FIFO order.

Finished jobs stay readable until `remove` or `purge_terminal` drops them;
status counts and the dedupe index are maintained on every transition.
"""

from __future__ import annotations

import asyncio
import heapq
import inspect
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

import structlog

from amoeba_core.jobs.base import (
    Clock,
    InvalidJobTransitionError,
    Job,
    JobError,
    JobNotFoundError,
    JobStatus,
    QueueFullError,
    RetryConfig,
    backoff_deadline,
    type_name,
    utc_now,
)

logger = structlog.get_logger(__name__)

TransitionListener = Callable[[Job, Optional[JobStatus]], Any]


class JobQueue:
    """
    In-memory job store with atomic claim.

    Usage:
        queue = JobQueue(retry_config=RetryConfig(max_attempts=3))
        job = await queue.enqueue("generate", 10, {"tpl": "x"})
        claimed = await queue.claim_next()
        await queue.complete(claimed.id)
    """

    def __init__(
        self,
        name: str = "default",
        max_size: int = 10000,
        retry_config: Optional[RetryConfig] = None,
        clock: Optional[Clock] = None,
    ):
        self.name = name
        self.max_size = max_size
        self.retry_config = retry_config or RetryConfig()
        self._clock = clock or utc_now
        self._jobs: Dict[str, Job] = {}
        self._counts: Dict[JobStatus, int] = {status: 0 for status in JobStatus}
        self._active_keys: Dict[str, str] = {}
        self._heap: List[Tuple[int, int, str]] = []
        self._sequence = 0
        self._lock = asyncio.Lock()
        self._listeners: List[TransitionListener] = []
        self._logger = structlog.get_logger(f"job_queue.{name}")

    # -------------------------------------------------------------------------
    # Observers
    # -------------------------------------------------------------------------

    def add_listener(self, listener: TransitionListener) -> None:
        """Register a callback invoked with (job, previous_status) on every transition"""
        self._listeners.append(listener)

    def remove_listener(self, listener: TransitionListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def _notify(self, job: Job, previous: Optional[JobStatus]) -> None:
        for listener in list(self._listeners):
            try:
                outcome = listener(job, previous)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:
                self._logger.error(
                    "transition_listener_error",
                    job_id=job.id,
                    listener=getattr(listener, "__qualname__", repr(listener)),
                    error=str(e),
                )

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    async def enqueue(
        self,
        job_type: Any,
        priority: int,
        payload: Optional[Dict[str, Any]] = None,
        *,
        max_attempts: Optional[int] = None,
        dedupe_key: Optional[str] = None,
    ) -> Job:
        """Create a pending job and make it visible to dispatch"""
        if max_attempts is not None and max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {max_attempts}")

        async with self._lock:
            if self.size >= self.max_size:
                raise QueueFullError(
                    f"Queue '{self.name}' is full ({self.max_size} active jobs)"
                )

            self._sequence += 1
            job = Job(
                type=type_name(job_type),
                priority=int(priority),
                payload=dict(payload or {}),
                max_attempts=(
                    self.retry_config.max_attempts if max_attempts is None else max_attempts
                ),
                created_at=self._clock(),
                dedupe_key=dedupe_key,
                sequence=self._sequence,
            )
            self._jobs[job.id] = job
            self._counts[JobStatus.PENDING] += 1
            if dedupe_key is not None:
                self._active_keys[dedupe_key] = job.id
            self._push(job)
            snapshot = self._snapshot(job)

        self._logger.info(
            "job_enqueued",
            job_id=job.id,
            job_type=job.type,
            priority=job.priority,
        )
        await self._notify(snapshot, None)
        return snapshot

    async def claim_next(self) -> Optional[Job]:
        """
        Atomically claim the most urgent ready job.

        Returns None when nothing is ready; never waits for work.
        """
        async with self._lock:
            now = self._clock()
            deferred: List[Tuple[int, int, str]] = []
            claimed: Optional[Job] = None

            while self._heap:
                entry = heapq.heappop(self._heap)
                job = self._jobs.get(entry[2])
                if job is None or job.status != JobStatus.PENDING:
                    continue
                if -entry[0] != job.priority:
                    # superseded by a promotion
                    continue
                if not job.is_ready(now):
                    deferred.append(entry)
                    continue
                claimed = job
                break

            for entry in deferred:
                heapq.heappush(self._heap, entry)

            if claimed is None:
                return None

            self._set_status(claimed, JobStatus.PROCESSING)
            claimed.attempts += 1
            claimed.available_at = None
            if claimed.processed_at is None:
                claimed.processed_at = now
            snapshot = self._snapshot(claimed)

        self._logger.debug(
            "job_claimed",
            job_id=snapshot.id,
            job_type=snapshot.type,
            attempt=snapshot.attempts,
        )
        await self._notify(snapshot, JobStatus.PENDING)
        return snapshot

    async def complete(self, job_id: str, result: Any = None) -> Job:
        """Transition processing -> completed"""
        async with self._lock:
            job = self._require(job_id)
            if job.status != JobStatus.PROCESSING:
                raise InvalidJobTransitionError(job_id, job.status, JobStatus.COMPLETED)

            self._set_status(job, JobStatus.COMPLETED)
            job.completed_at = self._clock()
            job.result = result
            job.last_error = None
            snapshot = self._snapshot(job)

        self._logger.info(
            "job_completed",
            job_id=job_id,
            job_type=snapshot.type,
            attempts=snapshot.attempts,
            processing_seconds=snapshot.processing_seconds,
        )
        await self._notify(snapshot, JobStatus.PROCESSING)
        return snapshot

    async def fail(self, job_id: str, error: Any, *, retryable: bool = True) -> Job:
        """
        Record a failed attempt.

        Jobs with attempts left go back to pending after a backoff delay;
        exhausted or non-retryable jobs become terminally failed. Calling
        this on a job that is already terminal is a no-op.
        """
        async with self._lock:
            job = self._require(job_id)
            if job.is_terminal:
                return self._snapshot(job)
            if job.status != JobStatus.PROCESSING:
                raise InvalidJobTransitionError(job_id, job.status, JobStatus.FAILED)

            now = self._clock()
            job.last_error = str(error)

            if retryable and job.can_retry:
                self._set_status(job, JobStatus.PENDING)
                job.available_at = backoff_deadline(now, self.retry_config, job.attempts)
                self._push(job)
            else:
                self._set_status(job, JobStatus.FAILED)
                job.completed_at = now
            snapshot = self._snapshot(job)

        if snapshot.status == JobStatus.PENDING:
            self._logger.warning(
                "job_retrying",
                job_id=job_id,
                job_type=snapshot.type,
                attempt=snapshot.attempts,
                max_attempts=snapshot.max_attempts,
                retry_at=snapshot.available_at.isoformat(),
                error=snapshot.last_error,
            )
        else:
            self._logger.error(
                "job_failed",
                job_id=job_id,
                job_type=snapshot.type,
                attempts=snapshot.attempts,
                retryable=retryable,
                error=snapshot.last_error,
            )
        await self._notify(snapshot, JobStatus.PROCESSING)
        return snapshot

    async def promote(self, job_id: str, priority: int) -> Job:
        """
        Raise the priority of a pending job.

        Lower or equal priorities and jobs that are no longer pending are
        left as they are.
        """
        async with self._lock:
            job = self._require(job_id)
            previous = job.priority
            if job.status == JobStatus.PENDING and priority > previous:
                job.priority = int(priority)
                self._push(job)
            snapshot = self._snapshot(job)

        if snapshot.priority != previous:
            self._logger.info(
                "job_promoted",
                job_id=job_id,
                job_type=snapshot.type,
                previous_priority=previous,
                priority=snapshot.priority,
            )
        return snapshot

    # -------------------------------------------------------------------------
    # Retention
    # -------------------------------------------------------------------------

    async def remove(self, job_id: str) -> bool:
        """Remove a finished job; pending and processing jobs cannot be removed"""
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return False
            if not job.is_terminal:
                raise JobError(f"Job '{job_id}' is {job.status.value} and cannot be removed")
            self._drop(job)
        return True

    async def purge_terminal(self, older_than: Optional[datetime] = None) -> int:
        """Drop finished jobs completed at or before `older_than` (all when None)"""
        async with self._lock:
            expired = [
                job for job in self._jobs.values()
                if job.is_terminal
                and (older_than is None or job.completed_at <= older_than)
            ]
            for job in expired:
                self._drop(job)

        if expired:
            self._logger.info("terminal_jobs_purged", count=len(expired))
        return len(expired)

    # -------------------------------------------------------------------------
    # Readers
    # -------------------------------------------------------------------------

    def get(self, job_id: str) -> Optional[Job]:
        """Get a snapshot of a job by ID"""
        job = self._jobs.get(job_id)
        return self._snapshot(job) if job else None

    def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        job_type: Optional[Any] = None,
        limit: Optional[int] = None,
    ) -> List[Job]:
        """List jobs, newest first"""
        wanted_type = type_name(job_type) if job_type is not None else None
        jobs = [
            job for job in self._jobs.values()
            if (status is None or job.status == status)
            and (wanted_type is None or job.type == wanted_type)
        ]
        jobs.sort(key=lambda j: j.sequence, reverse=True)
        if limit is not None:
            jobs = jobs[:limit]
        return [self._snapshot(job) for job in jobs]

    def find_active(self, dedupe_key: str) -> Optional[Job]:
        """Find a pending or processing job carrying the given dedupe key"""
        job_id = self._active_keys.get(dedupe_key)
        if job_id is None:
            return None
        return self._snapshot(self._jobs[job_id])

    def counts(self) -> Dict[JobStatus, int]:
        return dict(self._counts)

    def next_available_at(self) -> Optional[datetime]:
        """Earliest backoff deadline among pending jobs, if any"""
        deadlines = [
            job.available_at for job in self._jobs.values()
            if job.status == JobStatus.PENDING and job.available_at is not None
        ]
        return min(deadlines) if deadlines else None

    @property
    def size(self) -> int:
        return self._counts[JobStatus.PENDING] + self._counts[JobStatus.PROCESSING]

    @property
    def is_empty(self) -> bool:
        return self.size == 0

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _push(self, job: Job) -> None:
        heapq.heappush(self._heap, (-job.priority, job.sequence, job.id))

    def _set_status(self, job: Job, status: JobStatus) -> None:
        self._counts[job.status] -= 1
        self._counts[status] += 1
        job.status = status
        if status.is_terminal and job.dedupe_key is not None:
            if self._active_keys.get(job.dedupe_key) == job.id:
                del self._active_keys[job.dedupe_key]

    def _drop(self, job: Job) -> None:
        del self._jobs[job.id]
        self._counts[job.status] -= 1

    def _require(self, job_id: str) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    @staticmethod
    def _snapshot(job: Job) -> Job:
        return replace(job, payload=dict(job.payload))


__all__ = ["JobQueue", "TransitionListener"]
