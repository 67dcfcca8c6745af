"""
Job Metrics
===========

Point-in-time queue snapshots and cumulative counters fed by queue
transitions.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog
from pydantic import BaseModel, computed_field

from amoeba_core.jobs.base import Job, JobStatus, type_name
from amoeba_core.jobs.queue import JobQueue

logger = structlog.get_logger(__name__)


class QueueMetrics(BaseModel):
    """Job counts by status, counted from current job state"""

    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0

    @computed_field
    @property
    def total(self) -> int:
        return self.pending + self.processing + self.completed + self.failed

    @computed_field
    @property
    def failure_rate(self) -> float:
        """Failed share of all jobs, in percent"""
        if self.total == 0:
            return 0.0
        return self.failed / self.total * 100

    @classmethod
    def from_queue(cls, queue: JobQueue) -> "QueueMetrics":
        counts = queue.counts()
        return cls(
            pending=counts[JobStatus.PENDING],
            processing=counts[JobStatus.PROCESSING],
            completed=counts[JobStatus.COMPLETED],
            failed=counts[JobStatus.FAILED],
        )


@dataclass
class GenerationStats:
    """Cumulative outcome statistics for one job type"""

    job_type: str
    total: int = 0
    successful: int = 0
    failed: int = 0
    retried: int = 0
    last_completed_at: Optional[datetime] = None
    _durations: List[float] = field(default_factory=list, repr=False)

    @property
    def average_processing_seconds(self) -> float:
        if not self._durations:
            return 0.0
        return round(sum(self._durations) / len(self._durations), 3)

    @property
    def success_rate(self) -> float:
        finished = self.successful + self.failed
        if finished == 0:
            return 0.0
        return round(self.successful / finished * 100, 1)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_type": self.job_type,
            "total": self.total,
            "successful": self.successful,
            "failed": self.failed,
            "retried": self.retried,
            "success_rate": self.success_rate,
            "average_processing_seconds": self.average_processing_seconds,
            "last_completed_at": (
                self.last_completed_at.isoformat() if self.last_completed_at else None
            ),
        }


class JobMetricsCollector:
    """
    Queue transition observer keeping cumulative counters.

    Usage:
        metrics = JobMetricsCollector()
        metrics.attach(queue)
        ...
        metrics.get_generation_stats("generate")
    """

    # Completion samples kept per type for the processing-time average
    MAX_SAMPLES = 1000

    def __init__(self):
        self.enqueued = 0
        self.started = 0
        self.completed = 0
        self.failed = 0
        self.retried = 0
        self._by_type: Dict[str, GenerationStats] = {}
        self._queues: List[JobQueue] = []

    def attach(self, queue: JobQueue) -> None:
        queue.add_listener(self.on_transition)
        self._queues.append(queue)

    def detach(self) -> None:
        for queue in self._queues:
            queue.remove_listener(self.on_transition)
        self._queues = []

    def on_transition(self, job: Job, previous: Optional[JobStatus]) -> None:
        stats = self._stats(job.type)

        if previous is None:
            self.enqueued += 1
            stats.total += 1
        elif job.status == JobStatus.PROCESSING:
            self.started += 1
        elif job.status == JobStatus.PENDING:
            self.retried += 1
            stats.retried += 1
        elif job.status == JobStatus.COMPLETED:
            self.completed += 1
            stats.successful += 1
            stats.last_completed_at = job.completed_at
            if job.processing_seconds is not None:
                stats._durations.append(job.processing_seconds)
                del stats._durations[:-self.MAX_SAMPLES]
        elif job.status == JobStatus.FAILED:
            self.failed += 1
            stats.failed += 1

    def _stats(self, job_type: str) -> GenerationStats:
        stats = self._by_type.get(job_type)
        if stats is None:
            stats = self._by_type[job_type] = GenerationStats(job_type=job_type)
        return stats

    def get_generation_stats(self, job_type: Optional[Any] = None) -> Dict[str, Any]:
        """Stats for one job type, or every observed type keyed by name"""
        if job_type is not None:
            return self._stats(type_name(job_type)).to_dict()
        return {name: stats.to_dict() for name, stats in sorted(self._by_type.items())}

    def get_summary(self) -> Dict[str, int]:
        return {
            "enqueued": self.enqueued,
            "started": self.started,
            "completed": self.completed,
            "failed": self.failed,
            "retried": self.retried,
        }

    def reset(self) -> None:
        self.enqueued = self.started = self.completed = self.failed = self.retried = 0
        self._by_type.clear()


__all__ = ["QueueMetrics", "GenerationStats", "JobMetricsCollector"]
