"""
Job Base Types
==============

Core types for the asynchronous job queue: job lifecycle states, the known
job-type capabilities, retry configuration and the job record itself.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional
from uuid import uuid4

JobHandler = Callable[[Dict[str, Any]], Awaitable[Any]]
Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def type_name(job_type: Any) -> str:
    """Normalize a JobType member or plain string to its tag."""
    return str(getattr(job_type, "value", job_type))


# =============================================================================
# ENUMS
# =============================================================================


class JobStatus(str, Enum):
    """Job lifecycle status"""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class JobType(str, Enum):
    """Job types the platform knows how to handle"""

    GENERATE = "generate"
    EMAIL = "email"
    WEBHOOK = "webhook"
    PERSONALIZED_EMAIL = "personalized_email"


class JobPriority(int, Enum):
    """Common priority levels (higher is more urgent)"""

    BACKFILL = 1
    BULK = 5
    LIVE = 10


# =============================================================================
# DATA CLASSES
# =============================================================================


@dataclass
class RetryConfig:
    """Retry configuration for failed jobs"""

    max_attempts: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 60.0
    multiplier: float = 2.0

    def get_delay(self, attempt: int) -> float:
        """Delay before the job is visible again after failing `attempt`."""
        if attempt < 1:
            return 0.0
        return min(
            self.base_delay_seconds * (self.multiplier ** (attempt - 1)),
            self.max_delay_seconds,
        )


@dataclass
class Job:
    """
    A unit of asynchronous work.

    The queue owns every field below `payload`; callers treat jobs they
    receive as read-only snapshots.
    """

    type: str
    priority: int = JobPriority.LIVE.value
    payload: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid4()))

    status: JobStatus = JobStatus.PENDING
    attempts: int = 0
    max_attempts: int = 3

    created_at: datetime = field(default_factory=utc_now)
    available_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    last_error: Optional[str] = None
    result: Any = None
    dedupe_key: Optional[str] = None
    sequence: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def can_retry(self) -> bool:
        return self.attempts < self.max_attempts

    @property
    def processing_seconds(self) -> Optional[float]:
        if self.processed_at and self.completed_at:
            return (self.completed_at - self.processed_at).total_seconds()
        return None

    def is_ready(self, now: datetime) -> bool:
        return self.status == JobStatus.PENDING and (
            self.available_at is None or self.available_at <= now
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "priority": self.priority,
            "payload": dict(self.payload),
            "status": self.status.value,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "created_at": self.created_at.isoformat(),
            "available_at": self.available_at.isoformat() if self.available_at else None,
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "last_error": self.last_error,
            "dedupe_key": self.dedupe_key,
        }


def backoff_deadline(now: datetime, retry: RetryConfig, attempt: int) -> datetime:
    return now + timedelta(seconds=retry.get_delay(attempt))


# =============================================================================
# EXCEPTIONS
# =============================================================================


class JobError(Exception):
    """Base exception for job errors."""
    pass


class JobNotFoundError(JobError):
    """Job does not exist in the queue."""

    def __init__(self, job_id: str):
        super().__init__(f"Job '{job_id}' not found")
        self.job_id = job_id


class InvalidJobTransitionError(JobError):
    """Requested state transition is not allowed from the current state."""

    def __init__(self, job_id: str, current: JobStatus, target: JobStatus):
        super().__init__(
            f"Job '{job_id}' cannot move from {current.value} to {target.value}"
        )
        self.job_id = job_id
        self.current = current
        self.target = target


class QueueFullError(JobError):
    """Queue has reached its maximum number of active jobs."""
    pass


class HandlerNotRegisteredError(JobError):
    """One or more job types have no registered handler."""

    def __init__(self, job_types):
        missing = sorted(type_name(t) for t in job_types)
        super().__init__(f"No handler registered for job type(s): {', '.join(missing)}")
        self.job_types = missing


class PermanentJobError(JobError):
    """Raised by handlers for failures that retrying cannot fix."""
    pass


__all__ = [
    "JobHandler",
    "Clock",
    "utc_now",
    "type_name",
    "JobStatus",
    "JobType",
    "JobPriority",
    "RetryConfig",
    "Job",
    "backoff_deadline",
    "JobError",
    "JobNotFoundError",
    "InvalidJobTransitionError",
    "QueueFullError",
    "HandlerNotRegisteredError",
    "PermanentJobError",
]
