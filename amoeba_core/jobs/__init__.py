"""
Job Queue and Dispatch
======================

Priority job queue, job state machine and the worker dispatcher that runs
registered handlers with retry and exponential backoff.
"""

from amoeba_core.jobs.base import (
    Job,
    JobStatus,
    JobType,
    JobPriority,
    JobHandler,
    RetryConfig,
    JobError,
    JobNotFoundError,
    InvalidJobTransitionError,
    QueueFullError,
    HandlerNotRegisteredError,
    PermanentJobError,
)
from amoeba_core.jobs.queue import JobQueue
from amoeba_core.jobs.dispatcher import HandlerRegistry, WorkerDispatcher

__all__ = [
    # Types
    "Job",
    "JobStatus",
    "JobType",
    "JobPriority",
    "JobHandler",
    "RetryConfig",
    # Errors
    "JobError",
    "JobNotFoundError",
    "InvalidJobTransitionError",
    "QueueFullError",
    "HandlerNotRegisteredError",
    "PermanentJobError",
    # Components
    "JobQueue",
    "HandlerRegistry",
    "WorkerDispatcher",
]
