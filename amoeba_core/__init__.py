"""
Amoeba Core
===========

Asynchronous job execution core: priority job queue, worker dispatcher,
cron scheduler with backfill, rate-limit admission control and readiness
reporting.
"""

__version__ = "1.0.0"

from amoeba_core.config import Settings, get_settings
from amoeba_core.engine import JobEngine
from amoeba_core.jobs import (
    HandlerRegistry,
    Job,
    JobPriority,
    JobQueue,
    JobStatus,
    JobType,
    PermanentJobError,
    RetryConfig,
    WorkerDispatcher,
)
from amoeba_core.monitoring import HealthStatus, ReadinessService
from amoeba_core.ratelimit import AdmissionController, RateLimiter, RateLimitExceeded
from amoeba_core.scheduling import CronExpression, CronScheduler, ScheduledJob

__all__ = [
    "__version__",
    "Settings",
    "get_settings",
    "JobEngine",
    "HandlerRegistry",
    "Job",
    "JobPriority",
    "JobQueue",
    "JobStatus",
    "JobType",
    "PermanentJobError",
    "RetryConfig",
    "WorkerDispatcher",
    "HealthStatus",
    "ReadinessService",
    "AdmissionController",
    "RateLimiter",
    "RateLimitExceeded",
    "CronExpression",
    "CronScheduler",
    "ScheduledJob",
]
