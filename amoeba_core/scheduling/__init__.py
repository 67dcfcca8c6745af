"""
Scheduling
==========

Cron parsing and the recurring-job scheduler.
"""

from amoeba_core.scheduling.cron import (
    CronExpression,
    next_due_time,
    parse_cron,
    resolve_timezone,
    validate_cron,
)
from amoeba_core.scheduling.errors import (
    CronExpressionError,
    ScheduledJobNotFoundError,
    SchedulingError,
)
from amoeba_core.scheduling.scheduler import (
    BackfillReport,
    CronScheduler,
    FireOutcome,
    FireResult,
    IdempotencyOracle,
    ScheduledJob,
    ScheduleStatus,
    TickReport,
    make_dedupe_key,
    never_complete,
)

__all__ = [
    "CronExpression",
    "next_due_time",
    "parse_cron",
    "resolve_timezone",
    "validate_cron",
    "SchedulingError",
    "CronExpressionError",
    "ScheduledJobNotFoundError",
    "BackfillReport",
    "CronScheduler",
    "FireOutcome",
    "FireResult",
    "IdempotencyOracle",
    "ScheduledJob",
    "ScheduleStatus",
    "TickReport",
    "make_dedupe_key",
    "never_complete",
]
