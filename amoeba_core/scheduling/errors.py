"""Scheduling exceptions."""


class SchedulingError(Exception):
    """Base exception for scheduling errors."""
    pass


class CronExpressionError(SchedulingError, ValueError):
    """Cron expression or timezone cannot be parsed."""
    pass


class ScheduledJobNotFoundError(SchedulingError):
    """Scheduled job not found."""

    def __init__(self, schedule_id: str):
        super().__init__(f"Scheduled job '{schedule_id}' not found")
        self.schedule_id = schedule_id


__all__ = [
    "SchedulingError",
    "CronExpressionError",
    "ScheduledJobNotFoundError",
]
