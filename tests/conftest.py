"""Shared pytest fixtures for testing."""

from datetime import datetime, timedelta, timezone

import pytest

from amoeba_core.jobs import HandlerRegistry, JobQueue, RetryConfig


class FakeClock:
    """Controllable UTC clock injected into time-dependent components."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, **kwargs) -> datetime:
        self.now += timedelta(seconds=seconds, **kwargs)
        return self.now

    def set(self, value: datetime) -> datetime:
        self.now = value
        return self.now


# Thursday
START = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock():
    """Fake clock starting at 2026-01-15 12:00 UTC."""
    return FakeClock(START)


@pytest.fixture
def queue(clock):
    """Job queue on the fake clock with default retry settings."""
    return JobQueue(retry_config=RetryConfig(max_attempts=3), clock=clock)


@pytest.fixture
def registry():
    return HandlerRegistry()
