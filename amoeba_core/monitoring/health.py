"""
System Readiness
================

Traffic-light readiness built from independent health checks.

Every check yields a status, a human-readable message and a detail bag.
Aggregation:
- any critical check makes the system critical
- otherwise degraded checks outnumbering or equalling healthy ones make it
  degraded
- otherwise it is healthy

The score is the healthy share of all checks (0-100). Critical checks
contribute blockers, degraded checks contribute warnings, and both can carry
remediation recommendations.
"""

from __future__ import annotations

import asyncio
import inspect
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple, Union

import structlog
from pydantic import BaseModel, Field

from amoeba_core.jobs.base import Clock, utc_now
from amoeba_core.jobs.queue import JobQueue
from amoeba_core.monitoring.metrics import QueueMetrics
from amoeba_core.scheduling.scheduler import CronScheduler, ScheduleStatus

logger = structlog.get_logger(__name__)


# =============================================================================
# Health Status Types
# =============================================================================


class HealthStatus(str, Enum):
    """Health status values."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    CRITICAL = "critical"

    @property
    def icon(self) -> str:
        return {
            HealthStatus.HEALTHY: "🟢",
            HealthStatus.DEGRADED: "🟡",
            HealthStatus.CRITICAL: "🔴",
        }[self]


# =============================================================================
# Health Check Models
# =============================================================================


class HealthCheck(BaseModel):
    """Result of a single health check."""

    name: str = ""
    status: HealthStatus
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utc_now)

    @property
    def icon(self) -> str:
        return self.status.icon


class SystemReadiness(BaseModel):
    """Aggregated readiness of the job system."""

    overall: HealthStatus
    overall_icon: str
    score: int
    checks: Dict[str, HealthCheck] = Field(default_factory=dict)
    blockers: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=utc_now)


class QuickHealth(BaseModel):
    status: HealthStatus
    icon: str
    message: str


CheckFunc = Callable[[], Union[HealthCheck, Awaitable[HealthCheck]]]


@dataclass
class RegisteredCheck:
    name: str
    check: CheckFunc
    blocker: Optional[str] = None
    warning: Optional[str] = None
    recommendation: Optional[str] = None
    failure_status: HealthStatus = HealthStatus.CRITICAL
    core: bool = False


def aggregate(
    checks: Dict[str, HealthCheck],
) -> Tuple[HealthStatus, int]:
    """Overall status and score for a set of check results."""
    statuses = [c.status for c in checks.values()]
    healthy = statuses.count(HealthStatus.HEALTHY)
    degraded = statuses.count(HealthStatus.DEGRADED)

    if HealthStatus.CRITICAL in statuses:
        overall = HealthStatus.CRITICAL
    elif degraded >= healthy:
        overall = HealthStatus.DEGRADED
    else:
        overall = HealthStatus.HEALTHY

    score = round(healthy / len(statuses) * 100) if statuses else 0
    return overall, score


# =============================================================================
# Check Factories
# =============================================================================


def storage_check(
    ping: Callable[[], Awaitable[Any]],
    degraded_ms: float = 100.0,
    critical_ms: float = 500.0,
    timer: Callable[[], float] = time.perf_counter,
) -> Callable[[], Awaitable[HealthCheck]]:
    """Round-trip latency check against the persistence layer."""

    async def check() -> HealthCheck:
        start_time = timer()
        try:
            await ping()
        except Exception as e:
            return HealthCheck(
                status=HealthStatus.CRITICAL,
                message=f"Storage connection failed: {e}",
                details={"error": str(e)},
            )

        latency = round((timer() - start_time) * 1000)
        if latency > critical_ms:
            status, message = HealthStatus.CRITICAL, f"Storage very slow ({latency}ms)"
        elif latency > degraded_ms:
            status, message = HealthStatus.DEGRADED, f"Storage slow ({latency}ms)"
        else:
            status, message = HealthStatus.HEALTHY, f"Storage connected ({latency}ms)"

        return HealthCheck(status=status, message=message, details={"latency_ms": latency})

    return check


def credentials_check(
    fetch: Callable[[], Awaitable[Iterable[Dict[str, Any]]]],
    label: str = "AI",
    missing_status: HealthStatus = HealthStatus.CRITICAL,
) -> Callable[[], Awaitable[HealthCheck]]:
    """
    Checks that provider credentials are configured.

    `fetch` returns credential records with `is_active` and `is_default`
    flags. No active credential yields `missing_status`; active credentials
    without a default are degraded.
    """

    async def check() -> HealthCheck:
        credentials = list(await fetch())
        active = [c for c in credentials if c.get("is_active", True)]

        if not active:
            return HealthCheck(
                status=missing_status,
                message=f"No {label} credentials configured",
                details={"total": len(credentials), "active": 0},
            )

        if not any(c.get("is_default") for c in active):
            return HealthCheck(
                status=HealthStatus.DEGRADED,
                message=f"No default {label} credential set",
                details={
                    "active": len(active),
                    "action": f"Mark one {label} credential as default",
                },
            )

        return HealthCheck(
            status=HealthStatus.HEALTHY,
            message=f"{len(active)} {label} credential(s) ready",
            details={"active": len(active)},
        )

    return check


# =============================================================================
# Readiness Service
# =============================================================================


class ReadinessService:
    """
    Runs registered health checks and aggregates them.

    Usage:
        service = ReadinessService(queue, scheduler)
        service.register_check("storage", storage_check(db.ping))
        readiness = await service.get_readiness()
    """

    def __init__(
        self,
        queue: JobQueue,
        scheduler: Optional[CronScheduler] = None,
        processing_watermark: int = 50,
        failure_rate_threshold: float = 30.0,
        clock: Optional[Clock] = None,
    ):
        self.queue = queue
        self.scheduler = scheduler
        self.processing_watermark = processing_watermark
        self.failure_rate_threshold = failure_rate_threshold
        self._clock = clock or utc_now
        self._checks: Dict[str, RegisteredCheck] = {}
        self._logger = structlog.get_logger("readiness_service")

        self.register_check(
            "queue",
            self.check_queue,
            blocker="Job queue unavailable - no jobs can be processed",
            warning="Queue health degraded - check for failures",
            core=True,
        )
        if scheduler is not None:
            self.register_check(
                "scheduled_jobs",
                self.check_scheduled_jobs,
                failure_status=HealthStatus.DEGRADED,
            )

    def register_check(
        self,
        name: str,
        check: CheckFunc,
        *,
        blocker: Optional[str] = None,
        warning: Optional[str] = None,
        recommendation: Optional[str] = None,
        failure_status: HealthStatus = HealthStatus.CRITICAL,
        core: bool = False,
    ) -> None:
        """Register a health check function."""
        self._checks[name] = RegisteredCheck(
            name=name,
            check=check,
            blocker=blocker,
            warning=warning,
            recommendation=recommendation,
            failure_status=failure_status,
            core=core,
        )

    def unregister_check(self, name: str) -> bool:
        return self._checks.pop(name, None) is not None

    @property
    def check_names(self) -> List[str]:
        return list(self._checks)

    # -------------------------------------------------------------------------
    # Snapshots
    # -------------------------------------------------------------------------

    def get_queue_metrics(self) -> QueueMetrics:
        return QueueMetrics.from_queue(self.queue)

    async def run_check(self, name: str) -> HealthCheck:
        """Run a single check; a raising check reports its failure status."""
        registered = self._checks[name]
        try:
            result = registered.check()
            if inspect.isawaitable(result):
                result = await result
        except Exception as e:
            self._logger.error("health_check_failed", check=name, error=str(e))
            result = HealthCheck(
                status=registered.failure_status,
                message=f"Check failed: {e}",
                details={"error": str(e)},
            )
        return result.model_copy(update={"name": name})

    async def get_readiness(self) -> SystemReadiness:
        """Run every check concurrently and aggregate the results."""
        names = list(self._checks)
        results = await asyncio.gather(*(self.run_check(name) for name in names))
        checks = dict(zip(names, results))

        overall, score = aggregate(checks)
        blockers: List[str] = []
        warnings: List[str] = []
        recommendations: List[str] = []

        for name, result in checks.items():
            registered = self._checks[name]
            if result.status == HealthStatus.CRITICAL:
                blockers.append(registered.blocker or f"{name}: {result.message}")
            elif result.status == HealthStatus.DEGRADED:
                warnings.append(registered.warning or f"{name}: {result.message}")
            else:
                continue

            recommendation = registered.recommendation or result.details.get("action")
            if recommendation and recommendation not in recommendations:
                recommendations.append(recommendation)

        statuses = [c.status for c in checks.values()]
        healthy = statuses.count(HealthStatus.HEALTHY)
        degraded = statuses.count(HealthStatus.DEGRADED)
        if checks and healthy == len(checks):
            recommendations.append("System is fully operational")
        elif HealthStatus.CRITICAL not in statuses and healthy > degraded:
            recommendations.append("Most systems healthy - address warnings for full functionality")

        readiness = SystemReadiness(
            overall=overall,
            overall_icon=overall.icon,
            score=score,
            checks=checks,
            blockers=blockers,
            warnings=warnings,
            recommendations=recommendations,
            timestamp=self._clock(),
        )
        self._logger.info(
            "readiness_evaluated",
            overall=overall.value,
            score=score,
            blockers=len(blockers),
            warnings=len(warnings),
        )
        return readiness

    async def get_quick_health(self) -> QuickHealth:
        """Core checks only, for lightweight status endpoints."""
        core = [name for name, c in self._checks.items() if c.core]
        results = await asyncio.gather(*(self.run_check(name) for name in core))

        for status in (HealthStatus.CRITICAL, HealthStatus.DEGRADED):
            failing = [r for r in results if r.status == status]
            if failing:
                return QuickHealth(status=status, icon=status.icon, message=failing[0].message)

        return QuickHealth(
            status=HealthStatus.HEALTHY,
            icon=HealthStatus.HEALTHY.icon,
            message="All core systems operational",
        )

    # -------------------------------------------------------------------------
    # Built-in checks
    # -------------------------------------------------------------------------

    def check_queue(self) -> HealthCheck:
        metrics = self.get_queue_metrics()
        details = metrics.model_dump()

        if metrics.processing > self.processing_watermark:
            return HealthCheck(
                status=HealthStatus.DEGRADED,
                message=f"High queue load ({metrics.processing} processing)",
                details=details,
            )

        if metrics.failure_rate > self.failure_rate_threshold:
            return HealthCheck(
                status=HealthStatus.DEGRADED,
                message=f"High failure rate ({metrics.failure_rate:.1f}%)",
                details=details,
            )

        return HealthCheck(
            status=HealthStatus.HEALTHY,
            message=f"Queue healthy ({metrics.completed} completed)",
            details=details,
        )

    def check_scheduled_jobs(self) -> HealthCheck:
        schedules = self.scheduler.list_schedules() if self.scheduler else []
        active = [s for s in schedules if s.is_active]

        if not schedules:
            return HealthCheck(
                status=HealthStatus.DEGRADED,
                message="No scheduled jobs configured",
                details={"action": "Schedule jobs for automated content generation"},
            )

        if not active:
            return HealthCheck(
                status=HealthStatus.DEGRADED,
                message="All jobs are inactive",
                details={
                    "total": len(schedules),
                    "active": 0,
                    "action": "Activate jobs to enable automation",
                },
            )

        failing = [s for s in active if s.last_status == ScheduleStatus.ERROR]
        details = {
            "total": len(schedules),
            "active": len(active),
            "failing": len(failing),
        }

        if len(failing) > len(active) / 2:
            return HealthCheck(
                status=HealthStatus.DEGRADED,
                message=f"{len(failing)} job(s) failing",
                details={**details, "action": "Check job errors and fix issues"},
            )

        return HealthCheck(
            status=HealthStatus.HEALTHY,
            message=f"{len(active)} active job(s)",
            details={**details, "success_rate": _success_rate(active)},
        )


def _success_rate(schedules) -> int:
    with_runs = [s for s in schedules if s.total_runs > 0]
    total_runs = sum(s.total_runs for s in with_runs)
    if total_runs == 0:
        return 0
    return round(sum(s.success_count for s in with_runs) / total_runs * 100)


__all__ = [
    "HealthStatus",
    "HealthCheck",
    "SystemReadiness",
    "QuickHealth",
    "CheckFunc",
    "aggregate",
    "storage_check",
    "credentials_check",
    "ReadinessService",
]
