"""
Cron Scheduler
==============

Turns recurring schedules into concrete queued jobs.

Every tick evaluates each active ScheduledJob in isolation. A due schedule
first asks the idempotency oracle whether the work for its period already
exists; only incomplete periods without an active duplicate in the queue
produce a new job. The same path serves manual triggers, date-range backfill
(at low priority so catch-up work never starves live work) and the startup
continuity pass that covers the current and next periods right away instead
of waiting for the next tick boundary.

The scheduler creates jobs and never changes their state. When live work
arrives for a period whose job is still queued at a lower priority, the job
is promoted through the queue instead of duplicated.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Union
from uuid import uuid4

import structlog

from amoeba_core.jobs.base import Clock, Job, JobStatus, type_name, utc_now
from amoeba_core.jobs.queue import JobQueue
from amoeba_core.scheduling.cron import CronExpression, parse_cron, resolve_timezone
from amoeba_core.scheduling.errors import ScheduledJobNotFoundError

logger = structlog.get_logger(__name__)

IdempotencyOracle = Callable[[str, Dict[str, Any], str], Awaitable[bool]]
DateLike = Union[date, str]

# Upper bound on occurrences walked when locating the latest due instant
MAX_OCCURRENCE_STEPS = 10000
SEARCH_WINDOWS = (
    timedelta(minutes=1),
    timedelta(hours=1),
    timedelta(days=1),
    timedelta(days=32),
    timedelta(days=366),
)


async def never_complete(target_type: str, target_ref: Dict[str, Any], period: str) -> bool:
    """Default oracle: no period is ever known to be complete"""
    return False


# =============================================================================
# ENUMS / DATA CLASSES
# =============================================================================


class ScheduleStatus(str, Enum):
    """Outcome of the most recent scheduling run"""

    SUCCESS = "success"
    ERROR = "error"
    NEVER_RUN = "never run"


class FireOutcome(str, Enum):
    ENQUEUED = "enqueued"
    ALREADY_COMPLETE = "already_complete"
    DUPLICATE = "duplicate"
    PROMOTED = "promoted"


@dataclass
class ScheduledJob:
    """
    A recurring intent: enqueue `target_type` with `target_ref` whenever
    `cron_expression` fires on the wall clock of `timezone`.

    `period_format` names the period a run belongs to; the oracle and the
    duplicate check work per period.
    """

    name: str
    cron_expression: str
    target_type: str
    target_ref: Dict[str, Any] = field(default_factory=dict)
    timezone: str = "UTC"
    is_active: bool = True
    priority: int = 10
    period_format: str = "%Y-%m-%d"
    id: str = field(default_factory=lambda: str(uuid4()))
    created_at: datetime = field(default_factory=utc_now)

    last_run_at: Optional[datetime] = None
    last_status: ScheduleStatus = ScheduleStatus.NEVER_RUN
    last_error: Optional[str] = None
    total_runs: int = 0
    success_count: int = 0

    @property
    def success_rate(self) -> float:
        if self.total_runs == 0:
            return 0.0
        return round(self.success_count / self.total_runs * 100, 1)

    def period_for(self, instant: Union[datetime, date]) -> str:
        if isinstance(instant, datetime):
            instant = instant.astimezone(resolve_timezone(self.timezone))
        return instant.strftime(self.period_format)

    def advance_last_run(self, when: datetime) -> None:
        if self.last_run_at is None or when > self.last_run_at:
            self.last_run_at = when

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "cron_expression": self.cron_expression,
            "timezone": self.timezone,
            "is_active": self.is_active,
            "target_type": self.target_type,
            "target_ref": dict(self.target_ref),
            "priority": self.priority,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "last_status": self.last_status.value,
            "last_error": self.last_error,
            "total_runs": self.total_runs,
            "success_count": self.success_count,
        }


@dataclass
class FireResult:
    """What happened for one (target, period) evaluation"""

    target_type: str
    period: str
    outcome: FireOutcome
    job: Optional[Job] = None
    schedule_id: Optional[str] = None

    @property
    def enqueued(self) -> bool:
        return self.outcome == FireOutcome.ENQUEUED


@dataclass
class TickReport:
    """Summary of one scheduler tick"""

    evaluated: int = 0
    fired: List[FireResult] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)

    @property
    def enqueued(self) -> List[Job]:
        return [r.job for r in self.fired if r.enqueued]

    @property
    def skipped(self) -> int:
        return sum(1 for r in self.fired if not r.enqueued)


@dataclass
class BackfillReport:
    """Result of a backfill pass over a date range"""

    periods_checked: int = 0
    enqueued: List[Job] = field(default_factory=list)
    skipped_periods: List[str] = field(default_factory=list)


def make_dedupe_key(target_type: str, target_ref: Dict[str, Any], period: str) -> str:
    ref = json.dumps(target_ref, sort_keys=True, default=str)
    return f"{target_type}|{ref}|{period}"


def _as_date(value: DateLike) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


# =============================================================================
# SCHEDULER
# =============================================================================


class CronScheduler:
    """
    Evaluates recurring schedules on a fixed tick.

    Usage:
        scheduler = CronScheduler(queue, oracle=horoscopes_exist)
        scheduler.create_schedule(
            name="daily-horoscopes",
            cron_expression="0 0 * * *",
            target_type=JobType.GENERATE,
            target_ref={"template": "daily"},
        )
        await scheduler.start()
        ...
        await scheduler.stop()
    """

    def __init__(
        self,
        queue: JobQueue,
        oracle: Optional[IdempotencyOracle] = None,
        tick_seconds: float = 60.0,
        live_priority: int = 10,
        backfill_priority: int = 1,
        lookahead_days: int = 2,
        clock: Optional[Clock] = None,
    ):
        self.queue = queue
        self.tick_seconds = tick_seconds
        self.live_priority = live_priority
        self.backfill_priority = backfill_priority
        self.lookahead_days = lookahead_days
        self._oracle = oracle or never_complete
        self._clock = clock or utc_now
        self._schedules: Dict[str, ScheduledJob] = {}
        self._lock = asyncio.Lock()
        self._running = False
        self._tick_task: Optional[asyncio.Task] = None
        self._logger = structlog.get_logger("cron_scheduler")

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Cover the current and upcoming periods, then tick on a fixed interval"""
        if self._running:
            return
        self._running = True

        if self.lookahead_days > 0:
            await self.ensure_continuity()
        await self.tick()

        self._tick_task = asyncio.create_task(self._tick_loop())
        self._logger.info(
            "scheduler_started",
            schedules=len(self._schedules),
            tick_seconds=self.tick_seconds,
        )

    async def stop(self) -> None:
        """Stop the tick loop"""
        self._running = False

        if self._tick_task:
            self._tick_task.cancel()
            try:
                await self._tick_task
            except asyncio.CancelledError:
                pass
            self._tick_task = None

        self._logger.info("scheduler_stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    async def _tick_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.tick_seconds)
                await self.tick()
            except asyncio.CancelledError:
                break
            except Exception as e:
                self._logger.error("scheduler_loop_error", error=str(e))

    # -------------------------------------------------------------------------
    # Schedule management
    # -------------------------------------------------------------------------

    def create_schedule(
        self,
        name: str,
        cron_expression: str,
        target_type: Any,
        target_ref: Optional[Dict[str, Any]] = None,
        timezone: str = "UTC",
        priority: Optional[int] = None,
        is_active: bool = True,
        period_format: str = "%Y-%m-%d",
    ) -> ScheduledJob:
        """Validate and register a new schedule"""
        parse_cron(cron_expression)
        resolve_timezone(timezone)

        schedule = ScheduledJob(
            name=name,
            cron_expression=cron_expression,
            target_type=type_name(target_type),
            target_ref=dict(target_ref or {}),
            timezone=timezone,
            priority=self.live_priority if priority is None else priority,
            is_active=is_active,
            period_format=period_format,
            created_at=self._clock(),
        )
        return self.add_schedule(schedule)

    def add_schedule(self, schedule: ScheduledJob) -> ScheduledJob:
        """Register an existing schedule as-is, e.g. one loaded from storage"""
        self._schedules[schedule.id] = schedule
        self._logger.info(
            "schedule_added",
            schedule_id=schedule.id,
            name=schedule.name,
            cron=schedule.cron_expression,
            timezone=schedule.timezone,
        )
        return schedule

    def remove_schedule(self, schedule_id: str) -> bool:
        return self._schedules.pop(schedule_id, None) is not None

    def get_schedule(self, schedule_id: str) -> Optional[ScheduledJob]:
        return self._schedules.get(schedule_id)

    def list_schedules(self, active_only: bool = False) -> List[ScheduledJob]:
        return [
            s for s in self._schedules.values()
            if s.is_active or not active_only
        ]

    def activate(self, schedule_id: str) -> ScheduledJob:
        schedule = self._require(schedule_id)
        schedule.is_active = True
        return schedule

    def deactivate(self, schedule_id: str) -> ScheduledJob:
        schedule = self._require(schedule_id)
        schedule.is_active = False
        return schedule

    def _require(self, schedule_id: str) -> ScheduledJob:
        schedule = self._schedules.get(schedule_id)
        if schedule is None:
            raise ScheduledJobNotFoundError(schedule_id)
        return schedule

    # -------------------------------------------------------------------------
    # Due-ness
    # -------------------------------------------------------------------------

    def latest_due(self, schedule: ScheduledJob, now: datetime) -> Optional[datetime]:
        """
        Most recent occurrence after the schedule's last run (or creation)
        that is not later than `now`; None when nothing is due.
        """
        since = schedule.last_run_at or schedule.created_at
        return self._latest_occurrence(schedule, since, now)

    def is_due(self, schedule: ScheduledJob, now: Optional[datetime] = None) -> bool:
        if not schedule.is_active:
            return False
        return self.latest_due(schedule, now or self._clock()) is not None

    def _latest_occurrence(
        self,
        schedule: ScheduledJob,
        since: datetime,
        now: datetime,
    ) -> Optional[datetime]:
        cron = parse_cron(schedule.cron_expression)

        # Probe short windows first so frequent expressions stay cheap
        for window in SEARCH_WINDOWS:
            start = max(since, now - window)
            latest = self._walk(cron, schedule.timezone, start, now)
            if latest is not None or start == since:
                return latest
        return self._walk(cron, schedule.timezone, since, now)

    @staticmethod
    def _walk(
        cron: CronExpression,
        timezone: str,
        start: datetime,
        now: datetime,
    ) -> Optional[datetime]:
        occurrence = cron.next_occurrence(start, timezone)
        if occurrence > now:
            return None
        for _ in range(MAX_OCCURRENCE_STEPS):
            following = cron.next_occurrence(occurrence, timezone)
            if following > now:
                break
            occurrence = following
        return occurrence

    # -------------------------------------------------------------------------
    # Evaluation
    # -------------------------------------------------------------------------

    async def tick(self, now: Optional[datetime] = None) -> TickReport:
        """Evaluate every active schedule once; one failure never stops the rest"""
        now = now or self._clock()
        report = TickReport()

        for schedule in self.list_schedules(active_only=True):
            report.evaluated += 1
            try:
                due_at = self.latest_due(schedule, now)
                if due_at is None:
                    continue
                result = await self._fire(schedule, due_at, now)
                report.fired.append(result)
            except Exception as e:
                self._mark_error(schedule, e)
                report.errors[schedule.id] = str(e)

        if report.fired or report.errors:
            self._logger.info(
                "scheduler_tick",
                evaluated=report.evaluated,
                enqueued=len(report.enqueued),
                skipped=report.skipped,
                errors=len(report.errors),
            )
        return report

    async def trigger(self, schedule_id: str, now: Optional[datetime] = None) -> FireResult:
        """
        Run a schedule immediately, bypassing the due check.

        The oracle and duplicate check still apply.
        """
        schedule = self._require(schedule_id)
        now = now or self._clock()
        self._logger.info("schedule_triggered", schedule_id=schedule_id, name=schedule.name)
        try:
            return await self._fire(schedule, now, now)
        except Exception as e:
            self._mark_error(schedule, e)
            raise

    async def _fire(
        self,
        schedule: ScheduledJob,
        due_at: datetime,
        now: datetime,
    ) -> FireResult:
        async with self._lock:
            schedule.total_runs += 1
            result = await self._enqueue_period(
                schedule.target_type,
                schedule.target_ref,
                schedule.period_for(due_at),
                schedule.priority,
                schedule_id=schedule.id,
            )
            schedule.advance_last_run(now)
            schedule.last_status = ScheduleStatus.SUCCESS
            schedule.last_error = None
            schedule.success_count += 1
            return result

    def _mark_error(self, schedule: ScheduledJob, error: Exception) -> None:
        schedule.last_status = ScheduleStatus.ERROR
        schedule.last_error = str(error)
        self._logger.error(
            "schedule_evaluation_failed",
            schedule_id=schedule.id,
            name=schedule.name,
            cron=schedule.cron_expression,
            error=str(error),
        )

    async def _enqueue_period(
        self,
        target_type: str,
        target_ref: Dict[str, Any],
        period: str,
        priority: int,
        schedule_id: Optional[str] = None,
    ) -> FireResult:
        if await self._oracle(target_type, dict(target_ref), period):
            self._logger.debug(
                "period_already_complete",
                target_type=target_type,
                period=period,
                schedule_id=schedule_id,
            )
            return FireResult(target_type, period, FireOutcome.ALREADY_COMPLETE, schedule_id=schedule_id)

        dedupe_key = make_dedupe_key(target_type, target_ref, period)
        existing = self.queue.find_active(dedupe_key)
        if existing is not None:
            if existing.status == JobStatus.PENDING and existing.priority < priority:
                # a queued backfill job now carries live work
                promoted = await self.queue.promote(existing.id, priority)
                return FireResult(target_type, period, FireOutcome.PROMOTED, promoted, schedule_id)

            self._logger.debug(
                "period_already_queued",
                target_type=target_type,
                period=period,
                job_id=existing.id,
            )
            return FireResult(target_type, period, FireOutcome.DUPLICATE, existing, schedule_id)

        payload = {**target_ref, "period": period}
        if schedule_id:
            payload["scheduled_job_id"] = schedule_id

        job = await self.queue.enqueue(
            target_type,
            priority,
            payload,
            dedupe_key=dedupe_key,
        )
        self._logger.info(
            "period_scheduled",
            target_type=target_type,
            period=period,
            priority=priority,
            job_id=job.id,
        )
        return FireResult(target_type, period, FireOutcome.ENQUEUED, job, schedule_id)

    # -------------------------------------------------------------------------
    # Continuity & backfill
    # -------------------------------------------------------------------------

    async def ensure_continuity(
        self,
        now: Optional[datetime] = None,
        days: Optional[int] = None,
    ) -> List[FireResult]:
        """
        Eagerly cover the current period (when it already had an occurrence)
        and the upcoming ones for every active schedule. Does not count as a
        run and leaves `last_run_at` untouched.
        """
        now = now or self._clock()
        horizon = self.lookahead_days if days is None else days
        results: List[FireResult] = []

        for schedule in self.list_schedules(active_only=True):
            try:
                for period in self._upcoming_periods(schedule, now, horizon):
                    results.append(
                        await self._enqueue_period(
                            schedule.target_type,
                            schedule.target_ref,
                            period,
                            schedule.priority,
                            schedule_id=schedule.id,
                        )
                    )
            except Exception as e:
                self._mark_error(schedule, e)

        self._logger.info(
            "continuity_checked",
            periods=len(results),
            enqueued=sum(1 for r in results if r.enqueued),
        )
        return results

    def _upcoming_periods(self, schedule: ScheduledJob, now: datetime, count: int) -> List[str]:
        if count <= 0:
            return []
        periods: List[str] = []
        current = schedule.period_for(now)
        latest = self._latest_occurrence(schedule, now - timedelta(days=1), now)
        if latest is not None and schedule.period_for(latest) == current:
            periods.append(current)

        cron = parse_cron(schedule.cron_expression)
        cursor = now
        for _ in range(MAX_OCCURRENCE_STEPS):
            if len(periods) >= count:
                break
            cursor = cron.next_occurrence(cursor, schedule.timezone)
            period = schedule.period_for(cursor)
            if period not in periods:
                periods.append(period)
        return periods

    async def backfill(
        self,
        schedule_id: str,
        start_date: DateLike,
        end_date: DateLike,
        priority: Optional[int] = None,
    ) -> BackfillReport:
        """Enqueue low-priority work for every incomplete day of a schedule"""
        schedule = self._require(schedule_id)
        return await self._backfill(
            schedule.target_type,
            schedule.target_ref,
            start_date,
            end_date,
            priority,
            schedule=schedule,
        )

    async def backfill_target(
        self,
        target_type: Any,
        target_ref: Optional[Dict[str, Any]],
        start_date: DateLike,
        end_date: DateLike,
        priority: Optional[int] = None,
    ) -> BackfillReport:
        """Backfill an arbitrary target without a registered schedule"""
        return await self._backfill(
            type_name(target_type),
            dict(target_ref or {}),
            start_date,
            end_date,
            priority,
        )

    async def _backfill(
        self,
        target_type: str,
        target_ref: Dict[str, Any],
        start_date: DateLike,
        end_date: DateLike,
        priority: Optional[int],
        schedule: Optional[ScheduledJob] = None,
    ) -> BackfillReport:
        start, end = _as_date(start_date), _as_date(end_date)
        if end < start:
            raise ValueError(f"Backfill range is empty: {start} > {end}")

        priority = self.backfill_priority if priority is None else priority
        period_format = schedule.period_format if schedule else "%Y-%m-%d"
        report = BackfillReport()

        seen = set()
        for day in _days(start, end):
            period = day.strftime(period_format)
            if period in seen:
                continue
            seen.add(period)
            report.periods_checked += 1
            result = await self._enqueue_period(
                target_type,
                target_ref,
                period,
                priority,
                schedule_id=schedule.id if schedule else None,
            )
            if result.enqueued:
                report.enqueued.append(result.job)
            else:
                report.skipped_periods.append(period)

        self._logger.info(
            "backfill_completed",
            target_type=target_type,
            start=start.isoformat(),
            end=end.isoformat(),
            enqueued=len(report.enqueued),
            skipped=len(report.skipped_periods),
        )
        return report

    # -------------------------------------------------------------------------
    # Status
    # -------------------------------------------------------------------------

    def get_status(self) -> Dict[str, Any]:
        schedules = list(self._schedules.values())
        return {
            "running": self._running,
            "schedules": len(schedules),
            "active": sum(1 for s in schedules if s.is_active),
            "failing": sum(1 for s in schedules if s.last_status == ScheduleStatus.ERROR),
        }


def _days(start: date, end: date) -> Iterable[date]:
    current = start
    while current <= end:
        yield current
        current += timedelta(days=1)


__all__ = [
    "IdempotencyOracle",
    "never_complete",
    "ScheduleStatus",
    "FireOutcome",
    "ScheduledJob",
    "FireResult",
    "TickReport",
    "BackfillReport",
    "CronScheduler",
    "make_dedupe_key",
]
