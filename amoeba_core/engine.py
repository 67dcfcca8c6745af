"""
Job Engine
==========

Wires the queue, dispatcher, scheduler, rate limiter and readiness service
into one explicitly constructed instance.

Nothing here is process-global: every engine owns its queue, timers and
counters, and `stop()` releases all of them.
"""

from __future__ import annotations

from typing import Any, Callable, Dict, Iterable, List, Optional

import structlog

from amoeba_core.config import Settings, get_settings
from amoeba_core.core.logging import setup_logging
from amoeba_core.jobs.base import Clock, Job, JobHandler, JobStatus, RetryConfig
from amoeba_core.jobs.dispatcher import HandlerRegistry, WorkerDispatcher
from amoeba_core.jobs.queue import JobQueue
from amoeba_core.monitoring.health import QuickHealth, ReadinessService, SystemReadiness
from amoeba_core.monitoring.metrics import JobMetricsCollector, QueueMetrics
from amoeba_core.ratelimit.limiter import RateLimiter, RateLimitStore, RedisRateLimitStore
from amoeba_core.ratelimit.policies import AdmissionController
from amoeba_core.scheduling.scheduler import (
    BackfillReport,
    CronScheduler,
    DateLike,
    FireResult,
    IdempotencyOracle,
    ScheduledJob,
)

logger = structlog.get_logger(__name__)


class JobEngine:
    """
    Asynchronous job execution core.

    Usage:
        engine = JobEngine()

        @engine.handler(JobType.GENERATE)
        async def generate(payload: Dict[str, Any]) -> Dict[str, Any]:
            ...

        engine.add_schedule("daily", "0 0 * * *", JobType.GENERATE, {"template": "daily"})
        await engine.start()

        job = await engine.submit(JobType.GENERATE, {"tpl": "x"}, context={"ip": ip})

        await engine.stop()
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        oracle: Optional[IdempotencyOracle] = None,
        rate_limiter: Optional[RateLimiter] = None,
        clock: Optional[Clock] = None,
        required_types: Iterable[Any] = (),
        configure_logging: bool = True,
    ):
        self.settings = settings or get_settings()
        self.configure_logging = configure_logging
        s = self.settings

        self.queue = JobQueue(
            name="jobs",
            max_size=s.max_queue_size,
            retry_config=RetryConfig(
                max_attempts=s.max_attempts,
                base_delay_seconds=s.backoff_base_seconds,
                max_delay_seconds=s.backoff_max_seconds,
                multiplier=s.backoff_multiplier,
            ),
            clock=clock,
        )
        self.registry = HandlerRegistry()
        self.dispatcher = WorkerDispatcher(
            self.queue,
            self.registry,
            concurrency=s.worker_concurrency,
            poll_interval=s.poll_interval_seconds,
            required_types=required_types,
        )
        self.scheduler = CronScheduler(
            self.queue,
            oracle=oracle,
            tick_seconds=s.scheduler_tick_seconds,
            live_priority=s.live_priority,
            backfill_priority=s.backfill_priority,
            lookahead_days=s.startup_lookahead_days,
            clock=clock,
        )
        self.rate_limiter = rate_limiter or RateLimiter(
            store=self._build_store(),
            cleanup_interval=s.rate_limit_cleanup_seconds,
            clock=clock,
        )
        self.admission = AdmissionController(self.rate_limiter)
        self.metrics = JobMetricsCollector()
        self.metrics.attach(self.queue)
        self.readiness = ReadinessService(
            self.queue,
            self.scheduler,
            processing_watermark=s.queue_processing_watermark,
            failure_rate_threshold=s.queue_failure_rate_threshold,
            clock=clock,
        )

        self.queue.add_listener(self._wake_dispatcher)
        self._running = False
        self._logger = structlog.get_logger("job_engine")

    def _build_store(self) -> Optional[RateLimitStore]:
        if self.settings.redis_url:
            return RedisRateLimitStore(redis_url=self.settings.redis_url)
        return None

    def _wake_dispatcher(self, job: Job, previous: Optional[JobStatus]) -> None:
        if job.status == JobStatus.PENDING:
            self.dispatcher.notify()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Start workers, counter cleanup and the scheduler"""
        if self._running:
            return
        if self.configure_logging:
            setup_logging(
                level=self.settings.log_level,
                format=self.settings.log_format,
                service_name=self.settings.service_name,
            )
        await self.dispatcher.start()
        await self.rate_limiter.start()
        await self.scheduler.start()
        self._running = True
        self._logger.info(
            "engine_started",
            service=self.settings.service_name,
            environment=self.settings.environment,
        )

    async def stop(self) -> None:
        """Stop scheduling, let in-flight jobs finish, release timers and store connections"""
        if not self._running:
            return
        await self.scheduler.stop()
        await self.dispatcher.stop()
        await self.rate_limiter.stop()
        self._running = False
        self._logger.info("engine_stopped")

    async def __aenter__(self) -> "JobEngine":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()

    @property
    def is_running(self) -> bool:
        return self._running

    # -------------------------------------------------------------------------
    # Handlers
    # -------------------------------------------------------------------------

    def handler(self, job_type: Any) -> Callable[[JobHandler], JobHandler]:
        """Decorator to register a job handler"""
        return self.registry.handler(job_type)

    def register_handler(self, job_type: Any, handler: JobHandler) -> None:
        self.registry.register(job_type, handler)

    # -------------------------------------------------------------------------
    # Job creation
    # -------------------------------------------------------------------------

    async def submit(
        self,
        job_type: Any,
        payload: Optional[Dict[str, Any]] = None,
        priority: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None,
        tier: Optional[str] = "strict",
        max_attempts: Optional[int] = None,
    ) -> Job:
        """
        Admit and enqueue a job on behalf of an external caller.

        Raises RateLimitExceeded when the caller is over the tier budget; the
        job is not queued in that case. Pass `tier=None` for trusted callers.
        """
        if tier is not None:
            await self.admission.admit(tier, context)

        return await self.queue.enqueue(
            job_type,
            self.settings.live_priority if priority is None else priority,
            payload,
            max_attempts=max_attempts,
        )

    def get_job(self, job_id: str) -> Optional[Job]:
        return self.queue.get(job_id)

    def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        job_type: Optional[Any] = None,
        limit: Optional[int] = None,
    ) -> List[Job]:
        return self.queue.list_jobs(status=status, job_type=job_type, limit=limit)

    # -------------------------------------------------------------------------
    # Schedules
    # -------------------------------------------------------------------------

    def add_schedule(
        self,
        name: str,
        cron_expression: str,
        target_type: Any,
        target_ref: Optional[Dict[str, Any]] = None,
        **kwargs: Any,
    ) -> ScheduledJob:
        return self.scheduler.create_schedule(
            name,
            cron_expression,
            target_type,
            target_ref,
            **kwargs,
        )

    async def trigger_schedule(self, schedule_id: str) -> FireResult:
        return await self.scheduler.trigger(schedule_id)

    async def backfill(
        self,
        schedule_id: str,
        start_date: DateLike,
        end_date: DateLike,
    ) -> BackfillReport:
        return await self.scheduler.backfill(schedule_id, start_date, end_date)

    # -------------------------------------------------------------------------
    # Read-only views
    # -------------------------------------------------------------------------

    def get_queue_metrics(self) -> QueueMetrics:
        return self.readiness.get_queue_metrics()

    async def get_readiness(self) -> SystemReadiness:
        return await self.readiness.get_readiness()

    async def get_quick_health(self) -> QuickHealth:
        return await self.readiness.get_quick_health()

    def get_generation_stats(self, job_type: Optional[Any] = None) -> Dict[str, Any]:
        return self.metrics.get_generation_stats(job_type)

    def get_status(self) -> Dict[str, Any]:
        return {
            "running": self._running,
            "queue": self.get_queue_metrics().model_dump(),
            "dispatcher": self.dispatcher.get_status(),
            "scheduler": self.scheduler.get_status(),
            "metrics": self.metrics.get_summary(),
        }


__all__ = ["JobEngine"]
