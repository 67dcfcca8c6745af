"""
Worker Dispatcher
=================

Bounded pool of asyncio workers draining a JobQueue.

Each dispatch cycle claims one ready job, looks up the handler registered
for its type and records the outcome back on the queue. Handlers run to
completion: stopping the dispatcher prevents new attempts but never cancels
an attempt that is already executing.
"""

from __future__ import annotations

import asyncio
import traceback
from typing import Any, Callable, Dict, Iterable, List, Optional

import structlog

from amoeba_core.jobs.base import (
    HandlerNotRegisteredError,
    Job,
    JobHandler,
    PermanentJobError,
    type_name,
)
from amoeba_core.jobs.queue import JobQueue

logger = structlog.get_logger(__name__)


# =============================================================================
# HANDLER REGISTRY
# =============================================================================


class HandlerRegistry:
    """
    Explicit mapping from job type to async handler.

    Usage:
        registry = HandlerRegistry()

        @registry.handler(JobType.EMAIL)
        async def send_email(payload: Dict[str, Any]) -> None:
            ...

        registry.validate([JobType.EMAIL, JobType.GENERATE])  # raises if missing
    """

    def __init__(self):
        self._handlers: Dict[str, JobHandler] = {}
        self._logger = structlog.get_logger("handler_registry")

    def register(self, job_type: Any, handler: JobHandler) -> None:
        """Register a job handler"""
        if not callable(handler):
            raise TypeError(f"Handler for '{type_name(job_type)}' is not callable")
        self._handlers[type_name(job_type)] = handler
        self._logger.info("handler_registered", job_type=type_name(job_type))

    def handler(self, job_type: Any) -> Callable[[JobHandler], JobHandler]:
        """Decorator to register a job handler"""
        def decorator(func: JobHandler) -> JobHandler:
            self.register(job_type, func)
            return func
        return decorator

    def unregister(self, job_type: Any) -> bool:
        return self._handlers.pop(type_name(job_type), None) is not None

    def get(self, job_type: Any) -> Optional[JobHandler]:
        return self._handlers.get(type_name(job_type))

    def types(self) -> List[str]:
        return sorted(self._handlers)

    def validate(self, required_types: Iterable[Any]) -> None:
        """Raise HandlerNotRegisteredError if any required type lacks a handler"""
        missing = {type_name(t) for t in required_types} - set(self._handlers)
        if missing:
            raise HandlerNotRegisteredError(missing)

    def __contains__(self, job_type: Any) -> bool:
        return type_name(job_type) in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)


# =============================================================================
# DISPATCHER
# =============================================================================


class WorkerDispatcher:
    """
    Pulls ready jobs and invokes their handlers.

    Usage:
        dispatcher = WorkerDispatcher(queue, registry, concurrency=3)
        await dispatcher.start()
        ...
        await dispatcher.stop()
    """

    def __init__(
        self,
        queue: JobQueue,
        registry: HandlerRegistry,
        concurrency: int = 3,
        poll_interval: float = 0.5,
        required_types: Iterable[Any] = (),
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.queue = queue
        self.registry = registry
        self.concurrency = concurrency
        self.poll_interval = poll_interval
        self.required_types = [type_name(t) for t in required_types]
        self._running = False
        self._workers: List[asyncio.Task] = []
        self._wakeup = asyncio.Event()
        self._logger = structlog.get_logger("worker_dispatcher")

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Validate handlers and start the worker pool"""
        if self._running:
            return
        self.registry.validate(self.required_types)
        self._running = True
        self._wakeup = asyncio.Event()
        self._workers = [
            asyncio.create_task(self._worker_loop(f"worker-{i}"))
            for i in range(self.concurrency)
        ]
        self._logger.info(
            "dispatcher_started",
            workers=self.concurrency,
            handlers=self.registry.types(),
        )

    async def stop(self) -> None:
        """Stop claiming new jobs and wait for in-flight handlers to finish"""
        if not self._running:
            return
        self._running = False
        self._wakeup.set()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        self._logger.info("dispatcher_stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    def notify(self) -> None:
        """Wake idle workers, e.g. right after an enqueue"""
        self._wakeup.set()

    # -------------------------------------------------------------------------
    # Dispatch
    # -------------------------------------------------------------------------

    async def run_once(self) -> Optional[Job]:
        """
        Run a single dispatch cycle.

        Returns the job as left by the cycle, or None when no job was ready.
        """
        job = await self.queue.claim_next()
        if job is None:
            return None
        return await self._execute(job)

    async def drain(self, max_cycles: Optional[int] = None) -> int:
        """Run dispatch cycles until nothing is ready; returns the cycle count"""
        cycles = 0
        while max_cycles is None or cycles < max_cycles:
            if await self.run_once() is None:
                break
            cycles += 1
        return cycles

    async def _worker_loop(self, worker_id: str) -> None:
        log = self._logger.bind(worker_id=worker_id)
        log.debug("worker_started")

        while self._running:
            try:
                job = await self.run_once()
            except Exception as e:
                # Queue-level failure; keep the worker alive and back off
                log.error("worker_cycle_error", error=str(e))
                job = None

            if job is None:
                await self._idle()

        log.debug("worker_stopped")

    async def _idle(self) -> None:
        self._wakeup.clear()
        try:
            await asyncio.wait_for(self._wakeup.wait(), timeout=self.poll_interval)
        except asyncio.TimeoutError:
            pass

    async def _execute(self, job: Job) -> Job:
        handler = self.registry.get(job.type)
        if handler is None:
            return await self.queue.fail(
                job.id,
                f"No handler registered for job type '{job.type}'",
                retryable=False,
            )

        self._logger.info(
            "job_started",
            job_id=job.id,
            job_type=job.type,
            attempt=job.attempts,
        )

        try:
            result = await handler(dict(job.payload))
        except PermanentJobError as e:
            return await self.queue.fail(job.id, e, retryable=False)
        except Exception as e:
            self._logger.debug(
                "job_handler_exception",
                job_id=job.id,
                traceback=traceback.format_exc(),
            )
            return await self.queue.fail(job.id, _describe(e), retryable=True)

        return await self.queue.complete(job.id, result)

    def get_status(self) -> Dict[str, Any]:
        return {
            "running": self._running,
            "workers": len(self._workers),
            "concurrency": self.concurrency,
            "handlers": self.registry.types(),
        }


def _describe(error: BaseException) -> str:
    message = str(error)
    return message if message else error.__class__.__name__


__all__ = ["HandlerRegistry", "WorkerDispatcher"]
