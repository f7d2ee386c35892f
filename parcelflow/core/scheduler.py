"""
Job Scheduler and Run Dispatcher

Periodic tick loop that decides which scheduled jobs are due and hands them
to a queue of worker tasks. The tick never waits for a run to finish.

Features:
- Configurable check interval (PARCELFLOW_SCHEDULER_INTERVAL_SECONDS)
- Schedule validation on attach; invalid schedules reported once
- Disabled, running and queued jobs are never triggered
- One job's failure never stops the tick for other jobs
- asyncio queue with a fixed pool of workers
- Duplicate submissions dropped while a job is pending or running
- Graceful shutdown

Usage:
    from parcelflow.core.scheduler import JobScheduler, RunDispatcher

    dispatcher = RunDispatcher(orchestrator, workers=4)
    scheduler = JobScheduler(orchestrator, dispatcher, alerts=alerts)

    await dispatcher.start()
    await scheduler.start(interval_seconds=60)

    scheduler.schedule_job(job.id, "*/15 * * * *")
"""
from __future__ import annotations

import asyncio
import logging
import threading
from datetime import datetime
from typing import Any, Dict, List, Optional, Set, Tuple

from parcelflow.core import metrics
from parcelflow.core.alerting import AlertHub
from parcelflow.core.errors import ScheduleParseError
from parcelflow.core.models import AlertType, Job, JobStatus, isoformat, utc_now
from parcelflow.core.orchestrator import PipelineOrchestrator
from parcelflow.core.schedule import ScheduleExpression, parse_schedule

logger = logging.getLogger(__name__)


# =============================================================================
# Dispatcher
# =============================================================================

class RunDispatcher:
    """
    Queue of pending runs consumed by a pool of worker tasks.

    A job is accepted at most once while it is pending or running; extra
    submissions are dropped.
    """

    def __init__(self, orchestrator: PipelineOrchestrator, workers: int = 4):
        self.orchestrator = orchestrator
        self.worker_count = workers
        self._queue: asyncio.Queue = asyncio.Queue()
        self._pending: Set[str] = set()
        self._lock = threading.Lock()
        self._workers: List[asyncio.Task] = []
        self._running = False
        self.submitted = 0
        self.dropped = 0
        self.completed = 0

    @property
    def is_running(self) -> bool:
        return self._running

    def submit(self, job_id: str, is_manual: bool = False) -> bool:
        """Queue a run. Returns False when the job is already pending or running."""
        with self._lock:
            if job_id in self._pending or self.orchestrator.is_running(job_id):
                self.dropped += 1
                logger.debug(f"Job {job_id} already pending or running, dropping submission")
                return False
            if not self.orchestrator.mark_queued(job_id):
                self.dropped += 1
                logger.debug(f"Job {job_id} cannot be queued, dropping submission")
                return False
            self._pending.add(job_id)
            self.submitted += 1

        self._queue.put_nowait((job_id, is_manual))
        logger.debug(f"Queued job {job_id} (manual={is_manual})")
        return True

    def is_pending(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._pending

    async def start(self):
        if self._running:
            logger.warning("Run dispatcher already running")
            return
        self._running = True
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"parcelflow-worker-{i}")
            for i in range(self.worker_count)
        ]
        logger.info(f"Run dispatcher started ({self.worker_count} workers)")

    async def stop(self):
        """Stop the workers. Runs still queued go back to their idle status."""
        self._running = False
        for task in self._workers:
            task.cancel()
        for task in self._workers:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._workers = []

        while not self._queue.empty():
            job_id, _ = self._queue.get_nowait()
            self._queue.task_done()
            with self._lock:
                self._pending.discard(job_id)
            self.orchestrator.release_queued(job_id)
        logger.info("Run dispatcher stopped")

    async def join(self):
        """Wait until every queued run has finished."""
        await self._queue.join()

    async def _worker(self, index: int):
        while True:
            job_id, is_manual = await self._queue.get()
            try:
                with self._lock:
                    self._pending.discard(job_id)
                await self.orchestrator.run_job(job_id, is_manual=is_manual)
                self.completed += 1
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Worker {index} failed to run job {job_id}: {e}")
            finally:
                self._queue.task_done()

    def get_status(self) -> Dict[str, Any]:
        with self._lock:
            pending = sorted(self._pending)
        return {
            "running": self._running,
            "workers": self.worker_count,
            "pending": pending,
            "queue_size": self._queue.qsize(),
            "submitted": self.submitted,
            "dropped": self.dropped,
            "completed": self.completed,
        }


# =============================================================================
# Scheduler
# =============================================================================

class JobScheduler:
    """Background tick loop triggering due jobs."""

    def __init__(
        self,
        orchestrator: PipelineOrchestrator,
        dispatcher: RunDispatcher,
        alerts: Optional[AlertHub] = None,
        interval_seconds: float = 60.0,
    ):
        self.orchestrator = orchestrator
        self.dispatcher = dispatcher
        self.alerts = alerts
        self.interval_seconds = interval_seconds

        # job_id -> (raw expression, parsed or None when invalid)
        self._expressions: Dict[str, Tuple[str, Optional[ScheduleExpression]]] = {}
        self._reported: Set[Tuple[str, str]] = set()
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self._last_tick: Optional[datetime] = None
        self._tick_count = 0

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self, interval_seconds: Optional[float] = None):
        if interval_seconds is not None:
            self.interval_seconds = interval_seconds
        if self._running:
            logger.warning("Job scheduler already running")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop(), name="parcelflow-scheduler")
        logger.info(f"Job scheduler started (interval: {self.interval_seconds}s)")

    async def stop(self):
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Job scheduler stopped")

    async def _run_loop(self):
        while self._running:
            try:
                await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Scheduler tick failed: {e}")
            await asyncio.sleep(self.interval_seconds)

    # -------------------------------------------------------------------------
    # Schedules
    # -------------------------------------------------------------------------

    def schedule_job(self, job_id: str, expression: str) -> Job:
        """
        Attach a schedule to a job.

        Raises:
            ScheduleParseError: the expression is invalid
            ResourceNotFoundError: unknown job id
        """
        parsed = parse_schedule(expression)
        job = self.orchestrator.update_job(job_id, schedule=parsed.expression)
        self._expressions[job_id] = (parsed.expression, parsed)
        logger.info(f"Scheduled job {job_id}: {parsed.expression}")
        return job

    def unschedule_job(self, job_id: str) -> Job:
        job = self.orchestrator.update_job(job_id, schedule=None)
        self._expressions.pop(job_id, None)
        logger.info(f"Unscheduled job {job_id}")
        return job

    def _expression_for(self, job: Job) -> Optional[ScheduleExpression]:
        cached = self._expressions.get(job.id)
        if cached is not None and cached[0] == job.schedule:
            return cached[1]

        try:
            parsed: Optional[ScheduleExpression] = parse_schedule(job.schedule)
        except ScheduleParseError as e:
            parsed = None
            key = (job.id, job.schedule)
            if key not in self._reported:
                self._reported.add(key)
                logger.warning(f"Job {job.id} is treated as unscheduled: {e.message}")
                if self.alerts is not None:
                    self.alerts.publish(
                        AlertType.WARNING,
                        f"Job {job.name} has an invalid schedule and will not run automatically",
                        job_id=job.id,
                        details={"schedule": job.schedule, "reason": e.reason},
                    )
        self._expressions[job.id] = (job.schedule, parsed)
        return parsed

    # -------------------------------------------------------------------------
    # Tick
    # -------------------------------------------------------------------------

    async def tick(self, now: Optional[datetime] = None) -> List[str]:
        """Evaluate every job once. Returns the ids of the jobs dispatched."""
        now = now or utc_now()
        self._tick_count += 1
        metrics.record_scheduler_tick()
        dispatched = []

        for job in self.orchestrator.get_all_jobs():
            try:
                if not job.enabled or not job.schedule:
                    continue
                if job.status in (JobStatus.RUNNING, JobStatus.QUEUED):
                    continue
                if self.orchestrator.is_running(job.id):
                    continue
                expression = self._expression_for(job)
                if expression is None:
                    continue
                if expression.should_trigger(job.last_run_at, now):
                    if self.dispatcher.submit(job.id):
                        dispatched.append(job.id)
            except Exception as e:
                logger.error(f"Scheduler failed to evaluate job {job.id}: {e}")

        self._last_tick = now
        if dispatched:
            logger.info(f"Scheduler dispatched {len(dispatched)} jobs")
        return dispatched

    def upcoming_runs(self, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """Enabled jobs with a valid schedule, soonest first."""
        now = now or utc_now()
        upcoming = []
        for job in self.orchestrator.get_all_jobs():
            next_run = job.next_run_at(now)
            if next_run is not None:
                upcoming.append((next_run, job))
        upcoming.sort(key=lambda item: item[0])
        return [
            {"job_id": job.id, "name": job.name, "next_run_at": isoformat(next_run)}
            for next_run, job in upcoming
        ]

    def get_status(self) -> Dict[str, Any]:
        invalid = sorted(
            job_id for job_id, (_, parsed) in self._expressions.items() if parsed is None
        )
        return {
            "running": self._running,
            "interval_seconds": self.interval_seconds,
            "last_tick": isoformat(self._last_tick),
            "tick_count": self._tick_count,
            "scheduled_jobs": sum(
                1 for j in self.orchestrator.get_all_jobs() if j.enabled and j.schedule
            ),
            "invalid_schedules": invalid,
            "upcoming": self.upcoming_runs(),
            "dispatcher": self.dispatcher.get_status(),
        }
