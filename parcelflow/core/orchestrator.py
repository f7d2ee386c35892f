"""
Pipeline Orchestrator

Owns jobs and their runs and executes a run through the extract, transform,
quality and load stages.

Features:
- Job CRUD with lifecycle state machine enforcement
- At most one run in flight per job (colliding triggers are dropped)
- Per-stage record counts and run log
- Cooperative cancellation between stages
- Exactly one terminal alert per run
- Per-job metrics snapshot refreshed on every terminal run
- Derived system status and job statistics for the dashboard

Usage:
    from parcelflow.core.orchestrator import PipelineOrchestrator

    orchestrator = PipelineOrchestrator(registry, transforms, analyzer, alerts)
    job = orchestrator.create_job("assessor-sync", source.id, target.id, rule_ids=[rule.id])

    run = await orchestrator.run_job(job.id, is_manual=True)
    run.status            # JobStatus.SUCCEEDED
    run.record_counts     # RecordCounts(extracted=120, transformed=118, loaded=118)
"""
from __future__ import annotations

import asyncio
import logging
import threading
import time
from contextlib import contextmanager
from typing import Any, Dict, List, Optional, Set

import pandas as pd

from parcelflow.core import metrics
from parcelflow.core.alerting import AlertHub
from parcelflow.core.connectors import DataSourceRegistry
from parcelflow.core.errors import (
    ConnectorError,
    InvalidTransitionError,
    ParcelflowError,
    ResourceNotFoundError,
    ScheduleParseError,
    TransformationError,
    ValidationError,
)
from parcelflow.core.models import (
    AlertType,
    Job,
    JobMetrics,
    JobRun,
    JobStatus,
    StageMetrics,
    new_id,
    utc_now,
)
from parcelflow.core.quality import QualityAnalyzer, QualityOptions
from parcelflow.core.schedule import parse_schedule
from parcelflow.core.store import InMemoryStore
from parcelflow.core.structured_logging import (
    log_stage_end,
    log_stage_start,
    with_run_context,
)
from parcelflow.core.transformations import TransformationEngine

logger = logging.getLogger(__name__)

UPDATABLE_JOB_FIELDS = {
    "name", "description", "source_id", "target_id", "rule_ids",
    "schedule", "enabled", "quality_options",
}


class RunCancelledError(Exception):
    """Raised at a stage boundary when cancellation was requested."""


class PipelineOrchestrator:
    """Job lifecycle state machine and stage runner."""

    def __init__(
        self,
        registry: DataSourceRegistry,
        transforms: TransformationEngine,
        analyzer: QualityAnalyzer,
        alerts: AlertHub,
        advisor=None,
    ):
        self.registry = registry
        self.transforms = transforms
        self.analyzer = analyzer
        self.alerts = alerts
        self.advisor = advisor

        self._jobs: InMemoryStore[Job] = InMemoryStore("jobs")
        self._runs: InMemoryStore[JobRun] = InMemoryStore("runs")

        self._in_flight: Set[str] = set()
        self._cancel_requested: Set[str] = set()
        self._in_flight_lock = threading.Lock()

    # =========================================================================
    # Job CRUD
    # =========================================================================

    def create_job(
        self,
        name: str,
        source_id: str,
        target_id: str,
        rule_ids: Optional[List[str]] = None,
        description: str = "",
        schedule: Optional[str] = None,
        enabled: bool = True,
        quality_options: Optional[QualityOptions] = None,
    ) -> Job:
        """
        Create a job in CREATED, or SCHEDULED when a valid schedule is given.

        An unparsable schedule is stored as given; the scheduler reports it
        and never triggers the job.
        """
        if not name:
            raise ValidationError("PFLW-1001", reason="job name is required")
        self.registry.require(source_id)
        self.registry.require(target_id)
        rule_ids = list(rule_ids or [])
        for rule_id in rule_ids:
            if self.transforms.get_rule(rule_id) is None:
                raise ResourceNotFoundError("PFLW-2003", rule_id=rule_id)

        job = Job(
            id=new_id("job"),
            name=name,
            source_id=source_id,
            target_id=target_id,
            rule_ids=rule_ids,
            description=description,
            enabled=enabled,
            quality_options=quality_options or QualityOptions(
                min_properties_for_stats=self.analyzer.defaults.min_properties_for_stats,
                max_missing_rate=self.analyzer.defaults.max_missing_rate,
                outlier_threshold=self.analyzer.defaults.outlier_threshold,
            ),
        )
        self._jobs.create(job)
        if schedule:
            self._apply_schedule(job, schedule)
        logger.info(f"Created job {job.id} ({name}) status={job.status.value}")
        return job

    def get_job(self, job_id: str) -> Optional[Job]:
        return self._jobs.get(job_id)

    def require_job(self, job_id: str) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise ResourceNotFoundError("PFLW-2001", job_id=job_id)
        return job

    def get_all_jobs(self) -> List[Job]:
        return self._jobs.list()

    def update_job(self, job_id: str, **changes) -> Job:
        job = self.require_job(job_id)
        unknown = set(changes) - UPDATABLE_JOB_FIELDS
        if unknown:
            raise ValidationError(
                "PFLW-1001", reason=f"cannot update job fields: {', '.join(sorted(unknown))}"
            )

        for key in ("source_id", "target_id"):
            if key in changes:
                self.registry.require(changes[key])
        if "rule_ids" in changes:
            for rule_id in changes["rule_ids"]:
                if self.transforms.get_rule(rule_id) is None:
                    raise ResourceNotFoundError("PFLW-2003", rule_id=rule_id)
            changes["rule_ids"] = list(changes["rule_ids"])
        if isinstance(changes.get("quality_options"), dict):
            changes["quality_options"] = QualityOptions.from_dict(changes["quality_options"])

        schedule_given = "schedule" in changes
        schedule = changes.pop("schedule", None)

        self._jobs.update(job_id, updated_at=utc_now(), **changes)
        if schedule_given:
            self._apply_schedule(job, schedule)
        logger.info(f"Updated job {job_id}: {', '.join(sorted(changes)) or 'schedule'}")
        return job

    def delete_job(self, job_id: str) -> bool:
        """Delete a job and its run history. A running job cannot be deleted."""
        if self.is_running(job_id):
            raise InvalidTransitionError(
                "PFLW-5001", entity=f"job {job_id}", current="running", target="deleted"
            )
        deleted = self._jobs.delete(job_id)
        if deleted:
            for run in self._runs.list(lambda r: r.job_id == job_id):
                self._runs.delete(run.id)
            logger.info(f"Deleted job {job_id}")
        return deleted

    def enable_job(self, job_id: str) -> Job:
        self.require_job(job_id)
        return self._jobs.update(job_id, enabled=True, updated_at=utc_now())

    def disable_job(self, job_id: str) -> Job:
        self.require_job(job_id)
        return self._jobs.update(job_id, enabled=False, updated_at=utc_now())

    def _apply_schedule(self, job: Job, schedule: Optional[str]):
        if not schedule:
            self._jobs.update(job.id, schedule=None, updated_at=utc_now())
            if job.status == JobStatus.SCHEDULED:
                self._transition(job, JobStatus.CREATED)
            return

        try:
            normalized = parse_schedule(schedule).expression
        except ScheduleParseError as e:
            logger.warning(f"Job {job.id} has an invalid schedule: {e.message}")
            self._jobs.update(job.id, schedule=schedule, updated_at=utc_now())
            return

        self._jobs.update(job.id, schedule=normalized, updated_at=utc_now())
        if job.status not in (JobStatus.RUNNING, JobStatus.QUEUED, JobStatus.SCHEDULED):
            self._transition(job, JobStatus.SCHEDULED)

    def _transition(self, job: Job, target: JobStatus):
        job.status.check_transition(target, entity=f"job {job.id}")
        self._jobs.update(job.id, status=target, updated_at=utc_now())

    # =========================================================================
    # Dispatch hooks
    # =========================================================================

    def is_running(self, job_id: str) -> bool:
        with self._in_flight_lock:
            return job_id in self._in_flight

    def running_job_ids(self) -> List[str]:
        with self._in_flight_lock:
            return sorted(self._in_flight)

    def mark_queued(self, job_id: str) -> bool:
        """Accept a job into the run queue. False when it cannot be queued."""
        job = self.get_job(job_id)
        if job is None or self.is_running(job_id):
            return False
        if job.status == JobStatus.QUEUED:
            return True
        if not job.status.can_transition_to(JobStatus.QUEUED):
            return False
        self._transition(job, JobStatus.QUEUED)
        return True

    def release_queued(self, job_id: str):
        """Return a queued job that will not run to its idle status."""
        job = self.get_job(job_id)
        if job is None or job.status != JobStatus.QUEUED:
            return
        self._cancel_requested.discard(job_id)
        self._transition(job, JobStatus.SCHEDULED if job.schedule else JobStatus.CREATED)

    # =========================================================================
    # Runs
    # =========================================================================

    async def run_job(self, job_id: str, is_manual: bool = False) -> Optional[JobRun]:
        """
        Execute one run of a job.

        Returns None when a run of the job is already in flight; the trigger
        is dropped, not queued.

        Raises:
            ResourceNotFoundError: unknown job id
        """
        job = self.require_job(job_id)

        with self._in_flight_lock:
            if job_id in self._in_flight:
                logger.debug(f"Job {job_id} already running, dropping trigger")
                return None
            self._in_flight.add(job_id)
            running = len(self._in_flight)
        metrics.set_running_jobs(running)

        try:
            self._transition(job, JobStatus.RUNNING)
            run = JobRun(id=new_id("run"), job_id=job_id, is_manual=is_manual)
            self._runs.create(run)
            with with_run_context(job_id, run.id):
                await self._execute(job, run)
            return run
        finally:
            with self._in_flight_lock:
                self._in_flight.discard(job_id)
                self._cancel_requested.discard(job_id)
                running = len(self._in_flight)
            metrics.set_running_jobs(running)

    async def _execute(self, job: Job, run: JobRun):
        started = time.perf_counter()
        cpu_started = time.process_time()
        run.log(f"Run started ({'manual' if run.is_manual else 'scheduled'})")
        status = JobStatus.SUCCEEDED
        error: Optional[str] = None
        memory_mb = 0.0
        interrupted: Optional[asyncio.CancelledError] = None

        try:
            if not job.enabled and not run.is_manual:
                run.log("Job is disabled, skipping run")
                status = JobStatus.SKIPPED
            else:
                memory_mb = await self._run_stages(job, run)
        except RunCancelledError:
            run.log("Cancellation requested, stopping run")
            status = JobStatus.CANCELLED
        except asyncio.CancelledError as e:
            run.log("Run interrupted by shutdown")
            status = JobStatus.CANCELLED
            interrupted = e
        except Exception as e:
            error = e.message if isinstance(e, ParcelflowError) else (str(e) or type(e).__name__)
            run.log(f"Run failed: {error}")
            logger.error(f"Job {job.id} run {run.id} failed: {error}")
            status = JobStatus.FAILED

        duration = time.perf_counter() - started
        cpu_seconds = time.process_time() - cpu_started
        self._finish(job, run, status, error, duration, cpu_seconds, memory_mb)
        if interrupted is not None:
            raise interrupted

    async def _run_stages(self, job: Job, run: JobRun) -> float:
        """Run extract, transform, quality and load. Returns a memory estimate in MB."""
        source = self.registry.require(job.source_id)
        target = self.registry.require(job.target_id)

        self._check_cancelled(job)
        with self._stage(run, "extract", {"source": source.name, "kind": source.kind.value}) as stage:
            if not await self.registry.check_availability(source.id):
                raise ConnectorError("PFLW-6001", source=source.name)
            records = await self.registry.connector_for(source.id).extract()
            stage.records = run.record_counts.extracted = len(records)
            run.log(f"Extracted {len(records)} records from {source.name}")
            metrics.record_records("extract", len(records))
        memory_mb = self._estimate_memory_mb(records)

        self._check_cancelled(job)
        with self._stage(run, "transform", {"rules": len(job.rule_ids)}) as stage:
            result = self.transforms.apply(records, job.rule_ids)
            run.transform_errors = list(result.errors)
            stage.records = run.record_counts.transformed = len(result.records)
            for note in result.notes:
                run.log(note)
            run.log(
                f"Transformed {len(result.records)} records "
                f"({len(result.errors)} errors, {result.filtered} filtered)"
            )
            metrics.record_records("transform", len(result.records))
            metrics.record_transform_errors(len(result.errors))
            if records and len(result.errors) == len(records):
                raise TransformationError("PFLW-3003", count=len(records))

        # Quality never fails the run
        self._check_cancelled(job)
        with self._stage(run, "quality") as stage:
            stage.records = len(result.records)
            try:
                report = self.analyzer.analyze(result.records, job.quality_options)
                run.quality = report.summary()
                run.log(f"Quality check found {len(report.issues)} issues")
            except Exception as e:
                stage.error = str(e) or type(e).__name__
                run.quality = {"error": stage.error}
                run.log(f"Quality check failed: {stage.error}")

        self._check_cancelled(job)
        with self._stage(run, "load", {"target": target.name, "kind": target.kind.value}) as stage:
            if not await self.registry.check_availability(target.id):
                raise ConnectorError("PFLW-6001", source=target.name)
            loaded = await self.registry.connector_for(target.id).load(result.records)
            stage.records = run.record_counts.loaded = loaded
            run.log(f"Loaded {loaded} records into {target.name}")
            metrics.record_records("load", loaded)
        return memory_mb

    @contextmanager
    def _stage(self, run: JobRun, stage: str, params: Optional[Dict[str, Any]] = None):
        """Time one stage into run.stage_metrics and log its start and end."""
        timing = StageMetrics()
        run.stage_metrics[stage] = timing
        started = time.perf_counter()
        log_stage_start(stage, params)
        try:
            yield timing
        except BaseException as e:
            timing.error = timing.error or str(e) or type(e).__name__
            raise
        finally:
            timing.seconds = time.perf_counter() - started
            timing.ended_at = utc_now()
            if timing.error is None:
                log_stage_end(stage, records=timing.records, seconds=round(timing.seconds, 4))
            else:
                log_stage_end(stage, success=False, error=timing.error, seconds=round(timing.seconds, 4))

    def _check_cancelled(self, job: Job):
        with self._in_flight_lock:
            cancelled = job.id in self._cancel_requested
        if cancelled:
            raise RunCancelledError(job.id)

    @staticmethod
    def _estimate_memory_mb(records: List[Dict[str, Any]]) -> float:
        if not records:
            return 0.0
        frame = pd.DataFrame.from_records(records)
        return float(frame.memory_usage(deep=True).sum()) / (1024 * 1024)

    def _finish(
        self,
        job: Job,
        run: JobRun,
        status: JobStatus,
        error: Optional[str],
        duration: float,
        cpu_seconds: float,
        memory_mb: float,
    ):
        run.close(status, error)
        self._transition(job, status)
        self._jobs.update(
            job.id,
            last_run_at=run.ended_at,
            updated_at=utc_now(),
            metrics=self._compute_metrics(job, run, duration, cpu_seconds, memory_mb),
        )
        metrics.record_job_run(status.value, duration)
        self._publish_terminal_alert(job, run, duration)

        if self.advisor is not None:
            try:
                self.advisor.on_run_completed(job, self.get_job_runs(job.id))
            except Exception as e:
                logger.warning(f"Optimization advisor failed for job {job.id}: {e}")

    def _compute_metrics(
        self,
        job: Job,
        run: JobRun,
        duration: float,
        cpu_seconds: float,
        memory_mb: float,
    ) -> JobMetrics:
        runs = [r for r in self._runs.list(lambda r: r.job_id == job.id) if r.status.is_terminal]
        counted = [r for r in runs if r.status != JobStatus.SKIPPED]
        succeeded = sum(1 for r in counted if r.status == JobStatus.SUCCEEDED)
        return JobMetrics(
            last_execution_seconds=duration,
            records_processed=run.record_counts.loaded,
            memory_estimate_mb=memory_mb,
            cpu_estimate_percent=min(100.0, cpu_seconds / duration * 100) if duration > 0 else 0.0,
            success_rate=succeeded / len(counted) if counted else 0.0,
            total_runs=len(runs),
            failed_runs=sum(1 for r in runs if r.status == JobStatus.FAILED),
        )

    def _publish_terminal_alert(self, job: Job, run: JobRun, duration: float):
        details = {
            "run_id": run.id,
            "status": run.status.value,
            "duration_seconds": round(duration, 3),
            "record_counts": run.record_counts.to_dict(),
        }
        if run.status == JobStatus.SUCCEEDED:
            details["transform_errors"] = len(run.transform_errors)
            details["quality_issues"] = run.quality.get("issue_count", 0)
            self.alerts.publish(
                AlertType.SUCCESS,
                f"Job {job.name} completed: {run.record_counts.loaded} records loaded",
                job_id=job.id,
                details=details,
            )
        elif run.status == JobStatus.FAILED:
            details["error"] = run.error
            self.alerts.publish(
                AlertType.ERROR,
                f"Job {job.name} failed: {run.error}",
                job_id=job.id,
                details=details,
            )
        elif run.status == JobStatus.CANCELLED:
            self.alerts.publish(
                AlertType.WARNING,
                f"Job {job.name} was cancelled",
                job_id=job.id,
                details=details,
            )
        else:
            self.alerts.publish(
                AlertType.INFO,
                f"Job {job.name} skipped: job is disabled",
                job_id=job.id,
                details=details,
            )

    def cancel_run(self, job_id: str) -> bool:
        """
        Request cancellation of a job's running or queued run.

        The run stops at its next stage boundary. Returns False when the job
        has nothing to cancel.
        """
        job = self.require_job(job_id)
        with self._in_flight_lock:
            if job_id not in self._in_flight and job.status != JobStatus.QUEUED:
                return False
            self._cancel_requested.add(job_id)
        logger.info(f"Cancellation requested for job {job_id}")
        return True

    def get_job_runs(self, job_id: Optional[str] = None, limit: Optional[int] = None) -> List[JobRun]:
        """Runs most-recent-first."""
        if job_id is None:
            runs = self._runs.list()
        else:
            runs = self._runs.list(lambda r: r.job_id == job_id)
        runs.reverse()
        if limit is not None:
            runs = runs[:limit]
        return runs

    def get_run(self, run_id: str) -> Optional[JobRun]:
        return self._runs.get(run_id)

    # =========================================================================
    # Derived views
    # =========================================================================

    def get_system_status(self) -> Dict[str, Any]:
        jobs = self.get_all_jobs()
        running = set(self.running_job_ids())
        sources = self.registry.list()
        return {
            "total_jobs": len(jobs),
            "enabled_jobs": sum(1 for j in jobs if j.enabled),
            "running_jobs": len(running),
            "queued_jobs": sum(1 for j in jobs if j.status == JobStatus.QUEUED),
            "pending_jobs": sum(
                1 for j in jobs if j.enabled and j.schedule and j.id not in running
            ),
            "data_sources": len(sources),
            "connected_sources": sum(1 for s in sources if s.connected),
            "transformation_rules": len(self.transforms.list_rules()),
            "unread_alerts": self.alerts.unread_count(),
            "timestamp": utc_now().isoformat().replace("+00:00", "Z"),
        }

    def get_job_stats(self) -> Dict[str, Any]:
        jobs = self.get_all_jobs()
        by_status = {status.value: 0 for status in JobStatus}
        for job in jobs:
            by_status[job.status.value] += 1

        runs = [r for r in self._runs.list() if r.status.is_terminal]
        succeeded = sum(1 for r in runs if r.status == JobStatus.SUCCEEDED)
        failed = sum(1 for r in runs if r.status == JobStatus.FAILED)
        counted = [r for r in runs if r.status != JobStatus.SKIPPED]
        return {
            "total_jobs": len(jobs),
            "by_status": by_status,
            "total_runs": len(runs),
            "succeeded_runs": succeeded,
            "failed_runs": failed,
            "success_rate": round(succeeded / len(counted), 4) if counted else 0.0,
            "records_processed": sum(j.metrics.records_processed for j in jobs),
        }
