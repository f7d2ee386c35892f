"""
Batch Coordinator

Named groups of jobs run together. A batch's status and progress are always
derived from the current status of its member jobs.

Progress is terminal members / total members * 100. Status is RUNNING while
any member is running or queued, FAILED once every member is terminal and
any of them did not succeed, SUCCEEDED only when all members succeeded.

Usage:
    from parcelflow.core.batch import BatchCoordinator

    batches = BatchCoordinator(orchestrator, alerts)
    batch = batches.create_batch("nightly-county-refresh", [job_a.id, job_b.id])
    await batches.run_batch(batch.id, concurrent=True)
"""
from __future__ import annotations

import asyncio
import logging
from typing import List, Optional, Set, Tuple

from parcelflow.core.alerting import AlertHub
from parcelflow.core.errors import ResourceNotFoundError, ValidationError
from parcelflow.core.models import (
    AlertType,
    BatchJob,
    BatchStatus,
    JobStatus,
    new_id,
    utc_now,
)
from parcelflow.core.orchestrator import PipelineOrchestrator
from parcelflow.core.store import InMemoryStore

logger = logging.getLogger(__name__)

_IN_PROGRESS = (JobStatus.RUNNING, JobStatus.QUEUED)


def aggregate_status(
    member_statuses: List[JobStatus],
    started: bool = True,
) -> Tuple[BatchStatus, int]:
    """Batch status and progress (0-100) for the given member statuses."""
    total = len(member_statuses)
    if total == 0:
        return (BatchStatus.SUCCEEDED if started else BatchStatus.CREATED), 100 if started else 0

    terminal = [s for s in member_statuses if s.is_terminal]
    progress = int(len(terminal) * 100 / total)

    if any(s in _IN_PROGRESS for s in member_statuses):
        return BatchStatus.RUNNING, progress
    if len(terminal) < total:
        return (BatchStatus.RUNNING if started else BatchStatus.CREATED), progress
    if all(s == JobStatus.SUCCEEDED for s in terminal):
        return BatchStatus.SUCCEEDED, progress
    return BatchStatus.FAILED, progress


class BatchCoordinator:
    """Creates, runs and aggregates batch jobs."""

    def __init__(self, orchestrator: PipelineOrchestrator, alerts: AlertHub):
        self.orchestrator = orchestrator
        self.alerts = alerts
        self._batches: InMemoryStore[BatchJob] = InMemoryStore("batches")
        # Batches inside run_batch; they cannot finish before every member ran.
        self._active: Set[str] = set()

    def create_batch(self, name: str, job_ids: List[str], description: str = "") -> BatchJob:
        if not name:
            raise ValidationError("PFLW-1001", reason="batch name is required")
        for job_id in job_ids:
            self.orchestrator.require_job(job_id)
        batch = BatchJob(
            id=new_id("batch"),
            name=name,
            job_ids=list(job_ids),
            description=description,
        )
        self._batches.create(batch)
        logger.info(f"Created batch {batch.id} ({name}) with {len(job_ids)} jobs")
        return batch

    def get_batch(self, batch_id: str) -> Optional[BatchJob]:
        return self._batches.get(batch_id)

    def require_batch(self, batch_id: str) -> BatchJob:
        batch = self._batches.get(batch_id)
        if batch is None:
            raise ResourceNotFoundError("PFLW-2004", batch_id=batch_id)
        return batch

    def list_batches(self) -> List[BatchJob]:
        return [self.refresh(b.id) for b in self._batches.list()]

    def delete_batch(self, batch_id: str) -> bool:
        return self._batches.delete(batch_id)

    async def run_batch(self, batch_id: str, concurrent: bool = False) -> BatchJob:
        """
        Run every member job once, sequentially or concurrently.

        A member already in flight is not started twice; the batch stays
        RUNNING until that run finishes and refresh() is called again.
        """
        batch = self.require_batch(batch_id)
        self._batches.update(
            batch_id,
            status=BatchStatus.RUNNING,
            progress=0,
            started_at=utc_now(),
            completed_at=None,
        )
        logger.info(f"Running batch {batch_id} ({len(batch.job_ids)} jobs, concurrent={concurrent})")

        self._active.add(batch_id)
        try:
            if concurrent:
                await asyncio.gather(*(self._run_member(batch, job_id) for job_id in batch.job_ids))
            else:
                for job_id in batch.job_ids:
                    await self._run_member(batch, job_id)
                    self.refresh(batch_id)
        finally:
            self._active.discard(batch_id)

        return self.refresh(batch_id)

    async def _run_member(self, batch: BatchJob, job_id: str):
        try:
            await self.orchestrator.run_job(job_id, is_manual=True)
        except ResourceNotFoundError:
            logger.warning(f"Batch {batch.id} member {job_id} no longer exists")

    def refresh(self, batch_id: str) -> BatchJob:
        """Recompute status and progress from the members' current status."""
        batch = self.require_batch(batch_id)
        statuses = []
        for job_id in batch.job_ids:
            job = self.orchestrator.get_job(job_id)
            statuses.append(job.status if job is not None else JobStatus.FAILED)

        previous = batch.status
        status, progress = aggregate_status(statuses, started=batch.started_at is not None)
        if batch_id in self._active and status != BatchStatus.RUNNING:
            status = BatchStatus.RUNNING
        self._batches.update(batch_id, status=status, progress=progress)

        finished = status in (BatchStatus.SUCCEEDED, BatchStatus.FAILED)
        if finished and previous == BatchStatus.RUNNING:
            self._batches.update(batch_id, completed_at=utc_now())
            self._publish_summary(batch, statuses)
        return batch

    def _publish_summary(self, batch: BatchJob, statuses: List[JobStatus]):
        counts = {}
        for status in statuses:
            counts[status.value] = counts.get(status.value, 0) + 1
        details = {"batch_id": batch.id, "members": counts, "progress": batch.progress}
        if batch.status == BatchStatus.SUCCEEDED:
            self.alerts.publish(
                AlertType.SUCCESS,
                f"Batch {batch.name} completed: {len(statuses)} jobs succeeded",
                details=details,
            )
        else:
            self.alerts.publish(
                AlertType.ERROR,
                f"Batch {batch.name} finished with failures",
                details=details,
            )
