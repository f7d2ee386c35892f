"""
Jobs API Routes

Job management, run history and manual triggers.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, Response, status
from pydantic import BaseModel, Field

from parcelflow.api.middleware import get_engine
from parcelflow.core.engine import Engine
from parcelflow.core.models import JobStatus
from parcelflow.core.quality import QualityOptions

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/jobs")


# =============================================================================
# Models
# =============================================================================

class CreateJobRequest(BaseModel):
    name: str = Field(..., min_length=1)
    source_id: str
    target_id: str
    rule_ids: List[str] = Field(default_factory=list)
    description: str = ""
    schedule: Optional[str] = Field(default=None, description="Five-field cron expression")
    enabled: bool = True
    quality_options: Optional[Dict[str, Any]] = None


class UpdateJobRequest(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    source_id: Optional[str] = None
    target_id: Optional[str] = None
    rule_ids: Optional[List[str]] = None
    schedule: Optional[str] = None
    enabled: Optional[bool] = None
    quality_options: Optional[Dict[str, Any]] = None


class TriggerResponse(BaseModel):
    job_id: str
    accepted: bool
    run: Optional[Dict[str, Any]] = None


# =============================================================================
# Endpoints
# =============================================================================

@router.get("/stats")
async def job_stats(engine: Engine = Depends(get_engine)):
    """Aggregate job and run counts."""
    return engine.orchestrator.get_job_stats()


@router.get("")
async def list_jobs(
    status_filter: Optional[JobStatus] = Query(default=None, alias="status"),
    enabled: Optional[bool] = None,
    engine: Engine = Depends(get_engine),
):
    jobs = engine.orchestrator.get_all_jobs()
    if status_filter is not None:
        jobs = [j for j in jobs if j.status == status_filter]
    if enabled is not None:
        jobs = [j for j in jobs if j.enabled == enabled]
    return {"jobs": [j.to_dict() for j in jobs], "total": len(jobs)}


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_job(request: CreateJobRequest, engine: Engine = Depends(get_engine)):
    job = engine.orchestrator.create_job(
        request.name,
        request.source_id,
        request.target_id,
        rule_ids=request.rule_ids,
        description=request.description,
        schedule=request.schedule,
        enabled=request.enabled,
        quality_options=(
            QualityOptions.from_dict(request.quality_options)
            if request.quality_options is not None else None
        ),
    )
    return job.to_dict()


@router.get("/{job_id}")
async def get_job(job_id: str, engine: Engine = Depends(get_engine)):
    return engine.orchestrator.require_job(job_id).to_dict()


@router.patch("/{job_id}")
async def update_job(job_id: str, request: UpdateJobRequest, engine: Engine = Depends(get_engine)):
    changes = request.model_dump(exclude_unset=True)
    job = engine.orchestrator.update_job(job_id, **changes)
    return job.to_dict()


@router.delete("/{job_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_job(job_id: str, engine: Engine = Depends(get_engine)):
    engine.orchestrator.require_job(job_id)
    engine.orchestrator.delete_job(job_id)
    engine.advisor.clear_job(job_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/{job_id}/runs")
async def list_runs(
    job_id: str,
    limit: Optional[int] = Query(default=None, ge=1, le=1000),
    engine: Engine = Depends(get_engine),
):
    """Run history, most recent first."""
    engine.orchestrator.require_job(job_id)
    runs = engine.orchestrator.get_job_runs(job_id, limit=limit)
    return {"job_id": job_id, "runs": [r.to_dict() for r in runs]}


@router.post("/{job_id}/run", response_model=TriggerResponse)
async def trigger_run(
    job_id: str,
    response: Response,
    wait: bool = False,
    engine: Engine = Depends(get_engine),
):
    """
    Trigger a manual run.

    By default the run is queued and 202 is returned immediately. With
    ``wait=true`` the request returns the finished run. A trigger for a job
    that is already pending or running is not accepted.
    """
    engine.orchestrator.require_job(job_id)

    if wait:
        run = await engine.orchestrator.run_job(job_id, is_manual=True)
        return TriggerResponse(
            job_id=job_id,
            accepted=run is not None,
            run=run.to_dict() if run is not None else None,
        )

    accepted = engine.dispatcher.submit(job_id, is_manual=True)
    response.status_code = status.HTTP_202_ACCEPTED
    return TriggerResponse(job_id=job_id, accepted=accepted)


@router.post("/{job_id}/cancel")
async def cancel_run(job_id: str, engine: Engine = Depends(get_engine)):
    cancelled = engine.orchestrator.cancel_run(job_id)
    return {"job_id": job_id, "cancelled": cancelled}


@router.post("/{job_id}/enable")
async def enable_job(job_id: str, engine: Engine = Depends(get_engine)):
    return engine.orchestrator.enable_job(job_id).to_dict()


@router.post("/{job_id}/disable")
async def disable_job(job_id: str, engine: Engine = Depends(get_engine)):
    return engine.orchestrator.disable_job(job_id).to_dict()
