"""
Suggestions API Routes

Optimization suggestions produced by the advisor after each run.
"""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from parcelflow.api.middleware import get_engine
from parcelflow.core.engine import Engine
from parcelflow.core.errors import ResourceNotFoundError
from parcelflow.core.models import SuggestionStatus

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/suggestions")


class UpdateSuggestionRequest(BaseModel):
    status: SuggestionStatus


@router.get("")
async def list_suggestions(
    job_id: Optional[str] = None,
    status: Optional[SuggestionStatus] = None,
    engine: Engine = Depends(get_engine),
):
    suggestions = engine.advisor.list_suggestions(job_id=job_id, status=status)
    return {"suggestions": [s.to_dict() for s in suggestions], "total": len(suggestions)}


@router.post("/analyze/{job_id}")
async def analyze_job(job_id: str, engine: Engine = Depends(get_engine)):
    """Run the advisor against a job now instead of waiting for its next run."""
    job = engine.orchestrator.require_job(job_id)
    suggestions = engine.advisor.analyze_job(job, engine.orchestrator.get_job_runs(job_id))
    return {"suggestions": [s.to_dict() for s in suggestions], "total": len(suggestions)}


@router.get("/{suggestion_id}")
async def get_suggestion(suggestion_id: str, engine: Engine = Depends(get_engine)):
    suggestion = engine.advisor.get_suggestion(suggestion_id)
    if suggestion is None:
        raise ResourceNotFoundError("PFLW-2006", suggestion_id=suggestion_id)
    return suggestion.to_dict()


@router.patch("/{suggestion_id}")
async def update_suggestion(
    suggestion_id: str,
    request: UpdateSuggestionRequest,
    engine: Engine = Depends(get_engine),
):
    return engine.advisor.update_status(suggestion_id, request.status).to_dict()


@router.get("/{suggestion_id}/fix")
async def auto_fix(suggestion_id: str, engine: Engine = Depends(get_engine)):
    """Job changes that would implement the suggestion, or null."""
    return {"suggestion_id": suggestion_id, "fix": engine.advisor.generate_auto_fix(suggestion_id)}
