"""
Batches API Routes

Batch job creation, aggregated status and execution.
"""
from __future__ import annotations

import logging
from typing import List

from fastapi import APIRouter, Depends, Response, status
from pydantic import BaseModel, Field

from parcelflow.api.middleware import get_engine
from parcelflow.core.engine import Engine

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/batches")


class CreateBatchRequest(BaseModel):
    name: str = Field(..., min_length=1)
    job_ids: List[str] = Field(default_factory=list)
    description: str = ""


@router.get("")
async def list_batches(engine: Engine = Depends(get_engine)):
    batches = engine.batches.list_batches()
    return {"batches": [b.to_dict() for b in batches], "total": len(batches)}


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_batch(request: CreateBatchRequest, engine: Engine = Depends(get_engine)):
    batch = engine.batches.create_batch(request.name, request.job_ids, request.description)
    return batch.to_dict()


@router.get("/{batch_id}")
async def get_batch(batch_id: str, engine: Engine = Depends(get_engine)):
    return engine.batches.refresh(batch_id).to_dict()


@router.delete("/{batch_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_batch(batch_id: str, engine: Engine = Depends(get_engine)):
    engine.batches.require_batch(batch_id)
    engine.batches.delete_batch(batch_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{batch_id}/run")
async def run_batch(batch_id: str, concurrent: bool = False, engine: Engine = Depends(get_engine)):
    """Run every member job once and return the aggregated batch."""
    batch = await engine.batches.run_batch(batch_id, concurrent=concurrent)
    return batch.to_dict()
