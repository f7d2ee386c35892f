"""
Sources API Routes

Endpoints for data source management.
"""
from __future__ import annotations

import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, Response, status
from pydantic import BaseModel, Field

from parcelflow.api.middleware import get_engine
from parcelflow.core.engine import Engine
from parcelflow.core.models import SourceKind

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/sources")


class CreateSourceRequest(BaseModel):
    name: str = Field(..., min_length=1)
    kind: SourceKind
    connection: Dict[str, Any] = Field(default_factory=dict)
    description: str = ""


@router.get("")
async def list_sources(engine: Engine = Depends(get_engine)):
    sources = engine.registry.list()
    return {"sources": [s.to_dict() for s in sources], "total": len(sources)}


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_source(request: CreateSourceRequest, engine: Engine = Depends(get_engine)):
    source = engine.registry.register(
        request.name,
        request.kind,
        connection=request.connection,
        description=request.description,
    )
    return source.to_dict()


@router.get("/{source_id}")
async def get_source(source_id: str, engine: Engine = Depends(get_engine)):
    return engine.registry.require(source_id).to_dict()


@router.delete("/{source_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_source(source_id: str, engine: Engine = Depends(get_engine)):
    engine.registry.require(source_id)
    engine.registry.delete(source_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{source_id}/connect")
async def connect_source(source_id: str, engine: Engine = Depends(get_engine)):
    """Probe the source and mark it connected when it answers."""
    connected = await engine.registry.connect(source_id)
    return {"source_id": source_id, "connected": connected}


@router.post("/{source_id}/disconnect")
async def disconnect_source(source_id: str, engine: Engine = Depends(get_engine)):
    engine.registry.require(source_id)
    engine.registry.disconnect(source_id)
    return {"source_id": source_id, "connected": False}
