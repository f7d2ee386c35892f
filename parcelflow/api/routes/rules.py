"""
Rules API Routes

Transformation rule management and the catalog of registered transforms.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Response, status
from pydantic import BaseModel, Field

from parcelflow.api.middleware import get_engine
from parcelflow.core.engine import Engine
from parcelflow.core.errors import ResourceNotFoundError
from parcelflow.core.models import DataType

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/rules")


class CreateRuleRequest(BaseModel):
    name: str = Field(..., min_length=1)
    transform: str = Field(..., description="Name of a registered transform")
    config: Dict[str, Any] = Field(default_factory=dict)
    data_type: DataType = DataType.OBJECT
    description: str = ""
    active: bool = True


class UpdateRuleRequest(BaseModel):
    name: Optional[str] = None
    transform: Optional[str] = None
    config: Optional[Dict[str, Any]] = None
    data_type: Optional[DataType] = None
    description: Optional[str] = None
    active: Optional[bool] = None


@router.get("")
async def list_rules(engine: Engine = Depends(get_engine)):
    rules = engine.transforms.list_rules()
    return {"rules": [r.to_dict() for r in rules], "total": len(rules)}


@router.get("/transforms")
async def list_transforms(engine: Engine = Depends(get_engine)):
    """Registered transform functions a rule may reference."""
    return {"transforms": [t.to_dict() for t in engine.transforms.registry.list()]}


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_rule(request: CreateRuleRequest, engine: Engine = Depends(get_engine)):
    rule = engine.transforms.add_rule(
        request.name,
        request.transform,
        config=request.config,
        data_type=request.data_type,
        description=request.description,
        active=request.active,
    )
    return rule.to_dict()


@router.get("/{rule_id}")
async def get_rule(rule_id: str, engine: Engine = Depends(get_engine)):
    rule = engine.transforms.get_rule(rule_id)
    if rule is None:
        raise ResourceNotFoundError("PFLW-2003", rule_id=rule_id)
    return rule.to_dict()


@router.patch("/{rule_id}")
async def update_rule(rule_id: str, request: UpdateRuleRequest, engine: Engine = Depends(get_engine)):
    rule = engine.transforms.update_rule(rule_id, **request.model_dump(exclude_unset=True))
    if rule is None:
        raise ResourceNotFoundError("PFLW-2003", rule_id=rule_id)
    return rule.to_dict()


@router.delete("/{rule_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_rule(rule_id: str, engine: Engine = Depends(get_engine)):
    if not engine.transforms.delete_rule(rule_id):
        raise ResourceNotFoundError("PFLW-2003", rule_id=rule_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
