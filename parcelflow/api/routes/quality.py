"""
Quality API Routes

On-demand profiling and field checks against a registered source, without
running a job.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from parcelflow.api.middleware import get_engine
from parcelflow.core.engine import Engine
from parcelflow.core.errors import ConnectorError, DataQualityError
from parcelflow.core.quality import QualityOptions, build_rule

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/quality")


# =============================================================================
# Models
# =============================================================================

class ProfileRequest(BaseModel):
    source_id: str
    options: Optional[Dict[str, Any]] = None


class ValidateRequest(BaseModel):
    source_id: str
    checks: List[Dict[str, Any]] = Field(..., min_length=1)


async def _extract(engine: Engine, source_id: str) -> List[Dict[str, Any]]:
    source = engine.registry.require(source_id)
    if not await engine.registry.check_availability(source.id):
        raise ConnectorError("PFLW-6001", source=source.name)
    return await engine.registry.connector_for(source.id).extract()


# =============================================================================
# Endpoints
# =============================================================================

@router.post("/profile")
async def profile_source(request: ProfileRequest, engine: Engine = Depends(get_engine)):
    """Full quality report for a source; 422 when it has too few records for statistics."""
    options = (
        QualityOptions.from_dict(request.options)
        if request.options is not None else engine.analyzer.defaults
    )
    records = await _extract(engine, request.source_id)
    report = engine.analyzer.analyze(records, options)
    if report.insufficient_data:
        raise DataQualityError(
            "PFLW-7001",
            details={"source_id": request.source_id},
            rows=len(records),
            min_rows=options.min_properties_for_stats,
        )
    return {"source_id": request.source_id, **report.to_dict()}


@router.post("/validate")
async def validate_source(request: ValidateRequest, engine: Engine = Depends(get_engine)):
    rules = [build_rule(check) for check in request.checks]
    records = await _extract(engine, request.source_id)
    result = engine.analyzer.validate(records, rules)
    logger.info(
        f"Validated source {request.source_id}: {result['passed']}/{result['total']} checks passed"
    )
    return {"source_id": request.source_id, **result}
