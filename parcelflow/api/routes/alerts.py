"""
Alerts API Routes

Alert history, newest first, and read-state management.
"""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query

from parcelflow.api.middleware import get_engine
from parcelflow.core.engine import Engine
from parcelflow.core.models import AlertType

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/alerts")


@router.get("")
async def list_alerts(
    job_id: Optional[str] = None,
    alert_type: Optional[AlertType] = Query(default=None, alias="type"),
    unread_only: bool = False,
    limit: Optional[int] = Query(default=100, ge=1, le=1000),
    engine: Engine = Depends(get_engine),
):
    alerts = engine.alerts.list(
        job_id=job_id,
        alert_type=alert_type,
        unread_only=unread_only,
        limit=limit,
    )
    return {
        "alerts": [a.to_dict() for a in alerts],
        "unread": engine.alerts.unread_count(job_id),
    }


@router.post("/read")
async def mark_all_read(job_id: Optional[str] = None, engine: Engine = Depends(get_engine)):
    return {"marked": engine.alerts.mark_all_read(job_id)}


@router.post("/{alert_id}/read")
async def mark_read(alert_id: str, engine: Engine = Depends(get_engine)):
    alert = engine.alerts.require(alert_id)
    engine.alerts.mark_read(alert_id)
    return alert.to_dict()
