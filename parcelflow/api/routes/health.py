"""
Health check endpoints.

Liveness and readiness probes plus the dashboard's system status view.
"""
from __future__ import annotations

import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, Response, status

from parcelflow import __version__
from parcelflow.api.middleware import get_engine
from parcelflow.core.engine import Engine
from parcelflow.core.models import isoformat, utc_now

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/health")
async def health():
    """Liveness probe. 200 whenever the process is serving requests."""
    return {
        "status": "healthy",
        "version": __version__,
        "timestamp": isoformat(utc_now()),
    }


@router.get("/ready")
async def ready(response: Response, engine: Engine = Depends(get_engine)):
    """
    Readiness probe.

    Ready when the run dispatcher is consuming its queue and, if enabled,
    the scheduler loop is ticking. Returns 503 otherwise.
    """
    checks: Dict[str, Any] = {
        "dispatcher": {"status": "up" if engine.dispatcher.is_running else "down"},
    }
    if engine.settings.scheduler_enabled:
        checks["scheduler"] = {"status": "up" if engine.scheduler.is_running else "down"}
    else:
        checks["scheduler"] = {"status": "disabled"}

    overall_ready = all(c["status"] != "down" for c in checks.values())
    if not overall_ready:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    return {
        "status": "ready" if overall_ready else "not_ready",
        "timestamp": isoformat(utc_now()),
        "checks": checks,
    }


@router.get("/v1/status")
async def system_status(engine: Engine = Depends(get_engine)):
    """Counts the dashboard header polls: jobs, sources, rules, unread alerts."""
    return engine.get_status()
