"""
Parcelflow API - FastAPI Application

Polling API for the valuation dashboard: system status, jobs and runs,
data sources, transformation rules, alerts, batches and optimization
suggestions. Clients poll; nothing is pushed.
"""
from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.responses import Response

from parcelflow import __version__
from parcelflow.api.middleware import CorrelationIdMiddleware, get_correlation_id
from parcelflow.api.routes import (
    alerts, batches, errors, health, jobs, quality, rules, sources, suggestions,
)
from parcelflow.core.config import get_settings
from parcelflow.core.engine import Engine, build_engine
from parcelflow.core.errors import ParcelflowError
from parcelflow.core.structured_logging import configure_logging

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Parcelflow API starting up...")
    await app.state.engine.start()
    yield
    await app.state.engine.stop()
    logger.info("Parcelflow API shutting down...")


def create_app(engine: Optional[Engine] = None) -> FastAPI:
    """Create and configure FastAPI application."""
    if engine is None:
        settings = get_settings()
        configure_logging(settings.log_level)
        engine = build_engine(settings)

    app = FastAPI(
        title="Parcelflow API",
        description="ETL orchestration for property valuation data",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.engine = engine

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=os.environ.get("CORS_ORIGINS", "*").split(","),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(CorrelationIdMiddleware)

    @app.exception_handler(ParcelflowError)
    async def parcelflow_error_handler(request: Request, exc: ParcelflowError):
        return JSONResponse(
            status_code=exc.http_status,
            content=exc.to_response(get_correlation_id(request)),
        )

    # Register routes
    app.include_router(health.router, tags=["health"])
    app.include_router(jobs.router, prefix="/v1", tags=["jobs"])
    app.include_router(sources.router, prefix="/v1", tags=["sources"])
    app.include_router(rules.router, prefix="/v1", tags=["rules"])
    app.include_router(alerts.router, prefix="/v1", tags=["alerts"])
    app.include_router(batches.router, prefix="/v1", tags=["batches"])
    app.include_router(suggestions.router, prefix="/v1", tags=["suggestions"])
    app.include_router(quality.router, prefix="/v1", tags=["quality"])
    app.include_router(errors.router, prefix="/v1", tags=["errors"])

    @app.get("/metrics", tags=["meta"])
    async def metrics():
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return app
