"""
API Middleware

Correlation ID handling and engine access for route handlers.
"""
from __future__ import annotations

import logging
import time
from typing import Callable

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from parcelflow.core.engine import Engine
from parcelflow.core.structured_logging import generate_correlation_id, with_correlation_id

logger = logging.getLogger(__name__)

CORRELATION_HEADER = "X-Correlation-ID"


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable):
        start = time.time()
        cid = request.headers.get(CORRELATION_HEADER) or generate_correlation_id()
        request.state.correlation_id = cid
        with with_correlation_id(cid):
            response = await call_next(request)
        duration_ms = int((time.time() - start) * 1000)
        response.headers[CORRELATION_HEADER] = cid
        logger.debug(f"{request.method} {request.url.path} -> {response.status_code} ({duration_ms}ms)")
        return response


def get_engine(request: Request) -> Engine:
    """FastAPI dependency returning the engine the app was built with."""
    return request.app.state.engine


def get_correlation_id(request: Request) -> str:
    return getattr(request.state, "correlation_id", "")
