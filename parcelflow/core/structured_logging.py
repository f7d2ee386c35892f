"""
Structured Logging with Correlation IDs

Context-aware structured logging for pipeline runs and their stages.
Every log line emitted while a run executes carries the job and run ids,
so a single run can be followed across scheduler, dispatcher and orchestrator.

Usage:
    from parcelflow.core.structured_logging import (
        get_logger,
        with_run_context,
        log_stage_start,
        log_stage_end,
    )

    logger = get_logger(__name__)

    with with_run_context(job_id, run_id):
        log_stage_start("extract", {"source": source.name})
        try:
            records = await connector.extract()
            log_stage_end("extract", success=True, records=len(records))
        except Exception as e:
            log_stage_end("extract", success=False, error=str(e))
"""
from __future__ import annotations

import contextvars
import logging
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional

correlation_id_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "correlation_id",
    default=None
)

job_id_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "job_id",
    default=None
)

run_id_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "run_id",
    default=None
)

stage_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "stage",
    default=None
)


# =============================================================================
# Correlation ID Management
# =============================================================================

def generate_correlation_id() -> str:
    """Generate a new UUID-based correlation ID."""
    return str(uuid.uuid4())


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: str):
    correlation_id_var.set(correlation_id)


def get_job_id() -> Optional[str]:
    return job_id_var.get()


def get_run_id() -> Optional[str]:
    return run_id_var.get()


def get_stage() -> Optional[str]:
    return stage_var.get()


@contextmanager
def with_correlation_id(correlation_id: Optional[str] = None):
    """
    Context manager to set correlation ID for a block of code.

    Args:
        correlation_id: Correlation ID to use, or None to generate new one
    """
    if correlation_id is None:
        correlation_id = generate_correlation_id()

    token = correlation_id_var.set(correlation_id)
    try:
        yield correlation_id
    finally:
        correlation_id_var.reset(token)


@contextmanager
def with_run_context(job_id: str, run_id: str):
    """
    Context manager binding a job run to every log line in the block.

    The run id doubles as the correlation id so HTTP requests that trigger
    a manual run can be matched to the run's own log lines.
    """
    correlation_token = correlation_id_var.set(run_id)
    job_token = job_id_var.set(job_id)
    run_token = run_id_var.set(run_id)

    try:
        yield run_id
    finally:
        correlation_id_var.reset(correlation_token)
        job_id_var.reset(job_token)
        run_id_var.reset(run_token)


@contextmanager
def with_stage_context(stage: str):
    token = stage_var.set(stage)
    try:
        yield stage
    finally:
        stage_var.reset(token)


# =============================================================================
# Structured Logging Formatter
# =============================================================================

class StructuredFormatter(logging.Formatter):
    """Log formatter that adds correlation, job, run and stage fields."""

    def format(self, record: logging.LogRecord) -> str:
        record.correlation_id = get_correlation_id() or "-"
        record.job_id = get_job_id() or "-"
        record.run_id = get_run_id() or "-"
        record.stage = get_stage() or "-"
        record.timestamp = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
        return super().format(record)


# Format: [timestamp] [level] [correlation_id] [job] [run] [stage] [logger] message
STRUCTURED_FORMAT = (
    "[%(timestamp)s] [%(levelname)s] "
    "[corr:%(correlation_id)s] [job:%(job_id)s] [run:%(run_id)s] [stage:%(stage)s] "
    "[%(name)s] %(message)s"
)


def get_logger(name: str) -> logging.Logger:
    """
    Get a structured logger with correlation ID support.

    Args:
        name: Logger name (usually __name__)

    Returns:
        Configured logger
    """
    logger = logging.getLogger(name)

    # Only configure if not already configured
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(StructuredFormatter(STRUCTURED_FORMAT))
        logger.addHandler(handler)
        logger.setLevel(logging.INFO)

    return logger


def configure_logging(level: str = "INFO"):
    """Install the structured formatter on the root ``parcelflow`` logger."""
    logger = get_logger("parcelflow")
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    return logger


# =============================================================================
# Stage Logging Helpers
# =============================================================================

def log_stage_start(stage: str, params: Optional[Dict[str, Any]] = None):
    """
    Log pipeline stage start with structured fields.

    Args:
        stage: Stage name (extract, transform, quality, load)
        params: Stage parameters (sensitive data will be filtered)
    """
    logger = logging.getLogger("parcelflow.pipeline")
    safe_params = filter_sensitive_fields(params or {})

    with with_stage_context(stage):
        logger.info(
            f"Stage started: {stage}",
            extra={
                "event": "stage_start",
                "stage_name": stage,
                "params": safe_params
            }
        )


def log_stage_end(
    stage: str,
    success: bool = True,
    error: Optional[str] = None,
    **result_fields
):
    """
    Log pipeline stage end with structured fields.

    Args:
        stage: Stage name
        success: Whether the stage succeeded
        error: Error message if failed
        **result_fields: Additional result fields to log
    """
    logger = logging.getLogger("parcelflow.pipeline")
    safe_results = filter_sensitive_fields(result_fields)

    with with_stage_context(stage):
        if success:
            logger.info(
                f"Stage completed: {stage}",
                extra={
                    "event": "stage_end",
                    "stage_name": stage,
                    "success": True,
                    **safe_results
                }
            )
        else:
            logger.error(
                f"Stage failed: {stage}: {error}",
                extra={
                    "event": "stage_error",
                    "stage_name": stage,
                    "success": False,
                    "error": error,
                    **safe_results
                }
            )


# =============================================================================
# Security Helpers
# =============================================================================

# Fields that should never be logged
SENSITIVE_FIELD_NAMES = {
    "password", "secret", "token", "api_key", "apikey", "auth",
    "credential", "private_key", "access_token", "refresh_token",
    "session_id", "cookie",
}


def filter_sensitive_fields(data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Redact sensitive values from a dict before logging or serializing it.

    Connection blobs of data sources go through here before they leave the
    process, whether in logs or in API responses.
    """
    filtered = {}
    for key, value in data.items():
        key_lower = str(key).lower()
        if any(sensitive in key_lower for sensitive in SENSITIVE_FIELD_NAMES):
            filtered[key] = "***REDACTED***"
        elif isinstance(value, dict):
            filtered[key] = filter_sensitive_fields(value)
        else:
            filtered[key] = value
    return filtered
