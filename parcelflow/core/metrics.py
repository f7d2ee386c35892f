"""
Parcelflow Metrics with Mode Gating

Prometheus metrics for the ETL engine, gated by PARCELFLOW_METRICS_MODE.

Modes:
- off: No metrics registered (minimal footprint)
- basic: Run counters and run duration only
- full: Adds record, alert, transform error, scheduler and running job metrics

Usage:
    from parcelflow.core.metrics import init_metrics, record_job_run

    init_metrics("full")
    record_job_run("succeeded", 12.5)
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from prometheus_client import Counter, Gauge, Histogram

logger = logging.getLogger(__name__)

# =============================================================================
# Metric Definitions
# =============================================================================

# Basic metrics (registered in basic and full modes)
BASIC_METRICS: Dict[str, Any] = {}

# Full metrics (registered only in full mode)
FULL_METRICS: Dict[str, Any] = {}

_initialized = False
_mode = "off"


def _create_basic_metrics():
    """Create core metrics that are always needed (unless off)."""
    BASIC_METRICS["job_runs_total"] = Counter(
        "parcelflow_job_runs_total",
        "Job runs by terminal status",
        ["status"]
    )

    BASIC_METRICS["job_run_duration_seconds"] = Histogram(
        "parcelflow_job_run_duration_seconds",
        "Job run duration in seconds",
        buckets=[0.1, 0.5, 1, 5, 10, 30, 60, 120, 300, 600]
    )


def _create_full_metrics():
    """Create extended metrics for full observability mode."""
    FULL_METRICS["records_total"] = Counter(
        "parcelflow_records_total",
        "Records moved through pipeline stages",
        ["stage"]
    )

    FULL_METRICS["alerts_total"] = Counter(
        "parcelflow_alerts_total",
        "Alerts published by type",
        ["type"]
    )

    FULL_METRICS["transform_errors_total"] = Counter(
        "parcelflow_transform_errors_total",
        "Records dropped by a failing transformation rule"
    )

    FULL_METRICS["running_jobs"] = Gauge(
        "parcelflow_running_jobs",
        "Job runs currently in flight"
    )

    FULL_METRICS["scheduler_ticks_total"] = Counter(
        "parcelflow_scheduler_ticks_total",
        "Scheduler tick evaluations"
    )


def init_metrics(mode: Optional[str] = None):
    """
    Initialize metrics based on mode.

    Registration happens once per process; later calls are no-ops.

    Args:
        mode: Metrics mode (off, basic, full). If None, reads from settings.
    """
    global _initialized, _mode

    if _initialized:
        logger.debug("Metrics already initialized, skipping")
        return

    if mode is None:
        from parcelflow.core.config import get_settings
        mode = get_settings().metrics_mode

    mode = mode.lower()
    _mode = mode

    if mode == "off":
        logger.info("Metrics mode: OFF - no metrics registered")
        _initialized = True
        return

    if mode in ("basic", "full"):
        _create_basic_metrics()
        logger.info(f"Metrics mode: {mode.upper()} - basic metrics registered")

    if mode == "full":
        _create_full_metrics()
        logger.info("Metrics mode: FULL - extended metrics registered")

    _initialized = True


def get_mode() -> str:
    return _mode


def is_enabled() -> bool:
    """Check if metrics are enabled (not 'off')."""
    return _initialized and _mode != "off"


# =============================================================================
# Metric Recording Helpers
# =============================================================================

def record_job_run(status: str, duration_seconds: Optional[float] = None):
    """Record a terminal job run and its duration."""
    if "job_runs_total" in BASIC_METRICS:
        BASIC_METRICS["job_runs_total"].labels(status=status).inc()
    if duration_seconds is not None and "job_run_duration_seconds" in BASIC_METRICS:
        BASIC_METRICS["job_run_duration_seconds"].observe(duration_seconds)


def record_records(stage: str, count: int):
    """Record records handled by a stage (full mode only)."""
    if count and "records_total" in FULL_METRICS:
        FULL_METRICS["records_total"].labels(stage=stage).inc(count)


def record_alert(alert_type: str):
    """Record a published alert (full mode only)."""
    if "alerts_total" in FULL_METRICS:
        FULL_METRICS["alerts_total"].labels(type=alert_type).inc()


def record_transform_errors(count: int = 1):
    """Record dropped records (full mode only)."""
    if count and "transform_errors_total" in FULL_METRICS:
        FULL_METRICS["transform_errors_total"].inc(count)


def set_running_jobs(count: int):
    """Set the in-flight run gauge (full mode only)."""
    if "running_jobs" in FULL_METRICS:
        FULL_METRICS["running_jobs"].set(count)


def record_scheduler_tick():
    """Record a scheduler tick (full mode only)."""
    if "scheduler_ticks_total" in FULL_METRICS:
        FULL_METRICS["scheduler_ticks_total"].inc()
