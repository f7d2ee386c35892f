"""
Domain Model

Entities shared by every parcelflow component: data sources, transformation
rules, jobs and their runs, batch jobs, alerts and optimization suggestions.

Features:
- Dataclass entities with JSON-ready to_dict()
- Job lifecycle state machine (JobStatus.can_transition_to)
- Kind-prefixed generated identities (job_..., run_..., alert_...)
- UTC timestamps rendered as ISO-8601 with a trailing Z

Usage:
    from parcelflow.core.models import Job, JobStatus, new_id

    job = Job(id=new_id("job"), name="county-assessor-sync",
              source_id=src.id, target_id=dst.id)
    job.status.can_transition_to(JobStatus.SCHEDULED)  # True
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from parcelflow.core.errors import InvalidTransitionError, ScheduleParseError
from parcelflow.core.quality import QualityOptions
from parcelflow.core.schedule import parse_schedule


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    """Generate a kind-prefixed identity, e.g. ``job_3f2a...``."""
    return f"{prefix}_{uuid.uuid4().hex[:16]}"


def isoformat(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


# =============================================================================
# Data Sources & Rules
# =============================================================================

class SourceKind(str, Enum):
    DATABASE = "database"
    API = "api"
    FILE = "file"
    MEMORY = "memory"


@dataclass
class DataSource:
    """A registered place records are extracted from or loaded into."""
    id: str
    name: str
    kind: SourceKind
    connection: Dict[str, Any] = field(default_factory=dict)
    description: str = ""
    connected: bool = False
    last_connected_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        from parcelflow.core.structured_logging import filter_sensitive_fields

        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "kind": self.kind.value,
            "connection": filter_sensitive_fields(self.connection),
            "connected": self.connected,
            "last_connected_at": isoformat(self.last_connected_at),
            "created_at": isoformat(self.created_at),
        }


class DataType(str, Enum):
    TEXT = "text"
    NUMBER = "number"
    DATE = "date"
    BOOLEAN = "boolean"
    OBJECT = "object"


@dataclass
class TransformationRule:
    """A named, registered transform function plus its configuration."""
    id: str
    name: str
    transform: str
    config: Dict[str, Any] = field(default_factory=dict)
    data_type: DataType = DataType.OBJECT
    description: str = ""
    active: bool = True
    created_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "data_type": self.data_type.value,
            "transform": self.transform,
            "config": self.config,
            "active": self.active,
            "created_at": isoformat(self.created_at),
        }


# =============================================================================
# Jobs & Runs
# =============================================================================

class JobStatus(str, Enum):
    """Lifecycle of a job and of a single run."""
    CREATED = "created"
    SCHEDULED = "scheduled"
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    def can_transition_to(self, target: "JobStatus") -> bool:
        return target in _TRANSITIONS[self]

    def check_transition(self, target: "JobStatus", entity: str = "job"):
        if not self.can_transition_to(target):
            raise InvalidTransitionError(
                "PFLW-5001", entity=entity, current=self.value, target=target.value
            )


TERMINAL_STATUSES = frozenset({
    JobStatus.SUCCEEDED,
    JobStatus.FAILED,
    JobStatus.CANCELLED,
    JobStatus.SKIPPED,
})

# Terminal states may start a new cycle; RUNNING can only close.
_RESTART = {JobStatus.CREATED, JobStatus.SCHEDULED, JobStatus.QUEUED, JobStatus.RUNNING}

_TRANSITIONS: Dict[JobStatus, frozenset] = {
    JobStatus.CREATED: frozenset({JobStatus.SCHEDULED, JobStatus.QUEUED, JobStatus.RUNNING}),
    JobStatus.SCHEDULED: frozenset({JobStatus.CREATED, JobStatus.QUEUED, JobStatus.RUNNING}),
    JobStatus.QUEUED: frozenset({
        JobStatus.CREATED, JobStatus.SCHEDULED, JobStatus.RUNNING,
        JobStatus.CANCELLED, JobStatus.SKIPPED,
    }),
    JobStatus.RUNNING: TERMINAL_STATUSES,
    JobStatus.SUCCEEDED: frozenset(_RESTART),
    JobStatus.FAILED: frozenset(_RESTART),
    JobStatus.CANCELLED: frozenset(_RESTART),
    JobStatus.SKIPPED: frozenset(_RESTART),
}


@dataclass
class JobMetrics:
    """Snapshot refreshed each time a run of the job closes."""
    last_execution_seconds: float = 0.0
    records_processed: int = 0
    memory_estimate_mb: float = 0.0
    cpu_estimate_percent: float = 0.0
    success_rate: float = 0.0
    total_runs: int = 0
    failed_runs: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "last_execution_seconds": round(self.last_execution_seconds, 3),
            "records_processed": self.records_processed,
            "memory_estimate_mb": round(self.memory_estimate_mb, 2),
            "cpu_estimate_percent": round(self.cpu_estimate_percent, 1),
            "success_rate": round(self.success_rate, 4),
            "total_runs": self.total_runs,
            "failed_runs": self.failed_runs,
        }


@dataclass
class Job:
    """A configured, repeatable extract/transform/load task."""
    id: str
    name: str
    source_id: str
    target_id: str
    rule_ids: List[str] = field(default_factory=list)
    description: str = ""
    enabled: bool = True
    status: JobStatus = JobStatus.CREATED
    schedule: Optional[str] = None
    metrics: JobMetrics = field(default_factory=JobMetrics)
    quality_options: QualityOptions = field(default_factory=QualityOptions)
    last_run_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def next_run_at(self, now: Optional[datetime] = None) -> Optional[datetime]:
        """Next automatic trigger. None when disabled or without a valid schedule."""
        if not self.enabled or not self.schedule:
            return None
        try:
            expression = parse_schedule(self.schedule)
        except ScheduleParseError:
            return None
        return expression.next_run_at(self.last_run_at, now or utc_now())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "source_id": self.source_id,
            "target_id": self.target_id,
            "rule_ids": list(self.rule_ids),
            "enabled": self.enabled,
            "status": self.status.value,
            "schedule": self.schedule,
            "metrics": self.metrics.to_dict(),
            "quality_options": self.quality_options.to_dict(),
            "last_run_at": isoformat(self.last_run_at),
            "next_run_at": isoformat(self.next_run_at()),
            "created_at": isoformat(self.created_at),
            "updated_at": isoformat(self.updated_at),
        }


@dataclass
class RecordCounts:
    extracted: int = 0
    transformed: int = 0
    loaded: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "extracted": self.extracted,
            "transformed": self.transformed,
            "loaded": self.loaded,
        }


@dataclass
class StageMetrics:
    """Timing and volume of one pipeline stage within a run."""
    started_at: datetime = field(default_factory=utc_now)
    ended_at: Optional[datetime] = None
    seconds: float = 0.0
    records: int = 0
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": isoformat(self.started_at),
            "ended_at": isoformat(self.ended_at),
            "seconds": round(self.seconds, 4),
            "records": self.records,
            "error": self.error,
        }


@dataclass
class TransformError:
    """A record dropped because one of its rules raised."""
    rule_id: str
    rule_name: str
    record_index: int
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rule_id": self.rule_id,
            "rule_name": self.rule_name,
            "record_index": self.record_index,
            "message": self.message,
        }


@dataclass
class JobRun:
    """One execution attempt of a job. Immutable once terminal."""
    id: str
    job_id: str
    is_manual: bool = False
    status: JobStatus = JobStatus.RUNNING
    started_at: datetime = field(default_factory=utc_now)
    ended_at: Optional[datetime] = None
    record_counts: RecordCounts = field(default_factory=RecordCounts)
    error: Optional[str] = None
    transform_errors: List[TransformError] = field(default_factory=list)
    quality: Dict[str, Any] = field(default_factory=dict)
    stage_metrics: Dict[str, StageMetrics] = field(default_factory=dict)
    logs: List[str] = field(default_factory=list)

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.ended_at is None:
            return None
        return (self.ended_at - self.started_at).total_seconds()

    def log(self, message: str):
        if self.status.is_terminal:
            return
        self.logs.append(f"[{isoformat(utc_now())}] {message}")

    def close(self, status: JobStatus, error: Optional[str] = None):
        """Move the run to a terminal status. A run closes exactly once."""
        if not status.is_terminal:
            raise ValueError(f"{status.value} is not a terminal status")
        self.status.check_transition(status, entity=f"run {self.id}")
        self.log(f"Run finished: {status.value}")
        self.status = status
        self.error = error
        self.ended_at = utc_now()

    def to_dict(self) -> Dict[str, Any]:
        duration = self.duration_seconds
        return {
            "id": self.id,
            "job_id": self.job_id,
            "is_manual": self.is_manual,
            "status": self.status.value,
            "started_at": isoformat(self.started_at),
            "ended_at": isoformat(self.ended_at),
            "duration_seconds": round(duration, 3) if duration is not None else None,
            "record_counts": self.record_counts.to_dict(),
            "error": self.error,
            "transform_errors": [e.to_dict() for e in self.transform_errors],
            "quality": self.quality,
            "stage_metrics": {name: m.to_dict() for name, m in self.stage_metrics.items()},
            "logs": list(self.logs),
        }


# =============================================================================
# Batches
# =============================================================================

class BatchStatus(str, Enum):
    CREATED = "created"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class BatchJob:
    """A named group of jobs whose status is derived from its members."""
    id: str
    name: str
    job_ids: List[str] = field(default_factory=list)
    description: str = ""
    status: BatchStatus = BatchStatus.CREATED
    progress: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "job_ids": list(self.job_ids),
            "status": self.status.value,
            "progress": self.progress,
            "started_at": isoformat(self.started_at),
            "completed_at": isoformat(self.completed_at),
            "created_at": isoformat(self.created_at),
        }


# =============================================================================
# Alerts
# =============================================================================

class AlertType(str, Enum):
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"
    SUCCESS = "success"


@dataclass
class Alert:
    """Typed notification. Only is_read ever changes after publish."""
    id: str
    type: AlertType
    message: str
    job_id: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    timestamp: datetime = field(default_factory=utc_now)
    is_read: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "job_id": self.job_id,
            "type": self.type.value,
            "message": self.message,
            "details": self.details,
            "timestamp": isoformat(self.timestamp),
            "is_read": self.is_read,
        }


# =============================================================================
# Optimization Suggestions
# =============================================================================

class SuggestionType(str, Enum):
    PERFORMANCE = "performance"
    RELIABILITY = "reliability"
    DATA_QUALITY = "data_quality"
    SCHEDULING = "scheduling"
    RESOURCE = "resource"


class SuggestionSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return {"high": 0, "medium": 1, "low": 2}[self.value]


class SuggestionStatus(str, Enum):
    NEW = "new"
    IN_PROGRESS = "in_progress"
    IMPLEMENTED = "implemented"
    DISMISSED = "dismissed"


class Complexity(str, Enum):
    EASY = "easy"
    MEDIUM = "medium"
    COMPLEX = "complex"


@dataclass
class EstimatedImprovement:
    metric: str
    percentage: float

    def to_dict(self) -> Dict[str, Any]:
        return {"metric": self.metric, "percentage": self.percentage}


@dataclass
class OptimizationSuggestion:
    """Advisory output of the optimization advisor."""
    id: str
    job_id: str
    type: SuggestionType
    severity: SuggestionSeverity
    title: str
    description: str
    suggested_action: str
    estimated_improvement: EstimatedImprovement
    status: SuggestionStatus = SuggestionStatus.NEW
    complexity: Optional[Complexity] = None
    example_code: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "job_id": self.job_id,
            "type": self.type.value,
            "severity": self.severity.value,
            "title": self.title,
            "description": self.description,
            "suggested_action": self.suggested_action,
            "estimated_improvement": self.estimated_improvement.to_dict(),
            "status": self.status.value,
            "complexity": self.complexity.value if self.complexity else None,
            "example_code": self.example_code,
            "created_at": isoformat(self.created_at),
        }
