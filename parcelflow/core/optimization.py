"""
Optimization Advisor

Reads a job's configuration, metrics and recent runs and produces advisory
suggestions. Never changes a job and never raises into the orchestrator.

Checks:
- long-running runs (average of recent runs over the configured limit)
- failures (recent success rate under the threshold; high severity above 50% failures)
- missing validate rule in the transformation chain
- no automatic schedule
- high-frequency ``*/n`` schedules (n < 15)
- repeated transforms of the same kind
- large record volumes

Usage:
    from parcelflow.core.optimization import OptimizationAdvisor

    advisor = OptimizationAdvisor(transforms)
    suggestions = advisor.analyze_job(job, orchestrator.get_job_runs(job.id))
    advisor.update_status(suggestions[0].id, SuggestionStatus.IN_PROGRESS)
"""
from __future__ import annotations

import logging
import re
import threading
from collections import Counter
from typing import Any, Dict, List, Optional, Tuple

from parcelflow.core.errors import ResourceNotFoundError
from parcelflow.core.models import (
    Complexity,
    EstimatedImprovement,
    Job,
    JobRun,
    JobStatus,
    OptimizationSuggestion,
    SuggestionSeverity,
    SuggestionStatus,
    SuggestionType,
    new_id,
)
from parcelflow.core.transformations import TransformationEngine

logger = logging.getLogger(__name__)

RECENT_RUNS = 5
HIGH_FREQUENCY_MINUTES = 15
DAILY_SCHEDULE = "0 0 * * *"
HOURLY_SCHEDULE = "0 */1 * * *"

_STEP_MINUTES = re.compile(r"^\*/(\d+)\s")

_VALIDATE_EXAMPLE = """\
transforms.add_rule(
    "validate parcels",
    "validate",
    {"required": ["parcelId", "value"], "ranges": {"value": [0, None]}},
)"""


class OptimizationAdvisor:
    """Rule-based suggestion generator for ETL jobs."""

    def __init__(
        self,
        transforms: TransformationEngine,
        success_rate_threshold: float = 0.8,
        long_run_seconds: float = 30.0,
        high_volume_records: int = 100000,
        enabled: bool = True,
    ):
        self.transforms = transforms
        self.success_rate_threshold = success_rate_threshold
        self.long_run_seconds = long_run_seconds
        self.high_volume_records = high_volume_records
        self.enabled = enabled
        self._suggestions: Dict[str, OptimizationSuggestion] = {}
        self._index: Dict[Tuple[str, str, str], str] = {}
        self._lock = threading.Lock()

    # =========================================================================
    # Analysis
    # =========================================================================

    def analyze_job(self, job: Job, runs: List[JobRun]) -> List[OptimizationSuggestion]:
        """
        Produce suggestions for a job.

        Suggestions are deduplicated per (job, type, title): re-analysis
        refreshes the text of an existing suggestion and keeps its status.
        """
        if not job.enabled:
            return []

        recent = sorted(
            (r for r in runs if r.status.is_terminal and r.status != JobStatus.SKIPPED),
            key=lambda r: r.started_at,
            reverse=True,
        )[:RECENT_RUNS]

        candidates: List[Dict[str, Any]] = []
        candidates.extend(self._check_duration(recent))
        candidates.extend(self._check_failures(recent))
        candidates.extend(self._check_pipeline(job))
        candidates.extend(self._check_schedule(job))
        candidates.extend(self._check_volume(job))

        return [self._store(job.id, candidate) for candidate in candidates]

    def on_run_completed(self, job: Job, runs: List[JobRun]) -> List[OptimizationSuggestion]:
        """Run-completion hook. Failures are logged and swallowed."""
        if not self.enabled:
            return []
        try:
            return self.analyze_job(job, runs)
        except Exception as e:
            logger.warning(f"Optimization analysis failed for job {job.id}: {e}")
            return []

    def _check_duration(self, recent: List[JobRun]) -> List[Dict[str, Any]]:
        durations = [r.duration_seconds for r in recent if r.duration_seconds is not None]
        slow = [d for d in durations if d > self.long_run_seconds]
        if not slow:
            return []
        average = sum(slow) / len(slow)
        return [dict(
            type=SuggestionType.PERFORMANCE,
            severity=SuggestionSeverity.HIGH if average > 4 * self.long_run_seconds else SuggestionSeverity.MEDIUM,
            title="Long-running ETL job detected",
            description=(
                f"This job takes an average of {round(average)} seconds to complete, "
                f"which may impact system performance."
            ),
            suggested_action=(
                "Add selective filter or select rules early in the pipeline, "
                "or split the job into smaller jobs grouped in a batch."
            ),
            estimated_improvement=EstimatedImprovement("execution_time", 30.0),
            complexity=Complexity.MEDIUM,
        )]

    def _check_failures(self, recent: List[JobRun]) -> List[Dict[str, Any]]:
        if not recent:
            return []
        failed = sum(1 for r in recent if r.status == JobStatus.FAILED)
        success_rate = sum(1 for r in recent if r.status == JobStatus.SUCCEEDED) / len(recent)
        if failed == 0 or success_rate >= self.success_rate_threshold:
            return []
        failure_rate = failed / len(recent) * 100
        return [dict(
            type=SuggestionType.RELIABILITY,
            severity=SuggestionSeverity.HIGH if failure_rate > 50 else SuggestionSeverity.MEDIUM,
            title="ETL job failures detected",
            description=f"This job has a {failure_rate:.0f}% failure rate based on recent runs.",
            suggested_action="Review the run errors and add error handling or retry logic.",
            estimated_improvement=EstimatedImprovement("success_rate", round(failure_rate, 1)),
            complexity=Complexity.MEDIUM,
        )]

    def _check_pipeline(self, job: Job) -> List[Dict[str, Any]]:
        rules = [r for r in (self.transforms.get_rule(rid) for rid in job.rule_ids) if r is not None]
        suggestions = []

        if rules and not any(r.transform == "validate" for r in rules):
            suggestions.append(dict(
                type=SuggestionType.DATA_QUALITY,
                severity=SuggestionSeverity.MEDIUM,
                title="Missing data validation",
                description="This pipeline does not include a validation step to ensure data quality.",
                suggested_action="Add a validate rule checking required fields and value ranges.",
                estimated_improvement=EstimatedImprovement("data_quality", 25.0),
                complexity=Complexity.EASY,
                example_code=_VALIDATE_EXAMPLE,
            ))

        repeated = sorted(name for name, n in Counter(r.transform for r in rules).items() if n > 1)
        if repeated:
            suggestions.append(dict(
                type=SuggestionType.PERFORMANCE,
                severity=SuggestionSeverity.LOW,
                title="Potential redundant transformations",
                description=(
                    f"This pipeline applies the same transform more than once: "
                    f"{', '.join(repeated)}."
                ),
                suggested_action="Combine rules of the same kind into a single rule.",
                estimated_improvement=EstimatedImprovement("execution_time", 10.0),
                complexity=Complexity.EASY,
            ))
        return suggestions

    def _check_schedule(self, job: Job) -> List[Dict[str, Any]]:
        if not job.schedule:
            return [dict(
                type=SuggestionType.SCHEDULING,
                severity=SuggestionSeverity.LOW,
                title="No automatic schedule",
                description="This job is not scheduled to run automatically.",
                suggested_action="Set up a schedule to automate data processing.",
                estimated_improvement=EstimatedImprovement("automation", 100.0),
                complexity=Complexity.EASY,
                example_code=f'scheduler.schedule_job(job_id, "{DAILY_SCHEDULE}")',
            )]

        match = _STEP_MINUTES.match(job.schedule)
        if match and int(match.group(1)) < HIGH_FREQUENCY_MINUTES:
            minutes = int(match.group(1))
            return [dict(
                type=SuggestionType.RESOURCE,
                severity=SuggestionSeverity.LOW,
                title="High-frequency job scheduling",
                description=(
                    f"This job is scheduled to run every {minutes} minutes, "
                    f"which may be unnecessarily frequent."
                ),
                suggested_action="Reduce the frequency if real-time data is not required.",
                estimated_improvement=EstimatedImprovement(
                    "resource_usage", round((1 - minutes / 60) * 100, 1)
                ),
                complexity=Complexity.EASY,
                example_code=f'scheduler.schedule_job(job_id, "{HOURLY_SCHEDULE}")',
            )]
        return []

    def _check_volume(self, job: Job) -> List[Dict[str, Any]]:
        if job.metrics.records_processed < self.high_volume_records:
            return []
        return [dict(
            type=SuggestionType.RESOURCE,
            severity=SuggestionSeverity.MEDIUM,
            title="High record volume",
            description=(
                f"The last run processed {job.metrics.records_processed} records "
                f"(about {job.metrics.memory_estimate_mb:.1f} MB)."
            ),
            suggested_action="Extract incrementally or partition the source across several jobs.",
            estimated_improvement=EstimatedImprovement("memory_usage", 40.0),
            complexity=Complexity.COMPLEX,
        )]

    def _store(self, job_id: str, candidate: Dict[str, Any]) -> OptimizationSuggestion:
        key = (job_id, candidate["type"].value, candidate["title"])
        with self._lock:
            existing_id = self._index.get(key)
            if existing_id is not None and existing_id in self._suggestions:
                suggestion = self._suggestions[existing_id]
                suggestion.severity = candidate["severity"]
                suggestion.description = candidate["description"]
                suggestion.estimated_improvement = candidate["estimated_improvement"]
                return suggestion

            suggestion = OptimizationSuggestion(id=new_id("sugg"), job_id=job_id, **candidate)
            self._suggestions[suggestion.id] = suggestion
            self._index[key] = suggestion.id
        logger.info(f"New {suggestion.severity.value} suggestion for job {job_id}: {suggestion.title}")
        return suggestion

    # =========================================================================
    # Suggestion management
    # =========================================================================

    def list_suggestions(
        self,
        job_id: Optional[str] = None,
        status: Optional[SuggestionStatus] = None,
    ) -> List[OptimizationSuggestion]:
        """Suggestions ordered by severity (high first), then newest first."""
        with self._lock:
            suggestions = list(self._suggestions.values())
        if job_id is not None:
            suggestions = [s for s in suggestions if s.job_id == job_id]
        if status is not None:
            suggestions = [s for s in suggestions if s.status == SuggestionStatus(status)]
        suggestions.sort(key=lambda s: s.created_at, reverse=True)
        suggestions.sort(key=lambda s: s.severity.rank)
        return suggestions

    def get_suggestion(self, suggestion_id: str) -> Optional[OptimizationSuggestion]:
        with self._lock:
            return self._suggestions.get(suggestion_id)

    def update_status(self, suggestion_id: str, status: SuggestionStatus) -> OptimizationSuggestion:
        with self._lock:
            suggestion = self._suggestions.get(suggestion_id)
            if suggestion is None:
                raise ResourceNotFoundError("PFLW-2006", suggestion_id=suggestion_id)
            suggestion.status = SuggestionStatus(status)
        logger.info(f"Suggestion {suggestion_id} -> {suggestion.status.value}")
        return suggestion

    def generate_auto_fix(self, suggestion_id: str) -> Optional[Dict[str, Any]]:
        """Job changes that would implement a suggestion, where one exists."""
        suggestion = self.get_suggestion(suggestion_id)
        if suggestion is None:
            raise ResourceNotFoundError("PFLW-2006", suggestion_id=suggestion_id)

        if suggestion.title == "No automatic schedule":
            return {"schedule": DAILY_SCHEDULE}
        if suggestion.title == "High-frequency job scheduling":
            return {"schedule": HOURLY_SCHEDULE}
        if suggestion.title == "Missing data validation":
            return {"add_rule": {"transform": "validate", "config": {"required": []}}}
        return None

    def clear_job(self, job_id: str) -> int:
        with self._lock:
            ids = [sid for sid, s in self._suggestions.items() if s.job_id == job_id]
            for sid in ids:
                del self._suggestions[sid]
            self._index = {k: v for k, v in self._index.items() if k[0] != job_id}
        return len(ids)
