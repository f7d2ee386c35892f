"""
Tests for the optimization advisor.
"""
from datetime import timedelta

import pytest

from parcelflow.core.errors import ResourceNotFoundError
from parcelflow.core.models import (
    Job,
    JobRun,
    JobStatus,
    SuggestionSeverity,
    SuggestionStatus,
    SuggestionType,
    new_id,
    utc_now,
)
from parcelflow.core.optimization import OptimizationAdvisor


@pytest.fixture
def advisor(engine):
    return OptimizationAdvisor(engine.transforms, long_run_seconds=30.0, high_volume_records=1000)


def make_job(**kwargs):
    kwargs.setdefault("schedule", "0 2 * * *")
    return Job(id=new_id("job"), name="assessor-sync", source_id="src_a", target_id="src_b", **kwargs)


def make_run(job, status, seconds=1.0, minutes_ago=0):
    started = utc_now() - timedelta(minutes=minutes_ago)
    run = JobRun(id=new_id("run"), job_id=job.id, status=status, started_at=started)
    run.ended_at = started + timedelta(seconds=seconds)
    return run


def titles(suggestions):
    return {s.title for s in suggestions}


class TestChecks:

    def test_healthy_job_has_no_suggestions(self, advisor):
        job = make_job()
        runs = [make_run(job, JobStatus.SUCCEEDED, minutes_ago=i) for i in range(3)]
        assert advisor.analyze_job(job, runs) == []

    def test_disabled_job_ignored(self, advisor):
        assert advisor.analyze_job(make_job(enabled=False, schedule=None), []) == []

    def test_missing_schedule(self, advisor):
        [suggestion] = advisor.analyze_job(make_job(schedule=None), [])
        assert suggestion.type == SuggestionType.SCHEDULING
        assert suggestion.severity == SuggestionSeverity.LOW
        assert suggestion.status == SuggestionStatus.NEW
        assert "0 0 * * *" in suggestion.example_code

    def test_high_frequency_schedule(self, advisor):
        [suggestion] = advisor.analyze_job(make_job(schedule="*/5 * * * *"), [])
        assert suggestion.type == SuggestionType.RESOURCE
        assert suggestion.title == "High-frequency job scheduling"
        assert suggestion.estimated_improvement.percentage == 91.7

    def test_fifteen_minute_schedule_is_fine(self, advisor):
        assert advisor.analyze_job(make_job(schedule="*/15 * * * *"), []) == []

    def test_long_running(self, advisor):
        job = make_job()
        [suggestion] = advisor.analyze_job(job, [make_run(job, JobStatus.SUCCEEDED, seconds=45)])
        assert suggestion.type == SuggestionType.PERFORMANCE
        assert suggestion.severity == SuggestionSeverity.MEDIUM
        assert "45 seconds" in suggestion.description

    def test_failures_below_threshold(self, advisor):
        job = make_job()
        statuses = [JobStatus.FAILED, JobStatus.FAILED, JobStatus.FAILED, JobStatus.SUCCEEDED, JobStatus.SUCCEEDED]
        runs = [make_run(job, s, minutes_ago=i) for i, s in enumerate(statuses)]

        [suggestion] = advisor.analyze_job(job, runs)
        assert suggestion.type == SuggestionType.RELIABILITY
        assert suggestion.severity == SuggestionSeverity.HIGH
        assert "60%" in suggestion.description

    def test_occasional_failure_tolerated(self, advisor):
        job = make_job()
        statuses = [JobStatus.FAILED] + [JobStatus.SUCCEEDED] * 4
        runs = [make_run(job, s, minutes_ago=i) for i, s in enumerate(statuses)]
        assert advisor.analyze_job(job, runs) == []

    def test_only_recent_runs_count(self, advisor):
        job = make_job()
        runs = [make_run(job, JobStatus.SUCCEEDED, minutes_ago=i) for i in range(5)]
        runs += [make_run(job, JobStatus.FAILED, minutes_ago=100 + i) for i in range(5)]
        assert advisor.analyze_job(job, runs) == []

    def test_missing_validation_and_redundant_rules(self, advisor, engine):
        a = engine.transforms.add_rule("trim", "text", {"fields": ["address"]})
        b = engine.transforms.add_rule("upper", "text", {"fields": ["county"], "operation": "upper"})
        job = make_job(rule_ids=[a.id, b.id])

        suggestions = advisor.analyze_job(job, [])
        assert titles(suggestions) == {"Missing data validation", "Potential redundant transformations"}

    def test_validate_rule_satisfies_check(self, advisor, engine):
        rule = engine.transforms.add_rule("require apn", "validate", {"required": ["parcelId"]})
        assert advisor.analyze_job(make_job(rule_ids=[rule.id]), []) == []

    def test_high_volume(self, advisor):
        job = make_job()
        job.metrics.records_processed = 5000
        [suggestion] = advisor.analyze_job(job, [])
        assert suggestion.title == "High record volume"
        assert suggestion.severity == SuggestionSeverity.MEDIUM


class TestSuggestionManagement:

    def test_reanalysis_deduplicates_and_keeps_status(self, advisor):
        job = make_job(schedule=None)
        [first] = advisor.analyze_job(job, [])
        advisor.update_status(first.id, SuggestionStatus.DISMISSED)

        [again] = advisor.analyze_job(job, [])
        assert again.id == first.id
        assert again.status == SuggestionStatus.DISMISSED
        assert len(advisor.list_suggestions(job_id=job.id)) == 1

    def test_list_sorted_by_severity_and_filtered(self, advisor):
        job = make_job(schedule="*/5 * * * *")
        job.metrics.records_processed = 5000
        advisor.analyze_job(job, [])

        suggestions = advisor.list_suggestions(job_id=job.id)
        assert [s.severity for s in suggestions] == [SuggestionSeverity.MEDIUM, SuggestionSeverity.LOW]
        assert advisor.list_suggestions(status=SuggestionStatus.IMPLEMENTED) == []
        assert advisor.list_suggestions(job_id="job_other") == []

    def test_unknown_suggestion(self, advisor):
        assert advisor.get_suggestion("sugg_missing") is None
        with pytest.raises(ResourceNotFoundError) as exc_info:
            advisor.update_status("sugg_missing", SuggestionStatus.IMPLEMENTED)
        assert exc_info.value.code == "PFLW-2006"

    def test_auto_fix(self, advisor):
        [schedule] = advisor.analyze_job(make_job(schedule=None), [])
        assert advisor.generate_auto_fix(schedule.id) == {"schedule": "0 0 * * *"}

        [frequency] = advisor.analyze_job(make_job(schedule="*/2 * * * *"), [])
        assert advisor.generate_auto_fix(frequency.id) == {"schedule": "0 */1 * * *"}

    def test_run_hook_never_raises(self, advisor):
        assert advisor.on_run_completed(make_job(), None) == []

    def test_disabled_advisor(self, engine):
        advisor = OptimizationAdvisor(engine.transforms, enabled=False)
        assert advisor.on_run_completed(make_job(schedule=None), []) == []

    def test_clear_job(self, advisor):
        job = make_job(schedule=None)
        advisor.analyze_job(job, [])
        assert advisor.clear_job(job.id) == 1
        assert advisor.list_suggestions(job_id=job.id) == []
