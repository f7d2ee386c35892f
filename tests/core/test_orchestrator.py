"""
Tests for the pipeline orchestrator: job lifecycle, run execution,
mutual exclusion, cancellation and terminal alerts.
"""
import asyncio
import copy
from datetime import datetime, timedelta, timezone

import pytest
from prometheus_client import REGISTRY

from parcelflow.core.connectors import Connector
from parcelflow.core.errors import InvalidTransitionError, ResourceNotFoundError, ValidationError
from parcelflow.core.models import AlertType, JobStatus, SourceKind, isoformat
from parcelflow.core.quality import QualityOptions


class SlowConnector(Connector):
    """Extract suspends for ``delay`` seconds so runs can overlap."""

    async def check_availability(self):
        return True

    async def extract(self):
        await asyncio.sleep(self.connection.get("delay", 0.05))
        return copy.deepcopy(self.connection.get("records", []))

    async def load(self, records):
        return len(records)


@pytest.fixture
def slow_source(engine, parcels):
    engine.registry.register_connector_factory(SourceKind.API, SlowConnector)
    return engine.registry.register("slow-assessor", SourceKind.API, {"records": parcels, "delay": 0.1})


def _sample(name, labels=None):
    return REGISTRY.get_sample_value(name, labels or {}) or 0.0


class TestJobCrud:

    def test_create_job_defaults(self, engine, job):
        assert job.status == JobStatus.CREATED
        assert job.enabled is True
        assert job.id.startswith("job_")
        assert engine.orchestrator.get_job(job.id) is job

    def test_create_requires_existing_references(self, engine, source):
        with pytest.raises(ResourceNotFoundError):
            engine.orchestrator.create_job("x", source.id, "src_missing")
        with pytest.raises(ResourceNotFoundError):
            engine.orchestrator.create_job("x", source.id, source.id, rule_ids=["rule_missing"])
        with pytest.raises(ValidationError):
            engine.orchestrator.create_job("", source.id, source.id)

    def test_valid_schedule_moves_to_scheduled(self, engine, source, target):
        job = engine.orchestrator.create_job("nightly", source.id, target.id, schedule="0  2 * * *")
        assert job.status == JobStatus.SCHEDULED
        assert job.schedule == "0 2 * * *"

        engine.orchestrator.update_job(job.id, schedule=None)
        assert job.status == JobStatus.CREATED
        assert job.schedule is None

    def test_invalid_schedule_stored_but_inert(self, engine, source, target):
        job = engine.orchestrator.create_job("bad", source.id, target.id, schedule="every hour")
        assert job.schedule == "every hour"
        assert job.status == JobStatus.CREATED

    def test_update_rejects_unknown_fields(self, engine, job):
        with pytest.raises(ValidationError):
            engine.orchestrator.update_job(job.id, status=JobStatus.RUNNING)

    def test_quality_options_from_dict(self, engine, job):
        engine.orchestrator.update_job(job.id, quality_options={"unique_fields": ["parcelId"]})
        assert job.quality_options.unique_fields == ["parcelId"]

    def test_next_run_at(self, engine, source, target):
        now = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)
        job = engine.orchestrator.create_job("quarter-hourly", source.id, target.id, schedule="*/15 * * * *")
        assert job.next_run_at(now) == now

        job.last_run_at = now - timedelta(minutes=5)
        assert job.next_run_at(now) == now + timedelta(minutes=10)
        assert job.to_dict()["next_run_at"] == isoformat(now + timedelta(minutes=10))

        engine.orchestrator.disable_job(job.id)
        assert job.next_run_at(now) is None
        assert job.to_dict()["next_run_at"] is None

    def test_next_run_at_without_valid_schedule(self, engine, job, source, target):
        assert job.next_run_at() is None
        bad = engine.orchestrator.create_job("bad", source.id, target.id, schedule="every hour")
        assert bad.next_run_at() is None

    def test_quality_options_reject_zero_minimum(self, engine, job):
        with pytest.raises(ValidationError):
            engine.orchestrator.update_job(job.id, quality_options={"min_properties_for_stats": 0})

    def test_delete_job_removes_runs(self, engine, job):
        asyncio.run(engine.orchestrator.run_job(job.id, is_manual=True))
        assert engine.orchestrator.delete_job(job.id) is True
        assert engine.orchestrator.get_job(job.id) is None
        assert engine.orchestrator.get_job_runs(job.id) == []

    def test_enable_disable(self, engine, job):
        assert engine.orchestrator.disable_job(job.id).enabled is False
        assert engine.orchestrator.enable_job(job.id).enabled is True


class TestRunExecution:

    @pytest.mark.asyncio
    async def test_successful_run(self, engine, job, target):
        rule = engine.transforms.add_rule("ppsf", "ratio", {
            "numerator": "value", "denominator": "squareFeet", "target": "pricePerSqFt",
        })
        engine.orchestrator.update_job(job.id, rule_ids=[rule.id])

        run = await engine.orchestrator.run_job(job.id, is_manual=True)

        assert run.status == JobStatus.SUCCEEDED
        assert run.is_manual is True
        assert run.record_counts.to_dict() == {"extracted": 5, "transformed": 5, "loaded": 5}
        assert run.ended_at is not None
        assert run.quality["record_count"] == 5
        assert any("Extracted 5 records" in line for line in run.logs)

        loaded = target.connection["records"]
        assert len(loaded) == 5
        assert loaded[0]["pricePerSqFt"] == round(410000 / 1850, 2)

        assert job.status == JobStatus.SUCCEEDED
        assert job.last_run_at == run.ended_at
        assert job.metrics.total_runs == 1
        assert job.metrics.success_rate == 1.0
        assert job.metrics.records_processed == 5
        assert job.metrics.memory_estimate_mb > 0

    @pytest.mark.asyncio
    async def test_stage_metrics(self, engine, job):
        run = await engine.orchestrator.run_job(job.id)

        assert list(run.stage_metrics) == ["extract", "transform", "quality", "load"]
        assert {name: m.records for name, m in run.stage_metrics.items()} == {
            "extract": 5, "transform": 5, "quality": 5, "load": 5,
        }
        for timing in run.stage_metrics.values():
            assert timing.error is None
            assert timing.seconds >= 0
            assert timing.ended_at is not None
        assert run.to_dict()["stage_metrics"]["load"]["records"] == 5

    @pytest.mark.asyncio
    async def test_configured_checks_reach_run_quality(self, engine, job, source):
        source.connection["records"][4]["parcelId"] = "APN-004"
        engine.orchestrator.update_job(job.id, quality_options={
            "checks": [{"check": "unique", "field": "parcelId"}],
        })

        run = await engine.orchestrator.run_job(job.id)

        assert run.status == JobStatus.SUCCEEDED
        assert run.quality["checks"]["is_valid"] is False
        assert run.quality["checks"]["results"][0]["details"]["duplicates"] == 1

    @pytest.mark.asyncio
    async def test_empty_source_with_zero_minimum(self, engine, target):
        empty = engine.registry.register("empty", SourceKind.MEMORY, {"records": []})
        job = engine.orchestrator.create_job(
            "empty-sync", empty.id, target.id,
            quality_options=QualityOptions(min_properties_for_stats=0),
        )

        run = await engine.orchestrator.run_job(job.id)

        assert run.status == JobStatus.SUCCEEDED
        assert run.quality["insufficient_data"] is True
        assert run.stage_metrics["quality"].error is None

    @pytest.mark.asyncio
    async def test_partial_transform_errors_still_succeed(self, engine, job, parcels, source):
        source.connection["records"][1]["parcelId"] = None
        rule = engine.transforms.add_rule("require apn", "validate", {"required": ["parcelId"]})
        engine.orchestrator.update_job(job.id, rule_ids=[rule.id])

        run = await engine.orchestrator.run_job(job.id)

        assert run.status == JobStatus.SUCCEEDED
        assert run.record_counts.transformed == 4
        assert len(run.transform_errors) == 1
        assert run.transform_errors[0].record_index == 1

    @pytest.mark.asyncio
    async def test_all_records_failing_fails_run(self, engine, job):
        rule = engine.transforms.add_rule("require owner", "validate", {"required": ["owner"]})
        engine.orchestrator.update_job(job.id, rule_ids=[rule.id])

        run = await engine.orchestrator.run_job(job.id)

        assert run.status == JobStatus.FAILED
        assert "All 5 records failed transformation" in run.error
        assert "All 5 records failed transformation" in run.stage_metrics["transform"].error
        assert "load" not in run.stage_metrics
        assert run.record_counts.loaded == 0
        assert job.status == JobStatus.FAILED

    @pytest.mark.asyncio
    async def test_unavailable_source_fails_run(self, engine, job, source):
        source.connection["available"] = False

        run = await engine.orchestrator.run_job(job.id)

        assert run.status == JobStatus.FAILED
        assert "unavailable" in run.error
        assert job.enabled is True

    @pytest.mark.asyncio
    async def test_orphaned_rule_fails_run(self, engine, job):
        rule = engine.transforms.add_rule("trim", "text", {"fields": ["address"]})
        engine.orchestrator.update_job(job.id, rule_ids=[rule.id])
        engine.transforms.delete_rule(rule.id)

        run = await engine.orchestrator.run_job(job.id)

        assert run.status == JobStatus.FAILED
        assert rule.id in run.error

    @pytest.mark.asyncio
    async def test_orphaned_source_fails_run(self, engine, job, source):
        engine.registry.delete(source.id)
        run = await engine.orchestrator.run_job(job.id)
        assert run.status == JobStatus.FAILED

    @pytest.mark.asyncio
    async def test_disabled_job_skipped_unless_manual(self, engine, job):
        engine.orchestrator.disable_job(job.id)

        run = await engine.orchestrator.run_job(job.id)
        assert run.status == JobStatus.SKIPPED
        assert run.record_counts.extracted == 0

        manual = await engine.orchestrator.run_job(job.id, is_manual=True)
        assert manual.status == JobStatus.SUCCEEDED

    @pytest.mark.asyncio
    async def test_unknown_job(self, engine):
        with pytest.raises(ResourceNotFoundError):
            await engine.orchestrator.run_job("job_missing")

    @pytest.mark.asyncio
    async def test_runs_most_recent_first(self, engine, job):
        first = await engine.orchestrator.run_job(job.id)
        second = await engine.orchestrator.run_job(job.id)
        runs = engine.orchestrator.get_job_runs(job.id)
        assert [r.id for r in runs] == [second.id, first.id]
        assert engine.orchestrator.get_job_runs(job.id, limit=1) == [second]
        assert engine.orchestrator.get_run(first.id) is first


class TestMutualExclusion:

    @pytest.mark.asyncio
    async def test_concurrent_trigger_is_dropped(self, engine, slow_source, target):
        job = engine.orchestrator.create_job("slow", slow_source.id, target.id)

        results = await asyncio.gather(
            engine.orchestrator.run_job(job.id),
            engine.orchestrator.run_job(job.id),
        )

        runs = [r for r in results if r is not None]
        assert len(runs) == 1
        assert results.count(None) == 1
        assert len(engine.orchestrator.get_job_runs(job.id)) == 1
        assert not engine.orchestrator.is_running(job.id)

    @pytest.mark.asyncio
    async def test_running_job_cannot_be_deleted(self, engine, slow_source, target):
        job = engine.orchestrator.create_job("slow", slow_source.id, target.id)
        task = asyncio.create_task(engine.orchestrator.run_job(job.id))
        await asyncio.sleep(0.02)

        assert engine.orchestrator.is_running(job.id)
        assert engine.orchestrator.get_system_status()["running_jobs"] == 1
        with pytest.raises(InvalidTransitionError):
            engine.orchestrator.delete_job(job.id)

        await task
        assert engine.orchestrator.delete_job(job.id) is True


class TestCancellation:

    @pytest.mark.asyncio
    async def test_cancel_between_stages(self, engine, slow_source, target):
        job = engine.orchestrator.create_job("slow", slow_source.id, target.id)
        task = asyncio.create_task(engine.orchestrator.run_job(job.id))
        await asyncio.sleep(0.02)

        assert engine.orchestrator.cancel_run(job.id) is True
        run = await task

        assert run.status == JobStatus.CANCELLED
        assert run.record_counts.extracted == 5
        assert run.record_counts.loaded == 0
        assert target.connection["records"] == []
        assert job.status == JobStatus.CANCELLED

    def test_cancel_with_nothing_running(self, engine, job):
        assert engine.orchestrator.cancel_run(job.id) is False


class TestTerminalAlerts:

    @pytest.mark.asyncio
    async def test_exactly_one_alert_per_run(self, engine, job, source):
        await engine.orchestrator.run_job(job.id)
        source.connection["available"] = False
        await engine.orchestrator.run_job(job.id)

        alerts = engine.alerts.list(job_id=job.id)
        assert [a.type for a in alerts] == [AlertType.ERROR, AlertType.SUCCESS]
        assert alerts[1].details["record_counts"]["loaded"] == 5

    @pytest.mark.asyncio
    async def test_skipped_run_publishes_info(self, engine, job):
        engine.orchestrator.disable_job(job.id)
        await engine.orchestrator.run_job(job.id)
        alerts = engine.alerts.list(job_id=job.id)
        assert len(alerts) == 1
        assert alerts[0].type == AlertType.INFO

    @pytest.mark.asyncio
    async def test_cancelled_run_publishes_warning(self, engine, slow_source, target):
        job = engine.orchestrator.create_job("slow", slow_source.id, target.id)
        task = asyncio.create_task(engine.orchestrator.run_job(job.id))
        await asyncio.sleep(0.02)
        engine.orchestrator.cancel_run(job.id)
        await task

        alerts = engine.alerts.list(job_id=job.id)
        assert [a.type for a in alerts] == [AlertType.WARNING]


class TestMetricsAndStats:

    @pytest.mark.asyncio
    async def test_run_counters(self, engine, job):
        before = _sample("parcelflow_job_runs_total", {"status": "succeeded"})
        loaded_before = _sample("parcelflow_records_total", {"stage": "load"})

        await engine.orchestrator.run_job(job.id)

        assert _sample("parcelflow_job_runs_total", {"status": "succeeded"}) == before + 1
        assert _sample("parcelflow_records_total", {"stage": "load"}) == loaded_before + 5

    @pytest.mark.asyncio
    async def test_job_stats(self, engine, job, source):
        await engine.orchestrator.run_job(job.id)
        source.connection["available"] = False
        await engine.orchestrator.run_job(job.id)

        stats = engine.orchestrator.get_job_stats()
        assert stats["total_jobs"] == 1
        assert stats["total_runs"] == 2
        assert stats["succeeded_runs"] == 1
        assert stats["failed_runs"] == 1
        assert stats["success_rate"] == 0.5
        assert stats["by_status"]["failed"] == 1

        assert job.metrics.total_runs == 2
        assert job.metrics.failed_runs == 1
        assert job.metrics.success_rate == 0.5

    def test_system_status(self, engine, job):
        status = engine.orchestrator.get_system_status()
        assert status["total_jobs"] == 1
        assert status["data_sources"] == 2
        assert status["running_jobs"] == 0
        assert status["timestamp"].endswith("Z")

    @pytest.mark.asyncio
    async def test_advisor_runs_after_each_run(self, engine, job):
        await engine.orchestrator.run_job(job.id)
        titles = [s.title for s in engine.advisor.list_suggestions(job_id=job.id)]
        assert "No automatic schedule" in titles
