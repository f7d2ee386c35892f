"""
Tests for the job scheduler tick and the run dispatcher.
"""
import asyncio
from datetime import timedelta

import pytest

from parcelflow.core.errors import ResourceNotFoundError, ScheduleParseError
from parcelflow.core.models import AlertType, JobStatus, isoformat, utc_now


class TestScheduleJob:

    def test_schedule_and_unschedule(self, engine, job):
        engine.scheduler.schedule_job(job.id, "*/15 * * * *")
        assert job.schedule == "*/15 * * * *"
        assert job.status == JobStatus.SCHEDULED

        engine.scheduler.unschedule_job(job.id)
        assert job.schedule is None
        assert job.status == JobStatus.CREATED

    def test_upcoming_runs_soonest_first(self, engine, source, target):
        now = utc_now()
        hourly = engine.orchestrator.create_job("hourly", source.id, target.id, schedule="0 * * * *")
        frequent = engine.orchestrator.create_job("frequent", source.id, target.id, schedule="*/5 * * * *")
        engine.orchestrator.create_job("manual", source.id, target.id)
        hourly.last_run_at = now - timedelta(minutes=30)
        frequent.last_run_at = now - timedelta(minutes=1)

        upcoming = engine.scheduler.upcoming_runs(now)

        assert [u["name"] for u in upcoming] == ["frequent", "hourly"]
        assert upcoming[0]["next_run_at"] == isoformat(now + timedelta(minutes=4))
        assert engine.scheduler.get_status()["upcoming"][0]["job_id"] == frequent.id

    def test_invalid_schedule_rejected(self, engine, job):
        with pytest.raises(ScheduleParseError):
            engine.scheduler.schedule_job(job.id, "*/15 * *")
        assert job.schedule is None

    def test_unknown_job(self, engine):
        with pytest.raises(ResourceNotFoundError):
            engine.scheduler.schedule_job("job_missing", "0 0 * * *")


class TestTick:

    @pytest.mark.asyncio
    async def test_due_job_is_dispatched(self, engine, job):
        engine.scheduler.schedule_job(job.id, "*/5 * * * *")

        dispatched = await engine.scheduler.tick()

        assert dispatched == [job.id]
        assert job.status == JobStatus.QUEUED
        assert engine.dispatcher.is_pending(job.id)

    @pytest.mark.asyncio
    async def test_queued_job_not_dispatched_twice(self, engine, job):
        engine.scheduler.schedule_job(job.id, "*/5 * * * *")
        assert await engine.scheduler.tick() == [job.id]
        assert await engine.scheduler.tick() == []
        assert engine.dispatcher.get_status()["queue_size"] == 1

    @pytest.mark.asyncio
    async def test_interval_respected(self, engine, job):
        engine.scheduler.schedule_job(job.id, "*/5 * * * *")
        await engine.orchestrator.run_job(job.id)
        last = job.last_run_at

        assert await engine.scheduler.tick(now=last + timedelta(minutes=4)) == []
        assert await engine.scheduler.tick(now=last + timedelta(minutes=6)) == [job.id]

    @pytest.mark.asyncio
    async def test_disabled_job_never_triggered(self, engine, job):
        engine.scheduler.schedule_job(job.id, "*/5 * * * *")
        engine.orchestrator.disable_job(job.id)

        for _ in range(3):
            assert await engine.scheduler.tick() == []
        assert engine.orchestrator.get_job_runs(job.id) == []
        assert job.status == JobStatus.SCHEDULED

    @pytest.mark.asyncio
    async def test_unscheduled_job_never_triggered(self, engine, job):
        assert await engine.scheduler.tick() == []

    @pytest.mark.asyncio
    async def test_invalid_schedule_reported_once(self, engine, source, target):
        job = engine.orchestrator.create_job("broken", source.id, target.id, schedule="every hour")

        for _ in range(3):
            assert await engine.scheduler.tick() == []

        warnings = engine.alerts.list(job_id=job.id, alert_type=AlertType.WARNING)
        assert len(warnings) == 1
        assert warnings[0].details["schedule"] == "every hour"
        assert engine.scheduler.get_status()["invalid_schedules"] == [job.id]

    @pytest.mark.asyncio
    async def test_tick_does_not_wait_for_runs(self, engine, job):
        engine.scheduler.schedule_job(job.id, "*/5 * * * *")
        await engine.dispatcher.start()
        try:
            assert await engine.scheduler.tick() == [job.id]
            assert engine.orchestrator.get_job_runs(job.id) == []

            await engine.dispatcher.join()
            runs = engine.orchestrator.get_job_runs(job.id)
            assert len(runs) == 1
            assert runs[0].status == JobStatus.SUCCEEDED
            assert runs[0].is_manual is False
        finally:
            await engine.dispatcher.stop()


class TestDispatcher:

    def test_duplicate_submission_dropped(self, engine, job):
        assert engine.dispatcher.submit(job.id) is True
        assert engine.dispatcher.submit(job.id) is False
        status = engine.dispatcher.get_status()
        assert status["submitted"] == 1
        assert status["dropped"] == 1
        assert status["pending"] == [job.id]

    def test_unknown_job_dropped(self, engine):
        assert engine.dispatcher.submit("job_missing") is False

    @pytest.mark.asyncio
    async def test_stop_releases_queued_jobs(self, engine, job):
        engine.scheduler.schedule_job(job.id, "0 0 * * *")
        engine.dispatcher.submit(job.id)
        assert job.status == JobStatus.QUEUED

        await engine.dispatcher.stop()

        assert job.status == JobStatus.SCHEDULED
        assert not engine.dispatcher.is_pending(job.id)

    @pytest.mark.asyncio
    async def test_cancel_queued_job(self, engine, job):
        engine.dispatcher.submit(job.id, is_manual=True)
        assert engine.orchestrator.cancel_run(job.id) is True

        await engine.dispatcher.start()
        try:
            await engine.dispatcher.join()
        finally:
            await engine.dispatcher.stop()

        run = engine.orchestrator.get_job_runs(job.id)[0]
        assert run.status == JobStatus.CANCELLED
        assert run.record_counts.extracted == 0

    @pytest.mark.asyncio
    async def test_workers_run_many_jobs(self, engine, source, target):
        jobs = [engine.orchestrator.create_job(f"job-{i}", source.id, target.id) for i in range(5)]
        await engine.dispatcher.start()
        try:
            for job in jobs:
                engine.dispatcher.submit(job.id, is_manual=True)
            await engine.dispatcher.join()
        finally:
            await engine.dispatcher.stop()

        assert all(j.status == JobStatus.SUCCEEDED for j in jobs)
        assert engine.dispatcher.get_status()["completed"] == 5


class TestSchedulerLoop:

    @pytest.mark.asyncio
    async def test_loop_triggers_due_jobs(self, engine, job):
        engine.scheduler.schedule_job(job.id, "*/5 * * * *")
        await engine.dispatcher.start()
        await engine.scheduler.start(interval_seconds=0.02)
        try:
            for _ in range(50):
                if engine.orchestrator.get_job_runs(job.id):
                    break
                await asyncio.sleep(0.02)
            await engine.dispatcher.join()
        finally:
            await engine.scheduler.stop()
            await engine.dispatcher.stop()

        runs = engine.orchestrator.get_job_runs(job.id)
        assert len(runs) == 1
        assert not engine.scheduler.is_running
        assert engine.scheduler.get_status()["tick_count"] >= 1
