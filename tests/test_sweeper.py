"""Tests for the daily cleanup sweep."""

from datetime import timedelta

import pytest
from sqlmodel import Session

from session_guard.errors import PayloadValidationError
from session_guard.models.scheduled_job import ScheduledJob
from session_guard.utils.constants import CLEANUP_JOB_ID, JobState, JobType, SessionStatus, TerminationReason
from session_guard.utils.time import utcnow


class TestSweep:
    @pytest.mark.asyncio
    async def test_lost_expiration_job_is_recovered(self, runtime, make_session):
        # Expiration job never fired; the session is well past its end time
        session = make_session(duration_minutes=60, started_ago=timedelta(minutes=90))

        result = await runtime.sweeper.sweep()

        stored = runtime.store.get_session(session.id)
        assert stored.status == SessionStatus.EXPIRED
        assert stored.termination_reason == TerminationReason.TIME_EXPIRED
        assert result.expired_sessions == [session.id]
        assert len(runtime.notifier.recent(session_id=session.id, type="terminated")) == 1

    @pytest.mark.asyncio
    async def test_sweep_rearms_monitoring_for_live_sessions(self, runtime, make_session):
        session = make_session(started_ago=timedelta(minutes=5))

        result = await runtime.sweeper.sweep()

        assert result.rearmed_sessions == [session.id]
        assert runtime.scheduler.get_job(f"expiration-{session.id}").state == JobState.PENDING
        assert runtime.scheduler.get_job(f"loss-check-{session.id}").state == JobState.PENDING
        assert runtime.store.get_session(session.id).status == SessionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_sweep_revives_dead_lettered_loss_check(self, runtime, make_session):
        session = make_session()
        runtime.monitor.start_monitoring(session)

        async def broken(session_id, payload):
            raise PayloadValidationError("corrupt")

        runtime.scheduler.register(JobType.LOSS_CHECK, broken)
        await runtime.scheduler.run_job(f"loss-check-{session.id}")
        assert runtime.scheduler.get_job(f"loss-check-{session.id}").state == JobState.FAILED

        await runtime.sweeper.sweep()

        job = runtime.scheduler.get_job(f"loss-check-{session.id}")
        assert job.state == JobState.PENDING
        assert job.attempts_remaining == job.max_attempts

    @pytest.mark.asyncio
    async def test_old_terminal_sessions_are_deleted(self, runtime, make_session):
        now = utcnow()
        old = make_session(status=SessionStatus.STOPPED, updated_at=now - timedelta(days=40))
        recent = make_session(status=SessionStatus.EXPIRED, updated_at=now - timedelta(days=3))

        result = await runtime.sweeper.sweep(now)

        assert result.deleted_sessions == 1
        assert runtime.store.get_session(old.id) is None
        assert runtime.store.get_session(recent.id) is not None

    @pytest.mark.asyncio
    async def test_sweep_prunes_old_job_records(self, engine, runtime):
        runtime.scheduler.enqueue(JobType.PERFORMANCE, "old-session")
        runtime.scheduler.cancel(JobType.PERFORMANCE, "old-session")
        with Session(engine) as session:
            job = session.get(ScheduledJob, "performance-old-session")
            job.updated_at = utcnow() - timedelta(days=2)
            session.add(job)
            session.commit()

        result = await runtime.sweeper.sweep()

        assert result.pruned_jobs["completed_jobs"] == 1
        assert runtime.scheduler.get_job("performance-old-session") is None

    @pytest.mark.asyncio
    async def test_sweep_keeps_warning_keys_of_live_sessions(self, runtime, make_session):
        # 7 day session at 80% of its limit
        session = make_session(duration_minutes=10080, loss_limit_amount=9.0, realized_pnl=-7.2)
        warning_id = f"warning-loss-{session.id}-80"
        await runtime.monitor.on_loss_check(session.id)
        assert await runtime.scheduler.run_job(warning_id) == "warning_sent"

        result = await runtime.sweeper.sweep(utcnow() + timedelta(hours=25))

        assert result.pruned_jobs["completed_jobs"] == 0
        assert runtime.scheduler.get_job(warning_id).state == JobState.COMPLETED

        await runtime.monitor.on_loss_check(session.id)
        await runtime.scheduler.run_job(warning_id)
        assert len(runtime.notifier.recent(session_id=session.id, type="warning")) == 1

    @pytest.mark.asyncio
    async def test_sweep_twice_is_idempotent(self, runtime, make_session):
        session = make_session(started_ago=timedelta(minutes=90))

        first = await runtime.sweeper.sweep()
        second = await runtime.sweeper.sweep()

        assert first.expired_sessions == [session.id]
        assert second.expired_sessions == []
        assert len(runtime.notifier.recent(session_id=session.id, type="terminated")) == 1


class TestDailySchedule:
    def test_schedule_daily_registers_cron_job(self, runtime):
        job_id = runtime.sweeper.schedule_daily()
        runtime.sweeper.schedule_daily()

        job = runtime.scheduler.get_job(job_id)
        assert job_id == CLEANUP_JOB_ID
        assert job.cron == "0 2 * * *"
        assert job.session_id == "system"
        assert len(runtime.scheduler.list_jobs(session_id="system")) == 1

    @pytest.mark.asyncio
    async def test_cleanup_job_runs_sweep_and_stays_scheduled(self, runtime, make_session):
        session = make_session(started_ago=timedelta(minutes=90))
        runtime.sweeper.schedule_daily()

        assert await runtime.scheduler.run_job(CLEANUP_JOB_ID) == "cleanup_completed"

        assert runtime.store.get_session(session.id).status == SessionStatus.EXPIRED
        assert runtime.scheduler.get_job(CLEANUP_JOB_ID).state == JobState.PENDING
