"""Tests for the durable job scheduler: dedup, retry/backoff, dead letters, cancellation."""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from sqlmodel import Session, select

from session_guard.engine.scheduler import JobScheduler
from session_guard.errors import InsufficientData, PayloadValidationError
from session_guard.models.job_log import JobLog
from session_guard.models.scheduled_job import ScheduledJob
from session_guard.utils.constants import JobState, JobType
from session_guard.utils.time import as_utc, utcnow


@pytest.fixture
def dead_letter_hook():
    return AsyncMock()


@pytest.fixture
def scheduler(engine, settings, dead_letter_hook):
    return JobScheduler(engine, settings, on_dead_letter=dead_letter_hook)


def _logs(engine, job_id: str) -> list[JobLog]:
    with Session(engine) as session:
        return list(session.exec(select(JobLog).where(JobLog.job_id == job_id).order_by(JobLog.id)).all())


# ---------------------------------------------------------------------------
# 1. Registration and dedup
# ---------------------------------------------------------------------------

class TestEnqueue:
    def test_enqueue_uses_deterministic_key(self, scheduler):
        job_id = scheduler.enqueue(JobType.EXPIRATION, "s1", {"user_id": "u1"}, delay=60)
        assert job_id == "expiration-s1"

        job = scheduler.get_job(job_id)
        assert job.state == JobState.PENDING
        assert job.attempts_remaining == 2
        assert job.max_attempts == 2

    def test_loss_check_key_and_interval(self, scheduler):
        job_id = scheduler.enqueue(JobType.LOSS_CHECK, "s1", interval=timedelta(seconds=30))
        job = scheduler.get_job(job_id)
        assert job_id == "loss-check-s1"
        assert job.interval_ms == 30000
        assert job.is_repeating

    def test_duplicate_enqueue_is_noop(self, scheduler):
        scheduler.enqueue(JobType.EXPIRATION, "s1", {"n": 1}, delay=60)
        first = scheduler.get_job("expiration-s1")

        scheduler.enqueue(JobType.EXPIRATION, "s1", {"n": 2}, delay=3600)
        again = scheduler.get_job("expiration-s1")

        assert len(scheduler.list_jobs(session_id="s1")) == 1
        assert again.payload == {"n": 1}
        assert as_utc(again.execute_at) == as_utc(first.execute_at)
        assert len([j for j in scheduler.status()["triggers"] if j["id"] == "expiration-s1"]) == 1

    def test_unknown_job_type_rejected(self, scheduler):
        with pytest.raises(PayloadValidationError):
            scheduler.enqueue("bogus", "s1")

    def test_missing_session_id_rejected(self, scheduler):
        with pytest.raises(PayloadValidationError):
            scheduler.enqueue(JobType.EXPIRATION, "")

    def test_interval_and_cron_are_exclusive(self, scheduler):
        with pytest.raises(ValueError):
            scheduler.enqueue(JobType.CLEANUP, "system", interval=60, cron="0 2 * * *")

    def test_cron_job_next_fire_at_two_am(self, scheduler):
        job_id = scheduler.enqueue(JobType.CLEANUP, "system", cron="0 2 * * *")
        job = scheduler.get_job(job_id)
        assert job_id == "daily-session-cleanup"
        fire = as_utc(job.execute_at)
        assert (fire.hour, fire.minute) == (2, 0)
        assert fire > utcnow()

    def test_to_record_shape(self, scheduler):
        scheduler.enqueue(JobType.LOSS_CHECK, "s1", {"user_id": "u1"}, interval=30)
        record = scheduler.get_job("loss-check-s1").to_record()

        assert record["jobId"] == "loss-check-s1"
        assert record["jobType"] == "loss_check"
        assert record["sessionId"] == "s1"
        assert record["payload"] == {"user_id": "u1"}
        assert isinstance(record["executeAt"], int)
        assert record["intervalMs"] == 30000
        assert record["attemptsRemaining"] == record["maxAttempts"] == 2
        assert record["state"] == "pending"


# ---------------------------------------------------------------------------
# 2. Execution outcomes
# ---------------------------------------------------------------------------

class TestExecution:
    @pytest.mark.asyncio
    async def test_one_shot_success_completes(self, engine, scheduler):
        handler = AsyncMock(return_value="performance_calculated")
        scheduler.register(JobType.PERFORMANCE, handler)
        job_id = scheduler.enqueue(JobType.PERFORMANCE, "s1", {"user_id": "u1"})

        outcome = await scheduler.run_job(job_id)

        assert outcome == "performance_calculated"
        handler.assert_awaited_once_with("s1", {"user_id": "u1"})
        assert scheduler.get_job(job_id).state == JobState.COMPLETED
        logs = _logs(engine, job_id)
        assert [log.status for log in logs] == ["success"]
        assert logs[0].action == "performance_calculated"

    @pytest.mark.asyncio
    async def test_repeating_job_returns_to_pending(self, scheduler):
        scheduler.register(JobType.LOSS_CHECK, AsyncMock(return_value="monitoring_continued"))
        job_id = scheduler.enqueue(JobType.LOSS_CHECK, "s1", interval=30)

        await scheduler.run_job(job_id)

        job = scheduler.get_job(job_id)
        assert job.state == JobState.PENDING
        assert job.attempts_remaining == job.max_attempts
        assert as_utc(job.execute_at) > utcnow() + timedelta(seconds=25)

    @pytest.mark.asyncio
    async def test_cancelled_job_does_not_run(self, scheduler):
        handler = AsyncMock(return_value="session_expired")
        scheduler.register(JobType.EXPIRATION, handler)
        job_id = scheduler.enqueue(JobType.EXPIRATION, "s1")

        assert scheduler.cancel(JobType.EXPIRATION, "s1") is True
        outcome = await scheduler.run_job(job_id)

        assert outcome == "skipped"
        handler.assert_not_awaited()
        assert scheduler.cancel(JobType.EXPIRATION, "s1") is False

    @pytest.mark.asyncio
    async def test_missing_handler_dead_letters(self, scheduler, dead_letter_hook):
        job_id = scheduler.enqueue(JobType.WARNING, "s1", {"warning_type": "loss", "percentage": 81})
        assert await scheduler.run_job(job_id) == "dead_lettered"
        dead_letter_hook.assert_awaited_once()


# ---------------------------------------------------------------------------
# 3. Retry, backoff and dead letters
# ---------------------------------------------------------------------------

class TestRetry:
    @pytest.mark.asyncio
    async def test_failure_retries_with_exponential_backoff(self, engine, scheduler):
        scheduler.register(JobType.PERFORMANCE, AsyncMock(side_effect=RuntimeError("store down")))
        job_id = scheduler.enqueue(JobType.PERFORMANCE, "s1", max_attempts=3)

        before = utcnow()
        assert await scheduler.run_job(job_id) == "retry_scheduled"
        job = scheduler.get_job(job_id)
        assert job.state == JobState.PENDING
        assert job.attempts_remaining == 2
        assert "store down" in job.last_error
        first_delay = (as_utc(job.execute_at) - before).total_seconds()
        assert 1.5 <= first_delay <= 3.0

        before = utcnow()
        assert await scheduler.run_job(job_id) == "retry_scheduled"
        job = scheduler.get_job(job_id)
        second_delay = (as_utc(job.execute_at) - before).total_seconds()
        assert 3.5 <= second_delay <= 5.0

        assert [log.status for log in _logs(engine, job_id)] == ["error", "error"]

    @pytest.mark.asyncio
    async def test_dead_lettered_after_max_attempts(self, engine, scheduler, dead_letter_hook):
        scheduler.register(JobType.EXPIRATION, AsyncMock(side_effect=RuntimeError("boom")))
        job_id = scheduler.enqueue(JobType.EXPIRATION, "s1")  # 2 attempts by default

        assert await scheduler.run_job(job_id) == "retry_scheduled"
        assert await scheduler.run_job(job_id) == "dead_lettered"

        job = scheduler.get_job(job_id)
        assert job.state == JobState.FAILED
        assert job.attempts_remaining == 0
        assert [j.id for j in scheduler.dead_letters()] == [job_id]
        dead_letter_hook.assert_awaited_once()
        assert _logs(engine, job_id)[-1].status == "dead_lettered"

    @pytest.mark.asyncio
    async def test_payload_validation_dead_letters_immediately(self, scheduler):
        handler = AsyncMock(side_effect=PayloadValidationError("bad payload"))
        scheduler.register(JobType.WARNING, handler)
        job_id = scheduler.enqueue(JobType.WARNING, "s1", {})

        assert await scheduler.run_job(job_id) == "dead_lettered"
        assert handler.await_count == 1
        assert scheduler.get_job(job_id).state == JobState.FAILED

    @pytest.mark.asyncio
    async def test_insufficient_data_is_not_retried(self, scheduler):
        scheduler.register(JobType.PERFORMANCE, AsyncMock(side_effect=InsufficientData("too few")))
        job_id = scheduler.enqueue(JobType.PERFORMANCE, "s1")
        assert await scheduler.run_job(job_id) == "dead_lettered"

    @pytest.mark.asyncio
    async def test_stalled_attempt_is_retried(self, engine, settings, dead_letter_hook):
        settings.job_timeout_seconds = 0.05
        scheduler = JobScheduler(engine, settings, on_dead_letter=dead_letter_hook)

        async def slow(session_id, payload):
            await asyncio.sleep(1)
            return "done"

        scheduler.register(JobType.PERFORMANCE, slow)
        job_id = scheduler.enqueue(JobType.PERFORMANCE, "s1")

        assert await scheduler.run_job(job_id) == "retry_scheduled"
        assert _logs(engine, job_id)[0].status == "stalled"

    @pytest.mark.asyncio
    async def test_reenqueue_revives_dead_letter(self, scheduler):
        scheduler.register(JobType.PERFORMANCE, AsyncMock(side_effect=PayloadValidationError("x")))
        job_id = scheduler.enqueue(JobType.PERFORMANCE, "s1")
        await scheduler.run_job(job_id)
        assert scheduler.get_job(job_id).state == JobState.FAILED

        scheduler.enqueue(JobType.PERFORMANCE, "s1", {"user_id": "u1"})

        job = scheduler.get_job(job_id)
        assert job.state == JobState.PENDING
        assert job.attempts_remaining == job.max_attempts
        assert job.last_error is None

    @pytest.mark.asyncio
    async def test_reenqueue_of_completed_key_is_noop(self, scheduler):
        scheduler.register(JobType.PERFORMANCE, AsyncMock(return_value="ok"))
        job_id = scheduler.enqueue(JobType.PERFORMANCE, "s1")
        await scheduler.run_job(job_id)

        scheduler.enqueue(JobType.PERFORMANCE, "s1")
        assert scheduler.get_job(job_id).state == JobState.COMPLETED


# ---------------------------------------------------------------------------
# 4. Concurrency
# ---------------------------------------------------------------------------

class TestConcurrency:
    @pytest.mark.asyncio
    async def test_overlapping_run_is_skipped(self, scheduler):
        started = asyncio.Event()
        release = asyncio.Event()

        async def handler(session_id, payload):
            started.set()
            await release.wait()
            return "monitoring_continued"

        scheduler.register(JobType.LOSS_CHECK, handler)
        job_id = scheduler.enqueue(JobType.LOSS_CHECK, "s1", interval=30)

        first = asyncio.create_task(scheduler.run_job(job_id))
        await started.wait()
        assert await scheduler.run_job(job_id) == "skipped_overlap"

        release.set()
        assert await first == "monitoring_continued"

    @pytest.mark.asyncio
    async def test_cancel_during_attempt_wins(self, scheduler):
        async def handler(session_id, payload):
            scheduler.cancel(JobType.LOSS_CHECK, session_id)
            return "monitoring_stopped"

        scheduler.register(JobType.LOSS_CHECK, handler)
        job_id = scheduler.enqueue(JobType.LOSS_CHECK, "s1", interval=30)

        await scheduler.run_job(job_id)

        assert scheduler.get_job(job_id).state == JobState.COMPLETED

    @pytest.mark.asyncio
    async def test_cancel_during_failing_attempt_skips_retry(self, scheduler):
        async def handler(session_id, payload):
            scheduler.cancel(JobType.EXPIRATION, session_id)
            raise RuntimeError("late failure")

        scheduler.register(JobType.EXPIRATION, handler)
        job_id = scheduler.enqueue(JobType.EXPIRATION, "s1")

        assert await scheduler.run_job(job_id) == "cancelled"
        assert scheduler.get_job(job_id).state == JobState.COMPLETED


# ---------------------------------------------------------------------------
# 5. Draining, restore and pruning
# ---------------------------------------------------------------------------

class TestMaintenance:
    @pytest.mark.asyncio
    async def test_drain_due_runs_only_due_jobs(self, scheduler):
        scheduler.register(JobType.PERFORMANCE, AsyncMock(return_value="performance_calculated"))
        scheduler.enqueue(JobType.PERFORMANCE, "due")
        scheduler.enqueue(JobType.PERFORMANCE, "later", delay=3600)

        results = await scheduler.drain_due()

        assert results == {"performance-due": "performance_calculated"}
        assert scheduler.get_job("performance-later").state == JobState.PENDING

    @pytest.mark.asyncio
    async def test_start_restores_interrupted_jobs(self, engine, settings, scheduler):
        job_id = scheduler.enqueue(JobType.EXPIRATION, "s1", delay=600)
        with Session(engine) as session:
            job = session.get(ScheduledJob, job_id)
            job.state = JobState.ACTIVE
            session.add(job)
            session.commit()

        restored = JobScheduler(engine, settings)
        restored.start()
        try:
            assert restored.get_job(job_id).state == JobState.PENDING
            assert restored.running
            assert any(t["id"] == job_id for t in restored.status()["triggers"])
        finally:
            restored.shutdown()

    def test_prune_drops_old_finished_records(self, engine, scheduler):
        scheduler.enqueue(JobType.PERFORMANCE, "old")
        scheduler.enqueue(JobType.PERFORMANCE, "fresh")
        scheduler.cancel(JobType.PERFORMANCE, "old")
        scheduler.cancel(JobType.PERFORMANCE, "fresh")

        with Session(engine) as session:
            job = session.get(ScheduledJob, "performance-old")
            job.updated_at = utcnow() - timedelta(hours=48)
            session.add(job)
            session.commit()

        result = scheduler.prune()

        assert result["completed_jobs"] == 1
        assert scheduler.get_job("performance-old") is None
        assert scheduler.get_job("performance-fresh") is not None

    def test_status_counts_by_state(self, scheduler):
        scheduler.enqueue(JobType.EXPIRATION, "s1", delay=60)
        scheduler.enqueue(JobType.LOSS_CHECK, "s1", interval=30)
        scheduler.cancel(JobType.EXPIRATION, "s1")

        status = scheduler.status()

        assert status["running"] is False
        assert status["job_counts"]["pending"] == 1
        assert status["job_counts"]["completed"] == 1
