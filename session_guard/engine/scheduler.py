"""Durable job scheduler built on APScheduler.

APScheduler's AsyncIOScheduler owns the timing: one-shot DateTrigger jobs,
repeating IntervalTrigger jobs and the daily CronTrigger sweep. The
`scheduled_job` table owns durability and deduplication: the job key is the
primary key, so `enqueue` is a compare-and-set on that key and a second
registration for the same key is a no-op.

Each APScheduler job is registered with max_instances=1 under its key, and
`run_job` refuses to start a key that is already in flight, so a repeating
job never overlaps itself.

Attempt outcomes:
    success                    -> one-shot: completed / repeating: pending again
    PayloadValidationError,
    InsufficientData           -> dead-lettered immediately
    timeout (stalled), other   -> retried with exponential backoff, then dead-lettered
A cancel that lands while an attempt is running wins: the attempt's final
write is conditional on the record still being `active`.
"""

import asyncio
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import delete, func, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from session_guard.config import Settings
from session_guard.errors import InsufficientData, PayloadValidationError
from session_guard.models.job_log import JobLog
from session_guard.models.scheduled_job import ScheduledJob
from session_guard.models.trading_session import TradingSession
from session_guard.utils.constants import (
    JOB_TYPES,
    JobState,
    JobType,
    LIVE_JOB_STATES,
    LIVE_STATUSES,
    job_key,
)
from session_guard.utils.time import as_utc, utcnow

logger = logging.getLogger(__name__)

# handler(session_id, payload) -> action label
JobHandler = Callable[[str, dict[str, Any]], Awaitable[str | None]]
DeadLetterHook = Callable[[ScheduledJob], Awaitable[None]]

_NON_RETRYABLE = (PayloadValidationError, InsufficientData)


def _seconds(value: timedelta | float | int | None) -> float | None:
    if value is None:
        return None
    if isinstance(value, timedelta):
        return value.total_seconds()
    return float(value)


class JobScheduler:
    """Queue of session jobs with retry, backoff and dead-lettering."""

    def __init__(
        self,
        engine: Engine,
        settings: Settings,
        scheduler: AsyncIOScheduler | None = None,
        on_dead_letter: DeadLetterHook | None = None,
    ):
        self._engine = engine
        self._settings = settings
        self._scheduler = scheduler or AsyncIOScheduler(timezone=timezone.utc)
        self._handlers: dict[str, JobHandler] = {}
        self._in_flight: set[str] = set()
        self.on_dead_letter = on_dead_letter

    def register(self, job_type: str, handler: JobHandler):
        """Attach the coroutine that executes jobs of `job_type`."""
        if job_type not in JOB_TYPES:
            raise ValueError(f"Unknown job type: {job_type}")
        self._handlers[job_type] = handler

    def _default_max_attempts(self, job_type: str) -> int:
        if job_type == JobType.EXPIRATION:
            return self._settings.expiration_max_attempts
        if job_type == JobType.LOSS_CHECK:
            return self._settings.loss_check_max_attempts
        return self._settings.default_max_attempts

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def enqueue(
        self,
        job_type: str,
        session_id: str,
        payload: dict[str, Any] | None = None,
        *,
        delay: timedelta | float | None = None,
        interval: timedelta | float | None = None,
        cron: str | None = None,
        max_attempts: int | None = None,
        backoff: timedelta | float | None = None,
        job_id: str | None = None,
    ) -> str:
        """Register a job; idempotent by job key. Returns the job id."""
        if job_type not in JOB_TYPES:
            raise PayloadValidationError(f"Unknown job type: {job_type}")
        if not session_id:
            raise PayloadValidationError("session_id is required")
        if interval is not None and cron is not None:
            raise ValueError("interval and cron are mutually exclusive")

        job_id = job_id or job_key(job_type, session_id)
        now = utcnow()
        interval_s = _seconds(interval)
        if interval_s is not None and interval_s <= 0:
            raise ValueError("interval must be positive")

        if cron is not None:
            execute_at = CronTrigger.from_crontab(cron, timezone=timezone.utc).get_next_fire_time(None, now)
        elif interval_s is not None and delay is None:
            execute_at = now + timedelta(seconds=interval_s)
        else:
            execute_at = now + timedelta(seconds=max(0.0, _seconds(delay) or 0.0))

        attempts = max_attempts or self._default_max_attempts(job_type)
        backoff_s = _seconds(backoff)
        if backoff_s is None:
            backoff_s = self._settings.backoff_base_seconds

        job = ScheduledJob(
            id=job_id,
            job_type=job_type,
            session_id=session_id,
            payload=payload or {},
            execute_at=execute_at,
            interval_ms=int(interval_s * 1000) if interval_s is not None else None,
            cron=cron,
            attempts_remaining=attempts,
            max_attempts=attempts,
            backoff_ms=int(backoff_s * 1000),
            state=JobState.PENDING,
        )

        with Session(self._engine) as session:
            session.add(job)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                existing = session.get(ScheduledJob, job_id)
                if existing is None or existing.state != JobState.FAILED:
                    state = existing.state if existing else "deleted"
                    logger.debug(f"Job {job_id} already registered ({state}); enqueue is a no-op")
                    if (
                        existing is not None
                        and existing.state == JobState.PENDING
                        and job_id not in self._in_flight
                        and self._scheduler.get_job(job_id) is None
                    ):
                        # Record survived but its trigger did not
                        self._arm(existing, run_at=max(as_utc(existing.execute_at), now))
                        logger.info(f"Re-armed orphaned job {job_id}")
                    return job_id

                # Re-registering a dead-lettered job revives it with a fresh budget
                existing.payload = payload or existing.payload
                existing.execute_at = execute_at
                existing.attempts_remaining = attempts
                existing.max_attempts = attempts
                existing.state = JobState.PENDING
                existing.last_error = None
                existing.updated_at = now
                session.add(existing)
                session.commit()
                session.refresh(existing)
                job = existing
                logger.info(f"Revived dead-lettered job {job_id}")
            else:
                session.refresh(job)

        self._arm(job)
        logger.info(f"Scheduled {job_type} job {job_id} at {execute_at.isoformat()}")
        return job_id

    def cancel(self, job_type: str, session_id: str, job_id: str | None = None) -> bool:
        """Deregister future executions. Returns False when nothing was live."""
        job_id = job_id or job_key(job_type, session_id)
        self._unarm(job_id)

        stmt = (
            update(ScheduledJob)
            .where(ScheduledJob.id == job_id)
            .where(ScheduledJob.state.in_(LIVE_JOB_STATES))
            .values(state=JobState.COMPLETED, updated_at=utcnow())
        )
        with self._engine.begin() as conn:
            cancelled = conn.execute(stmt).rowcount == 1

        if cancelled:
            logger.info(f"Cancelled job {job_id}")
        return cancelled

    def _trigger_for(self, job: ScheduledJob):
        if job.cron is not None:
            return CronTrigger.from_crontab(job.cron, timezone=timezone.utc)
        if job.interval_ms is not None:
            return IntervalTrigger(seconds=job.interval_ms / 1000, timezone=timezone.utc)
        return DateTrigger(run_date=as_utc(job.execute_at), timezone=timezone.utc)

    def _arm(self, job: ScheduledJob, run_at: datetime | None = None):
        """(Re)register the APScheduler trigger for a job record."""
        self._unarm(job.id)
        kwargs: dict[str, Any] = {}
        if run_at is not None:
            kwargs["next_run_time"] = as_utc(run_at)
        elif job.interval_ms is not None:
            kwargs["next_run_time"] = as_utc(job.execute_at)

        self._scheduler.add_job(
            self._dispatch,
            trigger=self._trigger_for(job),
            args=[job.id],
            id=job.id,
            name=f"{job.job_type}:{job.session_id}",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=None,
            **kwargs,
        )

    def _unarm(self, job_id: str) -> bool:
        try:
            self._scheduler.remove_job(job_id)
        except JobLookupError:
            return False
        return True

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _dispatch(self, job_id: str):
        """Entry point APScheduler calls on each fire."""
        try:
            await self.run_job(job_id)
        except Exception as e:
            # Bookkeeping failed (store unreachable). The record stays live and is
            # picked up again on restart; the sweeper covers safety jobs meanwhile.
            logger.error(f"[{job_id}] Scheduler bookkeeping failed: {e}", exc_info=True)

    async def run_job(self, job_id: str) -> str:
        """Execute one attempt of `job_id` and return its outcome label."""
        if job_id in self._in_flight:
            logger.warning(f"[{job_id}] Skipping overlapping execution")
            return "skipped_overlap"

        self._in_flight.add(job_id)
        try:
            return await self._run_attempt(job_id)
        finally:
            self._in_flight.discard(job_id)

    def _claim(self, job_id: str) -> ScheduledJob | None:
        with Session(self._engine) as session:
            job = session.get(ScheduledJob, job_id)
            if job is None or job.state not in LIVE_JOB_STATES:
                return None
            job.state = JobState.ACTIVE
            job.updated_at = utcnow()
            session.add(job)
            session.commit()
            session.refresh(job)
            return job

    async def _run_attempt(self, job_id: str) -> str:
        job = self._claim(job_id)
        if job is None:
            logger.info(f"[{job_id}] Not live anymore; skipping stale trigger")
            return "skipped"

        attempt = job.max_attempts - job.attempts_remaining + 1
        handler = self._handlers.get(job.job_type)
        if handler is None:
            await self._dead_letter(job, f"No handler registered for {job.job_type}", attempt, 0.0)
            return "dead_lettered"

        started = time.monotonic()
        try:
            action = await asyncio.wait_for(
                handler(job.session_id, dict(job.payload or {})),
                timeout=self._settings.job_timeout_seconds,
            )
        except _NON_RETRYABLE as e:
            elapsed = (time.monotonic() - started) * 1000
            await self._dead_letter(job, f"{type(e).__name__}: {e}", attempt, elapsed)
            return "dead_lettered"
        except asyncio.TimeoutError:
            elapsed = (time.monotonic() - started) * 1000
            logger.warning(
                f"[{job_id}] Stalled: attempt {attempt}/{job.max_attempts} exceeded "
                f"{self._settings.job_timeout_seconds}s"
            )
            return await self._retry_or_dead_letter(job, "stalled: handler timed out", attempt, elapsed, "stalled")
        except Exception as e:
            elapsed = (time.monotonic() - started) * 1000
            logger.warning(f"[{job_id}] Attempt {attempt}/{job.max_attempts} failed: {e}", exc_info=True)
            return await self._retry_or_dead_letter(job, f"{type(e).__name__}: {e}", attempt, elapsed, "error")

        elapsed = (time.monotonic() - started) * 1000
        self._complete(job, action, attempt, elapsed)
        return action or "success"

    def _finish(self, job_id: str, **changes) -> ScheduledJob | None:
        """Write the attempt's result only if nobody cancelled the job meanwhile."""
        changes["updated_at"] = utcnow()
        stmt = (
            update(ScheduledJob)
            .where(ScheduledJob.id == job_id)
            .where(ScheduledJob.state == JobState.ACTIVE)
            .values(**changes)
        )
        with self._engine.begin() as conn:
            applied = conn.execute(stmt).rowcount == 1
        if not applied:
            logger.info(f"[{job_id}] Cancelled while running; keeping cancellation")
            return None
        return self.get_job(job_id)

    def _complete(self, job: ScheduledJob, action: str | None, attempt: int, elapsed_ms: float):
        if job.is_repeating:
            next_at = utcnow() + timedelta(milliseconds=job.interval_ms or 0)
            if job.cron is not None:
                next_at = CronTrigger.from_crontab(job.cron, timezone=timezone.utc).get_next_fire_time(None, utcnow())
            self._finish(
                job.id,
                state=JobState.PENDING,
                attempts_remaining=job.max_attempts,
                execute_at=next_at,
                last_error=None,
            )
        else:
            self._finish(job.id, state=JobState.COMPLETED, last_error=None)

        self._log(job, "success", action=action, attempt=attempt, duration_ms=elapsed_ms)

    async def _retry_or_dead_letter(
        self, job: ScheduledJob, error: str, attempt: int, elapsed_ms: float, status: str
    ) -> str:
        remaining = job.attempts_remaining - 1
        if remaining <= 0:
            await self._dead_letter(job, error, attempt, elapsed_ms)
            return "dead_lettered"

        delay = job.backoff_ms / 1000 * (2 ** (attempt - 1))
        run_at = utcnow() + timedelta(seconds=delay)
        updated = self._finish(
            job.id,
            state=JobState.PENDING,
            attempts_remaining=remaining,
            execute_at=run_at,
            last_error=error,
        )
        self._log(job, status, action="retry_scheduled", message=error, attempt=attempt, duration_ms=elapsed_ms)
        if updated is None:
            return "cancelled"

        self._arm(updated, run_at=run_at)
        logger.info(f"[{job.id}] Retry {attempt + 1}/{job.max_attempts} in {delay:.1f}s")
        return "retry_scheduled"

    async def _dead_letter(self, job: ScheduledJob, error: str, attempt: int, elapsed_ms: float):
        updated = self._finish(job.id, state=JobState.FAILED, attempts_remaining=0, last_error=error)
        if updated is None:
            return
        self._unarm(job.id)
        logger.error(f"[{job.id}] Dead-lettered after {attempt} attempt(s): {error}")
        self._log(job, "dead_lettered", message=error, attempt=attempt, duration_ms=elapsed_ms)

        if self.on_dead_letter is not None:
            try:
                await self.on_dead_letter(updated)
            except Exception as e:
                logger.warning(f"[{job.id}] Dead-letter alert failed: {e}")

    def _log(
        self,
        job: ScheduledJob,
        status: str,
        action: str | None = None,
        message: str | None = None,
        attempt: int | None = None,
        duration_ms: float | None = None,
    ):
        """Write a JobLog entry."""
        with Session(self._engine) as session:
            session.add(JobLog(
                job_id=job.id,
                job_type=job.job_type,
                session_id=job.session_id,
                status=status,
                action=action,
                message=message,
                attempt=attempt,
                duration_ms=round(duration_ms, 2) if duration_ms is not None else None,
            ))
            session.commit()

    async def drain_due(self, now: datetime | None = None) -> dict[str, str]:
        """Run every live job that is due at `now`, oldest first."""
        now = now or utcnow()
        with Session(self._engine) as session:
            due = session.exec(
                select(ScheduledJob.id)
                .where(ScheduledJob.state == JobState.PENDING)
                .where(ScheduledJob.execute_at <= now)
                .order_by(ScheduledJob.execute_at)
            ).all()

        results = {}
        for job_id in due:
            results[job_id] = await self.run_job(job_id)
        return results

    # ------------------------------------------------------------------
    # Lifecycle & introspection
    # ------------------------------------------------------------------

    def start(self):
        """Re-arm every live record from the database, then start APScheduler."""
        now = utcnow()
        with Session(self._engine) as session:
            jobs = session.exec(
                select(ScheduledJob).where(ScheduledJob.state.in_(LIVE_JOB_STATES))
            ).all()
            for job in jobs:
                if job.state == JobState.ACTIVE:
                    # Interrupted mid-attempt by a crash or restart
                    job.state = JobState.PENDING
                    job.updated_at = now
                    session.add(job)
            session.commit()
            for job in jobs:
                session.refresh(job)

        for job in jobs:
            run_at = max(as_utc(job.execute_at), now)
            self._arm(job, run_at=run_at if not job.cron else None)

        self._scheduler.start()
        logger.info(f"Job scheduler started with {len(jobs)} restored jobs")

    def shutdown(self):
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        logger.info("Job scheduler stopped")

    @property
    def running(self) -> bool:
        return self._scheduler.running

    def get_job(self, job_id: str) -> ScheduledJob | None:
        with Session(self._engine) as session:
            return session.get(ScheduledJob, job_id)

    def list_jobs(self, session_id: str | None = None, state: str | None = None) -> list[ScheduledJob]:
        with Session(self._engine) as session:
            stmt = select(ScheduledJob).order_by(ScheduledJob.execute_at)
            if session_id is not None:
                stmt = stmt.where(ScheduledJob.session_id == session_id)
            if state is not None:
                stmt = stmt.where(ScheduledJob.state == state)
            return list(session.exec(stmt).all())

    def dead_letters(self, limit: int = 100) -> list[ScheduledJob]:
        with Session(self._engine) as session:
            return list(session.exec(
                select(ScheduledJob)
                .where(ScheduledJob.state == JobState.FAILED)
                .order_by(ScheduledJob.updated_at.desc())
                .limit(limit)
            ).all())

    def prune(self, now: datetime | None = None) -> dict[str, int]:
        """Drop old finished job records and job-log rows.

        Records of PENDING/ACTIVE sessions are kept regardless of age: their
        keys (warning buckets in particular) still deduplicate new enqueues.
        """
        now = now or utcnow()
        completed_cutoff = now - timedelta(hours=self._settings.completed_job_retention_hours)
        failed_cutoff = now - timedelta(days=self._settings.failed_job_retention_days)
        log_cutoff = now - timedelta(days=self._settings.session_retention_days)
        live_sessions = select(TradingSession.id).where(TradingSession.status.in_(LIVE_STATUSES))

        with self._engine.begin() as conn:
            completed = conn.execute(
                delete(ScheduledJob)
                .where(ScheduledJob.state == JobState.COMPLETED)
                .where(ScheduledJob.updated_at < completed_cutoff)
                .where(ScheduledJob.session_id.not_in(live_sessions))
            ).rowcount
            failed = conn.execute(
                delete(ScheduledJob)
                .where(ScheduledJob.state == JobState.FAILED)
                .where(ScheduledJob.updated_at < failed_cutoff)
                .where(ScheduledJob.session_id.not_in(live_sessions))
            ).rowcount
            logs = conn.execute(delete(JobLog).where(JobLog.timestamp < log_cutoff)).rowcount

        return {"completed_jobs": completed, "failed_jobs": failed, "job_logs": logs}

    def status(self) -> dict:
        """Current scheduler state for the API."""
        with Session(self._engine) as session:
            counts = dict(session.exec(
                select(ScheduledJob.state, func.count(ScheduledJob.id)).group_by(ScheduledJob.state)
            ).all())

        triggers = self._scheduler.get_jobs()
        return {
            "running": self._scheduler.running,
            "in_flight": sorted(self._in_flight),
            "job_counts": {state: counts.get(state, 0) for state in (
                JobState.PENDING, JobState.ACTIVE, JobState.COMPLETED, JobState.FAILED
            )},
            "triggers": [
                {
                    "id": j.id,
                    "name": j.name,
                    "next_run": str(j.next_run_time) if getattr(j, "next_run_time", None) else None,
                    "trigger": str(j.trigger),
                }
                for j in triggers
            ],
        }
