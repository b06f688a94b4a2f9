"""Cleanup Sweeper: daily reconciliation of sessions and job records.

The targeted expiration / loss-check jobs can be lost (crash between commit
and arming, dead-lettered retries, store outage). The sweep is the safety net:
it expires anything past its end time, re-arms monitoring for the rest and
prunes old rows.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from session_guard.config import Settings
from session_guard.engine.monitor import SessionMonitor
from session_guard.engine.scheduler import JobScheduler
from session_guard.engine.termination import TerminationCoordinator
from session_guard.services.session_store import SessionStore
from session_guard.utils.constants import CLEANUP_JOB_ID, JobType, SYSTEM_SESSION_ID, TerminationReason
from session_guard.utils.time import utcnow

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    expired_sessions: list[str] = field(default_factory=list)
    rearmed_sessions: list[str] = field(default_factory=list)
    deleted_sessions: int = 0
    pruned_jobs: dict[str, int] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)
    swept_at: datetime = field(default_factory=utcnow)


class CleanupSweeper:
    def __init__(
        self,
        store: SessionStore,
        scheduler: JobScheduler,
        coordinator: TerminationCoordinator,
        monitor: SessionMonitor,
        settings: Settings,
    ):
        self.store = store
        self.scheduler = scheduler
        self.coordinator = coordinator
        self.monitor = monitor
        self.settings = settings

    def register_handler(self):
        self.scheduler.register(JobType.CLEANUP, self._cleanup_job)

    def schedule_daily(self) -> str:
        """Register the daily cron sweep (idempotent)."""
        return self.scheduler.enqueue(
            JobType.CLEANUP,
            SYSTEM_SESSION_ID,
            {"retention_days": self.settings.session_retention_days},
            cron=self.settings.cleanup_cron,
            job_id=CLEANUP_JOB_ID,
        )

    async def _cleanup_job(self, session_id: str, payload: dict[str, Any]) -> str:
        result = await self.sweep()
        if result.errors:
            # Let the scheduler retry; termination is idempotent so a rerun is safe
            raise RuntimeError(f"Sweep finished with {len(result.errors)} error(s): {result.errors[0]}")
        return "cleanup_completed"

    async def sweep(self, now: datetime | None = None) -> SweepResult:
        now = now or utcnow()
        result = SweepResult(swept_at=now)

        for session_id in self.store.find_active_sessions_past_end_time(now):
            try:
                if await self.coordinator.terminate(session_id, TerminationReason.TIME_EXPIRED):
                    result.expired_sessions.append(session_id)
                    logger.warning(f"[sweep] Expired session {session_id} missed by its expiration job")
            except Exception as e:
                logger.error(f"[sweep] Failed to expire session {session_id}: {e}", exc_info=True)
                result.errors.append(f"{session_id}: {e}")

        for session in self.store.find_active_sessions():
            try:
                self.monitor.start_monitoring(session)
                result.rearmed_sessions.append(session.id)
            except Exception as e:
                logger.error(f"[sweep] Failed to re-arm monitoring for {session.id}: {e}", exc_info=True)
                result.errors.append(f"{session.id}: {e}")

        cutoff = now - timedelta(days=self.settings.session_retention_days)
        result.deleted_sessions = self.store.delete_older_than(cutoff)
        result.pruned_jobs = self.scheduler.prune(now)

        logger.info(
            f"[sweep] expired={len(result.expired_sessions)} "
            f"monitored={len(result.rearmed_sessions)} deleted={result.deleted_sessions} "
            f"pruned={result.pruned_jobs}"
        )
        return result
