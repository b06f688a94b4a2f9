"""Session Monitor: job handlers that watch ACTIVE sessions.

Registered on the JobScheduler by the runtime:
    expiration  -> on_expire
    loss_check  -> on_loss_check (repeating)
    warning     -> on_warning
    performance -> on_performance
"""

import logging
import math
from datetime import timedelta
from typing import Any

from session_guard.config import Settings
from session_guard.engine.scheduler import JobScheduler
from session_guard.engine.termination import TerminationCoordinator
from session_guard.errors import PayloadValidationError
from session_guard.models.trading_session import TradingSession
from session_guard.services.analytics import AnalyticsEngine, loss_utilization
from session_guard.services.notifications import NotificationDispatcher
from session_guard.services.session_store import SessionStore
from session_guard.utils.constants import JobType, TerminationReason, warning_job_key
from session_guard.utils.time import as_utc, utcnow

logger = logging.getLogger(__name__)

WARNING_TYPES = ("loss", "time")


class SessionMonitor:
    def __init__(
        self,
        store: SessionStore,
        scheduler: JobScheduler,
        coordinator: TerminationCoordinator,
        notifier: NotificationDispatcher,
        analytics: AnalyticsEngine,
        settings: Settings,
    ):
        self.store = store
        self.scheduler = scheduler
        self.coordinator = coordinator
        self.notifier = notifier
        self.analytics = analytics
        self.settings = settings

    def register_handlers(self):
        self.scheduler.register(JobType.EXPIRATION, self._expiration_job)
        self.scheduler.register(JobType.LOSS_CHECK, self._loss_check_job)
        self.scheduler.register(JobType.WARNING, self.on_warning)
        self.scheduler.register(JobType.PERFORMANCE, self.on_performance)

    async def _expiration_job(self, session_id: str, payload: dict[str, Any]) -> str:
        return await self.on_expire(session_id)

    async def _loss_check_job(self, session_id: str, payload: dict[str, Any]) -> str:
        return await self.on_loss_check(session_id)

    # ------------------------------------------------------------------
    # Monitoring registration
    # ------------------------------------------------------------------

    def start_monitoring(self, session: TradingSession):
        """Register the expiration job and the repeating loss check. Idempotent."""
        remaining = (as_utc(session.end_time) - utcnow()).total_seconds() if session.end_time else 0.0
        self.scheduler.enqueue(
            JobType.EXPIRATION,
            session.id,
            {"user_id": session.user_id, "end_time": as_utc(session.end_time).isoformat() if session.end_time else None},
            delay=max(0.0, remaining),
        )
        self.scheduler.enqueue(
            JobType.LOSS_CHECK,
            session.id,
            {"user_id": session.user_id},
            interval=timedelta(seconds=self.settings.loss_check_interval_seconds),
        )
        logger.info(f"Started monitoring session {session.id} ({remaining:.0f}s remaining)")

    def stop_monitoring(self, session_id: str) -> bool:
        """Cancel both monitoring jobs. Calling it again is a no-op."""
        expiration = self.scheduler.cancel(JobType.EXPIRATION, session_id)
        loss_check = self.scheduler.cancel(JobType.LOSS_CHECK, session_id)
        stopped = expiration or loss_check
        if stopped:
            logger.info(f"Stopped monitoring session {session_id}")
        return stopped

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def on_expire(self, session_id: str) -> str:
        session = self.store.get_session(session_id)
        if session is None:
            logger.info(f"[expire] Session {session_id} not found - may have been removed")
            return "no_action"
        if not session.is_active:
            logger.info(f"[expire] Session {session_id} already {session.status}")
            return "no_action"

        applied = await self.coordinator.terminate(session_id, TerminationReason.TIME_EXPIRED)
        self.scheduler.cancel(JobType.LOSS_CHECK, session_id)
        return "session_expired" if applied else "no_action"

    async def on_loss_check(self, session_id: str) -> str:
        session = self.store.get_session(session_id)
        if session is None or not session.is_active:
            status = session.status if session else "NOT_FOUND"
            self.scheduler.cancel(JobType.LOSS_CHECK, session_id)
            logger.info(f"[loss_check] Session {session_id} is {status}; stopped monitoring")
            return "monitoring_stopped"

        pct = loss_utilization(session)

        if pct >= 100:
            applied = await self.coordinator.terminate(session_id, TerminationReason.LOSS_LIMIT_REACHED)
            logger.warning(f"[loss_check] Session {session_id} hit its loss limit ({pct:.1f}%)")
            return "session_terminated" if applied else "no_action"

        if self.settings.loss_warning_lower_pct <= pct < self.settings.loss_warning_upper_pct:
            bucket = math.floor(pct)
            self.scheduler.enqueue(
                JobType.WARNING,
                session_id,
                {"user_id": session.user_id, "warning_type": "loss", "percentage": pct},
                job_id=warning_job_key(session_id, "loss", bucket),
            )
            return "warning_enqueued"

        logger.debug(f"[loss_check] Session {session_id}: {pct:.1f}% of loss limit used")
        return "monitoring_continued"

    async def on_warning(self, session_id: str, payload: dict[str, Any]) -> str:
        warning_type = payload.get("warning_type")
        percentage = payload.get("percentage")
        if warning_type not in WARNING_TYPES:
            raise PayloadValidationError(f"Invalid warning_type: {warning_type!r}")
        if isinstance(percentage, bool) or not isinstance(percentage, (int, float)):
            raise PayloadValidationError(f"Invalid percentage: {percentage!r}")

        session = self.store.get_session(session_id)
        if session is None or not session.is_active:
            return "no_action"

        await self.notifier.emit(session_id, session.user_id, "warning", {
            "warning_type": warning_type,
            "percentage": float(percentage),
            "loss_limit_amount": session.loss_limit_amount,
            "realized_pnl": session.realized_pnl,
        })
        return "warning_sent"

    async def on_performance(self, session_id: str, payload: dict[str, Any]) -> str:
        user_id = payload.get("user_id")
        if not user_id:
            session = self.store.get_session(session_id)
            if session is None:
                raise PayloadValidationError("performance job needs a user_id")
            user_id = session.user_id

        self.analytics.refresh_analytics_cache(user_id)
        self.analytics.aggregate_session_data(user_id, "daily")
        return "performance_calculated"
