"""Termination Coordinator: exactly-once transition of an ACTIVE session to a terminal status.

Any number of triggers (expiration job, loss check, sweeper, manual stop) may
call `terminate` for the same session at once. The conditional UPDATE in the
store picks one winner; only the winner cancels orders, deregisters monitoring,
schedules the performance job and notifies. Everyone else gets False and no
side effects.
"""

import logging
from typing import Any, Callable

from session_guard.config import Settings
from session_guard.engine.scheduler import JobScheduler
from session_guard.services.notifications import NotificationDispatcher
from session_guard.services.order_client import OrderClient
from session_guard.services.session_store import SessionStore
from session_guard.utils.constants import JobType, REASON_STATUS, SessionStatus
from session_guard.utils.time import utcnow

logger = logging.getLogger(__name__)


class TerminationCoordinator:
    def __init__(
        self,
        store: SessionStore,
        scheduler: JobScheduler,
        order_client: OrderClient,
        notifier: NotificationDispatcher,
        settings: Settings,
    ):
        self.store = store
        self.scheduler = scheduler
        self.order_client = order_client
        self.notifier = notifier
        self.settings = settings

    async def terminate(self, session_id: str, reason: str) -> bool:
        """Terminate `session_id` for `reason`. True only for the caller that applied it."""
        to_status = REASON_STATUS.get(reason)
        if to_status is None:
            raise ValueError(f"Unknown termination reason: {reason}")

        now = utcnow()
        applied = self.store.atomic_transition(
            session_id,
            SessionStatus.ACTIVE,
            to_status,
            {"actual_end_time": now, "termination_reason": reason},
        )

        if not applied:
            current = self.store.get_session(session_id)
            if current is None:
                logger.info(f"[terminate] Session {session_id} not found; nothing to do")
            else:
                logger.info(
                    f"[terminate] Session {session_id} already {current.status}; "
                    f"'{reason}' is a no-op"
                )
            return False

        logger.info(f"[terminate] Session {session_id} -> {to_status} ({reason})")
        # The transition is committed; from here on every step is best-effort
        try:
            session = self.store.get_session(session_id)
        except Exception as e:
            logger.error(f"[terminate] Failed to reload session {session_id}: {e}")
            session = None
        user_id = session.user_id if session else ""

        await self._cancel_orders(session_id, user_id)

        await self._side_effect(
            session_id, user_id, "deregister expiration job",
            lambda: self.scheduler.cancel(JobType.EXPIRATION, session_id),
        )
        await self._side_effect(
            session_id, user_id, "deregister loss check",
            lambda: self.scheduler.cancel(JobType.LOSS_CHECK, session_id),
        )
        await self._side_effect(
            session_id, user_id, "schedule performance job",
            lambda: self.scheduler.enqueue(
                JobType.PERFORMANCE,
                session_id,
                {"user_id": user_id},
                delay=self.settings.performance_delay_seconds,
            ),
        )

        await self.notifier.emit(session_id, user_id, "terminated", {
            "reason": reason,
            "status": to_status,
            "realized_pnl": session.realized_pnl if session else None,
            "trade_count": session.trade_count if session else None,
            "terminated_at": now.isoformat(),
        })
        return True

    async def _side_effect(self, session_id: str, user_id: str, label: str, step: Callable[[], Any]):
        try:
            step()
        except Exception as e:
            logger.error(f"[terminate] Failed to {label} for {session_id}: {e}", exc_info=True)
            await self.notifier.emit(session_id, user_id, "alert", {
                "message": f"Failed to {label}: {e}",
            })

    async def _cancel_orders(self, session_id: str, user_id: str):
        """Runs once per session; a failure is alerted, the transition stands."""
        try:
            await self.order_client.cancel_pending_orders(session_id)
        except Exception as e:
            logger.error(f"[terminate] Failed to cancel pending orders for {session_id}: {e}", exc_info=True)
            await self.notifier.emit(session_id, user_id, "alert", {
                "message": f"Pending order cancellation failed: {e}",
            })
