"""Session lifecycle: create, activate, stop and report on trading sessions."""

import logging
from datetime import timedelta

from session_guard.config import Settings
from session_guard.engine.monitor import SessionMonitor
from session_guard.engine.termination import TerminationCoordinator
from session_guard.errors import (
    ActiveSessionExists,
    InvalidTransition,
    SessionNotFound,
    SessionRuleViolation,
)
from session_guard.models.trading_session import TradingSession
from session_guard.services.session_store import SessionStore
from session_guard.utils.constants import REASON_STATUS, SessionStatus, TerminationReason
from session_guard.utils.time import utcnow

logger = logging.getLogger(__name__)


class TradingSessionService:
    def __init__(
        self,
        store: SessionStore,
        coordinator: TerminationCoordinator,
        monitor: SessionMonitor,
        settings: Settings,
    ):
        self.store = store
        self.coordinator = coordinator
        self.monitor = monitor
        self.settings = settings

    def _owned(self, session_id: str, user_id: str) -> TradingSession:
        session = self.store.get_session(session_id)
        if session is None or session.user_id != user_id:
            raise SessionNotFound(session_id)
        return session

    def validate_parameters(self, duration_minutes: int, loss_limit_amount: float, account_balance: float):
        if duration_minutes not in self.settings.valid_durations:
            allowed = ", ".join(str(d) for d in self.settings.valid_durations)
            raise SessionRuleViolation(f"Invalid session duration {duration_minutes}; allowed: {allowed} minutes")
        if loss_limit_amount <= 0:
            raise SessionRuleViolation("Loss limit must be positive")
        if account_balance <= 0:
            raise SessionRuleViolation("Account balance must be positive")
        if loss_limit_amount > account_balance:
            raise SessionRuleViolation("Loss limit cannot exceed account balance")
        max_loss = account_balance * self.settings.max_loss_limit_fraction
        if loss_limit_amount > max_loss:
            raise SessionRuleViolation(
                f"Loss limit cannot exceed {self.settings.max_loss_limit_fraction:.0%} "
                f"of account balance ({max_loss:.2f})"
            )

    def create_session(
        self,
        user_id: str,
        duration_minutes: int,
        loss_limit_amount: float,
        account_balance: float,
    ) -> TradingSession:
        self.validate_parameters(duration_minutes, loss_limit_amount, account_balance)

        live = self.store.find_live_session(user_id)
        if live is not None:
            raise ActiveSessionExists(user_id)

        session = self.store.create(TradingSession(
            user_id=user_id,
            duration_minutes=duration_minutes,
            loss_limit_amount=loss_limit_amount,
            loss_limit_percentage=loss_limit_amount / account_balance * 100,
            account_balance=account_balance,
        ))
        logger.info(f"Created session {session.id} for user {user_id} ({duration_minutes}m, limit {loss_limit_amount})")
        return session

    def start_session(self, session_id: str, user_id: str) -> TradingSession:
        """PENDING -> ACTIVE, fixing start/end time, then register monitoring."""
        session = self._owned(session_id, user_id)
        now = utcnow()
        applied = self.store.atomic_transition(
            session_id,
            SessionStatus.PENDING,
            SessionStatus.ACTIVE,
            {"start_time": now, "end_time": now + timedelta(minutes=session.duration_minutes)},
        )
        if not applied:
            current = self.store.get_session(session_id)
            raise InvalidTransition(session_id, current.status if current else "NOT_FOUND", SessionStatus.ACTIVE)

        session = self.store.get_session(session_id)
        self.monitor.start_monitoring(session)
        logger.info(f"Started session {session_id}, ends {session.end_time}")
        return session

    async def stop_session(
        self, session_id: str, user_id: str, reason: str = TerminationReason.MANUAL_STOP
    ) -> TradingSession:
        if reason not in REASON_STATUS:
            raise SessionRuleViolation(f"Unknown termination reason: {reason}")
        session = self._owned(session_id, user_id)

        if session.status == SessionStatus.PENDING:
            # Never activated: no monitoring or orders to clean up
            applied = self.store.atomic_transition(
                session_id,
                SessionStatus.PENDING,
                REASON_STATUS[reason],
                {"actual_end_time": utcnow(), "termination_reason": reason},
            )
        else:
            applied = await self.coordinator.terminate(session_id, reason)

        if not applied:
            current = self.store.get_session(session_id)
            raise InvalidTransition(
                session_id, current.status if current else "NOT_FOUND", REASON_STATUS[reason]
            )
        return self.store.get_session(session_id)

    async def emergency_stop_session(self, session_id: str, user_id: str) -> TradingSession:
        logger.warning(f"Emergency stop requested for session {session_id} by user {user_id}")
        return await self.stop_session(session_id, user_id, TerminationReason.EMERGENCY_STOP)

    def update_performance(self, session_id: str, realized_pnl: float | None, trade_count: int | None) -> TradingSession:
        if not self.store.update_performance(session_id, realized_pnl, trade_count):
            current = self.store.get_session(session_id)
            if current is None:
                raise SessionNotFound(session_id)
            raise InvalidTransition(session_id, current.status, SessionStatus.ACTIVE)
        return self.store.get_session(session_id)

    def get_session(self, session_id: str) -> TradingSession:
        session = self.store.get_session(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return session

    def get_active_session(self, user_id: str) -> TradingSession | None:
        return self.store.find_live_session(user_id)

    def get_session_history(self, user_id: str, limit: int = 10, offset: int = 0) -> list[TradingSession]:
        return self.store.session_history(user_id, limit=limit, offset=offset)

    def get_session_stats(self, user_id: str | None = None) -> dict:
        return self.store.session_stats(user_id)
