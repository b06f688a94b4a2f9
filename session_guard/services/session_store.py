"""Session Store: durable TradingSession persistence.

Every status write goes through `atomic_transition`, a single conditional
UPDATE guarded on the expected current status. Whichever caller gets
rowcount == 1 owns the transition; everyone else sees False.
"""

import functools
import logging
from datetime import datetime
from typing import Any

from sqlalchemy import delete, func, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlmodel import Session, select

from session_guard.errors import ActiveSessionExists, TransientStoreError
from session_guard.models.trading_session import TradingSession
from session_guard.utils.constants import LIVE_STATUSES, SessionStatus, TERMINAL_STATUSES
from session_guard.utils.time import utcnow

logger = logging.getLogger(__name__)


def _transient(fn):
    """Surface connection-level failures as TransientStoreError so the scheduler retries them."""
    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except (OperationalError, InterfaceError, PoolTimeoutError) as e:
            logger.warning(f"Session store I/O failure in {fn.__name__}: {e}")
            raise TransientStoreError(str(e)) from e
    return wrapper


class SessionStore:
    """SQLModel-backed store for trading sessions."""

    def __init__(self, engine: Engine):
        self._engine = engine

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    @_transient
    def create(self, trading_session: TradingSession) -> TradingSession:
        """Insert a new session. The partial unique index rejects a second live session."""
        with Session(self._engine) as session:
            session.add(trading_session)
            try:
                session.commit()
            except IntegrityError as e:
                session.rollback()
                raise ActiveSessionExists(trading_session.user_id) from e
            session.refresh(trading_session)
            return trading_session

    @_transient
    def atomic_transition(
        self,
        session_id: str,
        from_status: str,
        to_status: str,
        fields: dict[str, Any] | None = None,
    ) -> bool:
        """Conditionally move a session from `from_status` to `to_status`.

        Returns True only for the caller whose UPDATE matched the row.
        """
        if from_status in TERMINAL_STATUSES:
            return False

        values = dict(fields or {})
        values["status"] = to_status
        values["updated_at"] = utcnow()
        stmt = (
            update(TradingSession)
            .where(TradingSession.id == session_id)
            .where(TradingSession.status == from_status)
            .values(**values)
        )
        try:
            with self._engine.begin() as conn:
                result = conn.execute(stmt)
        except IntegrityError as e:
            # PENDING -> ACTIVE can still collide on the one-live-session index
            raise ActiveSessionExists(str(session_id)) from e
        return result.rowcount == 1

    @_transient
    def update_performance(self, session_id: str, realized_pnl: float | None, trade_count: int | None) -> bool:
        """Update PnL / trade count while the session is ACTIVE."""
        values: dict[str, Any] = {"updated_at": utcnow()}
        if realized_pnl is not None:
            values["realized_pnl"] = realized_pnl
        if trade_count is not None:
            values["trade_count"] = trade_count
        stmt = (
            update(TradingSession)
            .where(TradingSession.id == session_id)
            .where(TradingSession.status == SessionStatus.ACTIVE)
            .values(**values)
        )
        with self._engine.begin() as conn:
            result = conn.execute(stmt)
        return result.rowcount == 1

    @_transient
    def delete_older_than(self, cutoff: datetime) -> int:
        """Delete terminal sessions last updated before `cutoff`."""
        stmt = (
            delete(TradingSession)
            .where(TradingSession.status.in_(TERMINAL_STATUSES))
            .where(TradingSession.updated_at < cutoff)
        )
        with self._engine.begin() as conn:
            result = conn.execute(stmt)
        return result.rowcount

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @_transient
    def get_session(self, session_id: str) -> TradingSession | None:
        with Session(self._engine) as session:
            return session.get(TradingSession, session_id)

    @_transient
    def find_active_sessions_past_end_time(self, now: datetime) -> list[str]:
        with Session(self._engine) as session:
            rows = session.exec(
                select(TradingSession.id)
                .where(TradingSession.status == SessionStatus.ACTIVE)
                .where(TradingSession.end_time < now)
            ).all()
            return list(rows)

    @_transient
    def find_active_sessions(self, user_id: str | None = None) -> list[TradingSession]:
        with Session(self._engine) as session:
            stmt = select(TradingSession).where(TradingSession.status == SessionStatus.ACTIVE)
            if user_id is not None:
                stmt = stmt.where(TradingSession.user_id == user_id)
            return list(session.exec(stmt).all())

    @_transient
    def find_live_session(self, user_id: str) -> TradingSession | None:
        """The user's PENDING or ACTIVE session, if any."""
        with Session(self._engine) as session:
            return session.exec(
                select(TradingSession)
                .where(TradingSession.user_id == user_id)
                .where(TradingSession.status.in_(LIVE_STATUSES))
            ).first()

    @_transient
    def list_sessions(
        self,
        user_id: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        statuses: frozenset[str] | None = None,
    ) -> list[TradingSession]:
        """Sessions created within [start, end], oldest first."""
        with Session(self._engine) as session:
            stmt = select(TradingSession).order_by(TradingSession.created_at)
            if user_id is not None:
                stmt = stmt.where(TradingSession.user_id == user_id)
            if start is not None:
                stmt = stmt.where(TradingSession.created_at >= start)
            if end is not None:
                stmt = stmt.where(TradingSession.created_at <= end)
            if statuses is not None:
                stmt = stmt.where(TradingSession.status.in_(statuses))
            return list(session.exec(stmt).all())

    @_transient
    def list_terminal_sessions(self, user_id: str, limit: int) -> list[TradingSession]:
        """Most recent terminal sessions that actually started."""
        with Session(self._engine) as session:
            return list(session.exec(
                select(TradingSession)
                .where(TradingSession.user_id == user_id)
                .where(TradingSession.status.in_(TERMINAL_STATUSES))
                .where(TradingSession.start_time.is_not(None))
                .order_by(TradingSession.created_at.desc())
                .limit(limit)
            ).all())

    @_transient
    def find_similar_sessions(
        self,
        user_id: str,
        duration_range: tuple[float, float],
        loss_limit_range: tuple[float, float],
        limit: int,
    ) -> list[TradingSession]:
        with Session(self._engine) as session:
            return list(session.exec(
                select(TradingSession)
                .where(TradingSession.user_id == user_id)
                .where(TradingSession.status.in_(TERMINAL_STATUSES))
                .where(TradingSession.duration_minutes >= duration_range[0])
                .where(TradingSession.duration_minutes <= duration_range[1])
                .where(TradingSession.loss_limit_amount >= loss_limit_range[0])
                .where(TradingSession.loss_limit_amount <= loss_limit_range[1])
                .order_by(TradingSession.created_at.desc())
                .limit(limit)
            ).all())

    @_transient
    def session_history(self, user_id: str, limit: int = 10, offset: int = 0) -> list[TradingSession]:
        with Session(self._engine) as session:
            return list(session.exec(
                select(TradingSession)
                .where(TradingSession.user_id == user_id)
                .order_by(TradingSession.created_at.desc())
                .offset(offset)
                .limit(limit)
            ).all())

    @_transient
    def session_stats(self, user_id: str | None = None) -> dict:
        """Counts by status and simple averages."""
        with Session(self._engine) as session:
            stmt = select(
                func.count(TradingSession.id),
                func.avg(TradingSession.duration_minutes),
                func.avg(TradingSession.realized_pnl),
                func.avg(TradingSession.trade_count),
            )
            by_status = select(TradingSession.status, func.count(TradingSession.id)).group_by(
                TradingSession.status
            )
            if user_id is not None:
                stmt = stmt.where(TradingSession.user_id == user_id)
                by_status = by_status.where(TradingSession.user_id == user_id)

            total, avg_duration, avg_pnl, avg_trades = session.exec(stmt).one()
            breakdown = {status: count for status, count in session.exec(by_status).all()}

        return {
            "total_sessions": total,
            "average_duration": avg_duration,
            "average_pnl": avg_pnl,
            "average_trade_count": avg_trades,
            "status_breakdown": breakdown,
        }
