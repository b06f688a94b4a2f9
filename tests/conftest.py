"""Shared fixtures: in-memory database, settings and a fully wired runtime."""

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from session_guard.config import Settings
from session_guard.database import create_db_and_tables, make_engine
from session_guard.engine.runtime import Runtime
from session_guard.models.trading_session import TradingSession
from session_guard.services.order_client import CancelResult
from session_guard.utils.constants import SessionStatus
from session_guard.utils.time import utcnow


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite://",
        job_timeout_seconds=1.0,
        order_service_url="",
        telegram_bot_token="",
    )


@pytest.fixture
def engine():
    eng = make_engine("sqlite://")
    create_db_and_tables(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def order_client():
    client = MagicMock()
    client.cancel_pending_orders = AsyncMock(return_value=CancelResult(success=True, mock=True))
    client.close = AsyncMock()
    return client


@pytest.fixture
def runtime(engine, settings, order_client):
    return Runtime(engine, settings, order_client=order_client)


@pytest.fixture
def make_session(runtime):
    """Insert a session directly, bypassing creation rules."""

    def _make(
        user_id: str = "user-1",
        status: str = SessionStatus.ACTIVE,
        duration_minutes: int = 60,
        loss_limit_amount: float = 9.0,
        account_balance: float | None = None,
        realized_pnl: float = 0.0,
        trade_count: int = 0,
        started_ago: timedelta = timedelta(minutes=0),
        **fields,
    ) -> TradingSession:
        now = utcnow()
        start = now - started_ago
        session = TradingSession(
            user_id=user_id,
            status=status,
            duration_minutes=duration_minutes,
            loss_limit_amount=loss_limit_amount,
            account_balance=account_balance,
            realized_pnl=realized_pnl,
            trade_count=trade_count,
            start_time=start if status != SessionStatus.PENDING else None,
            end_time=start + timedelta(minutes=duration_minutes) if status != SessionStatus.PENDING else None,
            **fields,
        )
        return runtime.store.create(session)

    return _make
