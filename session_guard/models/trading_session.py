"""TradingSession model: a time-boxed, loss-limited trading authorization."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Index, text
from sqlmodel import SQLModel, Field

from session_guard.utils.constants import SessionStatus, TERMINAL_STATUSES


class TradingSession(SQLModel, table=True):
    __tablename__ = "trading_session"
    __table_args__ = (
        Index(
            "ix_trading_session_one_live_per_user",
            "user_id",
            unique=True,
            sqlite_where=text("status IN ('PENDING', 'ACTIVE')"),
            postgresql_where=text("status IN ('PENDING', 'ACTIVE')"),
        ),
    )

    id: str = Field(default_factory=lambda: uuid.uuid4().hex, primary_key=True)
    user_id: str = Field(index=True)
    status: str = Field(default=SessionStatus.PENDING, index=True)

    # Limits
    duration_minutes: int
    loss_limit_amount: float
    loss_limit_percentage: float | None = None  # of account_balance
    account_balance: float | None = None

    # Timing; end_time is fixed at activation
    start_time: datetime | None = None
    end_time: datetime | None = Field(default=None, index=True)
    actual_end_time: datetime | None = None

    # Performance
    realized_pnl: float = 0.0
    trade_count: int = 0
    termination_reason: str | None = None  # "time_expired", "loss_limit_reached", ...

    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_active(self) -> bool:
        return self.status == SessionStatus.ACTIVE

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
