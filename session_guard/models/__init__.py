"""Database models."""

from session_guard.models.trading_session import TradingSession
from session_guard.models.scheduled_job import ScheduledJob
from session_guard.models.job_log import JobLog

__all__ = [
    "TradingSession",
    "ScheduledJob",
    "JobLog",
]
