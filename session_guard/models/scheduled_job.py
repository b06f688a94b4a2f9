"""ScheduledJob model: durable record behind every scheduler trigger.

The primary key is the deterministic job key, so inserting a second record for
the same key fails at the database and the scheduler treats it as a no-op.
"""

from datetime import datetime, timezone
from typing import Any

from sqlmodel import SQLModel, Field, Column
from sqlalchemy import JSON

from session_guard.utils.constants import JobState
from session_guard.utils.time import epoch_ms


class ScheduledJob(SQLModel, table=True):
    __tablename__ = "scheduled_job"

    id: str = Field(primary_key=True)  # e.g. "loss-check-<session_id>"
    job_type: str = Field(index=True)
    session_id: str = Field(index=True)
    payload: dict[str, Any] | None = Field(default=None, sa_column=Column(JSON))

    execute_at: datetime
    interval_ms: int | None = None  # repeating jobs only
    cron: str | None = None  # daily cleanup only

    attempts_remaining: int
    max_attempts: int
    backoff_ms: int = 2000

    state: str = Field(default=JobState.PENDING, index=True)
    last_error: str | None = None

    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_repeating(self) -> bool:
        return self.interval_ms is not None or self.cron is not None

    def to_record(self) -> dict[str, Any]:
        """Queue-entry shape exposed to the API layer."""
        record = {
            "jobId": self.id,
            "jobType": self.job_type,
            "sessionId": self.session_id,
            "payload": self.payload or {},
            "executeAt": epoch_ms(self.execute_at),
            "attemptsRemaining": self.attempts_remaining,
            "maxAttempts": self.max_attempts,
            "state": self.state,
        }
        if self.interval_ms is not None:
            record["intervalMs"] = self.interval_ms
        if self.cron is not None:
            record["cron"] = self.cron
        if self.last_error:
            record["lastError"] = self.last_error
        return record
