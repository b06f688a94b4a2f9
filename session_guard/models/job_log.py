"""JobLog model: per-attempt execution log for scheduled jobs."""

from datetime import datetime, timezone

from sqlmodel import SQLModel, Field


class JobLog(SQLModel, table=True):
    __tablename__ = "job_log"

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(index=True)
    job_type: str = Field(index=True)
    session_id: str = Field(index=True)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    status: str  # "success", "error", "skipped", "stalled", "dead_lettered"
    action: str | None = None  # "session_expired", "warning_enqueued", "monitoring_stopped", ...
    message: str | None = None
    attempt: int | None = None
    duration_ms: float | None = None
