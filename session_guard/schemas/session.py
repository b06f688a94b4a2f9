"""Pydantic schemas for the sessions and analytics API."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator

from session_guard.utils.constants import REASON_STATUS, TerminationReason


class SessionCreate(BaseModel):
    user_id: str = Field(min_length=1, max_length=64)
    duration_minutes: int = Field(gt=0)
    loss_limit_amount: float = Field(gt=0)
    account_balance: float = Field(gt=0)

    @field_validator("user_id")
    @classmethod
    def _trim_user_id(cls, value: str) -> str:
        text = value.strip()
        if not text:
            raise ValueError("must not be empty")
        return text


class SessionAction(BaseModel):
    user_id: str = Field(min_length=1, max_length=64)


class SessionStop(SessionAction):
    reason: str = TerminationReason.MANUAL_STOP

    @field_validator("reason")
    @classmethod
    def _validate_reason(cls, value: str) -> str:
        if value not in REASON_STATUS:
            allowed = ", ".join(REASON_STATUS)
            raise ValueError(f"must be one of: {allowed}")
        return value


class PerformanceUpdate(BaseModel):
    realized_pnl: float | None = None
    trade_count: int | None = Field(default=None, ge=0)


class SessionRead(BaseModel):
    id: str
    user_id: str
    status: str
    duration_minutes: int
    loss_limit_amount: float
    loss_limit_percentage: float | None
    account_balance: float | None
    start_time: datetime | None
    end_time: datetime | None
    actual_end_time: datetime | None
    realized_pnl: float
    trade_count: int
    termination_reason: str | None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class PredictRequest(BaseModel):
    duration_minutes: int = Field(gt=0)
    loss_limit_amount: float = Field(gt=0)


class JobRecord(BaseModel):
    jobId: str
    jobType: str
    sessionId: str
    payload: dict[str, Any]
    executeAt: int
    attemptsRemaining: int
    maxAttempts: int
    state: str
    intervalMs: int | None = None
    cron: str | None = None
    lastError: str | None = None
