"""Status vocabularies, termination reasons and job-key helpers."""


class SessionStatus:
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    STOPPED = "STOPPED"
    EXPIRED = "EXPIRED"
    EMERGENCY_STOPPED = "EMERGENCY_STOPPED"


LIVE_STATUSES = frozenset({SessionStatus.PENDING, SessionStatus.ACTIVE})
TERMINAL_STATUSES = frozenset({
    SessionStatus.COMPLETED,
    SessionStatus.STOPPED,
    SessionStatus.EXPIRED,
    SessionStatus.EMERGENCY_STOPPED,
})


class TerminationReason:
    TIME_EXPIRED = "time_expired"
    LOSS_LIMIT_REACHED = "loss_limit_reached"
    MANUAL_STOP = "manual_stop"
    EMERGENCY_STOP = "emergency_stop"
    COMPLETED = "completed"


# Termination reason -> terminal status written by the coordinator
REASON_STATUS: dict[str, str] = {
    TerminationReason.TIME_EXPIRED: SessionStatus.EXPIRED,
    TerminationReason.LOSS_LIMIT_REACHED: SessionStatus.STOPPED,
    TerminationReason.MANUAL_STOP: SessionStatus.STOPPED,
    TerminationReason.EMERGENCY_STOP: SessionStatus.EMERGENCY_STOPPED,
    TerminationReason.COMPLETED: SessionStatus.COMPLETED,
}


class JobType:
    EXPIRATION = "expiration"
    LOSS_CHECK = "loss_check"
    CLEANUP = "cleanup"
    PERFORMANCE = "performance"
    WARNING = "warning"


JOB_TYPES = frozenset({
    JobType.EXPIRATION,
    JobType.LOSS_CHECK,
    JobType.CLEANUP,
    JobType.PERFORMANCE,
    JobType.WARNING,
})


class JobState:
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


LIVE_JOB_STATES = frozenset({JobState.PENDING, JobState.ACTIVE})

SYSTEM_SESSION_ID = "system"
CLEANUP_JOB_ID = "daily-session-cleanup"

_JOB_KEY_PREFIX: dict[str, str] = {
    JobType.EXPIRATION: "expiration",
    JobType.LOSS_CHECK: "loss-check",
    JobType.CLEANUP: "cleanup",
    JobType.PERFORMANCE: "performance",
    JobType.WARNING: "warning",
}


def job_key(job_type: str, session_id: str) -> str:
    """Deterministic job id for a (job type, session) pair."""
    if job_type == JobType.CLEANUP and session_id == SYSTEM_SESSION_ID:
        return CLEANUP_JOB_ID
    return f"{_JOB_KEY_PREFIX[job_type]}-{session_id}"


def warning_job_key(session_id: str, warning_type: str, bucket: int) -> str:
    """One warning per integer percentage bucket."""
    return f"warning-{warning_type}-{session_id}-{bucket}"


ANALYTICS_PERIODS = ("daily", "weekly", "monthly", "yearly")
COMPARISON_TYPES = ("self_historical", "peer_group")
