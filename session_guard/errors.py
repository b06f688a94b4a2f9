"""Exception taxonomy shared by the engine, services and API layer."""


class SessionGuardError(Exception):
    """Base class for all domain errors."""


class SessionNotFound(SessionGuardError):
    """Session is missing. Handlers treat this as already resolved."""

    def __init__(self, session_id: str):
        super().__init__(f"Session {session_id} not found")
        self.session_id = session_id


class InvalidTransition(SessionGuardError):
    """A conditional status update lost (the session was not in the expected status)."""

    def __init__(self, session_id: str, from_status: str, to_status: str):
        super().__init__(f"Session {session_id}: cannot transition {from_status} -> {to_status}")
        self.session_id = session_id
        self.from_status = from_status
        self.to_status = to_status


class InsufficientData(SessionGuardError):
    """Analytics sample is below the required threshold. Never retried."""

    def __init__(self, message: str, sample_size: int = 0, required: int = 0):
        super().__init__(message)
        self.sample_size = sample_size
        self.required = required


class TransientStoreError(SessionGuardError):
    """Storage I/O failure. Retried by the scheduler with backoff."""


class PayloadValidationError(SessionGuardError):
    """Malformed job payload. Dead-lettered immediately."""


class SessionRuleViolation(SessionGuardError):
    """Session parameters violate a creation rule (duration, loss limit, balance)."""


class ActiveSessionExists(SessionGuardError):
    """User already has a PENDING or ACTIVE session."""

    def __init__(self, user_id: str):
        super().__init__(f"User {user_id} already has a live session")
        self.user_id = user_id
