"""Notification Dispatcher: delivers warnings, terminations and operator alerts."""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable

from session_guard.utils.time import utcnow

logger = logging.getLogger(__name__)

NOTIFICATION_TYPES = ("warning", "terminated", "alert")

Listener = Callable[["Notification"], Awaitable[None]]


@dataclass
class Notification:
    session_id: str
    user_id: str
    type: str  # "warning", "terminated", "alert"
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)

    def render(self) -> str:
        if self.type == "warning":
            kind = self.payload.get("warning_type", "loss")
            pct = float(self.payload.get("percentage", 0.0))
            return f"WARNING: session {self.session_id} at {pct:.1f}% of its {kind} limit"
        if self.type == "terminated":
            reason = self.payload.get("reason", "unknown")
            return f"Session {self.session_id} terminated: {reason}"
        return f"ALERT [{self.session_id}]: {self.payload.get('message', '')}"


class NotificationDispatcher:
    """Fans notifications out to registered listeners and keeps a short history."""

    def __init__(self, history_size: int = 500):
        self._listeners: list[Listener] = []
        self._history: deque[Notification] = deque(maxlen=history_size)

    def add_listener(self, listener: Listener):
        self._listeners.append(listener)

    def recent(self, session_id: str | None = None, type: str | None = None) -> list[Notification]:
        return [
            n for n in self._history
            if (session_id is None or n.session_id == session_id)
            and (type is None or n.type == type)
        ]

    async def emit(self, session_id: str, user_id: str, type: str, payload: dict[str, Any] | None = None) -> Notification:
        if type not in NOTIFICATION_TYPES:
            raise ValueError(f"Unknown notification type: {type}")

        notification = Notification(session_id=session_id, user_id=user_id, type=type, payload=payload or {})
        self._history.append(notification)
        log = logger.warning if type in ("warning", "alert") else logger.info
        log(notification.render())

        results = await asyncio.gather(
            *(listener(notification) for listener in self._listeners),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, Exception):
                logger.warning(f"Notification listener failed for session {session_id}: {result}")
        return notification
