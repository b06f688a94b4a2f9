"""Tests for the Telegram /stop confirmation flow."""

import asyncio
import threading
from unittest.mock import AsyncMock, MagicMock

import pytest

from session_guard.services.telegram_bot import TelegramBot
from session_guard.utils.constants import SessionStatus, TerminationReason

OPERATOR_ID = 42


def _callback_update(user_id: int, data: str) -> MagicMock:
    update = MagicMock()
    query = update.callback_query
    query.from_user.id = user_id
    query.data = data
    query.answer = AsyncMock()
    query.edit_message_text = AsyncMock()
    return update


@pytest.fixture
def bot(runtime):
    return TelegramBot("test-token", [OPERATOR_ID], runtime)


@pytest.fixture
def main_loop():
    """An application loop running in its own thread, as under uvicorn."""
    loop = asyncio.new_event_loop()
    thread = threading.Thread(target=loop.run_forever, daemon=True)
    thread.start()
    yield loop
    loop.call_soon_threadsafe(loop.stop)
    thread.join(timeout=5)
    loop.close()


class TestStopCallback:
    @pytest.mark.asyncio
    async def test_confirm_emergency_stops_session(self, runtime, make_session, bot):
        session = make_session()
        update = _callback_update(OPERATOR_ID, f"confirm_stop:{session.id}")

        await bot._handle_callback(update, MagicMock())

        stored = runtime.store.get_session(session.id)
        assert stored.status == SessionStatus.EMERGENCY_STOPPED
        assert stored.termination_reason == TerminationReason.EMERGENCY_STOP
        update.callback_query.answer.assert_awaited_once()
        update.callback_query.edit_message_text.assert_awaited_with(f"Session {session.id} emergency-stopped.")

    @pytest.mark.asyncio
    async def test_confirm_on_terminated_session(self, make_session, bot):
        session = make_session(status=SessionStatus.EXPIRED)
        update = _callback_update(OPERATOR_ID, f"confirm_stop:{session.id}")

        await bot._handle_callback(update, MagicMock())

        update.callback_query.edit_message_text.assert_awaited_with(f"Session {session.id} was already terminated.")

    @pytest.mark.asyncio
    async def test_cancel_button(self, runtime, make_session, bot):
        session = make_session()
        update = _callback_update(OPERATOR_ID, "cancel")

        await bot._handle_callback(update, MagicMock())

        update.callback_query.edit_message_text.assert_awaited_once_with("Cancelled.")
        assert runtime.store.get_session(session.id).status == SessionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_unauthorized_user_is_ignored(self, runtime, make_session, bot):
        session = make_session()
        update = _callback_update(7, f"confirm_stop:{session.id}")

        await bot._handle_callback(update, MagicMock())

        update.callback_query.answer.assert_not_awaited()
        assert runtime.store.get_session(session.id).status == SessionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_terminate_runs_on_application_loop(self, runtime, bot, main_loop, monkeypatch):
        seen = {}

        async def terminate(session_id, reason):
            seen["loop"] = asyncio.get_running_loop()
            seen["args"] = (session_id, reason)
            return True

        monkeypatch.setattr(runtime.coordinator, "terminate", terminate)
        bot._main_loop = main_loop
        update = _callback_update(OPERATOR_ID, "confirm_stop:abc123")

        await bot._handle_callback(update, MagicMock())

        assert seen["loop"] is main_loop
        assert seen["args"] == ("abc123", TerminationReason.EMERGENCY_STOP)
        update.callback_query.edit_message_text.assert_awaited_with("Session abc123 emergency-stopped.")
