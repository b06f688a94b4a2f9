"""Telegram bot for session notifications and remote stop."""

import asyncio
import logging
import threading
from typing import TYPE_CHECKING, Optional

from telegram import Update, InlineKeyboardButton, InlineKeyboardMarkup
from telegram.ext import (
    Application,
    CommandHandler,
    CallbackQueryHandler,
    ContextTypes,
)

from session_guard.services.notifications import Notification
from session_guard.utils.constants import TerminationReason

if TYPE_CHECKING:
    from session_guard.engine.runtime import Runtime

logger = logging.getLogger(__name__)


class TelegramBot:
    """Telegram bot running in a background thread with its own event loop.

    Commands that change session state are handed back to the application
    loop, where the scheduler and coordinator live.
    """

    def __init__(self, token: str, chat_ids: list[int], runtime: "Runtime"):
        self.token = token
        self.chat_ids = set(chat_ids)
        self.runtime = runtime
        self._app: Optional[Application] = None
        self._thread: Optional[threading.Thread] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._main_loop: Optional[asyncio.AbstractEventLoop] = None

    def _is_authorized(self, user_id: int) -> bool:
        return user_id in self.chat_ids

    async def _check_auth(self, update: Update) -> bool:
        if not update.effective_user or not self._is_authorized(update.effective_user.id):
            if update.message:
                await update.message.reply_text("Unauthorized.")
            return False
        return True

    async def _on_main_loop(self, coro):
        if self._main_loop is None:
            return await coro
        future = asyncio.run_coroutine_threadsafe(coro, self._main_loop)
        return await asyncio.wrap_future(future)

    async def _cmd_status(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        if not await self._check_auth(update):
            return

        status = self.runtime.scheduler.status()
        active = self.runtime.store.find_active_sessions()
        counts = status["job_counts"]
        scheduler_str = "running" if status["running"] else "stopped"
        text = (
            f"Scheduler: {scheduler_str}\n"
            f"Jobs: {counts['pending']} pending, {counts['active']} running, {counts['failed']} dead-lettered\n"
            f"Active sessions: {len(active)}"
        )
        await update.message.reply_text(text)

    async def _cmd_sessions(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        if not await self._check_auth(update):
            return

        sessions = self.runtime.store.find_active_sessions()
        if not sessions:
            await update.message.reply_text("No active sessions.")
            return

        lines = []
        for s in sessions:
            lines.append(
                f"{s.id[:8]} | user {s.user_id} | pnl {s.realized_pnl:.2f} / -{s.loss_limit_amount:.2f} "
                f"| {s.trade_count} trades"
            )
        await update.message.reply_text("\n".join(lines))

    async def _cmd_stop(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        if not await self._check_auth(update):
            return

        if not context.args:
            await update.message.reply_text("Usage: /stop <session_id>")
            return

        session_id = context.args[0]
        session = self.runtime.store.get_session(session_id)
        if session is None or not session.is_active:
            await update.message.reply_text(f"No active session {session_id}.")
            return

        keyboard = InlineKeyboardMarkup([
            [
                InlineKeyboardButton("Yes, emergency stop", callback_data=f"confirm_stop:{session_id}"),
                InlineKeyboardButton("Cancel", callback_data="cancel"),
            ]
        ])
        await update.message.reply_text(
            f"Emergency-stop session {session_id} (user {session.user_id})?",
            reply_markup=keyboard,
        )

    async def _handle_callback(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        query = update.callback_query
        if not query or not query.from_user or not self._is_authorized(query.from_user.id):
            return

        await query.answer()

        if query.data == "cancel":
            await query.edit_message_text("Cancelled.")
            return

        if query.data and query.data.startswith("confirm_stop:"):
            session_id = query.data.split(":", 1)[1]
            await query.edit_message_text("Emergency stop in progress...")
            applied = await self._on_main_loop(
                self.runtime.coordinator.terminate(session_id, TerminationReason.EMERGENCY_STOP)
            )
            if applied:
                await query.edit_message_text(f"Session {session_id} emergency-stopped.")
            else:
                await query.edit_message_text(f"Session {session_id} was already terminated.")

    async def send_notification(self, message: str):
        """Send a message to all whitelisted chat IDs."""
        if not self._app or not self._app.bot:
            return
        for chat_id in self.chat_ids:
            try:
                await self._app.bot.send_message(chat_id=chat_id, text=message)
            except Exception as e:
                logger.warning(f"Failed to send Telegram notification to {chat_id}: {e}")

    async def on_notification(self, notification: Notification):
        """NotificationDispatcher listener; forwards onto the bot's loop."""
        if self._loop is None or not self._loop.is_running():
            return
        future = asyncio.run_coroutine_threadsafe(self.send_notification(notification.render()), self._loop)
        await asyncio.wrap_future(future)

    def _run_bot(self):
        """Run the bot in a background thread with its own event loop."""
        self._loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self._loop)

        self._app = (
            Application.builder()
            .token(self.token)
            .build()
        )

        self._app.add_handler(CommandHandler("status", self._cmd_status))
        self._app.add_handler(CommandHandler("sessions", self._cmd_sessions))
        self._app.add_handler(CommandHandler("stop", self._cmd_stop))
        self._app.add_handler(CallbackQueryHandler(self._handle_callback))

        logger.info("Telegram bot starting...")
        self._loop.run_until_complete(self._app.initialize())
        self._loop.run_until_complete(self._app.start())
        self._loop.run_until_complete(self._app.updater.start_polling())
        self._loop.run_forever()

    def start(self):
        try:
            self._main_loop = asyncio.get_running_loop()
        except RuntimeError:
            self._main_loop = None
        self._thread = threading.Thread(target=self._run_bot, daemon=True)
        self._thread.start()

    def stop(self):
        if self._loop and self._app:
            async def _shutdown():
                await self._app.updater.stop()
                await self._app.stop()
                await self._app.shutdown()

            asyncio.run_coroutine_threadsafe(_shutdown(), self._loop).result(timeout=10)
            self._loop.call_soon_threadsafe(self._loop.stop)
