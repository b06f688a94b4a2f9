"""Runtime: one instance of every component, wired together.

The app lifespan, the CLI and the tests all build a Runtime; nothing else
constructs components directly.
"""

import logging

from sqlalchemy.engine import Engine

from session_guard.config import Settings
from session_guard.engine.monitor import SessionMonitor
from session_guard.engine.scheduler import JobScheduler
from session_guard.engine.sweeper import CleanupSweeper
from session_guard.engine.termination import TerminationCoordinator
from session_guard.models.scheduled_job import ScheduledJob
from session_guard.services.analytics import AnalyticsEngine
from session_guard.services.cache import AnalyticsCache, InMemoryTTLCache
from session_guard.services.notifications import NotificationDispatcher
from session_guard.services.order_client import OrderClient
from session_guard.services.session_store import SessionStore
from session_guard.services.telegram_bot import TelegramBot
from session_guard.services.trading_session import TradingSessionService

logger = logging.getLogger(__name__)


class Runtime:
    def __init__(
        self,
        engine: Engine,
        settings: Settings,
        *,
        order_client: OrderClient | None = None,
        cache: AnalyticsCache | None = None,
        notifier: NotificationDispatcher | None = None,
    ):
        self.engine = engine
        self.settings = settings

        self.store = SessionStore(engine)
        self.cache = cache or InMemoryTTLCache(
            default_ttl=settings.analytics_cache_ttl_seconds,
            maxsize=settings.analytics_cache_maxsize,
        )
        self.notifier = notifier or NotificationDispatcher()
        self.order_client = order_client or OrderClient(
            settings.order_service_url, timeout=settings.order_service_timeout_seconds
        )

        self.scheduler = JobScheduler(engine, settings, on_dead_letter=self._alert_dead_letter)
        self.coordinator = TerminationCoordinator(
            self.store, self.scheduler, self.order_client, self.notifier, settings
        )
        self.analytics = AnalyticsEngine(self.store, self.cache, settings)
        self.monitor = SessionMonitor(
            self.store, self.scheduler, self.coordinator, self.notifier, self.analytics, settings
        )
        self.sweeper = CleanupSweeper(self.store, self.scheduler, self.coordinator, self.monitor, settings)
        self.sessions = TradingSessionService(self.store, self.coordinator, self.monitor, settings)

        self.monitor.register_handlers()
        self.sweeper.register_handler()

        self.telegram_bot: TelegramBot | None = None

    async def _alert_dead_letter(self, job: ScheduledJob):
        await self.notifier.emit(job.session_id, "", "alert", {
            "message": f"Job {job.id} dead-lettered: {job.last_error}",
            "job": job.to_record(),
        })

    async def start(self):
        """Restore jobs, register the daily sweep and start background services."""
        self.scheduler.start()
        self.sweeper.schedule_daily()

        if self.settings.telegram_bot_token:
            self.telegram_bot = TelegramBot(
                self.settings.telegram_bot_token, self.settings.telegram_chat_ids, self
            )
            self.notifier.add_listener(self.telegram_bot.on_notification)
            self.telegram_bot.start()
        logger.info("Runtime started")

    async def stop(self):
        if self.telegram_bot:
            self.telegram_bot.stop()
        self.scheduler.shutdown()
        await self.order_client.close()
        logger.info("Runtime stopped")
