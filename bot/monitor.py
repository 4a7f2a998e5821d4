"""Per-user flow monitoring.

A :class:`FlowMonitor` ties the in-memory :class:`SessionTracker` to the
stores, the valve and the notification transports. The 1-second timer is a
:class:`PollHandle` owned by the monitor; it is cancelled whenever the session
ends, the mirror is reloaded without an active session, or the monitor closes.
"""
import asyncio
import logging
from typing import Dict, Optional

from aiogram import Bot

from backend.changes import SessionChange, Subscription
from backend.clock import utcnow
from backend.config import EXPO_PUSH_URL, POLL_INTERVAL_SEC, RELAY_API_KEY, RELAY_URL
from backend.errors import AlreadyRunningError, NotRunningError, PersistenceError
from backend.models import ActiveSession, User, UserSettings
from backend.stores import EventStore, SettingsStore
from bot.notifications import ExpoPushTransport, NotificationDispatcher, TelegramTransport
from bot.relay import Command, CommandRelayClient
from bot.tracker import Session, SessionTracker, ShutoffEvent, Thresholds, WarningEvent

logger = logging.getLogger(__name__)


class PollHandle:
    """Runs ``callback`` every ``interval`` seconds until cancelled.

    Cancelling from inside the callback lets the current call finish and
    then ends the loop.
    """

    def __init__(self, callback, interval: float = POLL_INTERVAL_SEC):
        self.callback = callback
        self.interval = interval
        self.cancelled = False
        self._task = asyncio.create_task(self._run())
        self._task.add_done_callback(self._log_failure)

    @property
    def active(self) -> bool:
        return not self.cancelled and not self._task.done()

    async def _run(self):
        while not self.cancelled:
            await asyncio.sleep(self.interval)
            if self.cancelled:
                break
            await self.callback()

    def cancel(self):
        self.cancelled = True
        if self._task is not asyncio.current_task():
            self._task.cancel()

    @staticmethod
    def _log_failure(task: asyncio.Task):
        if not task.cancelled() and task.exception() is not None:
            logger.error("Poll loop died", exc_info=task.exception())


class FlowMonitor:
    def __init__(self, user: User, settings_store: SettingsStore, event_store: EventStore,
                 relay: CommandRelayClient, dispatcher: NotificationDispatcher,
                 poll_interval: float = POLL_INTERVAL_SEC, clock=utcnow):
        self.user = user
        self.settings_store = settings_store
        self.event_store = event_store
        self.relay = relay
        self.dispatcher = dispatcher
        self.poll_interval = poll_interval
        self.clock = clock
        self.tracker = SessionTracker(clock=clock)
        self.settings: Optional[UserSettings] = None
        self._poll: Optional[PollHandle] = None
        self._subscription: Optional[Subscription] = None
        self._lock = asyncio.Lock()

    @property
    def running(self) -> bool:
        return self.tracker.running

    @property
    def polling(self) -> bool:
        return self._poll is not None and self._poll.active

    @property
    def session(self) -> Optional[Session]:
        return self.tracker.session

    @property
    def thresholds(self) -> Thresholds:
        return self.tracker.thresholds

    @property
    def notifications_enabled(self) -> bool:
        return self.settings is None or self.settings.notifications_enabled

    def elapsed(self) -> int:
        if self.session is None:
            return 0
        return self.session.elapsed(self.clock())

    async def load(self):
        async with self._lock:
            settings = await self.settings_store.get_settings()
            if settings is None:
                settings = await self.settings_store.create_settings()
            self._apply_settings(settings)
            event = await self.event_store.get_active_session()
            if event is None:
                self._cancel_poll()
                self.tracker.clear()
            else:
                self.tracker.restore(Session.from_event(event))
                self._ensure_poll()

    def subscribe(self):
        if self._subscription is None:
            self._subscription = self.event_store.subscribe(self._on_change)

    async def _on_change(self, change: SessionChange):
        logger.info(f"Realtime update for user {self.user.id}: {change.kind} event {change.water_event_id}")
        try:
            await self.load()
        except PersistenceError as e:
            logger.error(f"Reload after {change.kind} failed: {e}")

    async def start_flow(self):
        async with self._lock:
            if self.tracker.running:
                raise AlreadyRunningError(f"Session {self.session.id} is already running")
            event = await self.event_store.start_flow(started_at=self.clock())
            session = self.tracker.start(session_id=event.id, now=event.started_at)
            self._ensure_poll()
            delivered = await self.relay.send(Command.ON)
        return session, delivered

    async def stop_flow(self):
        async with self._lock:
            session = self.tracker.stop(manual=True, now=self.clock())
            self._cancel_poll()
            try:
                await self.event_store.stop_flow(session.id, auto_shutoff=False, stopped_at=session.stopped_at)
            finally:
                delivered = await self.relay.send(Command.OFF)
        return session, delivered

    async def tick(self, now=None):
        async with self._lock:
            if self.tracker.running:
                await self._refresh_settings()
            events = self.tracker.tick(now or self.clock())
            for event in events:
                if isinstance(event, WarningEvent):
                    await self._handle_warning(event)
                elif isinstance(event, ShutoffEvent):
                    await self._handle_shutoff(event)
        return events

    async def _handle_warning(self, event: WarningEvent):
        logger.warning(f"User {self.user.id}: water running for {event.elapsed}s "
                       f"(warning at {self.thresholds.warning_time}s)")
        if self.notifications_enabled:
            await self.dispatcher.on_warning(event.elapsed)
        try:
            await self.event_store.mark_warning_sent(event.session_id)
        except PersistenceError as e:
            logger.error(f"Could not persist warning for event {event.session_id}: {e}")

    async def _handle_shutoff(self, event: ShutoffEvent):
        logger.warning(f"User {self.user.id}: auto shutoff after {event.elapsed}s")
        self._cancel_poll()
        session = self.tracker.session
        try:
            await self.event_store.stop_flow(event.session_id, auto_shutoff=True, stopped_at=session.stopped_at)
        except (PersistenceError, NotRunningError) as e:
            logger.error(f"Could not persist auto shutoff for event {event.session_id}: {e}")
        await self.relay.send(Command.OFF)
        if self.notifications_enabled:
            await self.dispatcher.on_shutoff()

    async def update_settings(self, **updates) -> UserSettings:
        async with self._lock:
            settings = await self.settings_store.update_settings(**updates)
            self._apply_settings(settings)
        return settings

    async def close(self):
        self._cancel_poll()
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None

    async def _refresh_settings(self):
        # Settings can also be edited by the admin panel, which runs in its own process
        try:
            settings = await self.settings_store.get_settings()
        except PersistenceError as e:
            logger.error(f"Could not refresh settings for user {self.user.id}: {e}")
            return
        if settings is not None:
            self._apply_settings(settings)

    def _apply_settings(self, settings: UserSettings):
        self.settings = settings
        self.tracker.thresholds = Thresholds.from_settings(settings)

    def _ensure_poll(self):
        if not self.polling:
            self._poll = PollHandle(self.tick, self.poll_interval)

    def _cancel_poll(self):
        if self._poll is not None:
            self._poll.cancel()
            self._poll = None


class MonitorRegistry:
    """One :class:`FlowMonitor` per user, created on first use."""

    def __init__(self, bot: Optional[Bot] = None, relay_url: str = RELAY_URL,
                 relay_api_key: str = RELAY_API_KEY, push_url: str = EXPO_PUSH_URL,
                 poll_interval: float = POLL_INTERVAL_SEC, clock=utcnow):
        self.bot = bot
        self.relay_url = relay_url
        self.relay_api_key = relay_api_key
        self.push_url = push_url
        self.poll_interval = poll_interval
        self.clock = clock
        self._monitors: Dict[int, FlowMonitor] = {}
        self._lock = asyncio.Lock()

    def __contains__(self, user_id) -> bool:
        return user_id in self._monitors

    def build(self, user: User) -> FlowMonitor:
        settings_store = SettingsStore(user)
        transports = [ExpoPushTransport(settings_store, self.push_url)]
        if self.bot is not None:
            transports.insert(0, TelegramTransport(self.bot, user.telegram_id))
        return FlowMonitor(
            user,
            settings_store,
            EventStore(user),
            CommandRelayClient(settings_store, self.relay_url, self.relay_api_key),
            NotificationDispatcher(transports),
            poll_interval=self.poll_interval,
            clock=self.clock,
        )

    async def get(self, user: User) -> FlowMonitor:
        monitor = self._monitors.get(user.id)
        if monitor is not None:
            return monitor
        async with self._lock:
            monitor = self._monitors.get(user.id)
            if monitor is None:
                monitor = self.build(user)
                await monitor.load()
                monitor.subscribe()
                self._monitors[user.id] = monitor
        return monitor

    async def restore_active(self) -> int:
        """Resume monitoring for every session left running, e.g. after a restart."""
        restored = 0
        for active in await ActiveSession.all().prefetch_related("user"):
            await self.get(active.user)
            restored += 1
        logger.info(f"Restored {restored} running session(s)")
        return restored

    async def close(self):
        for monitor in self._monitors.values():
            await monitor.close()
        self._monitors.clear()
