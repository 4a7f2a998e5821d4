"""Settings and event stores backed by tortoise models.

Both stores are bound to one user. ORM failures surface as
:class:`PersistenceError`; a missing user raises :class:`NotAuthenticatedError`.
"""
import logging
from contextlib import contextmanager
from datetime import datetime
from typing import List, Optional

from tortoise.exceptions import BaseORMException, IntegrityError
from tortoise.transactions import in_transaction

from backend.changes import ChangeCallback, Subscription, feed
from backend.clock import as_utc, elapsed_seconds, utcnow
from backend.config import (
    DEFAULT_BRIGHTNESS,
    DEFAULT_NOTIFICATIONS_ENABLED,
    DEFAULT_SHUTOFF_TIME,
    DEFAULT_WARNING_TIME,
    EVENT_HISTORY_LIMIT,
)
from backend.errors import AlreadyRunningError, NotAuthenticatedError, NotRunningError, PersistenceError
from backend.models import ActiveSession, FlowStatus, User, UserSettings, WaterEvent

logger = logging.getLogger(__name__)

UPDATABLE_SETTINGS = frozenset({
    "warning_time",
    "shutoff_time",
    "notifications_enabled",
    "brightness",
    "esp32_device_id",
    "esp32_secret",
    "push_token",
})


@contextmanager
def persistence(action: str):
    try:
        yield
    except BaseORMException as e:
        logger.error(f"Failed to {action}: {e}")
        raise PersistenceError(f"Failed to {action}: {e}") from e


def validate_thresholds(warning_time, shutoff_time):
    if warning_time <= 0:
        raise ValueError(f"warning_time must be positive, got {warning_time}")
    if shutoff_time <= warning_time:
        raise ValueError(
            f"shutoff_time ({shutoff_time}) must be greater than warning_time ({warning_time})"
        )


class _UserStore:
    def __init__(self, user: Optional[User]):
        self.user = user

    def _require_user(self) -> User:
        if self.user is None:
            raise NotAuthenticatedError("Not authenticated")
        return self.user


class SettingsStore(_UserStore):
    async def get_settings(self) -> Optional[UserSettings]:
        user = self._require_user()
        with persistence("load settings"):
            return await UserSettings.get_or_none(user=user)

    async def create_settings(self) -> UserSettings:
        user = self._require_user()
        with persistence("create settings"):
            settings = await UserSettings.create(
                user=user,
                brightness=DEFAULT_BRIGHTNESS,
                warning_time=DEFAULT_WARNING_TIME,
                shutoff_time=DEFAULT_SHUTOFF_TIME,
                notifications_enabled=DEFAULT_NOTIFICATIONS_ENABLED,
            )
        logger.info(f"Created default settings for user {user.id}")
        return settings

    async def update_settings(self, **updates) -> UserSettings:
        unknown = set(updates) - UPDATABLE_SETTINGS
        if unknown:
            raise ValueError(f"Unknown settings: {', '.join(sorted(unknown))}")
        settings = await self.get_settings()
        if settings is None:
            settings = await self.create_settings()
        validate_thresholds(
            updates.get("warning_time", settings.warning_time),
            updates.get("shutoff_time", settings.shutoff_time),
        )
        brightness = updates.get("brightness", settings.brightness)
        if not 0 <= brightness <= 100:
            raise ValueError(f"brightness must be within 0..100, got {brightness}")
        settings.update_from_dict(updates)
        with persistence("update settings"):
            await settings.save()
        return settings


class EventStore(_UserStore):
    async def get_events(self, limit: int = EVENT_HISTORY_LIMIT) -> List[WaterEvent]:
        user = self._require_user()
        with persistence("load events"):
            return await WaterEvent.filter(user=user).order_by("-created_at", "-id").limit(limit)

    async def get_active_session(self) -> Optional[WaterEvent]:
        user = self._require_user()
        with persistence("load active session"):
            active = await ActiveSession.filter(user=user).prefetch_related("water_event").first()
        return active.water_event if active else None

    async def start_flow(self, started_at: Optional[datetime] = None) -> WaterEvent:
        user = self._require_user()
        started_at = as_utc(started_at or utcnow())
        with persistence("start flow"):
            if await ActiveSession.filter(user=user).exists():
                raise AlreadyRunningError(f"User {user.id} already has a running session")
            try:
                async with in_transaction():
                    event = await WaterEvent.create(
                        user=user,
                        started_at=started_at,
                        status=FlowStatus.RUNNING,
                        warning_sent=False,
                        auto_shutoff=False,
                    )
                    await ActiveSession.create(
                        user=user,
                        water_event=event,
                        started_at=started_at,
                        last_heartbeat=started_at,
                    )
            except IntegrityError as e:
                raise AlreadyRunningError(f"User {user.id} already has a running session") from e
        logger.info(f"Flow started for user {user.id}: event {event.id}")
        return event

    async def stop_flow(self, event_id, auto_shutoff: bool = False,
                        stopped_at: Optional[datetime] = None) -> WaterEvent:
        user = self._require_user()
        stopped_at = as_utc(stopped_at or utcnow())
        with persistence("stop flow"):
            event = await WaterEvent.get_or_none(id=event_id, user=user)
            if event is None or event.status != FlowStatus.RUNNING:
                raise NotRunningError(f"Event {event_id} is not running")
            event.stopped_at = stopped_at
            event.duration_seconds = elapsed_seconds(event.started_at, stopped_at)
            event.status = FlowStatus.AUTO_STOPPED if auto_shutoff else FlowStatus.STOPPED
            event.auto_shutoff = auto_shutoff
            async with in_transaction():
                await event.save()
                active = await ActiveSession.get_or_none(water_event_id=event.id)
                if active is not None:
                    await active.delete()
        logger.info(f"Flow stopped for user {user.id}: event {event.id}, "
                    f"{event.duration_seconds}s, {event.status.value}")
        return event

    async def mark_warning_sent(self, event_id):
        user = self._require_user()
        with persistence("mark warning sent"):
            await WaterEvent.filter(id=event_id, user=user).update(warning_sent=True)

    def subscribe(self, callback: ChangeCallback) -> Subscription:
        user = self._require_user()
        return feed.subscribe(user.id, callback)
