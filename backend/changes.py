"""Row-level change notifications for the ``active_sessions`` table.

Tortoise signals fire for every save/delete of an :class:`ActiveSession`
instance; the feed fans each change out to the subscriptions registered for
the owning user. Queryset-level ``.delete()``/``.update()`` calls bypass
signals, so stores always go through model instances for this table.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional

from tortoise.signals import post_delete, post_save

from backend.models.water_event import ActiveSession

logger = logging.getLogger(__name__)

INSERT = "INSERT"
UPDATE = "UPDATE"
DELETE = "DELETE"


@dataclass(frozen=True)
class SessionChange:
    kind: str
    user_id: int
    water_event_id: int


ChangeCallback = Callable[[SessionChange], Awaitable[None]]


class Subscription:
    """Callback registration for one user, with an unsubscribe handle.

    The callback never runs reentrantly: changes that arrive while a previous
    invocation is pending are coalesced into a single follow-up run.
    """

    def __init__(self, feed: "ChangeFeed", user_id: int, callback: ChangeCallback):
        self.feed = feed
        self.user_id = user_id
        self.callback = callback
        self.closed = False
        self._task: Optional[asyncio.Task] = None
        self._pending: Optional[SessionChange] = None

    @property
    def busy(self) -> bool:
        return self._task is not None and not self._task.done()

    def notify(self, change: SessionChange):
        if self.closed:
            return
        if self.busy:
            self._pending = change
            return
        self._task = asyncio.ensure_future(self._run(change))

    async def _run(self, change: SessionChange):
        while change is not None and not self.closed:
            self._pending = None
            try:
                await self.callback(change)
            except Exception:
                logger.exception(f"Change callback failed for user {self.user_id}")
            change = self._pending

    async def wait(self):
        """Wait until the callback has drained every queued change."""
        while self.busy:
            await asyncio.shield(self._task)

    def unsubscribe(self):
        self.closed = True
        self.feed.remove(self)
        if self.busy and self._task is not asyncio.current_task():
            self._task.cancel()


class ChangeFeed:
    def __init__(self):
        self._subscriptions: Dict[int, List[Subscription]] = {}

    def subscribe(self, user_id: int, callback: ChangeCallback) -> Subscription:
        subscription = Subscription(self, user_id, callback)
        self._subscriptions.setdefault(user_id, []).append(subscription)
        return subscription

    def remove(self, subscription: Subscription):
        subscriptions = self._subscriptions.get(subscription.user_id, [])
        if subscription in subscriptions:
            subscriptions.remove(subscription)
        if not subscriptions:
            self._subscriptions.pop(subscription.user_id, None)

    def publish(self, change: SessionChange):
        logger.debug(f"Active session change: {change}")
        for subscription in list(self._subscriptions.get(change.user_id, [])):
            subscription.notify(change)


feed = ChangeFeed()


@post_save(ActiveSession)
async def active_session_saved(sender, instance, created, using_db, update_fields):
    kind = INSERT if created else UPDATE
    feed.publish(SessionChange(kind, instance.user_id, instance.water_event_id))


@post_delete(ActiveSession)
async def active_session_deleted(sender, instance, using_db):
    feed.publish(SessionChange(DELETE, instance.user_id, instance.water_event_id))
