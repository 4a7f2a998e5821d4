import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable

import aiohttp
from aiogram import Bot
from aiogram.exceptions import TelegramAPIError
from aiogram.utils.markdown import hbold
from aiogram.utils.text_decorations import html_decoration

from backend.config import EXPO_PUSH_URL, PUSH_TIMEOUT_SEC
from backend.errors import NotAuthenticatedError, PersistenceError
from backend.stores import SettingsStore

logger = logging.getLogger(__name__)


class Channel(str, Enum):
    DEFAULT = "default"
    WARNINGS = "warnings"
    CRITICAL = "critical"


CHANNEL_ICONS = {
    Channel.DEFAULT: "💧",
    Channel.WARNINGS: "⚠️",
    Channel.CRITICAL: "🚨",
}

# Expo push priorities
CHANNEL_PRIORITY = {
    Channel.DEFAULT: "default",
    Channel.WARNINGS: "high",
    Channel.CRITICAL: "high",
}


@dataclass
class Notification:
    title: str
    body: str
    data: dict = field(default_factory=dict)
    channel: Channel = Channel.DEFAULT


class NotificationError(Exception):
    pass


class TelegramTransport:
    """Immediate alert in the user's chat."""

    def __init__(self, bot: Bot, chat_id: int):
        self.bot = bot
        self.chat_id = chat_id

    async def deliver(self, notification: Notification) -> bool:
        text = (
            f"{CHANNEL_ICONS[notification.channel]} {hbold(notification.title)}\n"
            f"{html_decoration.quote(notification.body)}"
        )
        await self.bot.send_message(
            self.chat_id,
            text,
            parse_mode="HTML",
            disable_notification=notification.channel == Channel.DEFAULT,
        )
        return True


class ExpoPushTransport:
    """Remote push through the Expo push relay, to the token the user registered."""

    def __init__(self, settings_store: SettingsStore, url: str = EXPO_PUSH_URL,
                 timeout: float = PUSH_TIMEOUT_SEC):
        self.settings_store = settings_store
        self.url = url
        self.timeout = aiohttp.ClientTimeout(total=timeout)

    async def deliver(self, notification: Notification) -> bool:
        settings = await self.settings_store.get_settings()
        if settings is None or not settings.push_token:
            return False
        message = {
            "to": settings.push_token,
            "sound": "default",
            "title": notification.title,
            "body": notification.body,
            "data": notification.data,
            "channelId": notification.channel.value,
            "priority": CHANNEL_PRIORITY[notification.channel],
        }
        headers = {
            "Accept": "application/json",
            "Accept-Encoding": "gzip, deflate",
        }
        async with aiohttp.ClientSession(timeout=self.timeout) as http:
            async with http.post(self.url, json=message, headers=headers) as resp:
                if resp.status >= 400:
                    raise NotificationError(f"push relay answered {resp.status}: {await resp.text()}")
                reply = await resp.json(content_type=None)
        # Expo reports per-message failures (e.g. DeviceNotRegistered) in a 200 ticket
        ticket = reply.get("data") if isinstance(reply, dict) else None
        if isinstance(ticket, list):
            ticket = ticket[0] if ticket else None
        if not isinstance(ticket, dict):
            raise NotificationError(f"unexpected push reply: {reply!r}")
        if ticket.get("status") == "error":
            details = ticket.get("details") or {}
            raise NotificationError(f"push rejected: {details.get('error') or ticket.get('message')}")
        return True


class NotificationDispatcher:
    def __init__(self, transports: Iterable = ()):
        self.transports = list(transports)

    async def notify(self, notification: Notification) -> int:
        """Hand the notification to every transport; returns how many took it."""
        delivered = 0
        for transport in self.transports:
            try:
                if await transport.deliver(notification):
                    delivered += 1
            except (TelegramAPIError, NotificationError, NotAuthenticatedError, PersistenceError,
                    aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
                logger.error(f"{type(transport).__name__} failed to deliver '{notification.title}': {e}")
        return delivered

    async def on_warning(self, elapsed: int) -> Notification:
        minutes, seconds = divmod(elapsed, 60)
        notification = Notification(
            title="Warning: Water Running Long",
            body=f"Water has been running for {minutes}m {seconds}s",
            data={"type": "warning", "duration": elapsed, "screen": "dashboard"},
            channel=Channel.WARNINGS,
        )
        await self.notify(notification)
        return notification

    async def on_shutoff(self) -> Notification:
        notification = Notification(
            title="Water Auto Shutoff",
            body="Water was automatically shut off due to extended usage time",
            data={"type": "shutoff", "screen": "history"},
            channel=Channel.CRITICAL,
        )
        await self.notify(notification)
        return notification

    async def on_daily_summary(self, event_count: int, total_minutes: int) -> Notification:
        plural = "" if event_count == 1 else "s"
        notification = Notification(
            title="📊 Daily Water Summary",
            body=f"{event_count} event{plural} today, {total_minutes} minutes total",
            data={"type": "summary", "screen": "history"},
        )
        await self.notify(notification)
        return notification

    async def on_test(self) -> Notification:
        notification = Notification(
            title="💧 Test Notification",
            body="Push notifications are working correctly!",
            data={"type": "test"},
        )
        await self.notify(notification)
        return notification
