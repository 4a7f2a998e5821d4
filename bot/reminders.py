import asyncio
import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional

from backend.clock import utcnow
from backend.config import REMINDERS_INTERVAL_SEC, SUMMARY_HOUR
from backend.models.reminder import Reminder, ReminderType
from backend.models.user import User
from backend.models.water_event import WaterEvent

logger = logging.getLogger(__name__)


def local_day_bounds(day: date):
    start = datetime.combine(day, time.min).astimezone(timezone.utc)
    return start, start + timedelta(days=1)


async def create_daily_summary_reminder(user: User, day: Optional[date] = None) -> Reminder:
    day = day or date.today()
    scheduled_for = datetime.combine(day, time(hour=SUMMARY_HOUR)).astimezone(timezone.utc)
    return await Reminder.create(user=user, type=ReminderType.DAILY_SUMMARY, scheduled_for=scheduled_for, sent=False)


async def ensure_daily_summary_reminder(user: User) -> Reminder:
    pending = await Reminder.filter(user=user, type=ReminderType.DAILY_SUMMARY, sent=False).first()
    if pending:
        return pending
    today = date.today()
    if datetime.now().hour >= SUMMARY_HOUR:
        today += timedelta(days=1)
    return await create_daily_summary_reminder(user, today)


async def daily_totals(user: User, day: date):
    start, end = local_day_bounds(day)
    events = await WaterEvent.filter(user=user, started_at__gte=start, started_at__lt=end).all()
    total_seconds = sum(e.duration_seconds or 0 for e in events)
    return len(events), total_seconds // 60


async def send_reminder(registry, reminder: Reminder):
    user = await reminder.user
    if reminder.type == ReminderType.DAILY_SUMMARY:
        day = reminder.scheduled_for.astimezone().date()
        monitor = await registry.get(user)
        if monitor.notifications_enabled:
            event_count, total_minutes = await daily_totals(user, day)
            await monitor.dispatcher.on_daily_summary(event_count, total_minutes)
        # The summary repeats every day
        await create_daily_summary_reminder(user, day + timedelta(days=1))
    reminder.sent = True
    reminder.sent_at = utcnow()
    await reminder.save()


async def reminders_worker(registry, interval: float = REMINDERS_INTERVAL_SEC):
    while True:
        reminders = await Reminder.filter(sent=False, scheduled_for__lte=utcnow()).all()
        for reminder in reminders:
            try:
                await send_reminder(registry, reminder)
            except Exception:
                logger.exception(f"Failed to send reminder {reminder.id}")
        await asyncio.sleep(interval)
