from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from backend.db import close_db, init_db
from backend.models import User
from bot.relay import Command

START = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


class Clock:
    def __init__(self, now=START):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)
        return self.now


class FakeRelay:
    def __init__(self, result=True):
        self.result = result
        self.commands = []

    async def send(self, command):
        self.commands.append(Command(command))
        return self.result


class RecordingDispatcher:
    def __init__(self):
        self.calls = []

    async def on_warning(self, elapsed):
        self.calls.append(("warning", elapsed))

    async def on_shutoff(self):
        self.calls.append(("shutoff",))

    async def on_daily_summary(self, event_count, total_minutes):
        self.calls.append(("summary", event_count, total_minutes))


class FakeBot:
    def __init__(self):
        self.sent = []

    async def send_message(self, chat_id, text, **kwargs):
        self.sent.append((chat_id, text, kwargs))


@pytest.fixture
def clock():
    return Clock()


@pytest_asyncio.fixture
async def db():
    await init_db("sqlite://:memory:")
    yield
    await close_db()


@pytest_asyncio.fixture
async def user(db):
    return await User.create(telegram_id=1001, name="Sam")
