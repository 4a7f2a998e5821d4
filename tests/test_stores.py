import asyncio
from datetime import timedelta

import pytest

from backend.changes import DELETE, INSERT, ChangeFeed, SessionChange
from backend.errors import AlreadyRunningError, NotAuthenticatedError, NotRunningError
from backend.models import ActiveSession, FlowStatus, WaterEvent
from backend.stores import EventStore, SettingsStore
from tests.conftest import START


async def test_settings_are_created_with_defaults(user):
    store = SettingsStore(user)
    assert await store.get_settings() is None
    settings = await store.create_settings()
    assert settings.warning_time == 300
    assert settings.shutoff_time == 600
    assert settings.notifications_enabled is True
    assert settings.brightness == 100
    assert (await store.get_settings()).id == settings.id


async def test_update_settings(user):
    store = SettingsStore(user)
    await store.create_settings()
    settings = await store.update_settings(warning_time=120, notifications_enabled=False)
    assert settings.warning_time == 120
    assert settings.shutoff_time == 600
    reloaded = await store.get_settings()
    assert reloaded.warning_time == 120
    assert reloaded.notifications_enabled is False


async def test_update_settings_creates_missing_row(user):
    settings = await SettingsStore(user).update_settings(esp32_device_id="esp-1", esp32_secret="s3cret")
    assert settings.device_configured
    assert settings.warning_time == 300


@pytest.mark.parametrize("updates", [
    {"warning_time": 600},
    {"shutoff_time": 100},
    {"warning_time": 0},
    {"brightness": 101},
    {"color": "blue"},
])
async def test_update_settings_rejects_invalid_values(user, updates):
    store = SettingsStore(user)
    await store.create_settings()
    with pytest.raises(ValueError):
        await store.update_settings(**updates)
    assert (await store.get_settings()).warning_time == 300


async def test_stores_need_a_user(db):
    with pytest.raises(NotAuthenticatedError):
        await SettingsStore(None).get_settings()
    with pytest.raises(NotAuthenticatedError):
        await EventStore(None).start_flow()


async def test_start_and_stop_flow(user):
    store = EventStore(user)
    event = await store.start_flow(started_at=START)
    assert event.status == FlowStatus.RUNNING
    active = await store.get_active_session()
    assert active.id == event.id

    stopped = await store.stop_flow(event.id, stopped_at=START + timedelta(seconds=125))
    assert stopped.duration_seconds == 125
    assert stopped.status == FlowStatus.STOPPED
    assert stopped.auto_shutoff is False
    assert await store.get_active_session() is None
    assert not await ActiveSession.exists()


async def test_auto_stop(user):
    store = EventStore(user)
    event = await store.start_flow(started_at=START)
    await store.stop_flow(event.id, auto_shutoff=True, stopped_at=START + timedelta(seconds=600))
    saved = await WaterEvent.get(id=event.id)
    assert saved.status == FlowStatus.AUTO_STOPPED
    assert saved.auto_shutoff is True
    assert saved.duration_seconds == 600


async def test_only_one_running_flow(user):
    store = EventStore(user)
    await store.start_flow()
    with pytest.raises(AlreadyRunningError):
        await store.start_flow()
    assert await WaterEvent.filter(user=user).count() == 1


async def test_stop_unknown_or_finished_flow(user):
    store = EventStore(user)
    with pytest.raises(NotRunningError):
        await store.stop_flow(12345)
    event = await store.start_flow()
    await store.stop_flow(event.id)
    with pytest.raises(NotRunningError):
        await store.stop_flow(event.id)


async def test_mark_warning_sent(user):
    store = EventStore(user)
    event = await store.start_flow()
    await store.mark_warning_sent(event.id)
    assert (await store.get_active_session()).warning_sent is True


async def test_events_most_recent_first_limited_to_50(user):
    for i in range(55):
        await WaterEvent.create(
            user=user,
            started_at=START + timedelta(minutes=i),
            status=FlowStatus.STOPPED,
            duration_seconds=i,
        )
    events = await EventStore(user).get_events()
    assert len(events) == 50
    assert events[0].duration_seconds == 54
    assert events[-1].duration_seconds == 5


async def test_subscription_sees_insert_and_delete(user):
    store = EventStore(user)
    changes = []

    async def on_change(change):
        changes.append(change.kind)

    subscription = store.subscribe(on_change)
    event = await store.start_flow()
    await subscription.wait()
    await store.stop_flow(event.id)
    await subscription.wait()
    assert changes == [INSERT, DELETE]

    subscription.unsubscribe()
    await store.start_flow()
    await asyncio.sleep(0)
    assert changes == [INSERT, DELETE]


async def test_subscription_ignores_other_users(user):
    from backend.models import User
    other = await User.create(telegram_id=2002)
    changes = []

    async def on_change(change):
        changes.append(change)

    subscription = EventStore(user).subscribe(on_change)
    await EventStore(other).start_flow()
    await asyncio.sleep(0)
    await subscription.wait()
    assert changes == []
    subscription.unsubscribe()


async def test_subscription_callback_is_never_reentrant():
    feed = ChangeFeed()
    release = asyncio.Event()
    running = 0
    max_running = 0
    seen = []

    async def slow_callback(change):
        nonlocal running, max_running
        running += 1
        max_running = max(max_running, running)
        seen.append(change.water_event_id)
        await release.wait()
        running -= 1

    subscription = feed.subscribe(1, slow_callback)
    for event_id in (1, 2, 3):
        feed.publish(SessionChange(INSERT, 1, event_id))
        await asyncio.sleep(0)
    release.set()
    await subscription.wait()

    assert max_running == 1
    # changes published while busy collapse into one follow-up run
    assert seen == [1, 3]
