import asyncio

import pytest
import pytest_asyncio

from backend.errors import AlreadyRunningError, NotRunningError
from backend.models import ActiveSession, FlowStatus, WaterEvent
from backend.stores import EventStore, SettingsStore
from bot.monitor import FlowMonitor, MonitorRegistry, PollHandle
from bot.relay import Command
from bot.tracker import ShutoffEvent, WarningEvent
from tests.conftest import FakeRelay, RecordingDispatcher


def build_monitor(user, clock, relay=None, poll_interval=3600):
    return FlowMonitor(
        user,
        SettingsStore(user),
        EventStore(user),
        relay or FakeRelay(),
        RecordingDispatcher(),
        poll_interval=poll_interval,
        clock=clock,
    )


@pytest_asyncio.fixture
async def monitor(user, clock):
    monitor = build_monitor(user, clock)
    await monitor.load()
    yield monitor
    await monitor.close()


async def test_load_creates_settings(monitor, user):
    assert monitor.settings is not None
    assert monitor.thresholds.warning_time == 300
    assert monitor.thresholds.shutoff_time == 600
    assert not monitor.running
    assert not monitor.polling


async def test_start_flow(monitor, clock):
    session, delivered = await monitor.start_flow()
    assert delivered is True
    assert monitor.relay.commands == [Command.ON]
    assert monitor.running
    assert monitor.polling
    assert session.started_at == clock.now
    active = await ActiveSession.get(user_id=monitor.user.id)
    assert active.water_event_id == session.id


async def test_start_twice_fails(monitor):
    await monitor.start_flow()
    with pytest.raises(AlreadyRunningError):
        await monitor.start_flow()
    assert monitor.relay.commands == [Command.ON]


async def test_start_reports_unconfirmed_command(user, clock):
    monitor = build_monitor(user, clock, relay=FakeRelay(result=False))
    await monitor.load()
    session, delivered = await monitor.start_flow()
    assert delivered is False
    assert monitor.running
    await monitor.close()


async def test_manual_stop(monitor, clock):
    session, _ = await monitor.start_flow()
    clock.advance(125)
    stopped, delivered = await monitor.stop_flow()
    assert delivered is True
    assert stopped.duration_seconds == 125
    assert stopped.status == FlowStatus.STOPPED
    assert monitor.relay.commands == [Command.ON, Command.OFF]
    assert not monitor.polling
    saved = await WaterEvent.get(id=session.id)
    assert saved.status == FlowStatus.STOPPED
    assert saved.duration_seconds == 125


async def test_stop_when_idle_fails(monitor):
    with pytest.raises(NotRunningError):
        await monitor.stop_flow()
    assert monitor.relay.commands == []


async def test_warning_then_shutoff(monitor, clock):
    session, _ = await monitor.start_flow()

    assert await monitor.tick(clock.advance(299)) == []
    assert await monitor.tick(clock.advance(1)) == [WarningEvent(session.id, 300)]
    assert monitor.dispatcher.calls == [("warning", 300)]
    assert (await WaterEvent.get(id=session.id)).warning_sent is True
    assert await monitor.tick(clock.advance(1)) == []

    assert await monitor.tick(clock.advance(299)) == [ShutoffEvent(session.id, 600)]
    assert monitor.dispatcher.calls == [("warning", 300), ("shutoff",)]
    assert monitor.relay.commands == [Command.ON, Command.OFF]
    assert not monitor.polling
    assert not monitor.running
    saved = await WaterEvent.get(id=session.id)
    assert saved.status == FlowStatus.AUTO_STOPPED
    assert saved.auto_shutoff is True
    assert saved.duration_seconds == 600
    assert not await ActiveSession.exists()


async def test_late_tick_fires_both(monitor, clock):
    session, _ = await monitor.start_flow()
    events = await monitor.tick(clock.advance(650))
    assert events == [WarningEvent(session.id, 650), ShutoffEvent(session.id, 650)]
    assert monitor.dispatcher.calls == [("warning", 650), ("shutoff",)]


async def test_disabled_notifications_still_shut_off(monitor, clock):
    await monitor.update_settings(notifications_enabled=False)
    session, _ = await monitor.start_flow()
    await monitor.tick(clock.advance(600))
    assert monitor.dispatcher.calls == []
    assert monitor.relay.commands == [Command.ON, Command.OFF]
    assert (await WaterEvent.get(id=session.id)).status == FlowStatus.AUTO_STOPPED


async def test_new_thresholds_apply_to_running_session(monitor, clock):
    await monitor.start_flow()
    await monitor.update_settings(warning_time=60, shutoff_time=120)
    events = await monitor.tick(clock.advance(60))
    assert [type(e) for e in events] == [WarningEvent]


async def test_load_restores_running_session(monitor, user, clock):
    session, _ = await monitor.start_flow()
    await monitor.close()

    restored = build_monitor(user, clock)
    await restored.load()
    assert restored.running
    assert restored.polling
    assert restored.session.id == session.id
    events = await restored.tick(clock.advance(700))
    assert [type(e) for e in events] == [WarningEvent, ShutoffEvent]
    assert (await WaterEvent.get(id=session.id)).status == FlowStatus.AUTO_STOPPED
    await restored.close()


async def test_remote_stop_is_picked_up(monitor, user):
    monitor.subscribe()
    session, _ = await monitor.start_flow()
    await monitor._subscription.wait()

    await EventStore(user).stop_flow(session.id)
    await monitor._subscription.wait()
    assert not monitor.running
    assert not monitor.polling


async def test_poll_loop_shuts_off_on_its_own(user, clock):
    monitor = build_monitor(user, clock, poll_interval=0.01)
    await monitor.load()
    await monitor.start_flow()
    clock.advance(601)
    for _ in range(200):
        if not monitor.polling:
            break
        await asyncio.sleep(0.01)
    assert not monitor.polling
    assert monitor.dispatcher.calls == [("warning", 601), ("shutoff",)]
    assert monitor.relay.commands == [Command.ON, Command.OFF]
    await monitor.close()


async def test_poll_handle_cancel():
    calls = []

    async def callback():
        calls.append(1)

    handle = PollHandle(callback, interval=0.01)
    await asyncio.sleep(0.05)
    handle.cancel()
    count = len(calls)
    await asyncio.sleep(0.05)
    assert not handle.active
    assert count > 0
    assert len(calls) == count


async def test_registry_reuses_monitors_and_restores_active(user, clock):
    registry = MonitorRegistry(poll_interval=3600, clock=clock)
    monitor = await registry.get(user)
    assert await registry.get(user) is monitor
    await EventStore(user).start_flow(started_at=clock.now)
    await monitor._subscription.wait()
    assert monitor.running
    await registry.close()

    registry = MonitorRegistry(poll_interval=3600, clock=clock)
    assert await registry.restore_active() == 1
    assert user.id in registry
    assert (await registry.get(user)).running
    await registry.close()


async def test_settings_edited_elsewhere_apply_on_next_tick(monitor, user, clock):
    session, _ = await monitor.start_flow()
    # same as a PATCH from the admin panel: straight to the store
    await SettingsStore(user).update_settings(warning_time=30, shutoff_time=90)
    events = await monitor.tick(clock.advance(90))
    assert events == [WarningEvent(session.id, 90), ShutoffEvent(session.id, 90)]
    assert monitor.thresholds.shutoff_time == 90
    assert (await WaterEvent.get(id=session.id)).status == FlowStatus.AUTO_STOPPED
