from aiogram import F, Router
from aiogram.filters import Command, CommandObject
from aiogram.types import CallbackQuery, InlineKeyboardButton, InlineKeyboardMarkup, Message
from aiogram.utils.text_decorations import html_decoration
from backend.clock import as_utc
from backend.errors import AlreadyRunningError, NotRunningError, PersistenceError
from backend.models.user import User
from backend.models.water_event import FlowStatus
from backend.stores import EventStore
from bot.monitor import MonitorRegistry
from bot.reminders import ensure_daily_summary_reminder
import logging

logger = logging.getLogger(__name__)

router = Router()

HISTORY_SIZE = 10

NOT_REGISTERED = "Please register first with /start."
RETRY_LATER = "⚠️ Could not reach the server. Please try again."
ALREADY_RUNNING = "⚠️ Water is already running."
NOT_RUNNING = "⚠️ Water is not running. Use /on to start."

STATUS_ICONS = {
    FlowStatus.RUNNING: "🟢",
    FlowStatus.STOPPED: "⏹",
    FlowStatus.AUTO_STOPPED: "🚨",
}

HELP_TEXT = (
    "💧 <b>Water Monitor</b>\n\n"
    "/on — turn the water on\n"
    "/off — turn the water off\n"
    "/status — current session\n"
    "/history — recent sessions\n"
    "/settings — show settings\n"
    "/warning 5m — warn after this long\n"
    "/shutoff 10m — shut off after this long\n"
    "/notifications on|off — alerts\n"
    "/pair DEVICE_ID SECRET — pair your ESP32\n"
    "/test — send a test notification"
)


def get_main_keyboard():
    """Main controls under every reply."""
    return InlineKeyboardMarkup(inline_keyboard=[
        [
            InlineKeyboardButton(text="🟢 Turn on", callback_data="flow_on"),
            InlineKeyboardButton(text="🔴 Turn off", callback_data="flow_off"),
        ],
        [
            InlineKeyboardButton(text="⏱ Status", callback_data="status"),
            InlineKeyboardButton(text="📋 History", callback_data="history"),
        ],
        [
            InlineKeyboardButton(text="⚙️ Settings", callback_data="settings"),
            InlineKeyboardButton(text="❓ Help", callback_data="help"),
        ],
    ])


def format_duration(seconds) -> str:
    minutes, seconds = divmod(int(seconds or 0), 60)
    return f"{minutes}m {seconds}s"


def parse_seconds(value: str) -> int:
    """'90', '90s', '5m' -> seconds."""
    value = (value or "").strip().lower()
    if value.endswith("m"):
        return int(value[:-1]) * 60
    if value.endswith("s"):
        value = value[:-1]
    return int(value)


async def get_user(telegram_id) -> User:
    return await User.filter(telegram_id=telegram_id).first()


async def turn_on(user: User, registry: MonitorRegistry) -> str:
    monitor = await registry.get(user)
    try:
        session, delivered = await monitor.start_flow()
    except AlreadyRunningError:
        return ALREADY_RUNNING
    text = (
        "🟢 <b>Water flow started</b>\n\n"
        f"Warning after {format_duration(monitor.thresholds.warning_time)}, "
        f"auto shutoff after {format_duration(monitor.thresholds.shutoff_time)}."
    )
    if not delivered:
        text += "\n\n⚠️ The device did not confirm the command. Check it and try again."
    return text


async def turn_off(user: User, registry: MonitorRegistry) -> str:
    monitor = await registry.get(user)
    try:
        session, delivered = await monitor.stop_flow()
    except NotRunningError:
        return NOT_RUNNING
    text = f"🔴 <b>Water flow stopped</b>\n\n⏱ Duration: {format_duration(session.duration_seconds)}"
    if not delivered:
        text += "\n\n⚠️ The device did not confirm the command. Check the valve!"
    return text


async def status_text(user: User, registry: MonitorRegistry) -> str:
    monitor = await registry.get(user)
    if not monitor.running:
        return "⏹ Water is off."
    elapsed = monitor.elapsed()
    left = max(0, monitor.thresholds.shutoff_time - elapsed)
    text = (
        "🟢 <b>Water is running</b>\n\n"
        f"⏱ Running for: {format_duration(elapsed)}\n"
        f"🚨 Auto shutoff in: {format_duration(left)}"
    )
    if monitor.session.warning_sent:
        text += "\n⚠️ Warning already sent"
    return text


async def history_text(user: User) -> str:
    events = await EventStore(user).get_events(limit=HISTORY_SIZE)
    if not events:
        return "📋 No sessions yet."
    text = "📋 <b>Recent sessions</b>\n\n"
    for e in events:
        started = as_utc(e.started_at).astimezone().strftime('%d.%m %H:%M')
        duration = format_duration(e.duration_seconds) if e.duration_seconds is not None else '...'
        text += f"{STATUS_ICONS[FlowStatus(e.status)]} {started} ({duration})\n"
    return text


def settings_text(monitor) -> str:
    settings = monitor.settings
    device = html_decoration.quote(settings.esp32_device_id) if settings.device_configured else "not paired"
    return (
        "⚙️ <b>Settings</b>\n\n"
        f"⚠️ Warning after: {format_duration(settings.warning_time)}\n"
        f"🚨 Auto shutoff after: {format_duration(settings.shutoff_time)}\n"
        f"🔔 Notifications: {'on' if settings.notifications_enabled else 'off'}\n"
        f"📟 Device: {device}"
    )


async def answer(message: Message, text: str):
    await message.answer(text, reply_markup=get_main_keyboard(), parse_mode="HTML")


@router.message(Command("start"))
async def cmd_start(message: Message, registry: MonitorRegistry):
    if message.from_user is None:
        return
    telegram_id = message.from_user.id
    user = await get_user(telegram_id)
    if not user:
        logger.info(f"Registering user {telegram_id}")
        user = await User.create(telegram_id=telegram_id, name=message.from_user.first_name or None)
        greeting = "🎉 Welcome to <b>Water Monitor</b>!"
    else:
        greeting = f"👋 Welcome back, {html_decoration.quote(user.name or 'friend')}!"
    try:
        await registry.get(user)
        await ensure_daily_summary_reminder(user)
    except PersistenceError:
        await message.answer(RETRY_LATER)
        return
    await answer(message, f"{greeting}\n\n{HELP_TEXT}")


@router.message(Command("help"))
async def cmd_help(message: Message):
    await answer(message, HELP_TEXT)


@router.message(Command("on"))
async def cmd_on(message: Message, registry: MonitorRegistry):
    await _reply(message, message.from_user, lambda user: turn_on(user, registry))


@router.message(Command("off"))
async def cmd_off(message: Message, registry: MonitorRegistry):
    await _reply(message, message.from_user, lambda user: turn_off(user, registry))


@router.message(Command("status"))
async def cmd_status(message: Message, registry: MonitorRegistry):
    await _reply(message, message.from_user, lambda user: status_text(user, registry))


@router.message(Command("history"))
async def cmd_history(message: Message):
    await _reply(message, message.from_user, history_text)


@router.message(Command("settings"))
async def cmd_settings(message: Message, registry: MonitorRegistry):
    async def build(user):
        return settings_text(await registry.get(user))
    await _reply(message, message.from_user, build)


@router.message(Command("warning"))
async def cmd_warning(message: Message, command: CommandObject, registry: MonitorRegistry):
    await _update_setting(message, command, registry, "warning_time")


@router.message(Command("shutoff"))
async def cmd_shutoff(message: Message, command: CommandObject, registry: MonitorRegistry):
    await _update_setting(message, command, registry, "shutoff_time")


@router.message(Command("notifications"))
async def cmd_notifications(message: Message, command: CommandObject, registry: MonitorRegistry):
    value = (command.args or "").strip().lower()
    if value not in ("on", "off"):
        await message.answer("Usage: /notifications on|off")
        return

    async def build(user):
        monitor = await registry.get(user)
        await monitor.update_settings(notifications_enabled=value == "on")
        return settings_text(monitor)
    await _reply(message, message.from_user, build)


@router.message(Command("pair"))
async def cmd_pair(message: Message, command: CommandObject, registry: MonitorRegistry):
    parts = (command.args or "").split()
    if len(parts) != 2:
        await message.answer("Usage: /pair DEVICE_ID SECRET")
        return
    device_id, device_secret = parts

    async def build(user):
        monitor = await registry.get(user)
        if not await monitor.relay.pair_device(device_id, device_secret):
            return RETRY_LATER
        await monitor.load()
        return f"📟 Device <b>{html_decoration.quote(device_id)}</b> paired."
    await _reply(message, message.from_user, build)


@router.message(Command("test"))
async def cmd_test(message: Message, registry: MonitorRegistry):
    async def build(user):
        monitor = await registry.get(user)
        await monitor.dispatcher.on_test()
        return "💧 Test notification sent."
    await _reply(message, message.from_user, build)


@router.callback_query(F.data.in_({"flow_on", "flow_off", "status", "history", "settings", "help"}))
async def handle_callback(callback: CallbackQuery, registry: MonitorRegistry):
    if callback.message is None:
        await callback.answer("Message is no longer available")
        return
    builders = {
        "flow_on": lambda user: turn_on(user, registry),
        "flow_off": lambda user: turn_off(user, registry),
        "status": lambda user: status_text(user, registry),
        "history": history_text,
    }
    if callback.data == "help":
        await answer(callback.message, HELP_TEXT)
    elif callback.data == "settings":
        async def build(user):
            return settings_text(await registry.get(user))
        await _reply(callback.message, callback.from_user, build)
    else:
        await _reply(callback.message, callback.from_user, builders[callback.data])
    await callback.answer()


async def _update_setting(message: Message, command: CommandObject, registry: MonitorRegistry, field: str):
    try:
        seconds = parse_seconds(command.args)
    except ValueError:
        await message.answer(f"Usage: /{command.command} 5m (or a number of seconds)")
        return

    async def build(user):
        monitor = await registry.get(user)
        try:
            await monitor.update_settings(**{field: seconds})
        except ValueError as e:
            return f"⚠️ {html_decoration.quote(str(e))}"
        return settings_text(monitor)
    await _reply(message, message.from_user, build)


async def _reply(message: Message, from_user, build):
    if from_user is None:
        return
    user = await get_user(from_user.id)
    if not user:
        await message.answer(NOT_REGISTERED)
        return
    try:
        text = await build(user)
    except PersistenceError:
        text = RETRY_LATER
    await answer(message, text)
