from datetime import datetime
from typing import List, Optional

from fastapi import FastAPI, HTTPException, status
from fastapi.responses import RedirectResponse
from pydantic import BaseModel, Field
from tortoise.contrib.fastapi import register_tortoise

from backend.config import ADMIN_HOST, ADMIN_PORT, EVENT_HISTORY_LIMIT
from backend.db import tortoise_config
from backend.errors import PersistenceError
from backend.models import ActiveSession, User
from backend.stores import EventStore, SettingsStore


app = FastAPI(title="Water Monitor Admin")

register_tortoise(
    app,
    config=tortoise_config(),
    generate_schemas=True,
    add_exception_handlers=True,
)


class UserOut(BaseModel):
    id: int
    telegram_id: int
    name: Optional[str] = None
    running: bool = False


class SettingsOut(BaseModel):
    warning_time: int
    shutoff_time: int
    notifications_enabled: bool
    brightness: int
    esp32_device_id: Optional[str] = None
    push_token: Optional[str] = None
    updated_at: datetime


class WaterEventOut(BaseModel):
    id: int
    started_at: datetime
    stopped_at: Optional[datetime] = None
    duration_seconds: Optional[int] = None
    status: str
    warning_sent: bool
    auto_shutoff: bool


class UserDetail(UserOut):
    settings: SettingsOut
    events: List[WaterEventOut]


class SettingsUpdate(BaseModel):
    warning_time: Optional[int] = Field(default=None, gt=0)
    shutoff_time: Optional[int] = Field(default=None, gt=0)
    notifications_enabled: Optional[bool] = None
    brightness: Optional[int] = Field(default=None, ge=0, le=100)
    push_token: Optional[str] = None


class DevicePairing(BaseModel):
    device_id: str = Field(min_length=1)
    device_secret: str = Field(min_length=1)


def settings_out(settings) -> SettingsOut:
    return SettingsOut(
        warning_time=settings.warning_time,
        shutoff_time=settings.shutoff_time,
        notifications_enabled=settings.notifications_enabled,
        brightness=settings.brightness,
        esp32_device_id=settings.esp32_device_id,
        push_token=settings.push_token,
        updated_at=settings.updated_at,
    )


def event_out(event) -> WaterEventOut:
    return WaterEventOut(
        id=event.id,
        started_at=event.started_at,
        stopped_at=event.stopped_at,
        duration_seconds=event.duration_seconds,
        status=event.status.value,
        warning_sent=event.warning_sent,
        auto_shutoff=event.auto_shutoff,
    )


async def get_user_or_404(user_id: int) -> User:
    user = await User.get_or_none(id=user_id)
    if user is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return user


async def get_or_create_settings(store: SettingsStore):
    settings = await store.get_settings()
    if settings is None:
        settings = await store.create_settings()
    return settings


async def update_settings(user: User, updates: dict):
    try:
        return await SettingsStore(user).update_settings(**updates)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except PersistenceError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))


@app.get("/")
def root():
    return RedirectResponse("/users")


@app.get("/users", response_model=List[UserOut])
async def users():
    running = set(await ActiveSession.all().values_list("user_id", flat=True))
    return [
        UserOut(id=u.id, telegram_id=u.telegram_id, name=u.name, running=u.id in running)
        for u in await User.all().order_by("id")
    ]


@app.get("/users/{user_id}", response_model=UserDetail)
async def user_detail(user_id: int):
    user = await get_user_or_404(user_id)
    events = EventStore(user)
    settings = await get_or_create_settings(SettingsStore(user))
    return UserDetail(
        id=user.id,
        telegram_id=user.telegram_id,
        name=user.name,
        running=await events.get_active_session() is not None,
        settings=settings_out(settings),
        events=[event_out(e) for e in await events.get_events(limit=EVENT_HISTORY_LIMIT)],
    )


@app.patch("/users/{user_id}/settings", response_model=SettingsOut)
async def edit_settings(user_id: int, body: SettingsUpdate):
    user = await get_user_or_404(user_id)
    settings = await update_settings(user, body.model_dump(exclude_unset=True, exclude_none=True))
    return settings_out(settings)


@app.put("/users/{user_id}/device", response_model=SettingsOut)
async def pair_device(user_id: int, body: DevicePairing):
    user = await get_user_or_404(user_id)
    settings = await update_settings(user, {
        "esp32_device_id": body.device_id,
        "esp32_secret": body.device_secret,
    })
    return settings_out(settings)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=ADMIN_HOST, port=ADMIN_PORT)
