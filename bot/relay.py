import asyncio
import logging
from enum import Enum

import aiohttp

from backend.config import RELAY_API_KEY, RELAY_TIMEOUT_SEC, RELAY_URL
from backend.errors import DeviceCommandError, NotAuthenticatedError, PersistenceError
from backend.stores import SettingsStore

logger = logging.getLogger(__name__)


class Command(str, Enum):
    ON = "on"
    OFF = "off"


class CommandRelayClient:
    """Sends on/off commands to the valve through the relay function.

    Delivery is at-most-once: nothing is retried, and every failure is
    logged and reported as ``False``.
    """

    def __init__(self, settings_store: SettingsStore, url: str = RELAY_URL,
                 api_key: str = RELAY_API_KEY, timeout: float = RELAY_TIMEOUT_SEC):
        self.settings_store = settings_store
        self.url = url
        self.api_key = api_key
        self.timeout = aiohttp.ClientTimeout(total=timeout)

    async def send(self, command) -> bool:
        command = Command(command)
        try:
            success = await self._post(command)
        # ValueError covers a reply body that is not valid JSON
        except (DeviceCommandError, NotAuthenticatedError, PersistenceError,
                aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.error(f"ESP32 command '{command.value}' failed: {e}")
            return False
        if success:
            logger.info(f"ESP32 command '{command.value}' delivered")
        else:
            logger.error(f"ESP32 command '{command.value}' was not confirmed by the relay")
        return success

    async def _post(self, command: Command) -> bool:
        settings = await self.settings_store.get_settings()
        if settings is None or not settings.device_configured:
            raise DeviceCommandError("ESP32 device not configured")
        payload = {
            "device_id": settings.esp32_device_id,
            "device_secret": settings.esp32_secret,
            "command": command.value,
        }
        headers = {}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
            headers["apikey"] = self.api_key
        async with aiohttp.ClientSession(timeout=self.timeout) as http:
            async with http.post(self.url, json=payload, headers=headers) as resp:
                if resp.status != 200:
                    detail = await resp.text()
                    raise DeviceCommandError(f"relay answered {resp.status}: {detail}")
                data = await resp.json()
        if not isinstance(data, dict):
            raise DeviceCommandError(f"unexpected relay reply: {data!r}")
        return bool(data.get("success"))

    async def pair_device(self, device_id: str, device_secret: str) -> bool:
        try:
            await self.settings_store.update_settings(
                esp32_device_id=device_id,
                esp32_secret=device_secret,
            )
        except (NotAuthenticatedError, PersistenceError) as e:
            logger.error(f"Device pairing failed: {e}")
            return False
        logger.info(f"Paired device {device_id}")
        return True
