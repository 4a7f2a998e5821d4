from tortoise import fields
from tortoise.models import Model
from backend.config import (
    DEFAULT_BRIGHTNESS,
    DEFAULT_NOTIFICATIONS_ENABLED,
    DEFAULT_SHUTOFF_TIME,
    DEFAULT_WARNING_TIME,
)

class UserSettings(Model):
    id = fields.IntField(pk=True)
    user = fields.OneToOneField('models.User', related_name='settings')
    warning_time = fields.IntField(default=DEFAULT_WARNING_TIME)  # seconds
    shutoff_time = fields.IntField(default=DEFAULT_SHUTOFF_TIME)  # seconds
    notifications_enabled = fields.BooleanField(default=DEFAULT_NOTIFICATIONS_ENABLED)
    brightness = fields.IntField(default=DEFAULT_BRIGHTNESS)
    esp32_device_id = fields.CharField(max_length=128, null=True)
    esp32_secret = fields.CharField(max_length=256, null=True)
    push_token = fields.CharField(max_length=256, null=True)
    created_at = fields.DatetimeField(auto_now_add=True)
    updated_at = fields.DatetimeField(auto_now=True)

    class Meta:
        table = "user_settings"

    @property
    def device_configured(self) -> bool:
        return bool(self.esp32_device_id and self.esp32_secret)
