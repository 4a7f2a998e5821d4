from enum import Enum
from tortoise import fields
from tortoise.models import Model

class FlowStatus(str, Enum):
    RUNNING = "running"
    STOPPED = "stopped"
    AUTO_STOPPED = "auto_stopped"

class WaterEvent(Model):
    id = fields.IntField(pk=True)
    user = fields.ForeignKeyField('models.User', related_name='water_events')
    started_at = fields.DatetimeField()
    stopped_at = fields.DatetimeField(null=True)
    duration_seconds = fields.IntField(null=True)
    status = fields.CharEnumField(FlowStatus, max_length=16, default=FlowStatus.RUNNING)
    warning_sent = fields.BooleanField(default=False)
    auto_shutoff = fields.BooleanField(default=False)
    created_at = fields.DatetimeField(auto_now_add=True)

    class Meta:
        table = "water_events"

class ActiveSession(Model):
    # One row per user at most: this is what keeps a single flow running
    id = fields.IntField(pk=True)
    user = fields.OneToOneField('models.User', related_name='active_session')
    water_event = fields.OneToOneField('models.WaterEvent', related_name='active_session')
    started_at = fields.DatetimeField()
    last_heartbeat = fields.DatetimeField()

    class Meta:
        table = "active_sessions"
