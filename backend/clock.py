from datetime import datetime, timezone


def utcnow():
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    # sqlite can hand back naive values; they are stored as UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def elapsed_seconds(started_at: datetime, now: datetime) -> int:
    return max(0, int((as_utc(now) - as_utc(started_at)).total_seconds()))
