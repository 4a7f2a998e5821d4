"""Session timer for a single water flow.

The tracker mirrors the user's current session in memory and, on every
``tick``, compares the elapsed time against the warning and shutoff
thresholds. It knows nothing about the database, the device or notifications;
:mod:`bot.monitor` reacts to the events it returns.
"""
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Union

from backend.clock import as_utc, elapsed_seconds, utcnow
from backend.config import DEFAULT_SHUTOFF_TIME, DEFAULT_WARNING_TIME
from backend.errors import AlreadyRunningError, NotRunningError
from backend.models.water_event import FlowStatus
from backend.stores import validate_thresholds

SessionId = Union[int, str]


@dataclass(frozen=True)
class Thresholds:
    warning_time: int = DEFAULT_WARNING_TIME
    shutoff_time: int = DEFAULT_SHUTOFF_TIME

    def __post_init__(self):
        validate_thresholds(self.warning_time, self.shutoff_time)

    @classmethod
    def from_settings(cls, settings) -> "Thresholds":
        return cls(settings.warning_time, settings.shutoff_time)


@dataclass
class Session:
    id: SessionId
    started_at: datetime
    stopped_at: Optional[datetime] = None
    duration_seconds: Optional[int] = None
    status: FlowStatus = FlowStatus.RUNNING
    warning_sent: bool = False
    auto_shutoff: bool = False

    @property
    def running(self) -> bool:
        return self.status == FlowStatus.RUNNING

    def elapsed(self, now: datetime) -> int:
        if self.duration_seconds is not None:
            return self.duration_seconds
        return elapsed_seconds(self.started_at, now)

    @classmethod
    def from_event(cls, event) -> "Session":
        return cls(
            id=event.id,
            started_at=as_utc(event.started_at),
            stopped_at=as_utc(event.stopped_at) if event.stopped_at else None,
            duration_seconds=event.duration_seconds,
            status=FlowStatus(event.status),
            warning_sent=event.warning_sent,
            auto_shutoff=event.auto_shutoff,
        )


@dataclass(frozen=True)
class WarningEvent:
    session_id: SessionId
    elapsed: int


@dataclass(frozen=True)
class ShutoffEvent:
    session_id: SessionId
    elapsed: int


class SessionTracker:
    def __init__(self, thresholds: Optional[Thresholds] = None, clock=utcnow):
        self.thresholds = thresholds or Thresholds()
        self.clock = clock
        self.session: Optional[Session] = None

    @property
    def running(self) -> bool:
        return self.session is not None and self.session.running

    def start(self, session_id: Optional[SessionId] = None, now: Optional[datetime] = None) -> Session:
        if self.running:
            raise AlreadyRunningError(f"Session {self.session.id} is already running")
        self.session = Session(
            id=session_id if session_id is not None else uuid.uuid4().hex,
            started_at=as_utc(now or self.clock()),
        )
        return self.session

    def restore(self, session: Session):
        """Adopt the durable copy of a session, e.g. after a reload.

        Re-adopting the session already being tracked keeps the in-memory
        flags, so a warning that was shown but not yet persisted is not shown
        twice.
        """
        if self.running and self.session.id == session.id:
            return
        self.session = session

    def clear(self):
        self.session = None

    def tick(self, now: Optional[datetime] = None) -> List[Union[WarningEvent, ShutoffEvent]]:
        if not self.running:
            return []
        now = now or self.clock()
        session = self.session
        elapsed = session.elapsed(now)
        events = []
        if elapsed >= self.thresholds.warning_time and not session.warning_sent:
            session.warning_sent = True
            events.append(WarningEvent(session.id, elapsed))
        if elapsed >= self.thresholds.shutoff_time and not session.auto_shutoff:
            session.auto_shutoff = True
            self._finish(now, FlowStatus.AUTO_STOPPED)
            events.append(ShutoffEvent(session.id, elapsed))
        return events

    def stop(self, manual: bool = True, now: Optional[datetime] = None) -> Session:
        if not self.running:
            raise NotRunningError("No water flow session is running")
        return self._finish(now or self.clock(), FlowStatus.STOPPED if manual else FlowStatus.AUTO_STOPPED)

    def _finish(self, now: datetime, status: FlowStatus) -> Session:
        session = self.session
        session.stopped_at = as_utc(now)
        session.duration_seconds = elapsed_seconds(session.started_at, now)
        session.status = status
        return session
