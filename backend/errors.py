class WaterMonitorError(Exception):
    """Base class for every error raised by the water monitor."""


class AlreadyRunningError(WaterMonitorError):
    """A flow session is already running for this user."""


class NotRunningError(WaterMonitorError):
    """There is no running flow session to stop."""


class DeviceCommandError(WaterMonitorError):
    """The relay or the device rejected or never received a command."""


class NotAuthenticatedError(WaterMonitorError):
    """An operation needs a user identity and none was given."""


class PersistenceError(WaterMonitorError):
    """Reading from or writing to the database failed."""
