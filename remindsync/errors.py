class ReminderError(Exception):
    """Base class for all reminder engine errors."""


class ValidationError(ReminderError, ValueError):
    """Malformed input rejected before it reaches persistence."""


class NotFoundError(ReminderError, LookupError):
    """A record requested by id does not exist locally."""


class SchedulingError(ReminderError):
    """Arming or disarming a trigger failed."""


class LocalStorageError(ReminderError):
    """The local store could not be read or written."""


class SyncConflictError(ReminderError):
    """Local and remote copies diverged and could not be merged."""


class RemoteStoreError(ReminderError):
    """A call to the remote store failed.

    Args:
        message: Human readable description
        status_code: HTTP status returned by the remote, if any
        retryable: Whether the failure is transient
    """

    def __init__(self, message: str, status_code: int = None, retryable: bool = True):
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable
