"""
Expected failure conditions of the session core.

These are carried as the error side of a Result rather than raised past the
core's boundary, so callers decide how to retry or message the user.
"""


class SessionCoreError(Exception):
    """Base class for expected session-core failures."""

    code: str = "session_core_error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.default_message())

    @classmethod
    def default_message(cls) -> str:
        return cls.__name__

    @property
    def message(self) -> str:
        return str(self)


class AuthRequired(SessionCoreError):
    """No acting user is signed in."""

    code = "auth_required"

    @classmethod
    def default_message(cls) -> str:
        return "Not authenticated"


class NoActiveSession(SessionCoreError):
    """The requested action needs a session in a specific lifecycle state."""

    code = "no_active_session"

    @classmethod
    def default_message(cls) -> str:
        return "No session is waiting to start"


class StoreWriteFailed(SessionCoreError):
    """The data store rejected an insert or update."""

    code = "store_write_failed"


class StoreReadFailed(SessionCoreError):
    """A point-in-time read from the data store failed or found nothing."""

    code = "store_read_failed"
