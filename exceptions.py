class SessionError(Exception):
    """Base class for workout session errors."""


class CatalogUnavailable(SessionError, LookupError):
    """The routine has no (valid) exercises; no session can be started."""

    def __init__(self, routine_id: int, reason: str = "no exercises") -> None:
        super().__init__(f"routine {routine_id}: {reason}")
        self.routine_id = routine_id
        self.reason = reason


class ProgressionLookupFailed(SessionError):
    """Prior performance could not be read. Treated as no prior data."""


class SubmitFailed(SessionError):
    """The completed session could not be persisted after retrying."""

    def __init__(self, message: str, attempts: int = 1) -> None:
        super().__init__(message)
        self.attempts = attempts


class CheckpointCorrupt(SessionError, ValueError):
    """A stored checkpoint could not be decoded."""


class InvalidTransition(SessionError, ValueError):
    """A user action is not allowed in the current session state."""


class SessionBusy(SessionError):
    """A finalize call is already in flight."""
