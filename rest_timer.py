from pydantic import BaseModel, Field

DEFAULT_EXTEND_SECONDS = 30


class RestTimer(BaseModel):
    """Second-granularity rest countdown.

    The timer never moves the exercise cursor. Reaching zero only clears
    ``active``; advancing is left to the session's delayed transition.
    """

    active: bool = False
    remaining_seconds: int = Field(0, ge=0)

    def start(self, seconds: int) -> None:
        self.remaining_seconds = max(0, int(seconds))
        self.active = self.remaining_seconds > 0

    def tick(self) -> bool:
        """Advance one second. Return ``True`` when the timer just expired."""
        if not self.active:
            return False
        self.remaining_seconds = max(0, self.remaining_seconds - 1)
        if self.remaining_seconds == 0:
            self.active = False
            return True
        return False

    def skip(self) -> None:
        self.remaining_seconds = 0
        self.active = False

    def extend(self, seconds: int = DEFAULT_EXTEND_SECONDS) -> None:
        if seconds < 0:
            raise ValueError("seconds must be non-negative")
        if not self.active:
            return
        self.remaining_seconds += int(seconds)
