import logging
import time
from typing import Any, Callable

from exceptions import SubmitFailed
from models import CompletedSetRecord, SessionState

logger = logging.getLogger(__name__)


class SessionSubmitter:
    """Write a finished session to the ledger.

    ``backend`` provides ``submit_completed_session``. Failed writes are
    retried with exponential backoff. The session's idempotency key makes a
    retry after an ambiguous failure safe.
    """

    def __init__(
        self,
        backend: Any,
        attempts: int = 3,
        backoff: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if attempts < 1:
            raise ValueError("attempts must be at least 1")
        self.backend = backend
        self.attempts = attempts
        self.backoff = backoff
        self.sleep = sleep

    def submit(
        self,
        state: SessionState,
        records: list[CompletedSetRecord],
    ) -> int:
        last_error: Exception | None = None
        for attempt in range(1, self.attempts + 1):
            try:
                session_id = self.backend.submit_completed_session(
                    state.user_id,
                    state.routine_id,
                    state.started_at,
                    records,
                    idempotency_key=state.idempotency_key,
                    duration_seconds=state.elapsed_seconds,
                )
            except Exception as e:
                last_error = e
                logger.warning(
                    "Submit attempt %s/%s for routine %s failed: %s",
                    attempt,
                    self.attempts,
                    state.routine_id,
                    e,
                )
                if attempt < self.attempts:
                    self.sleep(self.backoff * 2 ** (attempt - 1))
                continue
            logger.info(
                "Submitted %s sets for routine %s as session %s",
                len(records),
                state.routine_id,
                session_id,
            )
            return session_id
        raise SubmitFailed(
            f"could not submit session after {self.attempts} attempts: {last_error}",
            attempts=self.attempts,
        ) from last_error
