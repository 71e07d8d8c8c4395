import logging
from typing import Optional, Protocol

from pydantic import ValidationError

from exceptions import CheckpointCorrupt
from models import SessionState

logger = logging.getLogger(__name__)


class CheckpointStore(Protocol):
    """Storage contract for session snapshots (see ``CheckpointRepository``)."""

    def get(self, key: str) -> Optional[str]: ...

    def put(self, key: str, payload: str) -> None: ...

    def delete(self, key: str) -> None: ...


def checkpoint_key(user_id: int, routine_id: int) -> str:
    return f"session:{user_id}:{routine_id}"


def serialize(state: SessionState) -> str:
    return state.model_dump_json()


def deserialize(payload: str) -> SessionState:
    try:
        state = SessionState.model_validate_json(payload)
    except (ValidationError, ValueError) as e:
        raise CheckpointCorrupt(str(e)) from e
    if not state.exercise_runs:
        raise CheckpointCorrupt("checkpoint has no exercises")
    if not 0 <= state.current_exercise_index < len(state.exercise_runs):
        raise CheckpointCorrupt("exercise cursor out of range")
    run = state.exercise_runs[state.current_exercise_index]
    if run.sets and not 0 <= state.current_set_index < len(run.sets):
        raise CheckpointCorrupt("set cursor out of range")
    return state


class Checkpointer:
    """Mirrors session state into a ``CheckpointStore``.

    Writes are fire-and-forget: a failing store is logged and never aborts
    the transition that triggered the write.
    """

    def __init__(self, store: CheckpointStore, key: str) -> None:
        self.store = store
        self.key = key

    def load(self) -> Optional[SessionState]:
        """Return the stored state, discarding it if it cannot be decoded."""
        try:
            payload = self.store.get(self.key)
        except Exception:
            logger.exception("Reading checkpoint %s failed", self.key)
            return None
        if payload is None:
            return None
        try:
            return deserialize(payload)
        except CheckpointCorrupt as e:
            logger.warning("Discarding corrupt checkpoint %s: %s", self.key, e)
            self.clear()
            return None

    def save(self, state: SessionState) -> None:
        try:
            self.store.put(self.key, serialize(state))
        except Exception:
            logger.exception("Writing checkpoint %s failed", self.key)

    def clear(self) -> None:
        try:
            self.store.delete(self.key)
        except Exception:
            logger.exception("Deleting checkpoint %s failed", self.key)
