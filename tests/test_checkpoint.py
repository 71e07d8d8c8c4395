import os
import sys
import datetime
import json

import pytest

sys.path.append(os.path.dirname(os.path.dirname(__file__)))
from checkpoint import Checkpointer, checkpoint_key, deserialize, serialize
from db import CheckpointRepository
from exceptions import CheckpointCorrupt
from models import ExerciseRun, RoutineExercise, SessionState, SetEntry


def _state() -> SessionState:
    exercise = RoutineExercise(
        routine_exercise_id=7,
        order=1,
        exercise_id=3,
        name="Bench",
        planned_sets=2,
        planned_reps="8",
        planned_weight=60.0,
        rest_seconds=90,
    )
    state = SessionState(
        user_id=1,
        routine_id=4,
        started_at=datetime.datetime(2024, 5, 1, 18, 0, tzinfo=datetime.timezone.utc),
        idempotency_key="abc",
        exercise_runs=[
            ExerciseRun(
                routine_exercise=exercise,
                sets=[
                    SetEntry(set_number=1, weight=62.5, reps=8, completed=True, previous_weight=60.0),
                    SetEntry(set_number=2, weight=None, reps=7),
                ],
            )
        ],
        current_set_index=1,
    )
    state.rest_timer.start(40)
    return state


def test_round_trip_preserves_cursors_and_sets():
    state = _state()
    restored = deserialize(serialize(state))
    assert restored.current_exercise_index == state.current_exercise_index
    assert restored.current_set_index == state.current_set_index
    for before, after in zip(state.exercise_runs[0].sets, restored.exercise_runs[0].sets):
        assert (before.completed, before.weight, before.reps) == (
            after.completed,
            after.weight,
            after.reps,
        )
    assert restored.rest_timer.remaining_seconds == 40
    assert restored.started_at == state.started_at


def test_cursor_out_of_range_is_corrupt():
    data = json.loads(serialize(_state()))
    data["current_set_index"] = 5
    with pytest.raises(CheckpointCorrupt):
        deserialize(json.dumps(data))


def test_garbage_is_corrupt():
    with pytest.raises(CheckpointCorrupt):
        deserialize("[]")


def test_key_includes_user():
    assert checkpoint_key(1, 4) != checkpoint_key(2, 4)
    assert checkpoint_key(1, 4) == "session:1:4"


def test_repository_put_get_delete(tmp_path):
    repo = CheckpointRepository(str(tmp_path / "ckpt.db"))
    repo.put("session:1:4", "one")
    repo.put("session:1:4", "two")
    assert repo.get("session:1:4") == "two"
    assert [k for k, _ in repo.list_keys()] == ["session:1:4"]
    repo.delete("session:1:4")
    assert repo.get("session:1:4") is None


def test_checkpointer_discards_corrupt_payload(tmp_path):
    repo = CheckpointRepository(str(tmp_path / "ckpt.db"))
    repo.put("k", "{broken")
    checkpointer = Checkpointer(repo, "k")
    assert checkpointer.load() is None
    assert repo.get("k") is None


class FailingStore:
    def get(self, key):
        return None

    def put(self, key, payload):
        raise OSError("disk full")

    def delete(self, key):
        raise OSError("disk full")


def test_checkpointer_write_failures_do_not_propagate(caplog):
    checkpointer = Checkpointer(FailingStore(), "k")
    checkpointer.save(_state())
    checkpointer.clear()
    assert "Writing checkpoint k failed" in caplog.text
