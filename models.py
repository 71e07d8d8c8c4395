"""Typed records shared by the engine, the repositories and the HTTP layer."""

from __future__ import annotations

import datetime
import re
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from rest_timer import RestTimer


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class RoutineExercise(BaseModel):
    """One planned exercise of a routine, as served by the catalog."""

    model_config = ConfigDict(frozen=True)

    routine_exercise_id: int
    order: int = Field(ge=1)
    exercise_id: int
    name: Optional[str] = None
    planned_sets: int = Field(ge=1)
    planned_reps: Optional[str] = None
    planned_weight: Optional[float] = None
    rest_seconds: Optional[int] = Field(default=None, ge=0)
    notes: Optional[str] = None

    def planned_reps_value(self) -> Optional[int]:
        """Numeric seed for the reps input ("8-12" -> 8, "max" -> None)."""
        if self.planned_reps is None:
            return None
        match = re.search(r"\d+", self.planned_reps)
        return int(match.group()) if match else None


class SetEntry(BaseModel):
    set_number: int = Field(ge=1)
    weight: Optional[float] = None
    reps: Optional[int] = None
    completed: bool = False
    completed_at: Optional[datetime.datetime] = None
    previous_weight: Optional[float] = None
    previous_reps: Optional[int] = None


class ExerciseRun(BaseModel):
    routine_exercise: RoutineExercise
    sets: list[SetEntry] = Field(default_factory=list)
    skipped: bool = False
    finished_at: Optional[datetime.datetime] = None

    @property
    def completed_count(self) -> int:
        return sum(1 for s in self.sets if s.completed)

    @property
    def is_complete(self) -> bool:
        return bool(self.sets) and all(s.completed for s in self.sets)

    def next_incomplete(self, after: int) -> Optional[int]:
        for idx in range(after + 1, len(self.sets)):
            if not self.sets[idx].completed:
                return idx
        return None


class SessionState(BaseModel):
    """Everything needed to resume an interrupted session."""

    user_id: int
    routine_id: int
    started_at: datetime.datetime
    idempotency_key: str
    elapsed_seconds: int = 0
    exercise_runs: list[ExerciseRun]
    current_exercise_index: int = 0
    current_set_index: int = 0
    rest_timer: RestTimer = Field(default_factory=RestTimer)

    def refresh_elapsed(self, now: datetime.datetime | None = None) -> int:
        now = now or utcnow()
        self.elapsed_seconds = max(0, int((now - self.started_at).total_seconds()))
        return self.elapsed_seconds


class CompletedSetRecord(BaseModel):
    """A single ledger row. ``session_id`` is assigned by the backend."""

    session_id: Optional[int] = None
    exercise_ref_id: int
    set_number: int = Field(ge=1)
    weight: Optional[float] = None
    reps: Optional[int] = None
    completed_at: Optional[datetime.datetime] = None


class SubmitSessionRequest(BaseModel):
    user_id: int
    routine_id: int
    started_at: datetime.datetime
    idempotency_key: Optional[str] = None
    duration_seconds: Optional[int] = None
    records: list[CompletedSetRecord] = Field(default_factory=list)


class PriorSet(BaseModel):
    set_number: int
    weight: Optional[float] = None
    reps: Optional[int] = None


class PriorExercise(BaseModel):
    exercise_id: int
    name: Optional[str] = None
    sets: list[PriorSet] = Field(default_factory=list)


class LastSession(BaseModel):
    session_id: int
    started_at: datetime.datetime
    exercises: list[PriorExercise] = Field(default_factory=list)

    def for_exercise(self, exercise_id: int) -> Optional[PriorExercise]:
        for ex in self.exercises:
            if ex.exercise_id == exercise_id:
                return ex
        return None


class LastSet(BaseModel):
    weight: Optional[float] = None
    reps: Optional[int] = None
    completed_at: datetime.datetime
