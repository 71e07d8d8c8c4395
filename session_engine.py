from __future__ import annotations

import asyncio
import datetime
import enum
import logging
import uuid
from typing import Any, Callable, Optional

from pydantic import ValidationError

from checkpoint import Checkpointer, CheckpointStore, checkpoint_key
from exceptions import (
    CatalogUnavailable,
    InvalidTransition,
    SessionBusy,
    SubmitFailed,
)
from models import (
    CompletedSetRecord,
    ExerciseRun,
    LastSession,
    RoutineExercise,
    SessionState,
    SetEntry,
    utcnow,
)
from scheduler import ManualScheduler, TimerHandle
from settings_schema import SettingsSchema
from submitter import SessionSubmitter

logger = logging.getLogger(__name__)


class SessionPhase(str, enum.Enum):
    IDLE = "idle"
    ACTIVE = "active"
    RESTING = "resting"
    FINALIZING = "finalizing"
    FINALIZED = "finalized"
    ABANDONED = "abandoned"


class Direction(str, enum.Enum):
    NEXT = "next"
    PREVIOUS = "previous"


def format_elapsed(seconds: int) -> str:
    hours, rest = divmod(max(0, int(seconds)), 3600)
    minutes, secs = divmod(rest, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


class WorkoutSession:
    """Set-by-set execution of one routine for one user.

    The session is built from the routine catalog and the progression
    ledger, or resumed from a stored checkpoint when one exists. Every
    mutating action mirrors the full state into the checkpoint store;
    ``finalize`` hands completed sets to the submitter and ``abandon``
    drops the checkpoint.

    ``catalog`` needs ``get_exercises_for_routine(routine_id)``;
    ``progression`` needs ``get_last_session(user_id, routine_id)`` and
    ``get_last_set_for_exercise(user_id, exercise_id)``. Both
    ``ProgressionService`` and ``SessionClient`` provide them.
    """

    def __init__(
        self,
        user_id: int,
        routine_id: int,
        catalog: Any,
        progression: Any,
        checkpoint_store: CheckpointStore,
        submitter: SessionSubmitter | None = None,
        scheduler: Any = None,
        settings: SettingsSchema | None = None,
        clock: Callable[[], datetime.datetime] = utcnow,
    ) -> None:
        self.user_id = user_id
        self.routine_id = routine_id
        self.catalog = catalog
        self.progression = progression
        self.settings = settings or SettingsSchema()
        self.checkpointer = Checkpointer(
            checkpoint_store, checkpoint_key(user_id, routine_id)
        )
        self.submitter = submitter or SessionSubmitter(
            progression,
            attempts=self.settings.submit_attempts,
            backoff=self.settings.submit_backoff_seconds,
        )
        self.scheduler = scheduler or ManualScheduler()
        self.clock = clock
        self.state: SessionState | None = None
        self.phase = SessionPhase.IDLE
        self.resumed = False
        self.session_id: Optional[int] = None
        self._ticker: TimerHandle | None = None
        self._pending_advance: TimerHandle | None = None
        self._finalizing = False
        self._previous_phase = SessionPhase.IDLE

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(self, auto_tick: bool = True) -> SessionState:
        """Resume from the checkpoint or build a fresh session.

        Raises ``CatalogUnavailable`` when a fresh build finds no usable
        exercises; nothing is stored in that case.
        """
        if self.phase is not SessionPhase.IDLE:
            raise InvalidTransition("session already initialized")
        state = self.checkpointer.load()
        if state is not None:
            self.resumed = True
            logger.info(
                "Resuming routine %s for user %s at exercise %s set %s",
                self.routine_id,
                self.user_id,
                state.current_exercise_index,
                state.current_set_index,
            )
        else:
            exercises = self._load_catalog()
            prior = self._lookup_last_session()
            state = SessionState(
                user_id=self.user_id,
                routine_id=self.routine_id,
                started_at=self.clock(),
                idempotency_key=uuid.uuid4().hex,
                exercise_runs=[self._build_run(ex, prior) for ex in exercises],
            )
            logger.info(
                "Started routine %s for user %s with %s exercises",
                self.routine_id,
                self.user_id,
                len(exercises),
            )
        self.state = state
        state.refresh_elapsed(self.clock())
        self.phase = (
            SessionPhase.RESTING if state.rest_timer.active else SessionPhase.ACTIVE
        )
        self._save()
        if auto_tick:
            self._ticker = self.scheduler.call_repeating(1.0, self.tick)
        # an interrupted pacing delay is not part of the snapshot
        if self.resumed and self.current_run.is_complete and not self.is_last_exercise:
            self._schedule_advance(state.current_exercise_index)
        return state

    def _load_catalog(self) -> list[RoutineExercise]:
        rows = self.catalog.get_exercises_for_routine(self.routine_id)
        if not rows:
            raise CatalogUnavailable(self.routine_id)
        try:
            exercises = [
                row
                if isinstance(row, RoutineExercise)
                else RoutineExercise.model_validate(row)
                for row in rows
            ]
        except ValidationError as e:
            raise CatalogUnavailable(self.routine_id, f"malformed exercise: {e}") from e
        orders = [ex.order for ex in exercises]
        if len(set(orders)) != len(orders):
            raise CatalogUnavailable(self.routine_id, "duplicate exercise order")
        return sorted(exercises, key=lambda ex: ex.order)

    def _lookup_last_session(self) -> Optional[LastSession]:
        try:
            return self.progression.get_last_session(self.user_id, self.routine_id)
        except Exception as e:
            logger.warning(
                "Progression lookup for routine %s failed, using planned values: %s",
                self.routine_id,
                e,
            )
            return None

    def _lookup_last_set(self, exercise_id: int):
        try:
            return self.progression.get_last_set_for_exercise(self.user_id, exercise_id)
        except Exception as e:
            logger.warning(
                "Progression lookup for exercise %s failed: %s", exercise_id, e
            )
            return None

    def _build_run(
        self, exercise: RoutineExercise, prior: Optional[LastSession]
    ) -> ExerciseRun:
        planned_reps = exercise.planned_reps_value()
        history = prior.for_exercise(exercise.exercise_id) if prior else None
        fallback = None
        if history is None or not history.sets:
            fallback = self._lookup_last_set(exercise.exercise_id)
        sets = []
        for idx in range(exercise.planned_sets):
            prev_weight, prev_reps = exercise.planned_weight, planned_reps
            if history is not None and idx < len(history.sets):
                prev_weight = _first(history.sets[idx].weight, prev_weight)
                prev_reps = _first(history.sets[idx].reps, prev_reps)
            elif fallback is not None:
                prev_weight = _first(fallback.weight, prev_weight)
                prev_reps = _first(fallback.reps, prev_reps)
            sets.append(
                SetEntry(
                    set_number=idx + 1,
                    weight=exercise.planned_weight,
                    reps=planned_reps,
                    previous_weight=prev_weight,
                    previous_reps=prev_reps,
                )
            )
        return ExerciseRun(routine_exercise=exercise, sets=sets)

    def close(self) -> None:
        """Stop timers but keep the checkpoint, e.g. when leaving the view."""
        self._cancel_pending_advance()
        if self._ticker is not None:
            self._ticker.cancel()
            self._ticker = None

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require_open(self) -> SessionState:
        if self.state is None or self.phase is SessionPhase.IDLE:
            raise InvalidTransition("session not initialized")
        if self.phase in (SessionPhase.FINALIZED, SessionPhase.ABANDONED):
            raise InvalidTransition(f"session is {self.phase.value}")
        return self.state

    def _run(self, exercise_index: int) -> ExerciseRun:
        state = self._require_open()
        if not 0 <= exercise_index < len(state.exercise_runs):
            raise InvalidTransition(f"exercise index {exercise_index} out of range")
        return state.exercise_runs[exercise_index]

    def _entry(self, exercise_index: int, set_index: int) -> SetEntry:
        run = self._run(exercise_index)
        if not 0 <= set_index < len(run.sets):
            raise InvalidTransition(f"set index {set_index} out of range")
        return run.sets[set_index]

    def _save(self) -> None:
        if self.state is not None:
            self.checkpointer.save(self.state)

    def _sync_phase(self) -> None:
        if self.phase in (SessionPhase.ACTIVE, SessionPhase.RESTING):
            self.phase = (
                SessionPhase.RESTING
                if self.state.rest_timer.active
                else SessionPhase.ACTIVE
            )

    def _cancel_pending_advance(self) -> None:
        if self._pending_advance is not None:
            self._pending_advance.cancel()
            self._pending_advance = None

    def _move_cursor(self, exercise_index: int) -> None:
        self.state.current_exercise_index = exercise_index
        self.state.current_set_index = 0

    @property
    def is_last_exercise(self) -> bool:
        state = self._require_open()
        return state.current_exercise_index == len(state.exercise_runs) - 1

    @property
    def current_run(self) -> ExerciseRun:
        state = self._require_open()
        return state.exercise_runs[state.current_exercise_index]

    @property
    def advance_pending(self) -> bool:
        return self._pending_advance is not None

    # ------------------------------------------------------------------
    # Timer
    # ------------------------------------------------------------------

    def tick(self) -> None:
        """One-second heartbeat: refresh elapsed time and count rest down."""
        if self.state is None or self.phase not in (
            SessionPhase.ACTIVE,
            SessionPhase.RESTING,
            SessionPhase.FINALIZING,
        ):
            return
        self.state.refresh_elapsed(self.clock())
        if self.state.rest_timer.tick():
            logger.debug("Rest finished on routine %s", self.routine_id)
            self._sync_phase()
            self._save()

    def skip_rest(self) -> None:
        state = self._require_open()
        state.rest_timer.skip()
        self._sync_phase()
        self._save()

    def extend_rest(self, seconds: int | None = None) -> None:
        state = self._require_open()
        state.rest_timer.extend(
            self.settings.rest_extend_seconds if seconds is None else seconds
        )
        self._save()

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def complete_set(
        self,
        exercise_index: int,
        set_index: int,
        weight: float | None = None,
        reps: int | None = None,
    ) -> bool:
        """Mark a set done. Return ``False`` if it was already completed."""
        state = self._require_open()
        entry = self._entry(exercise_index, set_index)
        if entry.completed:
            logger.debug(
                "Set %s of exercise %s already completed", set_index, exercise_index
            )
            return False
        run = state.exercise_runs[exercise_index]
        if exercise_index != state.current_exercise_index:
            raise InvalidTransition("only the current exercise can be completed")
        first_open = run.next_incomplete(-1)
        if set_index > state.current_set_index and set_index != first_open:
            raise InvalidTransition(f"set {set_index} has not been reached yet")
        _check_inputs(weight, reps)

        if weight is not None:
            entry.weight = weight
        if reps is not None:
            entry.reps = reps
        entry.completed = True
        entry.completed_at = self.clock()

        rest = run.routine_exercise.rest_seconds
        state.rest_timer.start(self.settings.default_rest_seconds if rest is None else rest)

        next_set = run.next_incomplete(set_index)
        if next_set is None:
            next_set = run.next_incomplete(-1)
        if next_set is not None:
            state.current_set_index = next_set
        else:
            run.finished_at = self.clock()
            if exercise_index < len(state.exercise_runs) - 1:
                self._schedule_advance(exercise_index)
        self._sync_phase()
        self._save()
        return True

    def _schedule_advance(self, exercise_index: int) -> None:
        self._cancel_pending_advance()

        def _advance() -> None:
            self._pending_advance = None
            if self.phase not in (SessionPhase.ACTIVE, SessionPhase.RESTING):
                return
            if self.state.current_exercise_index != exercise_index:
                return
            self._move_cursor(exercise_index + 1)
            self._save()

        self._pending_advance = self.scheduler.call_later(
            self.settings.pacing_delay_seconds, _advance
        )

    def add_set(self, exercise_index: int) -> SetEntry:
        state = self._require_open()
        run = self._run(exercise_index)
        exercise = run.routine_exercise
        reps = exercise.planned_reps_value()
        entry = SetEntry(
            set_number=len(run.sets) + 1,
            weight=exercise.planned_weight,
            reps=reps,
            previous_weight=exercise.planned_weight,
            previous_reps=reps,
        )
        run.sets.append(entry)
        run.finished_at = None
        if exercise_index == state.current_exercise_index and self.advance_pending:
            self._cancel_pending_advance()
            state.current_set_index = len(run.sets) - 1
        self._save()
        return entry

    def update_set_input(
        self, exercise_index: int, set_index: int, field: str, value: Any
    ) -> None:
        entry = self._entry(exercise_index, set_index)
        if entry.completed:
            raise InvalidTransition("completed sets cannot be edited")
        if field == "weight":
            value = None if value in (None, "") else float(value)
            _check_inputs(value, None)
        elif field == "reps":
            value = None if value in (None, "") else int(value)
            _check_inputs(None, value)
        else:
            raise InvalidTransition(f"unknown field {field!r}")
        setattr(entry, field, value)
        self._save()

    def skip_exercise(self, exercise_index: int) -> None:
        state = self._require_open()
        run = self._run(exercise_index)
        run.skipped = True
        if exercise_index < len(state.exercise_runs) - 1:
            self._cancel_pending_advance()
            self._move_cursor(exercise_index + 1)
            state.rest_timer.skip()
            self._sync_phase()
        self._save()

    def move_to_exercise(self, direction: Direction | str) -> int:
        state = self._require_open()
        direction = Direction(direction)
        step = 1 if direction is Direction.NEXT else -1
        target = min(max(state.current_exercise_index + step, 0), len(state.exercise_runs) - 1)
        self._cancel_pending_advance()
        self._move_cursor(target)
        return target

    # ------------------------------------------------------------------
    # Finalize / abandon
    # ------------------------------------------------------------------

    def completed_records(self) -> list[CompletedSetRecord]:
        state = self._require_open()
        return [
            CompletedSetRecord(
                exercise_ref_id=run.routine_exercise.routine_exercise_id,
                set_number=entry.set_number,
                weight=entry.weight,
                reps=entry.reps,
                completed_at=entry.completed_at,
            )
            for run in state.exercise_runs
            for entry in run.sets
            if entry.completed
        ]

    def _begin_finalize(self) -> list[CompletedSetRecord]:
        if self._finalizing:
            raise SessionBusy("finalize already in progress")
        state = self._require_open()
        records = self.completed_records()
        state.refresh_elapsed(self.clock())
        self._finalizing = True
        self._previous_phase = self.phase
        self.phase = SessionPhase.FINALIZING
        return records

    def _end_finalize(
        self,
        records: list[CompletedSetRecord],
        session_id: Optional[int],
        error: Exception | None,
    ) -> None:
        self._finalizing = False
        if error is not None:
            self.phase = self._previous_phase
            self._sync_phase()
            logger.error(
                "Submitting routine %s failed; checkpoint kept for retry: %s",
                self.routine_id,
                error,
            )
            return
        self.session_id = session_id
        if self.completed_records() != records:
            # Sets completed while the write was in flight are not in the
            # ledger yet. The next finalize adds them to the same session.
            self.phase = self._previous_phase
            self._sync_phase()
            self._save()
            logger.warning(
                "Routine %s changed during submit; session %s stays open",
                self.routine_id,
                session_id,
            )
            return
        self.close()
        self.checkpointer.clear()
        self.phase = SessionPhase.FINALIZED
        logger.info("Routine %s finalized as session %s", self.routine_id, session_id)

    def finalize(self) -> int:
        """Submit every completed set and clear the checkpoint.

        Raises ``SubmitFailed`` (checkpoint kept) when the ledger write could
        not be confirmed, and ``SessionBusy`` if called while in flight. If a
        set is completed during the write the session stays open; check
        ``phase`` and finalize again to add it.
        """
        records = self._begin_finalize()
        try:
            session_id = self.submitter.submit(self.state, records)
        except SubmitFailed as e:
            self._end_finalize(records, None, e)
            raise
        self._end_finalize(records, session_id, None)
        return session_id

    async def finalize_async(self) -> int:
        """Like ``finalize`` but the write runs off the event loop thread."""
        records = self._begin_finalize()
        try:
            session_id = await asyncio.to_thread(
                self.submitter.submit, self.state, records
            )
        except SubmitFailed as e:
            self._end_finalize(records, None, e)
            raise
        self._end_finalize(records, session_id, None)
        return session_id

    def abandon(self) -> None:
        self._require_open()
        if self._finalizing:
            raise SessionBusy("finalize in progress")
        self.close()
        self.checkpointer.clear()
        self.phase = SessionPhase.ABANDONED
        logger.info("Routine %s abandoned by user %s", self.routine_id, self.user_id)

    # ------------------------------------------------------------------
    # Read helpers
    # ------------------------------------------------------------------

    def progress(self) -> dict:
        state = self._require_open()
        total = sum(len(run.sets) for run in state.exercise_runs)
        done = sum(run.completed_count for run in state.exercise_runs)
        return {
            "completed_sets": done,
            "total_sets": total,
            "completed_exercises": sum(
                1 for run in state.exercise_runs if run.is_complete
            ),
            "total_exercises": len(state.exercise_runs),
            "fraction": round(done / total, 4) if total else 0.0,
        }

    def elapsed(self) -> str:
        state = self._require_open()
        return format_elapsed(state.refresh_elapsed(self.clock()))

    def neighbours(self) -> tuple[Optional[ExerciseRun], Optional[ExerciseRun]]:
        """Return the previous and next exercise runs around the cursor."""
        state = self._require_open()
        idx = state.current_exercise_index
        runs = state.exercise_runs
        prev_run = runs[idx - 1] if idx > 0 else None
        next_run = runs[idx + 1] if idx + 1 < len(runs) else None
        return prev_run, next_run


def _first(*values):
    for value in values:
        if value is not None:
            return value
    return None


def _check_inputs(weight: float | None, reps: int | None) -> None:
    if weight is not None and weight < 0:
        raise InvalidTransition("weight must be non-negative")
    if reps is not None and reps < 0:
        raise InvalidTransition("reps must be non-negative")
