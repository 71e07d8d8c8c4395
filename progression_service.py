from __future__ import annotations

import datetime
import logging
import sqlite3
from typing import Iterable, Optional

from pydantic import ValidationError

from db import LedgerRepository, RoutineRepository
from exceptions import CatalogUnavailable, ProgressionLookupFailed
from models import (
    CompletedSetRecord,
    LastSession,
    LastSet,
    RoutineExercise,
)

logger = logging.getLogger(__name__)


class ProgressionService:
    """Catalog reads, prior-performance lookups and session submission.

    This is the in-process counterpart of ``SessionClient``: the workout
    engine can use either one as its catalog, progression store and
    submission backend.
    """

    def __init__(
        self,
        routine_repo: RoutineRepository,
        ledger_repo: LedgerRepository,
    ) -> None:
        self.routines = routine_repo
        self.ledger = ledger_repo

    def get_exercises_for_routine(self, routine_id: int) -> list[RoutineExercise]:
        rows = self.routines.fetch_exercises(routine_id)
        if not rows:
            raise CatalogUnavailable(routine_id)
        try:
            return [RoutineExercise.model_validate(row) for row in rows]
        except ValidationError as e:
            logger.error("Routine %s has malformed exercises: %s", routine_id, e)
            raise CatalogUnavailable(routine_id, "malformed exercise") from e

    def get_last_session(self, user_id: int, routine_id: int) -> Optional[LastSession]:
        try:
            data = self.ledger.last_session(user_id, routine_id)
        except sqlite3.Error as e:
            raise ProgressionLookupFailed(str(e)) from e
        return LastSession.model_validate(data) if data else None

    def get_last_set_for_exercise(
        self, user_id: int, exercise_id: int
    ) -> Optional[LastSet]:
        try:
            data = self.ledger.last_set_for_exercise(user_id, exercise_id)
        except sqlite3.Error as e:
            raise ProgressionLookupFailed(str(e)) from e
        return LastSet.model_validate(data) if data else None

    def submit_completed_session(
        self,
        user_id: int,
        routine_id: int,
        started_at: datetime.datetime,
        records: Iterable[CompletedSetRecord],
        idempotency_key: str | None = None,
        duration_seconds: int | None = None,
    ) -> int:
        if self.routines.fetch_detail(routine_id) is None:
            raise ValueError(f"routine {routine_id} not found")
        records = list(records)
        session_id = self.ledger.record_session(
            user_id,
            routine_id,
            started_at,
            records,
            idempotency_key=idempotency_key,
            duration_seconds=duration_seconds,
        )
        logger.info(
            "Recorded session %s (%s sets) for user %s routine %s",
            session_id,
            len(records),
            user_id,
            routine_id,
        )
        return session_id

    def trained_today(
        self, user_id: int, routine_id: int, today: datetime.date | None = None
    ) -> dict:
        day = (today or datetime.datetime.now(datetime.timezone.utc).date()).isoformat()
        session = self.ledger.session_on_date(user_id, routine_id, day)
        return {"trained": session is not None, "session": session}
