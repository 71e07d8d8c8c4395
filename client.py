import datetime
from typing import Iterable, Optional

import requests

from exceptions import CatalogUnavailable, ProgressionLookupFailed
from models import (
    CompletedSetRecord,
    LastSession,
    LastSet,
    RoutineExercise,
    SubmitSessionRequest,
)


class SessionClient:
    """REST client for the workout session API.

    Provides the same catalog, progression and submission methods as
    ``ProgressionService`` so a session can run against a remote backend.
    """

    def __init__(self, base_url: str = "http://localhost:8000", timeout: float = 10.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def get_exercises_for_routine(self, routine_id: int) -> list[RoutineExercise]:
        resp = requests.get(
            f"{self.base_url}/routines/{routine_id}/exercises", timeout=self.timeout
        )
        if resp.status_code == 404:
            raise CatalogUnavailable(routine_id)
        resp.raise_for_status()
        return [RoutineExercise.model_validate(row) for row in resp.json()]

    def get_last_session(self, user_id: int, routine_id: int) -> Optional[LastSession]:
        try:
            resp = requests.get(
                f"{self.base_url}/progression/{user_id}/routines/{routine_id}/last_session",
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise ProgressionLookupFailed(str(e)) from e
        if resp.status_code == 404:
            return None
        if resp.status_code >= 400:
            raise ProgressionLookupFailed(f"HTTP {resp.status_code}")
        return LastSession.model_validate(resp.json())

    def get_last_set_for_exercise(self, user_id: int, exercise_id: int) -> Optional[LastSet]:
        try:
            resp = requests.get(
                f"{self.base_url}/progression/{user_id}/exercises/{exercise_id}/last_set",
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise ProgressionLookupFailed(str(e)) from e
        if resp.status_code >= 400:
            raise ProgressionLookupFailed(f"HTTP {resp.status_code}")
        data = resp.json()
        if data.get("completed_at") is None:
            return None
        return LastSet.model_validate(data)

    def trained_today(self, user_id: int, routine_id: int) -> dict:
        resp = requests.get(
            f"{self.base_url}/progression/{user_id}/routines/{routine_id}/today",
            timeout=self.timeout,
        )
        resp.raise_for_status()
        return resp.json()

    def submit_completed_session(
        self,
        user_id: int,
        routine_id: int,
        started_at: datetime.datetime,
        records: Iterable[CompletedSetRecord],
        idempotency_key: str | None = None,
        duration_seconds: int | None = None,
    ) -> int:
        payload = SubmitSessionRequest(
            user_id=user_id,
            routine_id=routine_id,
            started_at=started_at,
            idempotency_key=idempotency_key,
            duration_seconds=duration_seconds,
            records=list(records),
        )
        resp = requests.post(
            f"{self.base_url}/sessions",
            json=payload.model_dump(mode="json"),
            timeout=self.timeout,
        )
        resp.raise_for_status()
        return resp.json()["session_id"]
