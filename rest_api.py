import logging
import time

from fastapi import FastAPI, HTTPException, Request, Response

from db import (
    AsyncLedgerRepository,
    AsyncRoutineRepository,
    LedgerRepository,
    RoutineRepository,
)
from exceptions import CatalogUnavailable, ProgressionLookupFailed
from models import SubmitSessionRequest
from progression_service import ProgressionService

logger = logging.getLogger(__name__)


class RateLimiter:
    """Simple in-memory rate limiter."""

    def __init__(self, limit: int = 60, window: int = 60) -> None:
        self.limit = limit
        self.window = window
        self.requests: dict[str, list[float]] = {}

    async def __call__(self, request: Request, call_next):
        ip = request.client.host if request.client else "anon"
        now = time.time()
        history = [t for t in self.requests.get(ip, []) if now - t < self.window]
        if len(history) >= self.limit:
            return Response("rate limit exceeded", status_code=429)
        history.append(now)
        self.requests[ip] = history
        return await call_next(request)


class SessionAPI:
    """REST endpoints backing workout session execution."""

    def __init__(
        self,
        db_path: str = "workout.db",
        *,
        rate_limit: int | None = None,
        rate_window: int = 60,
    ) -> None:
        self.db_path = db_path
        self.routines = RoutineRepository(db_path)
        self.ledger = LedgerRepository(db_path)
        self.async_ledger = AsyncLedgerRepository(db_path)
        self.async_routines = AsyncRoutineRepository(db_path)
        self.progression = ProgressionService(self.routines, self.ledger)
        self.app = FastAPI(
            title="Workout Session API",
            description="Routine catalog, progression ledger and session submission",
        )
        if rate_limit is not None:
            limiter = RateLimiter(limit=rate_limit, window=rate_window)
            self.app.middleware("http")(limiter)
        self._setup_routes()

    def _setup_routes(self) -> None:
        @self.app.get(
            "/health",
            summary="Health check",
            description="Verify API and database connectivity.",
        )
        def health():
            """Return API and database connection status."""
            try:
                self.routines.fetch_all("SELECT 1;")
                return {"status": "ok"}
            except Exception as e:  # pragma: no cover - connectivity failure
                logger.exception("Health check failed")
                raise HTTPException(status_code=500, detail=str(e))

        @self.app.get("/routines/{routine_id}/exercises")
        def routine_exercises(routine_id: int):
            try:
                exercises = self.progression.get_exercises_for_routine(routine_id)
            except CatalogUnavailable as e:
                raise HTTPException(status_code=404, detail=str(e))
            return [ex.model_dump() for ex in exercises]

        @self.app.get("/progression/{user_id}/routines/{routine_id}/last_session")
        def last_session(user_id: int, routine_id: int):
            try:
                session = self.progression.get_last_session(user_id, routine_id)
            except ProgressionLookupFailed as e:
                raise HTTPException(status_code=500, detail=str(e))
            if session is None:
                raise HTTPException(status_code=404, detail="no prior session")
            return session.model_dump(mode="json")

        @self.app.get("/progression/{user_id}/exercises/{exercise_id}/last_set")
        def last_set(user_id: int, exercise_id: int):
            try:
                last = self.progression.get_last_set_for_exercise(user_id, exercise_id)
            except ProgressionLookupFailed as e:
                raise HTTPException(status_code=500, detail=str(e))
            if last is None:
                return {"weight": None, "reps": None, "completed_at": None}
            return last.model_dump(mode="json")

        @self.app.get("/progression/{user_id}/routines/{routine_id}/today")
        def trained_today(user_id: int, routine_id: int):
            return self.progression.trained_today(user_id, routine_id)

        @self.app.post("/sessions")
        async def submit_session(payload: SubmitSessionRequest):
            if await self.async_routines.fetch_detail(payload.routine_id) is None:
                raise HTTPException(status_code=404, detail="routine not found")
            try:
                sid = await self.async_ledger.record_session(
                    payload.user_id,
                    payload.routine_id,
                    payload.started_at,
                    payload.records,
                    idempotency_key=payload.idempotency_key,
                    duration_seconds=payload.duration_seconds,
                )
            except ValueError as e:
                raise HTTPException(status_code=400, detail=str(e))
            logger.info(
                "Stored session %s with %s sets", sid, len(payload.records)
            )
            return {"session_id": sid}

        @self.app.get("/sessions/{session_id}")
        def get_session(session_id: int):
            session = self.ledger.fetch_session(session_id)
            if session is None:
                raise HTTPException(status_code=404, detail="session not found")
            return session


def create_app(db_path: str = "workout.db") -> FastAPI:
    return SessionAPI(db_path=db_path).app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(create_app())
