import sqlite3
import aiosqlite
import datetime
from contextlib import contextmanager, asynccontextmanager
from typing import List, Tuple, Optional, Iterable

from models import CompletedSetRecord


def _iso(ts: datetime.datetime | str | None) -> Optional[str]:
    """Normalize a timestamp to a sortable UTC ISO string."""
    if ts is None:
        return None
    if isinstance(ts, str):
        ts = datetime.datetime.fromisoformat(ts)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=datetime.timezone.utc)
    return ts.astimezone(datetime.timezone.utc).isoformat(timespec="microseconds")


def _now() -> str:
    return _iso(datetime.datetime.now(datetime.timezone.utc))


class Database:
    """Provides SQLite connection management and schema initialization."""

    _TABLE_DEFINITIONS = {
        "routines": (
            """CREATE TABLE routines (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL,
                    name TEXT NOT NULL,
                    day_of_week INTEGER,
                    created_at TEXT NOT NULL
                );""",
            ["id", "user_id", "name", "day_of_week", "created_at"],
        ),
        "routine_exercises": (
            """CREATE TABLE routine_exercises (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    routine_id INTEGER NOT NULL,
                    position INTEGER NOT NULL,
                    exercise_id INTEGER NOT NULL,
                    name TEXT,
                    planned_sets INTEGER NOT NULL DEFAULT 3,
                    planned_reps TEXT,
                    planned_weight REAL,
                    rest_seconds INTEGER,
                    notes TEXT,
                    UNIQUE(routine_id, position),
                    FOREIGN KEY(routine_id) REFERENCES routines(id) ON DELETE CASCADE
                );""",
            [
                "id",
                "routine_id",
                "position",
                "exercise_id",
                "name",
                "planned_sets",
                "planned_reps",
                "planned_weight",
                "rest_seconds",
                "notes",
            ],
        ),
        "workout_sessions": (
            """CREATE TABLE workout_sessions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL,
                    routine_id INTEGER NOT NULL,
                    started_at TEXT NOT NULL,
                    submitted_at TEXT NOT NULL,
                    duration_seconds INTEGER,
                    idempotency_key TEXT UNIQUE
                );""",
            [
                "id",
                "user_id",
                "routine_id",
                "started_at",
                "submitted_at",
                "duration_seconds",
                "idempotency_key",
            ],
        ),
        "completed_sets": (
            """CREATE TABLE completed_sets (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    session_id INTEGER NOT NULL,
                    user_id INTEGER NOT NULL,
                    exercise_ref_id INTEGER NOT NULL,
                    exercise_id INTEGER,
                    set_number INTEGER NOT NULL,
                    weight REAL,
                    reps INTEGER,
                    completed_at TEXT NOT NULL,
                    FOREIGN KEY(session_id) REFERENCES workout_sessions(id) ON DELETE CASCADE
                );""",
            [
                "id",
                "session_id",
                "user_id",
                "exercise_ref_id",
                "exercise_id",
                "set_number",
                "weight",
                "reps",
                "completed_at",
            ],
        ),
        "session_checkpoints": (
            """CREATE TABLE session_checkpoints (
                    key TEXT PRIMARY KEY,
                    payload TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );""",
            ["key", "payload", "updated_at"],
        ),
    }

    def __init__(self, db_path: str = "workout.db") -> None:
        self._db_path = db_path
        self._ensure_schema()

    @contextmanager
    def _connection(self):
        connection = sqlite3.connect(self._db_path)
        try:
            yield connection
            connection.commit()
        finally:
            connection.close()

    def _ensure_schema(self) -> None:
        with self._connection() as conn:
            cursor = conn.cursor()
            cursor.execute("PRAGMA foreign_keys=off;")
            for table, (sql, columns) in self._TABLE_DEFINITIONS.items():
                self._ensure_table(conn, table, sql, columns)
            cursor.execute("PRAGMA foreign_keys=on;")

    def _ensure_table(
        self, conn: sqlite3.Connection, table: str, sql: str, columns: List[str]
    ) -> None:
        cur = conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name=?;", (table,)
        )
        if cur.fetchone() is None:
            conn.execute(sql)
            return

        cur = conn.execute(f"PRAGMA table_info({table});")
        existing_cols = [row[1] for row in cur.fetchall()]
        if existing_cols == columns:
            return

        conn.execute(f"ALTER TABLE {table} RENAME TO {table}_old;")
        conn.execute(sql)

        common = [c for c in existing_cols if c in columns]
        if common:
            cols = ", ".join(common)
            missing = [c for c in columns if c not in existing_cols]
            if missing:
                def default_val(col: str) -> str:
                    if col == "planned_sets":
                        return "3"
                    if col in ("created_at", "submitted_at", "updated_at"):
                        return "CURRENT_TIMESTAMP"
                    return "NULL"

                defaults = ", ".join(default_val(c) for c in missing)
                conn.execute(
                    f"INSERT INTO {table} ({cols}, {', '.join(missing)}) SELECT {cols}, {defaults} FROM {table}_old;"
                )
            else:
                conn.execute(
                    f"INSERT INTO {table} ({cols}) SELECT {cols} FROM {table}_old;"
                )
        conn.execute(f"DROP TABLE {table}_old;")


class BaseRepository(Database):
    """Base repository providing helper methods."""

    def execute(self, query: str, params: Tuple = ()) -> int:
        with self._connection() as conn:
            cursor = conn.cursor()
            cursor.execute(query, params)
            return cursor.lastrowid

    def fetch_all(self, query: str, params: Tuple = ()) -> List[Tuple]:
        with self._connection() as conn:
            cursor = conn.cursor()
            cursor.execute(query, params)
            return cursor.fetchall()

    def _delete_all(self, table: str) -> None:
        self.execute(f"DELETE FROM {table};")


class AsyncDatabase(Database):
    """Provides asynchronous connection management."""

    @asynccontextmanager
    async def _async_connection(self):
        conn = await aiosqlite.connect(self._db_path)
        try:
            yield conn
            await conn.commit()
        finally:
            await conn.close()


class AsyncBaseRepository(AsyncDatabase):
    """Asynchronous variant of BaseRepository using aiosqlite."""

    async def fetch_all(self, query: str, params: Tuple = ()) -> List[Tuple]:
        async with self._async_connection() as conn:
            cursor = await conn.execute(query, params)
            rows = await cursor.fetchall()
            return rows


class RoutineRepository(BaseRepository):
    """Read access to the routine catalog plus helpers for seeding it."""

    def create(
        self, user_id: int, name: str, day_of_week: Optional[int] = None
    ) -> int:
        if not name:
            raise ValueError("name required")
        return self.execute(
            "INSERT INTO routines (user_id, name, day_of_week, created_at) VALUES (?, ?, ?, ?);",
            (user_id, name, day_of_week, _now()),
        )

    def add_exercise(
        self,
        routine_id: int,
        exercise_id: int,
        name: Optional[str] = None,
        planned_sets: int = 3,
        planned_reps: Optional[str] = None,
        planned_weight: Optional[float] = None,
        rest_seconds: Optional[int] = None,
        notes: Optional[str] = None,
        position: Optional[int] = None,
    ) -> int:
        if position is None:
            rows = self.fetch_all(
                "SELECT COALESCE(MAX(position), 0) + 1 FROM routine_exercises WHERE routine_id = ?;",
                (routine_id,),
            )
            position = int(rows[0][0]) if rows else 1
        return self.execute(
            "INSERT INTO routine_exercises (routine_id, position, exercise_id, name, planned_sets, planned_reps, planned_weight, rest_seconds, notes) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?);",
            (
                routine_id,
                position,
                exercise_id,
                name,
                planned_sets,
                planned_reps,
                planned_weight,
                rest_seconds,
                notes,
            ),
        )

    def fetch_detail(self, routine_id: int) -> Optional[Tuple[int, int, str, Optional[int]]]:
        rows = self.fetch_all(
            "SELECT id, user_id, name, day_of_week FROM routines WHERE id = ?;",
            (routine_id,),
        )
        return rows[0] if rows else None

    def fetch_exercises(self, routine_id: int) -> List[dict]:
        rows = self.fetch_all(
            "SELECT id, position, exercise_id, name, planned_sets, planned_reps, planned_weight, rest_seconds, notes "
            "FROM routine_exercises WHERE routine_id = ? ORDER BY position, id;",
            (routine_id,),
        )
        return [
            {
                "routine_exercise_id": rid,
                "order": position,
                "exercise_id": exercise_id,
                "name": name,
                "planned_sets": planned_sets,
                "planned_reps": planned_reps,
                "planned_weight": planned_weight,
                "rest_seconds": rest_seconds,
                "notes": notes,
            }
            for (
                rid,
                position,
                exercise_id,
                name,
                planned_sets,
                planned_reps,
                planned_weight,
                rest_seconds,
                notes,
            ) in rows
        ]

    def delete_all(self) -> None:
        self._delete_all("routine_exercises")
        self._delete_all("routines")


class LedgerRepository(BaseRepository):
    """Append-only ledger of submitted sessions and their completed sets."""

    def find_session(
        self,
        idempotency_key: Optional[str],
        user_id: int,
        routine_id: int,
        started_at: datetime.datetime | str,
    ) -> Optional[int]:
        if idempotency_key:
            rows = self.fetch_all(
                "SELECT id FROM workout_sessions WHERE idempotency_key = ?;",
                (idempotency_key,),
            )
            if rows:
                return int(rows[0][0])
        rows = self.fetch_all(
            "SELECT id FROM workout_sessions WHERE user_id = ? AND routine_id = ? AND started_at = ? ORDER BY id LIMIT 1;",
            (user_id, routine_id, _iso(started_at)),
        )
        return int(rows[0][0]) if rows else None

    def record_session(
        self,
        user_id: int,
        routine_id: int,
        started_at: datetime.datetime | str,
        records: Iterable[CompletedSetRecord],
        idempotency_key: Optional[str] = None,
        duration_seconds: Optional[int] = None,
    ) -> int:
        """Persist a session and its sets in one transaction.

        A repeated submission with the same idempotency key (or the same
        user, routine and start time) returns the existing session id and
        only adds sets that are not stored yet, keyed by exercise and set
        number.
        """
        existing = self.find_session(idempotency_key, user_id, routine_id, started_at)
        submitted = _now()
        with self._connection() as conn:
            if existing is None:
                cursor = conn.execute(
                    "INSERT INTO workout_sessions (user_id, routine_id, started_at, submitted_at, duration_seconds, idempotency_key) "
                    "VALUES (?, ?, ?, ?, ?, ?);",
                    (
                        user_id,
                        routine_id,
                        _iso(started_at),
                        submitted,
                        duration_seconds,
                        idempotency_key,
                    ),
                )
                session_id = cursor.lastrowid
                stored = set()
            else:
                session_id = existing
                stored = {
                    (ref_id, set_number)
                    for ref_id, set_number in conn.execute(
                        "SELECT exercise_ref_id, set_number FROM completed_sets WHERE session_id = ?;",
                        (session_id,),
                    ).fetchall()
                }
            pending = [r for r in records if (r.exercise_ref_id, r.set_number) not in stored]
            if existing is not None and pending and duration_seconds is not None:
                conn.execute(
                    "UPDATE workout_sessions SET duration_seconds = ? WHERE id = ?;",
                    (duration_seconds, session_id),
                )
            for rec in pending:
                ex_rows = conn.execute(
                    "SELECT exercise_id FROM routine_exercises WHERE id = ?;",
                    (rec.exercise_ref_id,),
                ).fetchall()
                conn.execute(
                    "INSERT INTO completed_sets (session_id, user_id, exercise_ref_id, exercise_id, set_number, weight, reps, completed_at) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?);",
                    (
                        session_id,
                        user_id,
                        rec.exercise_ref_id,
                        ex_rows[0][0] if ex_rows else None,
                        rec.set_number,
                        rec.weight,
                        rec.reps,
                        _iso(rec.completed_at) or submitted,
                    ),
                )
        return session_id

    def last_session(self, user_id: int, routine_id: int) -> Optional[dict]:
        """Return the most recent session of ``routine_id`` with its sets."""
        rows = self.fetch_all(
            "SELECT s.id, s.started_at FROM workout_sessions s "
            "JOIN completed_sets c ON c.session_id = s.id "
            "WHERE s.user_id = ? AND s.routine_id = ? "
            "GROUP BY s.id "
            "ORDER BY MAX(c.completed_at) DESC, s.id DESC LIMIT 1;",
            (user_id, routine_id),
        )
        if not rows:
            return None
        session_id, started_at = rows[0]
        set_rows = self.fetch_all(
            "SELECT c.exercise_id, r.name, c.set_number, c.weight, c.reps "
            "FROM completed_sets c LEFT JOIN routine_exercises r ON r.id = c.exercise_ref_id "
            "WHERE c.session_id = ? AND c.exercise_id IS NOT NULL "
            "ORDER BY COALESCE(r.position, 0), c.exercise_ref_id, c.set_number, c.id;",
            (session_id,),
        )
        exercises: dict[int, dict] = {}
        for exercise_id, name, set_number, weight, reps in set_rows:
            entry = exercises.setdefault(
                exercise_id, {"exercise_id": exercise_id, "name": name, "sets": []}
            )
            entry["sets"].append(
                {"set_number": set_number, "weight": weight, "reps": reps}
            )
        return {
            "session_id": session_id,
            "started_at": started_at,
            "exercises": list(exercises.values()),
        }

    def last_set_for_exercise(self, user_id: int, exercise_id: int) -> Optional[dict]:
        rows = self.fetch_all(
            "SELECT weight, reps, completed_at FROM completed_sets "
            "WHERE user_id = ? AND exercise_id = ? "
            "ORDER BY completed_at DESC, id DESC LIMIT 1;",
            (user_id, exercise_id),
        )
        if not rows:
            return None
        weight, reps, completed_at = rows[0]
        return {"weight": weight, "reps": reps, "completed_at": completed_at}

    def session_on_date(
        self, user_id: int, routine_id: int, date: str
    ) -> Optional[dict]:
        rows = self.fetch_all(
            "SELECT id, started_at FROM workout_sessions "
            "WHERE user_id = ? AND routine_id = ? AND substr(started_at, 1, 10) = ? "
            "ORDER BY id LIMIT 1;",
            (user_id, routine_id, date),
        )
        if not rows:
            return None
        return {"id": rows[0][0], "started_at": rows[0][1]}

    def fetch_session(self, session_id: int) -> Optional[dict]:
        rows = self.fetch_all(
            "SELECT id, user_id, routine_id, started_at, submitted_at, duration_seconds, idempotency_key "
            "FROM workout_sessions WHERE id = ?;",
            (session_id,),
        )
        if not rows:
            return None
        sid, user_id, routine_id, started_at, submitted_at, duration, key = rows[0]
        sets = self.fetch_all(
            "SELECT id, exercise_ref_id, set_number, weight, reps, completed_at "
            "FROM completed_sets WHERE session_id = ? ORDER BY id;",
            (session_id,),
        )
        return {
            "id": sid,
            "user_id": user_id,
            "routine_id": routine_id,
            "started_at": started_at,
            "submitted_at": submitted_at,
            "duration_seconds": duration,
            "idempotency_key": key,
            "sets": [
                {
                    "id": rid,
                    "exercise_ref_id": ref_id,
                    "set_number": set_number,
                    "weight": weight,
                    "reps": reps,
                    "completed_at": completed_at,
                }
                for rid, ref_id, set_number, weight, reps, completed_at in sets
            ],
        }


class AsyncRoutineRepository(AsyncBaseRepository):
    """Async catalog reads used by the submit endpoint."""

    async def fetch_detail(
        self, routine_id: int
    ) -> Optional[Tuple[int, int, str, Optional[int]]]:
        rows = await self.fetch_all(
            "SELECT id, user_id, name, day_of_week FROM routines WHERE id = ?;",
            (routine_id,),
        )
        return rows[0] if rows else None


class AsyncLedgerRepository(AsyncBaseRepository):
    """Async ledger writes used by the submit endpoint."""

    async def find_session(
        self,
        idempotency_key: Optional[str],
        user_id: int,
        routine_id: int,
        started_at: datetime.datetime | str,
    ) -> Optional[int]:
        if idempotency_key:
            rows = await self.fetch_all(
                "SELECT id FROM workout_sessions WHERE idempotency_key = ?;",
                (idempotency_key,),
            )
            if rows:
                return int(rows[0][0])
        rows = await self.fetch_all(
            "SELECT id FROM workout_sessions WHERE user_id = ? AND routine_id = ? AND started_at = ? ORDER BY id LIMIT 1;",
            (user_id, routine_id, _iso(started_at)),
        )
        return int(rows[0][0]) if rows else None

    async def record_session(
        self,
        user_id: int,
        routine_id: int,
        started_at: datetime.datetime | str,
        records: Iterable[CompletedSetRecord],
        idempotency_key: Optional[str] = None,
        duration_seconds: Optional[int] = None,
    ) -> int:
        existing = await self.find_session(
            idempotency_key, user_id, routine_id, started_at
        )
        submitted = _now()
        async with self._async_connection() as conn:
            if existing is None:
                cursor = await conn.execute(
                    "INSERT INTO workout_sessions (user_id, routine_id, started_at, submitted_at, duration_seconds, idempotency_key) "
                    "VALUES (?, ?, ?, ?, ?, ?);",
                    (
                        user_id,
                        routine_id,
                        _iso(started_at),
                        submitted,
                        duration_seconds,
                        idempotency_key,
                    ),
                )
                session_id = cursor.lastrowid
                stored = set()
            else:
                session_id = existing
                cursor = await conn.execute(
                    "SELECT exercise_ref_id, set_number FROM completed_sets WHERE session_id = ?;",
                    (session_id,),
                )
                stored = {(ref_id, set_number) for ref_id, set_number in await cursor.fetchall()}
            pending = [r for r in records if (r.exercise_ref_id, r.set_number) not in stored]
            if existing is not None and pending and duration_seconds is not None:
                await conn.execute(
                    "UPDATE workout_sessions SET duration_seconds = ? WHERE id = ?;",
                    (duration_seconds, session_id),
                )
            for rec in pending:
                ex_cursor = await conn.execute(
                    "SELECT exercise_id FROM routine_exercises WHERE id = ?;",
                    (rec.exercise_ref_id,),
                )
                ex_rows = await ex_cursor.fetchall()
                await conn.execute(
                    "INSERT INTO completed_sets (session_id, user_id, exercise_ref_id, exercise_id, set_number, weight, reps, completed_at) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?);",
                    (
                        session_id,
                        user_id,
                        rec.exercise_ref_id,
                        ex_rows[0][0] if ex_rows else None,
                        rec.set_number,
                        rec.weight,
                        rec.reps,
                        _iso(rec.completed_at) or submitted,
                    ),
                )
        return session_id


class CheckpointRepository(BaseRepository):
    """Key/value store for in-progress session snapshots."""

    def get(self, key: str) -> Optional[str]:
        rows = self.fetch_all(
            "SELECT payload FROM session_checkpoints WHERE key = ?;", (key,)
        )
        return rows[0][0] if rows else None

    def put(self, key: str, payload: str) -> None:
        self.execute(
            "INSERT INTO session_checkpoints (key, payload, updated_at) VALUES (?, ?, ?) "
            "ON CONFLICT(key) DO UPDATE SET payload=excluded.payload, updated_at=excluded.updated_at;",
            (key, payload, _now()),
        )

    def delete(self, key: str) -> None:
        self.execute("DELETE FROM session_checkpoints WHERE key = ?;", (key,))

    def list_keys(self) -> List[Tuple[str, str]]:
        return self.fetch_all(
            "SELECT key, updated_at FROM session_checkpoints ORDER BY updated_at DESC;"
        )

    def delete_all(self) -> None:
        self._delete_all("session_checkpoints")
