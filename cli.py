import argparse
import datetime
import logging

from client import SessionClient
from config import YamlConfig
from db import CheckpointRepository, LedgerRepository, RoutineRepository
from models import CompletedSetRecord
from progression_service import ProgressionService
from scheduler import ManualScheduler
from session_engine import WorkoutSession


def demo_data(db_path: str, user_id: int = 1) -> int:
    """Insert a sample routine with one prior session if none exists."""
    routines = RoutineRepository(db_path)
    existing = routines.fetch_all("SELECT id FROM routines ORDER BY id LIMIT 1;")
    if existing:
        print("Database already contains routines")
        return int(existing[0][0])
    rid = routines.create(user_id, "Push Day", day_of_week=0)
    bench = routines.add_exercise(
        rid, 1, "Bench Press", planned_sets=3, planned_reps="8-10",
        planned_weight=60.0, rest_seconds=90,
    )
    routines.add_exercise(
        rid, 2, "Overhead Press", planned_sets=3, planned_reps="8",
        planned_weight=40.0, rest_seconds=60,
    )
    routines.add_exercise(
        rid, 3, "Triceps Pushdown", planned_sets=2, planned_reps="12",
        planned_weight=25.0,
    )
    started = datetime.datetime.now(datetime.timezone.utc) - datetime.timedelta(days=7)
    LedgerRepository(db_path).record_session(
        user_id,
        rid,
        started,
        [
            CompletedSetRecord(exercise_ref_id=bench, set_number=1, weight=57.5, reps=10, completed_at=started),
            CompletedSetRecord(exercise_ref_id=bench, set_number=2, weight=57.5, reps=9, completed_at=started),
        ],
        idempotency_key="demo",
    )
    print(f"Demo routine {rid} inserted")
    return rid


def list_checkpoints(db_path: str) -> None:
    rows = CheckpointRepository(db_path).list_keys()
    if not rows:
        print("No checkpoints")
    for key, updated_at in rows:
        print(f"{key}\t{updated_at}")


def clear_checkpoints(db_path: str) -> None:
    CheckpointRepository(db_path).delete_all()
    print("Checkpoints cleared")


def simulate(
    db_path: str, routine_id: int, user_id: int, yaml_path: str, remote: bool = False
) -> int:
    """Run a routine end to end on a virtual clock and submit it.

    With ``remote`` the catalog, progression and ledger are reached through
    the API at ``api_base_url``; checkpoints stay in the local database.
    """
    settings = YamlConfig(yaml_path).settings()
    if remote:
        service = SessionClient(settings.api_base_url)
    else:
        service = ProgressionService(RoutineRepository(db_path), LedgerRepository(db_path))
    scheduler = ManualScheduler()
    session = WorkoutSession(
        user_id,
        routine_id,
        service,
        service,
        CheckpointRepository(db_path),
        scheduler=scheduler,
        settings=settings,
    )
    state = session.initialize()
    if session.resumed:
        print("Resuming interrupted session")
    while True:
        idx = state.current_exercise_index
        run = state.exercise_runs[idx]
        entry = run.sets[state.current_set_index]
        if not entry.completed:
            session.complete_set(
                idx,
                state.current_set_index,
                entry.previous_weight if entry.weight is None else entry.weight,
                entry.previous_reps if entry.reps is None else entry.reps,
            )
            progress = session.progress()
            print(
                f"{run.routine_exercise.name or run.routine_exercise.exercise_id}"
                f" set {entry.set_number}: {entry.weight} x {entry.reps}"
                f" ({progress['completed_sets']}/{progress['total_sets']})"
            )
        scheduler.advance(max(state.rest_timer.remaining_seconds, settings.pacing_delay_seconds))
        if session.current_run.is_complete:
            if session.is_last_exercise:
                break
            if not session.advance_pending:
                session.move_to_exercise("next")
    session_id = session.finalize()
    print(f"Session {session_id} saved, elapsed {session.state.elapsed_seconds}s")
    return session_id


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Workout session utilities")
    parser.add_argument("--verbose", action="store_true")
    parser.add_argument("--yaml", default="settings.yaml")
    sub = parser.add_subparsers(dest="cmd", required=True)

    serve = sub.add_parser("serve")
    serve.add_argument("--db")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)

    demo = sub.add_parser("demo")
    demo.add_argument("--db")
    demo.add_argument("--user", type=int)

    ckpt = sub.add_parser("checkpoints")
    ckpt.add_argument("action", choices=["list", "clear"])
    ckpt.add_argument("--db")

    sim = sub.add_parser("simulate")
    sim.add_argument("--db")
    sim.add_argument("--routine", type=int, required=True)
    sim.add_argument("--user", type=int)
    sim.add_argument("--remote", action="store_true", help="use the API at api_base_url")

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    settings = YamlConfig(args.yaml).settings()
    db_path = args.db or settings.db_path
    user_id = getattr(args, "user", None) or settings.user_id

    if args.cmd == "serve":
        import uvicorn
        from rest_api import create_app

        uvicorn.run(create_app(db_path), host=args.host, port=args.port)
    elif args.cmd == "demo":
        demo_data(db_path, user_id)
    elif args.cmd == "checkpoints":
        if args.action == "list":
            list_checkpoints(db_path)
        else:
            clear_checkpoints(db_path)
    elif args.cmd == "simulate":
        simulate(db_path, args.routine, user_id, args.yaml, remote=args.remote)


if __name__ == "__main__":
    main()
