import os
import sys

sys.path.append(os.path.dirname(os.path.dirname(__file__)))
from cli import clear_checkpoints, demo_data, list_checkpoints, main, simulate
from db import CheckpointRepository, LedgerRepository, RoutineRepository
from progression_service import ProgressionService
from scheduler import ManualScheduler
from session_engine import WorkoutSession


def test_demo_data_is_inserted_once(tmp_path, capsys):
    db_path = str(tmp_path / "demo.db")
    first = demo_data(db_path)
    second = demo_data(db_path)
    assert first == second
    assert "already contains routines" in capsys.readouterr().out


def test_simulate_runs_routine_to_completion(tmp_path, capsys):
    db_path = str(tmp_path / "sim.db")
    routine_id = demo_data(db_path)
    session_id = simulate(db_path, routine_id, 1, str(tmp_path / "missing.yaml"))

    stored = LedgerRepository(db_path).fetch_session(session_id)
    assert len(stored["sets"]) == 8
    assert stored["idempotency_key"] != "demo"
    assert CheckpointRepository(db_path).list_keys() == []
    out = capsys.readouterr().out
    assert "Bench Press set 1: 60.0 x 8" in out
    assert f"Session {session_id} saved" in out


def test_checkpoint_commands(tmp_path, capsys):
    db_path = str(tmp_path / "ckpt.db")
    repo = CheckpointRepository(db_path)
    repo.put("session:1:1", "{}")
    list_checkpoints(db_path)
    assert "session:1:1" in capsys.readouterr().out
    clear_checkpoints(db_path)
    list_checkpoints(db_path)
    assert "No checkpoints" in capsys.readouterr().out


def test_simulate_resumes_session_left_in_pacing_delay(tmp_path, capsys):
    db_path = str(tmp_path / "resume.db")
    routine_id = demo_data(db_path)
    service = ProgressionService(RoutineRepository(db_path), LedgerRepository(db_path))
    session = WorkoutSession(
        1, routine_id, service, service, CheckpointRepository(db_path), scheduler=ManualScheduler()
    )
    session.initialize()
    for set_index in range(3):
        session.complete_set(0, set_index, 60.0, 8)
    assert session.advance_pending
    session.close()

    session_id = simulate(db_path, routine_id, 1, str(tmp_path / "missing.yaml"))
    assert "Resuming interrupted session" in capsys.readouterr().out
    assert len(LedgerRepository(db_path).fetch_session(session_id)["sets"]) == 8


def test_db_path_comes_from_settings(tmp_path, monkeypatch):
    yaml_path = tmp_path / "settings.yaml"
    yaml_path.write_text(f"db_path: {tmp_path / 'from_file.db'}\n", encoding="utf-8")
    env_db = tmp_path / "from_env.db"
    monkeypatch.setenv("DB_PATH", str(env_db))

    main(["--yaml", str(yaml_path), "demo"])
    assert env_db.exists()
    assert not (tmp_path / "from_file.db").exists()

    monkeypatch.delenv("DB_PATH")
    main(["--yaml", str(yaml_path), "demo"])
    assert (tmp_path / "from_file.db").exists()
