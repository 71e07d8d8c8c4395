import os
import sys

import pytest
import requests
from fastapi.testclient import TestClient

sys.path.append(os.path.dirname(os.path.dirname(__file__)))
import client as client_module
from cli import simulate
from client import SessionClient
from db import CheckpointRepository
from exceptions import CatalogUnavailable, ProgressionLookupFailed
from rest_api import SessionAPI
from scheduler import ManualScheduler
from session_engine import SessionPhase, WorkoutSession


@pytest.fixture
def api(tmp_path, monkeypatch):
    api = SessionAPI(db_path=str(tmp_path / "api.db"))
    test_client = TestClient(api.app)

    def fake_get(url, timeout=None, **kwargs):
        return test_client.get(url, **kwargs)

    def fake_post(url, timeout=None, **kwargs):
        return test_client.post(url, **kwargs)

    monkeypatch.setattr(client_module.requests, "get", fake_get)
    monkeypatch.setattr(client_module.requests, "post", fake_post)
    return api


def _seed(api):
    routine_id = api.routines.create(1, "Pull")
    row_id = api.routines.add_exercise(
        routine_id, 31, "Row", planned_sets=2, planned_reps="10", planned_weight=50.0
    )
    return routine_id, row_id


def test_catalog_over_http(api):
    routine_id, row_id = _seed(api)
    exercises = SessionClient("http://testserver").get_exercises_for_routine(routine_id)
    assert [e.routine_exercise_id for e in exercises] == [row_id]
    assert exercises[0].planned_reps_value() == 10


def test_missing_routine_raises(api):
    with pytest.raises(CatalogUnavailable):
        SessionClient("http://testserver").get_exercises_for_routine(404)


def test_empty_progression(api):
    routine_id, _ = _seed(api)
    session_client = SessionClient("http://testserver")
    assert session_client.get_last_session(1, routine_id) is None
    assert session_client.get_last_set_for_exercise(1, 31) is None


def test_connection_error_is_lookup_failure(monkeypatch):
    def refuse(url, timeout=None, **kwargs):
        raise requests.ConnectionError("refused")

    monkeypatch.setattr(client_module.requests, "get", refuse)
    with pytest.raises(ProgressionLookupFailed):
        SessionClient("http://nowhere").get_last_session(1, 1)


def test_session_runs_against_remote_backend(api, tmp_path):
    routine_id, row_id = _seed(api)
    remote = SessionClient("http://testserver")
    checkpoints = CheckpointRepository(str(tmp_path / "local.db"))
    session = WorkoutSession(
        1,
        routine_id,
        catalog=remote,
        progression=remote,
        checkpoint_store=checkpoints,
        scheduler=ManualScheduler(),
    )
    session.initialize()
    session.complete_set(0, 0, weight=52.5, reps=10)
    session.complete_set(0, 1, weight=52.5, reps=9)
    session_id = session.finalize()

    assert session.phase is SessionPhase.FINALIZED
    assert checkpoints.list_keys() == []
    stored = api.ledger.fetch_session(session_id)
    assert [s["reps"] for s in stored["sets"]] == [10, 9]
    assert stored["idempotency_key"] == session.state.idempotency_key

    last = remote.get_last_set_for_exercise(1, 31)
    assert last.weight == 52.5
    assert remote.trained_today(1, routine_id)["trained"] is True


def test_simulate_uses_configured_api(api, tmp_path, capsys):
    routine_id, _ = _seed(api)
    yaml_path = tmp_path / "settings.yaml"
    yaml_path.write_text("api_base_url: http://testserver\n", encoding="utf-8")
    local_db = str(tmp_path / "local.db")

    session_id = simulate(local_db, routine_id, 1, str(yaml_path), remote=True)
    assert len(api.ledger.fetch_session(session_id)["sets"]) == 2
    assert CheckpointRepository(local_db).list_keys() == []
