import os
import sys
import unittest

from fastapi.testclient import TestClient

sys.path.append(os.path.dirname(os.path.dirname(__file__)))
from rest_api import SessionAPI


class SessionAPITestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.db_path = "test_api.db"
        if os.path.exists(self.db_path):
            os.remove(self.db_path)
        self.api = SessionAPI(db_path=self.db_path)
        self.client = TestClient(self.api.app)
        self.routine_id = self.api.routines.create(1, "Legs")
        self.squat = self.api.routines.add_exercise(
            self.routine_id, 21, "Squat", planned_sets=2, planned_reps="5", planned_weight=100.0
        )

    def tearDown(self) -> None:
        if os.path.exists(self.db_path):
            os.remove(self.db_path)

    def _payload(self, key: str = "k1") -> dict:
        return {
            "user_id": 1,
            "routine_id": self.routine_id,
            "started_at": "2024-05-08T18:00:00+00:00",
            "idempotency_key": key,
            "duration_seconds": 1800,
            "records": [
                {
                    "exercise_ref_id": self.squat,
                    "set_number": 1,
                    "weight": 102.5,
                    "reps": 5,
                    "completed_at": "2024-05-08T18:05:00+00:00",
                },
                {
                    "exercise_ref_id": self.squat,
                    "set_number": 2,
                    "weight": 102.5,
                    "reps": 4,
                    "completed_at": "2024-05-08T18:09:00+00:00",
                },
            ],
        }

    def test_health(self) -> None:
        resp = self.client.get("/health")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"status": "ok"})

    def test_routine_exercises(self) -> None:
        resp = self.client.get(f"/routines/{self.routine_id}/exercises")
        self.assertEqual(resp.status_code, 200)
        data = resp.json()
        self.assertEqual(len(data), 1)
        self.assertEqual(data[0]["routine_exercise_id"], self.squat)
        self.assertEqual(data[0]["exercise_id"], 21)
        self.assertEqual(data[0]["order"], 1)

    def test_unknown_routine(self) -> None:
        self.assertEqual(self.client.get("/routines/999/exercises").status_code, 404)
        payload = self._payload()
        payload["routine_id"] = 999
        self.assertEqual(self.client.post("/sessions", json=payload).status_code, 404)

    def test_progression_empty(self) -> None:
        resp = self.client.get(f"/progression/1/routines/{self.routine_id}/last_session")
        self.assertEqual(resp.status_code, 404)
        resp = self.client.get("/progression/1/exercises/21/last_set")
        self.assertEqual(resp.status_code, 200)
        self.assertIsNone(resp.json()["completed_at"])

    def test_submit_and_read_back(self) -> None:
        resp = self.client.post("/sessions", json=self._payload())
        self.assertEqual(resp.status_code, 200)
        sid = resp.json()["session_id"]

        session = self.client.get(f"/sessions/{sid}").json()
        self.assertEqual(session["duration_seconds"], 1800)
        self.assertEqual([s["set_number"] for s in session["sets"]], [1, 2])

        last = self.client.get(f"/progression/1/routines/{self.routine_id}/last_session").json()
        self.assertEqual(last["session_id"], sid)
        self.assertEqual(last["exercises"][0]["exercise_id"], 21)
        self.assertEqual(len(last["exercises"][0]["sets"]), 2)

        last_set = self.client.get("/progression/1/exercises/21/last_set").json()
        self.assertEqual(last_set["reps"], 4)
        self.assertEqual(last_set["weight"], 102.5)

    def test_submit_is_idempotent(self) -> None:
        first = self.client.post("/sessions", json=self._payload("same")).json()
        second = self.client.post("/sessions", json=self._payload("same")).json()
        self.assertEqual(first, second)
        rows = self.api.ledger.fetch_all("SELECT COUNT(*) FROM workout_sessions;")
        self.assertEqual(rows[0][0], 1)

    def test_missing_session(self) -> None:
        self.assertEqual(self.client.get("/sessions/42").status_code, 404)

    def test_trained_today_shape(self) -> None:
        resp = self.client.get(f"/progression/1/routines/{self.routine_id}/today")
        self.assertEqual(resp.status_code, 200)
        self.assertIn("trained", resp.json())

    def test_rate_limit(self) -> None:
        api = SessionAPI(db_path=self.db_path, rate_limit=2)
        client = TestClient(api.app)
        self.assertEqual(client.get("/health").status_code, 200)
        self.assertEqual(client.get("/health").status_code, 200)
        self.assertEqual(client.get("/health").status_code, 429)


if __name__ == "__main__":
    unittest.main()
