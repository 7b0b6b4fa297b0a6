"""
Tests for the survey, evaluation ledger and progress endpoints.
"""
import pytest
from fastapi.testclient import TestClient

from evalblocks import ProfileCreationConflict

from conftest import evaluation_task_ids

BLOCK_0 = evaluation_task_ids()[:20]
BLOCK_1 = evaluation_task_ids()[20:]


def register_with_block(client: TestClient, block_number: int = 0, email: str = "annotator@example.org") -> dict:
    response = client.post("/api/auth/register", json={"email": email, "password": "password123"})
    assert response.status_code == 200
    response = client.post("/api/blocks/reserve", json={"block_number": block_number})
    assert response.status_code == 200
    return response.json()["annotator"]


def submit(client: TestClient, task_id, score_a: int = 3, score_b: int = 2, **extra):
    payload = {"task_id": task_id, "score_a": score_a, "score_b": score_b}
    payload.update(extra)
    return client.post("/api/evaluations", json=payload)


class TestSurvey:
    """Tests for /api/annotator/survey."""

    def test_submit_survey(self, fresh_client: TestClient):
        fresh_client.post("/api/auth/register", json={"email": "s@example.org", "password": "password123"})
        response = fresh_client.put("/api/annotator/survey", json={"expertise_group": "medical"})
        assert response.status_code == 200
        assert response.json()["expertise_group"] == "medical"
        assert fresh_client.get("/api/annotator").json()["expertise_group"] == "medical"

    def test_same_answer_again(self, fresh_client: TestClient):
        fresh_client.post("/api/auth/register", json={"email": "s@example.org", "password": "password123"})
        fresh_client.put("/api/annotator/survey", json={"expertise_group": "general"})
        response = fresh_client.put("/api/annotator/survey", json={"expertise_group": "general"})
        assert response.status_code == 200

    def test_different_answer_rejected(self, fresh_client: TestClient):
        fresh_client.post("/api/auth/register", json={"email": "s@example.org", "password": "password123"})
        fresh_client.put("/api/annotator/survey", json={"expertise_group": "general"})
        response = fresh_client.put("/api/annotator/survey", json={"expertise_group": "medical"})
        assert response.status_code == 409
        assert fresh_client.get("/api/annotator").json()["expertise_group"] == "general"

    def test_unknown_group(self, fresh_client: TestClient):
        fresh_client.post("/api/auth/register", json={"email": "s@example.org", "password": "password123"})
        response = fresh_client.put("/api/annotator/survey", json={"expertise_group": "legal"})
        assert response.status_code == 422


class TestProfile:
    """Tests for /api/annotator profile creation."""

    def test_profile_created_on_demand(self, fresh_client: TestClient, app_module):
        user = fresh_client.post(
            "/api/auth/register", json={"email": "p@example.org", "password": "password123"}
        ).json()
        with app_module.get_db() as conn:
            conn.execute("DELETE FROM annotators WHERE id = ?", (user["id"],))

        response = fresh_client.get("/api/annotator")
        assert response.status_code == 200
        assert response.json()["id"] == user["id"]

    def test_duplicate_profile_creation_conflicts(self, fresh_client: TestClient, app_module):
        user = fresh_client.post(
            "/api/auth/register", json={"email": "p@example.org", "password": "password123"}
        ).json()
        with app_module.get_db() as conn:
            with pytest.raises(ProfileCreationConflict):
                app_module.create_annotator_profile(conn, user["id"], user["email"])

    def test_concurrent_profile_creation_refetches(self, fresh_client: TestClient, app_module, monkeypatch):
        """A profile created between the lookup and the insert is re-fetched."""
        user = fresh_client.post(
            "/api/auth/register", json={"email": "p@example.org", "password": "password123"}
        ).json()
        real_get_annotator = app_module.get_annotator
        calls = []

        def stale_first_lookup(conn, annotator_id):
            calls.append(annotator_id)
            if len(calls) == 1:
                return None
            return real_get_annotator(conn, annotator_id)

        monkeypatch.setattr(app_module, "get_annotator", stale_first_lookup)
        with app_module.get_db() as conn:
            profile = app_module.ensure_annotator_profile(conn, user)
        assert profile["id"] == user["id"]
        assert len(calls) == 2


class TestSubmitEvaluation:
    """Tests for /api/evaluations."""

    def test_submit(self, fresh_client: TestClient):
        annotator = register_with_block(fresh_client)
        response = submit(fresh_client, "1", 5, 0)
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "saved"
        assert data["task_id"] == "1"
        assert data["annotator_id"] == annotator["id"]
        assert data["progress"]["completed"] == 1
        assert data["progress"]["next_task_id"] == "2"

    def test_numeric_task_id(self, fresh_client: TestClient):
        register_with_block(fresh_client)
        response = submit(fresh_client, 3)
        assert response.status_code == 200
        assert response.json()["task_id"] == "3"

    def test_duplicate_rejected(self, fresh_client: TestClient):
        register_with_block(fresh_client)
        assert submit(fresh_client, "1").status_code == 200
        response = submit(fresh_client, "1", 1, 1)
        assert response.status_code == 409
        assert fresh_client.get("/api/evaluations").json()["total"] == 1

    def test_scores_out_of_range(self, fresh_client: TestClient):
        register_with_block(fresh_client)
        assert submit(fresh_client, "1", 6, 0).status_code == 422
        assert submit(fresh_client, "1", 0, -1).status_code == 422
        assert fresh_client.get("/api/evaluations").json()["total"] == 0

    def test_unknown_task(self, fresh_client: TestClient):
        register_with_block(fresh_client)
        assert submit(fresh_client, "999").status_code == 404

    def test_training_task_is_not_evaluable(self, fresh_client: TestClient):
        register_with_block(fresh_client)
        assert submit(fresh_client, "training-1").status_code == 404

    def test_task_outside_block(self, fresh_client: TestClient):
        register_with_block(fresh_client, 0)
        response = submit(fresh_client, BLOCK_1[0])
        assert response.status_code == 400
        assert "not in your assigned block" in response.json()["detail"]

    def test_no_block_assigned(self, fresh_client: TestClient):
        fresh_client.post("/api/auth/register", json={"email": "n@example.org", "password": "password123"})
        response = submit(fresh_client, "1")
        assert response.status_code == 400
        assert "No block assigned" in response.json()["detail"]

    def test_timestamps_recorded(self, fresh_client: TestClient):
        register_with_block(fresh_client)
        submit(
            fresh_client, "1",
            session_start_time="2024-03-01T10:00:00+00:00",
            evaluation_end_time="2024-03-01T10:04:30+00:00",
        )
        record = fresh_client.get("/api/evaluations").json()["evaluations"][0]
        assert record["session_start_time"] == "2024-03-01 10:00:00"
        assert record["evaluation_end_time"] == "2024-03-01 10:04:30"
        assert record["score_a"] == 3
        assert record["score_b"] == 2

    def test_evaluations_are_private(self, make_client):
        a = make_client("a@example.org")
        b = make_client("b@example.org")
        a.post("/api/blocks/reserve", json={"block_number": 0})
        submit(a, "1")
        assert a.get("/api/evaluations").json()["total"] == 1
        assert b.get("/api/evaluations").json()["total"] == 0


class TestProgress:
    """Tests for /api/progress."""

    def test_no_block(self, fresh_client: TestClient):
        fresh_client.post("/api/auth/register", json={"email": "n@example.org", "password": "password123"})
        data = fresh_client.get("/api/progress").json()
        assert data["block_number"] is None
        assert data["next_task_id"] is None
        assert data["is_complete"] is False

    def test_fresh_block(self, fresh_client: TestClient):
        register_with_block(fresh_client)
        assert fresh_client.get("/api/progress").json() == {
            "block_number": 0,
            "total": 20,
            "completed": 0,
            "remaining": 20,
            "next_task_id": "1",
            "is_complete": False,
        }

    def test_cursor_skips_evaluated_tasks(self, fresh_client: TestClient):
        """Out-of-order submissions: the cursor is the first task without a record."""
        register_with_block(fresh_client)
        submit(fresh_client, "2")
        submit(fresh_client, "1")
        submit(fresh_client, "4")
        data = fresh_client.get("/api/progress").json()
        assert data["completed"] == 3
        assert data["next_task_id"] == "3"

    def test_resume_after_new_login(self, fresh_client: TestClient):
        register_with_block(fresh_client)
        for task_id in BLOCK_0[:5]:
            submit(fresh_client, task_id)

        fresh_client.cookies.clear()
        fresh_client.post("/api/auth/login", json={"email": "annotator@example.org", "password": "password123"})
        data = fresh_client.get("/api/progress").json()
        assert data["completed"] == 5
        assert data["next_task_id"] == BLOCK_0[5]

    def test_partial_block_completes(self, fresh_client: TestClient):
        register_with_block(fresh_client, 1)
        for task_id in BLOCK_1:
            response = submit(fresh_client, task_id)
        progress = response.json()["progress"]
        assert progress["total"] == 5
        assert progress["is_complete"] is True
        assert progress["next_task_id"] is None

    def test_completed_block_is_not_reassigned(self, fresh_client: TestClient):
        register_with_block(fresh_client, 1)
        for task_id in BLOCK_1:
            submit(fresh_client, task_id)
        # Block 1 is complete but block 0 was never assigned; nothing left
        response = fresh_client.get("/api/blocks/next")
        assert response.status_code == 400
