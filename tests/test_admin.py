"""
Tests for admin endpoints.
"""
from fastapi.testclient import TestClient

from conftest import evaluation_task_ids

BLOCK_0 = evaluation_task_ids()[:20]


class TestAdminAccess:
    """Tests for admin access control."""

    def test_admin_requires_auth(self, fresh_client: TestClient):
        """Test admin endpoints require authentication."""
        assert fresh_client.get("/api/admin/blocks").status_code == 401
        assert fresh_client.get("/api/admin/annotators").status_code == 401

    def test_admin_requires_admin_role(self, auth_client: tuple[TestClient, dict]):
        """Test admin endpoints require admin role."""
        client, user = auth_client
        assert user["role"] == "annotator"
        assert client.get("/api/admin/blocks").status_code == 403
        assert client.get("/api/admin/annotators").status_code == 403

    def test_existing_user_promoted_on_startup(self, fresh_client: TestClient, app_module):
        """init_db grants the admin role to an ADMIN_EMAIL user registered before it was configured."""
        fresh_client.post("/api/auth/register", json={"email": "admin@example.org", "password": "adminpass"})
        with app_module.get_db() as conn:
            conn.execute("UPDATE users SET role = 'annotator' WHERE email = 'admin@example.org'")

        app_module.init_db()

        assert fresh_client.get("/api/me").json()["role"] == "admin"


class TestAdminBlocks:
    """Tests for /api/admin/blocks endpoint."""

    def test_shape(self, admin_client: tuple[TestClient, dict]):
        client, admin = admin_client
        response = client.get("/api/admin/blocks")
        assert response.status_code == 200
        data = response.json()
        assert data["block_size"] == 20
        assert data["completion_rule"] == "task_range"
        assert data["catalog_size"] == 25
        assert data["block_count"] == 2
        assert isinstance(data["blocks"], list)

    def test_overview(self, fresh_client: TestClient, seed_annotator):
        seed_annotator("x", 0, BLOCK_0)
        seed_annotator("y", 1, [])
        seed_annotator("z", 1, ["21", "22"])
        fresh_client.post("/api/auth/register", json={"email": "admin@example.org", "password": "adminpass"})

        data = fresh_client.get("/api/admin/blocks").json()
        assert data["epoch"] == 3
        assert data["blocks"] == [
            {"block_number": 0, "holders": 1, "completed": 20, "capacity": 20, "status": "complete"},
            {"block_number": 1, "holders": 2, "completed": 2, "capacity": 5, "status": "incomplete"},
        ]
        assert data["next"]["nextBlockNumber"] == 1
        assert data["next"]["isReassignment"] is True

    def test_overview_when_exhausted(self, fresh_client: TestClient, seed_annotator):
        seed_annotator("x", 0, BLOCK_0)
        seed_annotator("y", 1, ["21", "22", "23", "24", "25"])
        fresh_client.post("/api/auth/register", json={"email": "admin@example.org", "password": "adminpass"})

        data = fresh_client.get("/api/admin/blocks").json()
        assert data["next"] is None
        assert all(block["status"] == "complete" for block in data["blocks"])


class TestAdminAnnotators:
    """Tests for /api/admin/annotators endpoint."""

    def test_list_annotators(self, admin_client: tuple[TestClient, dict]):
        """Test listing annotators as admin."""
        client, admin = admin_client
        response = client.get("/api/admin/annotators")
        assert response.status_code == 200
        data = response.json()
        assert isinstance(data["annotators"], list)
        assert data["total"] == len(data["annotators"])
        assert any(a["email"] == "admin@example.org" for a in data["annotators"])

    def test_evaluation_counts(self, fresh_client: TestClient, seed_annotator):
        seed_annotator("x", 0, BLOCK_0[:3], expertise_group="medical")
        fresh_client.post("/api/auth/register", json={"email": "admin@example.org", "password": "adminpass"})

        annotators = {a["id"]: a for a in fresh_client.get("/api/admin/annotators").json()["annotators"]}
        assert annotators["x"]["evaluations"] == 3
        assert annotators["x"]["block_number"] == 0
        assert annotators["x"]["expertise_group"] == "medical"
        assert annotators["x"]["role"] == "annotator"
