"""
Pytest configuration and fixtures for Conclusion Evaluation Labeler tests.
"""
import json
import os
import sys
import tempfile
from pathlib import Path
from typing import Callable, Generator

import pytest
from fastapi.testclient import TestClient

# Add app directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

# Set test environment before importing app
os.environ["ADMIN_EMAIL"] = "admin@example.org"
os.environ["BLOCK_SIZE"] = "20"
os.environ["BLOCK_COMPLETION_RULE"] = "task_range"

EVALUATION_TASK_COUNT = 25
TRAINING_TASK_IDS = ["training-1", "training-2"]


def build_task_data() -> dict:
    """A catalog in the published {"tasks": [...]} layout: 2 training, 25 evaluation tasks."""
    tasks = []
    for i, task_id in enumerate(TRAINING_TASK_IDS):
        tasks.append({
            "taskId": task_id,
            "sourceAbstracts": [f"Training abstract {i}."],
            "referenceConclusion": f"Training reference {i}.",
            "modelOutputs": {
                "conclusionA": f"Training candidate A {i}.",
                "conclusionB": f"Training candidate B {i}.",
            },
            "sourcePaperTitle": f"Training review {i}",
            "correctScores": {"modelA_score": 4, "modelB_score": 1},
        })
    for i in range(1, EVALUATION_TASK_COUNT + 1):
        tasks.append({
            "taskId": i,
            "sourceAbstracts": [f"Abstract {i}a.", f"Abstract {i}b."],
            "referenceConclusion": f"Reference conclusion {i}.",
            "modelOutputs": {
                "conclusionA": f"Candidate A {i}.",
                "conclusionB": f"Candidate B {i}.",
            },
            "sourcePaperTitle": f"Systematic review {i}",
        })
    return {"tasks": tasks}


def evaluation_task_ids() -> list[str]:
    return [str(i) for i in range(1, EVALUATION_TASK_COUNT + 1)]


def new_temp_path(suffix: str) -> Path:
    with tempfile.NamedTemporaryFile(suffix=suffix, delete=False) as f:
        return Path(f.name)


@pytest.fixture(scope="session")
def temp_db_path() -> Generator[Path, None, None]:
    """Create a temporary database file for the test session."""
    db_path = new_temp_path(".db")
    yield db_path
    # Cleanup after all tests
    if db_path.exists():
        db_path.unlink()


@pytest.fixture(scope="session")
def temp_tasks_path() -> Generator[Path, None, None]:
    """Write the test task catalog to a temporary file."""
    tasks_path = new_temp_path(".json")
    tasks_path.write_text(json.dumps(build_task_data()), encoding="utf-8")
    yield tasks_path
    if tasks_path.exists():
        tasks_path.unlink()


@pytest.fixture(scope="session")
def app_module(temp_db_path: Path, temp_tasks_path: Path):
    """The app module pointed at the test database and catalog."""
    import app as module

    # Override database and catalog paths
    module.DB_PATH = temp_db_path
    module.TASKS_PATH = temp_tasks_path
    module.reset_catalog()

    # Initialize database
    module.init_db()

    return module


@pytest.fixture(scope="session")
def app(app_module):
    """Create FastAPI app with test database."""
    return app_module.app


@pytest.fixture(scope="session")
def client(app) -> Generator[TestClient, None, None]:
    """Create test client for the session."""
    with TestClient(app) as c:
        yield c


@pytest.fixture
def fresh_client(app_module) -> Generator[TestClient, None, None]:
    """Create a fresh test client with clean database for each test."""
    session_db = app_module.DB_PATH

    # Create new temp db for this test
    test_db = new_temp_path(".db")
    app_module.DB_PATH = test_db
    app_module.init_db()

    with TestClient(app_module.app) as c:
        yield c

    app_module.DB_PATH = session_db
    if test_db.exists():
        test_db.unlink()


@pytest.fixture
def make_client(app_module, fresh_client: TestClient) -> Callable[[str], TestClient]:
    """Factory for extra clients, each registered as its own annotator on the fresh database."""
    clients = []

    def _make(email: str, password: str = "password123") -> TestClient:
        c = TestClient(app_module.app)
        response = c.post("/api/auth/register", json={"email": email, "password": password})
        assert response.status_code == 200
        clients.append(c)
        return c

    yield _make

    for c in clients:
        c.close()


@pytest.fixture
def seed_annotator(app_module, fresh_client: TestClient) -> Callable:
    """Insert an annotator with a block and evaluations straight into the fresh database."""
    def _seed(annotator_id: str, block_number=None, task_ids=(), expertise_group="general"):
        with app_module.get_db() as conn:
            conn.execute(
                "INSERT INTO users (id, email, password_hash) VALUES (?, ?, ?)",
                (annotator_id, f"{annotator_id}@example.org", app_module.hash_password("password123")),
            )
            conn.execute(
                "INSERT INTO annotators (id, email, expertise_group, block_number) VALUES (?, ?, ?, ?)",
                (annotator_id, f"{annotator_id}@example.org", expertise_group, block_number),
            )
            for task_id in task_ids:
                conn.execute(
                    "INSERT INTO evaluations (annotator_id, task_id, score_a, score_b) VALUES (?, ?, 3, 3)",
                    (annotator_id, str(task_id)),
                )
    return _seed


@pytest.fixture
def auth_client(client: TestClient) -> Generator[tuple[TestClient, dict], None, None]:
    """Create authenticated test client with a registered user."""
    # Register a test user
    response = client.post("/api/auth/register", json={
        "email": f"testuser_{os.urandom(4).hex()}@example.org",
        "password": "testpass123",
    })
    assert response.status_code == 200
    user_data = response.json()

    # Client now has session cookie from registration
    yield client, user_data


@pytest.fixture
def admin_client(client: TestClient) -> Generator[tuple[TestClient, dict], None, None]:
    """Create authenticated test client with admin user."""
    # Register as the admin user (ADMIN_EMAIL env var)
    response = client.post("/api/auth/register", json={
        "email": "admin@example.org",
        "password": "adminpass123",
    })

    if response.status_code == 400:
        # Already registered, login instead
        response = client.post("/api/auth/login", json={
            "email": "admin@example.org",
            "password": "adminpass123"
        })

    assert response.status_code == 200
    user_data = response.json()

    yield client, user_data
