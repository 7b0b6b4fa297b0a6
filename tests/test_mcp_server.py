"""
Tests for the MCP tools and their chat formatting.
"""
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from mcp_server import formatting as fmt
from mcp_server import server
from mcp_server.api_client import APIConfig, EvalApiClient
from mcp_server.session import SessionCoordinator, SessionManager

from evalblocks import parse_catalog

from conftest import build_task_data


@pytest.fixture
def coordinator(app_module, fresh_client: TestClient, tmp_path: Path, monkeypatch):
    """Install a coordinator over the fresh database as the server's shared session."""
    http = TestClient(app_module.app)
    api = EvalApiClient(APIConfig(email="chat@example.org", password="password123"), client=http)
    coordinator = SessionCoordinator(api, SessionManager(tmp_path / "state.json"))
    monkeypatch.setattr(server, "_coordinator", coordinator)
    yield coordinator
    http.close()


class TestTools:
    """The tool functions, end to end."""

    def test_start_session_asks_for_survey(self, coordinator):
        result = server.start_session()
        assert result["status"] == "needs_survey"
        assert "background survey" in result["display"]

    def test_invalid_survey_answer(self, coordinator):
        server.start_session()
        result = server.submit_survey("astronaut")
        assert "Invalid expertise group" in result["error"]
        assert result["display"].startswith("❌")

    def test_training_then_evaluation(self, coordinator):
        server.start_session()
        assert server.submit_survey("general")["status"] == "training"

        task = server.get_current_task()
        assert task["id"] == "training-1"
        assert "training 1/2" in task["display"]

        feedback = server.submit_scores(4, 3)
        assert "reference 1" in feedback["display"]

        server.submit_scores(4, 1)
        task = server.get_current_task()
        assert task["status"] == "evaluating"
        assert task["id"] == "1"
        assert "block 0, 1/20" in task["display"]

        result = server.submit_scores(5, 0)
        assert result["progress"]["completed"] == 1
        assert "Scores saved" in result["display"]

    def test_out_of_range_scores(self, coordinator):
        server.start_session()
        server.submit_survey("general")
        server.skip_training()
        result = server.submit_scores(9, 0)
        assert "score_a" in result["error"]

    def test_progress_and_stats(self, coordinator):
        server.start_session()
        server.submit_survey("medical")
        server.skip_training()
        server.submit_scores(3, 3)

        progress = server.get_progress()
        assert progress["progress"]["completed"] == 1
        assert "Block 0" in progress["display"]

        stats = server.get_session_stats()
        assert stats["evaluations_submitted"] == 1
        assert stats["expertise_group"] == "medical"
        assert "Session Statistics" in stats["display"]

    def test_retry_session(self, coordinator):
        result = server.retry_session()
        assert result["status"] == "needs_survey"


class TestFormatting:
    """Display helpers."""

    def test_task_display(self):
        task = parse_catalog(build_task_data()).evaluation_tasks[0]
        text = fmt.format_task_display(task, "block 0, 1/20", include_sources=True)
        assert "Task 1" in text
        assert "Reference conclusion 1." in text
        assert "Abstract 1b." in text

    def test_progress_without_block(self):
        assert "No block" in fmt.format_progress_display(None)

    def test_complete_progress(self):
        text = fmt.format_progress_display({
            "block_number": 1, "total": 5, "completed": 5, "remaining": 0,
            "next_task_id": None, "is_complete": True,
        })
        assert "5/5 (100%)" in text

    def test_score_bar(self):
        assert fmt.format_score_bar(3) == "■■■□□"

    def test_no_work_message(self):
        assert "no more work" in fmt.format_status_message("complete", no_work_available=True)
