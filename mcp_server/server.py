#!/usr/bin/env python3
"""
Conclusion Evaluation Labeler MCP Server

Drives an annotator session (survey, training, block evaluation) from a chat
interface. Uses the FastMCP framework for MCP protocol implementation.
"""

import logging
import os
from pathlib import Path
from typing import Optional

from mcp.server.fastmcp import FastMCP

from evalblocks import ValidationError

from .api_client import APIConfig, EvalApiClient
from .session import SessionCoordinator, SessionManager, SessionStatus
from . import formatting as fmt


# Configuration from environment
API_BASE_URL = os.environ.get("EVAL_API_URL", "http://127.0.0.1:8000")
API_EMAIL = os.environ.get("EVAL_API_EMAIL", "annotator@example.org")
API_PASSWORD = os.environ.get("EVAL_API_PASSWORD", "annotator-password")
STATE_FILE = Path(os.environ.get("EVAL_STATE_FILE", "eval_session_state.json"))
MAX_RESERVE_ATTEMPTS = int(os.environ.get("EVAL_MAX_RESERVE_ATTEMPTS", "3"))

logger = logging.getLogger(__name__)


# Initialize MCP server
mcp = FastMCP(
    name="conclusion-eval-labeler",
    instructions="""
    Conclusion Evaluation Labeler - score generated conclusions against a reference.

    Use these tools to:
    1. Start or resume a session (start_session)
    2. Answer the one-time background survey (submit_survey)
    3. Look at the current task (get_current_task)
    4. Score both candidates 0-5 (submit_scores)
    5. Track progress (get_progress, get_session_stats)

    Typical workflow:
    1. Call start_session
    2. If asked, call submit_survey with "medical" or "general"
    3. Work through the training tasks, comparing with the reference scores
    4. Score each task of the assigned block until the block is complete
    5. After an error, call retry_session
    """
)


# Shared state
_coordinator: Optional[SessionCoordinator] = None


def get_coordinator() -> SessionCoordinator:
    """Get or create the session coordinator."""
    global _coordinator
    if _coordinator is None:
        config = APIConfig(
            base_url=API_BASE_URL,
            email=API_EMAIL,
            password=API_PASSWORD,
        )
        _coordinator = SessionCoordinator(
            EvalApiClient(config),
            SessionManager(STATE_FILE),
            max_reserve_attempts=MAX_RESERVE_ATTEMPTS,
        )
    return _coordinator


def _status_response(coordinator: SessionCoordinator) -> dict:
    summary = coordinator.summary()
    summary["display"] = fmt.format_status_message(
        coordinator.status.value, coordinator.no_work_available, coordinator.error_message
    )
    return summary


def _validation_error(e: ValidationError) -> dict:
    return {"error": str(e), "display": fmt.format_error(str(e))}


# =============================================================================
# MCP Tools - Session
# =============================================================================

@mcp.tool()
def start_session() -> dict:
    """
    Start or resume the annotation session.

    Loads the task catalog and the annotator profile. Resumes at the first
    task of the assigned block without scores, or asks for the background
    survey first.
    """
    coordinator = get_coordinator()
    coordinator.start()
    return _status_response(coordinator)


@mcp.tool()
def retry_session() -> dict:
    """Restart the session after an error."""
    coordinator = get_coordinator()
    coordinator.retry()
    return _status_response(coordinator)


@mcp.tool()
def submit_survey(expertise_group: str) -> dict:
    """
    Answer the background survey.

    Args:
        expertise_group: "medical" (clinician or medical researcher) or "general"
    """
    coordinator = get_coordinator()
    try:
        coordinator.submit_survey(expertise_group)
    except ValidationError as e:
        return _validation_error(e)
    return _status_response(coordinator)


@mcp.tool()
def skip_training() -> dict:
    """Skip the remaining training tasks and go to the assigned block."""
    coordinator = get_coordinator()
    try:
        coordinator.skip_training()
    except ValidationError as e:
        return _validation_error(e)
    return _status_response(coordinator)


# =============================================================================
# MCP Tools - Tasks
# =============================================================================

@mcp.tool()
def get_current_task(include_sources: bool = False) -> dict:
    """
    Show the task to score now.

    Args:
        include_sources: Also list the source abstracts

    Returns:
        Task data with id, reference conclusion and both candidates,
        or the session status when there is nothing to score.
    """
    coordinator = get_coordinator()
    task = coordinator.current_task()
    if task is None:
        return _status_response(coordinator)

    if coordinator.status == SessionStatus.TRAINING:
        position = f"training {coordinator.training_index + 1}/{len(coordinator.catalog.training_tasks)}"
    else:
        progress = coordinator.progress
        position = f"block {progress['block_number']}, {progress['completed'] + 1}/{progress['total']}"

    return {
        "id": task.id,
        "status": coordinator.status.value,
        "title": task.title,
        "reference": task.reference_text,
        "candidate_a": task.candidate_a,
        "candidate_b": task.candidate_b,
        "source_count": len(task.source_documents),
        "display": fmt.format_task_display(task, position, include_sources)
        + "\n" + fmt.format_rubric(),
    }


@mcp.tool()
def submit_scores(score_a: int, score_b: int) -> dict:
    """
    Score both candidates of the current task.

    Args:
        score_a: Similarity of candidate A to the reference (0-5)
        score_b: Similarity of candidate B to the reference (0-5)
    """
    coordinator = get_coordinator()
    was_training = coordinator.status == SessionStatus.TRAINING
    try:
        result = coordinator.submit_scores(score_a, score_b)
    except ValidationError as e:
        return _validation_error(e)

    if coordinator.status == SessionStatus.ERROR:
        result.update(_status_response(coordinator))
        return result

    if was_training:
        display = fmt.format_training_feedback(result)
    else:
        display = fmt.format_submission_result(result)
    if coordinator.status != SessionStatus.EVALUATING or was_training:
        display += "\n" + fmt.format_status_message(coordinator.status.value, coordinator.no_work_available)
    result["display"] = display
    return result


# =============================================================================
# MCP Tools - Statistics & Progress
# =============================================================================

@mcp.tool()
def get_progress() -> dict:
    """Get progress through the assigned block, read fresh from the server."""
    coordinator = get_coordinator()
    progress = coordinator.refresh_progress()
    return {
        "status": coordinator.status.value,
        "progress": progress,
        "display": fmt.format_progress_display(progress),
    }


@mcp.tool()
def get_session_stats() -> dict:
    """
    Get current session statistics.

    Returns status, block and counters for this annotation session.
    """
    stats = get_coordinator().summary()
    stats["display"] = fmt.format_session_stats(stats)
    return stats


# =============================================================================
# Entry Point
# =============================================================================

def main():
    """Run the MCP server."""
    logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO"))
    mcp.run()


if __name__ == "__main__":
    main()
