"""
Session state for an annotator working through the evaluation.

SessionManager persists the little that must survive a restart (whether
training was finished, session counters). SessionCoordinator is the state
machine that takes an annotator from the background survey through training
and block evaluation to completion. Everything else, the block number and
which tasks are done, is read back from the server, so a restarted session
resumes where the ledger says it left off.
"""

import json
import logging
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Optional

import httpx

from evalblocks import (
    CatalogExhausted,
    LabelerError,
    ReservationConflict,
    Task,
    TaskCatalog,
    ValidationError,
    parse_catalog,
)

from .api_client import EvalApiClient

logger = logging.getLogger(__name__)

EXPERTISE_GROUPS = ("medical", "general")
MIN_SCORE = 0
MAX_SCORE = 5


class SessionStatus(str, Enum):
    INITIALIZING = "initializing"
    LOADING_TASKS = "loading_tasks"
    NEEDS_SURVEY = "needs_survey"
    TRAINING = "training"
    EVALUATING = "evaluating"
    COMPLETE = "complete"
    ERROR = "error"


@dataclass
class SessionState:
    """
    Persisted session state.

    Saved to disk so sessions survive restarts.
    """
    training_completed: bool = False
    training_reviewed: int = 0
    evaluations_submitted: int = 0
    allocation_conflicts: int = 0
    session_started: Optional[str] = None


class SessionManager:
    """
    Manages persistent session state.

    State is saved to a JSON file so it survives server restarts.
    """

    def __init__(self, state_file: Optional[Path] = None):
        self.state_file = state_file or Path("eval_session_state.json")
        self._state: Optional[SessionState] = None

    @property
    def state(self) -> SessionState:
        """Get current state, loading from disk if needed."""
        if self._state is None:
            self._state = self._load_state()
        return self._state

    def _load_state(self) -> SessionState:
        """Load state from disk, or create new."""
        if self.state_file.exists():
            try:
                with open(self.state_file) as f:
                    return SessionState(**json.load(f))
            except (json.JSONDecodeError, TypeError) as e:
                logger.warning("Ignoring unreadable session state %s: %s", self.state_file, e)
        return SessionState(session_started=_now().isoformat())

    def save(self) -> None:
        """Save state to disk."""
        if self._state is None:
            return
        with open(self.state_file, "w") as f:
            json.dump(asdict(self._state), f, indent=2)

    def mark_training_completed(self) -> None:
        self.state.training_completed = True
        self.save()

    def record_training_review(self) -> None:
        self.state.training_reviewed += 1
        self.save()

    def record_evaluation(self) -> None:
        self.state.evaluations_submitted += 1
        self.save()

    def record_allocation_conflict(self) -> None:
        self.state.allocation_conflicts += 1
        self.save()

    def reset_session(self) -> None:
        """Reset the session state entirely."""
        self._state = SessionState(session_started=_now().isoformat())
        self.save()


class SessionCoordinator:
    """
    Drives one annotator session against the labeler API.

    States: initializing -> loading_tasks -> (needs_survey | training) ->
    evaluating -> complete, with error reachable from any state. Entering
    evaluating while the profile holds no block triggers one allocation
    (decide, then reserve with the decision epoch), re-deciding only when the
    reservation loses to a concurrent one.
    """

    def __init__(
        self,
        client: EvalApiClient,
        manager: Optional[SessionManager] = None,
        max_reserve_attempts: int = 3,
    ):
        if max_reserve_attempts < 1:
            raise ValueError("max_reserve_attempts must be at least 1")
        self.client = client
        self.manager = manager or SessionManager()
        self.max_reserve_attempts = max_reserve_attempts

        self.status = SessionStatus.INITIALIZING
        self.catalog = TaskCatalog()
        self.profile: Optional[dict] = None
        self.progress: Optional[dict] = None
        self.training_index = 0
        self.no_work_available = False
        self.error_message: Optional[str] = None
        self._task_started_at: Optional[datetime] = None

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def start(self) -> SessionStatus:
        """Load the catalog and the profile, then route to the first working state."""
        self.status = SessionStatus.INITIALIZING
        self.profile = None
        self.progress = None
        self.training_index = 0
        self.no_work_available = False
        self.error_message = None

        with self._failures():
            self.status = SessionStatus.LOADING_TASKS
            self.catalog = parse_catalog(self.client.get_tasks())
            self.profile = self.client.get_profile()
            logger.info(
                "Session for %s: %d training, %d evaluation tasks, block %s",
                self.profile.get("email"), len(self.catalog.training_tasks),
                self.catalog.size, self.profile.get("block_number"),
            )
            self._route()
        return self.status

    def retry(self) -> SessionStatus:
        """Restart from initializing after an error."""
        logger.info("Retrying session from %s", self.status.value)
        return self.start()

    def submit_survey(self, expertise_group: str) -> SessionStatus:
        """Record the background survey answer and move on."""
        self._require(SessionStatus.NEEDS_SURVEY)
        group = (expertise_group or "").strip().lower()
        if group not in EXPERTISE_GROUPS:
            raise ValidationError(
                f"Invalid expertise group '{expertise_group}'. Choose one of: {', '.join(EXPERTISE_GROUPS)}"
            )

        with self._failures():
            self.profile = self.client.submit_survey(group)
            self._route()
        return self.status

    def submit_scores(self, score_a: int, score_b: int) -> dict:
        """
        Score the current task.

        In training, returns the reference scores for comparison and advances
        the local cursor. In evaluation, writes the scores and recomputes the
        cursor from the server's progress view.
        """
        _check_score("score_a", score_a)
        _check_score("score_b", score_b)

        if self.status == SessionStatus.TRAINING:
            return self._submit_training(score_a, score_b)

        self._require(SessionStatus.EVALUATING)
        task = self.current_task()
        if task is None:
            raise ValidationError("No task left to score in this block")
        result = {"task_id": task.id, "score_a": score_a, "score_b": score_b}

        with self._failures():
            response = self.client.submit_evaluation(
                task.id,
                score_a,
                score_b,
                session_start_time=self._task_started_at,
                evaluation_end_time=_now(),
            )
            self.manager.record_evaluation()
            self._set_progress(response["progress"])

        result["status"] = self.status.value
        result["progress"] = self.progress
        return result

    def skip_training(self) -> SessionStatus:
        """Leave training early and go to evaluation."""
        self._require(SessionStatus.TRAINING)
        self.manager.mark_training_completed()
        with self._failures():
            self._enter_evaluating()
        return self.status

    def refresh_progress(self) -> Optional[dict]:
        """Re-read progress from the server."""
        if self.status in (SessionStatus.EVALUATING, SessionStatus.COMPLETE) and not self.no_work_available:
            with self._failures():
                self._set_progress(self.client.get_progress())
        return self.progress

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    def current_task(self) -> Optional[Task]:
        """The task the annotator should look at now, if any."""
        task = None
        if self.status == SessionStatus.TRAINING:
            task = self.catalog.training_tasks[self.training_index]
        elif self.status == SessionStatus.EVALUATING and self.progress:
            task = self.catalog.get(self.progress["next_task_id"])
        if task is not None and self._task_started_at is None:
            self._task_started_at = _now()
        return task

    def summary(self) -> dict:
        state = self.manager.state
        return {
            "status": self.status.value,
            "email": (self.profile or {}).get("email"),
            "expertise_group": (self.profile or {}).get("expertise_group"),
            "block_number": (self.profile or {}).get("block_number"),
            "progress": self.progress,
            "training_position": self.training_index if self.status == SessionStatus.TRAINING else None,
            "training_total": len(self.catalog.training_tasks),
            "training_completed": state.training_completed,
            "training_reviewed": state.training_reviewed,
            "evaluations_submitted": state.evaluations_submitted,
            "allocation_conflicts": state.allocation_conflicts,
            "no_work_available": self.no_work_available,
            "error": self.error_message,
            "session_started": state.session_started,
        }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _route(self) -> None:
        if not self.profile.get("expertise_group"):
            self.status = SessionStatus.NEEDS_SURVEY
        elif self.catalog.training_tasks and not self.manager.state.training_completed:
            self.status = SessionStatus.TRAINING
            self.training_index = 0
            self._task_started_at = None
        else:
            self._enter_evaluating()

    def _submit_training(self, score_a: int, score_b: int) -> dict:
        task = self.catalog.training_tasks[self.training_index]
        result = {"task_id": task.id, "score_a": score_a, "score_b": score_b}
        if task.correct_scores is not None:
            result["correct_scores"] = {
                "score_a": task.correct_scores.score_a,
                "score_b": task.correct_scores.score_b,
            }

        self.manager.record_training_review()
        self.training_index += 1
        self._task_started_at = None

        if self.training_index >= len(self.catalog.training_tasks):
            logger.info("Training finished after %d tasks", self.training_index)
            self.manager.mark_training_completed()
            with self._failures():
                self._enter_evaluating()

        result["status"] = self.status.value
        return result

    def _enter_evaluating(self) -> None:
        self.status = SessionStatus.EVALUATING
        if self.profile.get("block_number") is None:
            try:
                self._allocate()
            except CatalogExhausted as e:
                logger.info("No work available: %s", e)
                self.no_work_available = True
                self.status = SessionStatus.COMPLETE
                return
        self._set_progress(self.client.get_progress())

    def _allocate(self) -> None:
        """Decide and reserve a block for this annotator."""
        last_conflict = None
        for attempt in range(1, self.max_reserve_attempts + 1):
            decision = self.client.get_next_block()
            block_number = decision["nextBlockNumber"]
            try:
                reserved = self.client.reserve_block(block_number, decision.get("epoch"))
            except ReservationConflict as e:
                logger.info(
                    "Reservation of block %d lost (attempt %d/%d), deciding again",
                    block_number, attempt, self.max_reserve_attempts,
                )
                self.manager.record_allocation_conflict()
                last_conflict = e
                continue

            self.profile = reserved["annotator"]
            logger.info(
                "Assigned block %d (%s)", block_number,
                "reassignment" if decision.get("isReassignment") else "new block",
            )
            return
        raise last_conflict

    def _set_progress(self, progress: dict) -> None:
        previous = (self.progress or {}).get("next_task_id")
        self.progress = progress
        if progress["next_task_id"] != previous:
            self._task_started_at = None
        if progress["is_complete"]:
            logger.info("Block %s complete", progress["block_number"])
            self.status = SessionStatus.COMPLETE

    def _require(self, status: SessionStatus) -> None:
        if self.status != status:
            raise ValidationError(
                f"Session is {self.status.value}, expected {status.value}"
            )

    @contextmanager
    def _failures(self):
        """Move the session to error on unrecoverable store or HTTP failures."""
        try:
            yield
        except (LabelerError, httpx.HTTPStatusError) as e:
            if isinstance(e, ValidationError):
                raise
            logger.error("Session failed in %s: %s", self.status.value, e)
            self.status = SessionStatus.ERROR
            self.error_message = str(e)


def _check_score(name: str, value) -> None:
    if isinstance(value, bool) or not isinstance(value, int) or not MIN_SCORE <= value <= MAX_SCORE:
        raise ValidationError(f"{name} must be an integer from {MIN_SCORE} to {MAX_SCORE}, got {value!r}")


def _now() -> datetime:
    return datetime.now(timezone.utc)
