"""
Task catalog: the ordered, immutable list of evaluation tasks.

The catalog resource is published in more than one shape. It is parsed once,
at the boundary, into a single TaskCatalog so nothing downstream has to know
which shape was on disk:

- a flat list of tasks
- ``{"tasks": [...]}``, training tasks recognised by ``correctScores``
  or ``isTraining``
- ``{"trainingTasks": [...], "evaluationTasks": [...]}``

Block slicing is positional: block n is evaluation tasks
``[n * block_size, (n + 1) * block_size)``.
"""

import json
import logging
import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic import ValidationError as PydanticValidationError

from .exceptions import CatalogFormatError, ConfigurationError

logger = logging.getLogger(__name__)


def _first(data: dict, *keys: str) -> Any:
    """Return the value of the first key present in data."""
    for key in keys:
        if key in data:
            return data[key]
    return None


class CorrectScores(BaseModel):
    """Reference scores shipped with training tasks."""
    score_a: int = Field(..., ge=0, le=5)
    score_b: int = Field(..., ge=0, le=5)


class Task(BaseModel):
    """A single evaluation task: a reference conclusion and two candidates."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Stable task identifier")
    reference_text: str = Field(..., description="Reference conclusion")
    candidate_a: str = Field(..., description="Candidate conclusion A")
    candidate_b: str = Field(..., description="Candidate conclusion B")
    source_documents: list[str] = Field(default_factory=list, description="Source abstracts")
    title: Optional[str] = Field(None, description="Source paper title")
    correct_scores: Optional[CorrectScores] = Field(None, description="Reference scores (training only)")
    is_training: bool = False

    @model_validator(mode="before")
    @classmethod
    def _from_wire(cls, data: Any) -> Any:
        """Accept both the published camelCase layout and the flat one."""
        if not isinstance(data, dict):
            return data

        outputs = data.get("modelOutputs") or {}
        if not isinstance(outputs, dict):
            raise ValueError(f"modelOutputs must be an object, got {type(outputs).__name__}")
        task_id = _first(data, "taskId", "id")

        scores = _first(data, "correctScores", "correct_scores")
        if isinstance(scores, dict) and "modelA_score" in scores:
            scores = {"score_a": scores["modelA_score"], "score_b": scores["modelB_score"]}

        return {
            "id": str(task_id) if task_id is not None else None,
            "reference_text": _first(data, "referenceConclusion", "referenceText", "reference_text"),
            "candidate_a": outputs.get("conclusionA", _first(data, "candidateA", "candidate_a")),
            "candidate_b": outputs.get("conclusionB", _first(data, "candidateB", "candidate_b")),
            "source_documents": _first(data, "sourceAbstracts", "sourceDocuments", "source_documents") or [],
            "title": _first(data, "sourcePaperTitle", "title", "metaAnalysisName"),
            "correct_scores": scores,
            "is_training": bool(_first(data, "isTraining", "is_training")) or scores is not None,
        }


@dataclass
class TaskCatalog:
    """Normalized catalog: training tasks plus ordered evaluation tasks."""
    training_tasks: tuple[Task, ...] = ()
    evaluation_tasks: tuple[Task, ...] = ()
    _positions: dict[str, int] = field(init=False, repr=False, default_factory=dict)

    def __post_init__(self):
        self.training_tasks = tuple(self.training_tasks)
        self.evaluation_tasks = tuple(self.evaluation_tasks)
        seen: set[str] = set()
        for task in self.training_tasks + self.evaluation_tasks:
            if task.id in seen:
                raise CatalogFormatError(f"Duplicate task id in catalog: {task.id}")
            seen.add(task.id)
        self._positions = {task.id: i for i, task in enumerate(self.evaluation_tasks)}

    @property
    def size(self) -> int:
        """Number of evaluation tasks (training tasks are never allocated)."""
        return len(self.evaluation_tasks)

    def block_count(self, block_size: int) -> int:
        _check_block_size(block_size)
        return math.ceil(self.size / block_size)

    def block_bounds(self, block_number: int, block_size: int) -> tuple[int, int]:
        """Return the [start, end) positions of a block, clipped to the catalog."""
        _check_block_size(block_size)
        start = block_number * block_size
        return start, min(start + block_size, self.size)

    def block_capacity(self, block_number: int, block_size: int) -> int:
        """Number of tasks in a block; shorter than block_size for the final block."""
        start, end = self.block_bounds(block_number, block_size)
        return max(0, end - start)

    def block_tasks(self, block_number: int, block_size: int) -> list[Task]:
        start, end = self.block_bounds(block_number, block_size)
        return list(self.evaluation_tasks[start:end])

    def block_of(self, task_id, block_size: int) -> Optional[int]:
        """Block number containing a task, or None for unknown/training tasks."""
        _check_block_size(block_size)
        position = self._positions.get(str(task_id))
        if position is None:
            return None
        return position // block_size

    def get(self, task_id) -> Optional[Task]:
        task_id = str(task_id)
        position = self._positions.get(task_id)
        if position is not None:
            return self.evaluation_tasks[position]
        for task in self.training_tasks:
            if task.id == task_id:
                return task
        return None


def _check_block_size(block_size: int) -> None:
    if block_size <= 0:
        raise ConfigurationError(f"block_size must be positive, got {block_size}")


def _catalog_shape(data: Any) -> str:
    """Tag the resource as 'flat' or 'split'."""
    if isinstance(data, list):
        return "flat"
    if isinstance(data, dict):
        if "trainingTasks" in data or "evaluationTasks" in data:
            return "split"
        if isinstance(data.get("tasks"), list):
            return "flat"
    raise CatalogFormatError(
        "Invalid tasks data structure: expected a list, {'tasks': [...]} "
        "or {'trainingTasks': [...], 'evaluationTasks': [...]}"
    )


def _parse_tasks(items: Any, where: str) -> list[Task]:
    if not isinstance(items, list):
        raise CatalogFormatError(f"'{where}' must be a list of tasks")
    tasks = []
    for i, item in enumerate(items):
        try:
            tasks.append(Task.model_validate(item))
        except PydanticValidationError as e:
            raise CatalogFormatError(f"Invalid task at {where}[{i}]: {e}") from e
    return tasks


def parse_catalog(data: Any) -> TaskCatalog:
    """Normalize any supported catalog shape into a TaskCatalog."""
    shape = _catalog_shape(data)

    if shape == "split":
        training = [
            t if t.is_training else t.model_copy(update={"is_training": True})
            for t in _parse_tasks(data.get("trainingTasks", []), "trainingTasks")
        ]
        evaluation = _parse_tasks(data.get("evaluationTasks", []), "evaluationTasks")
    else:
        items = data if isinstance(data, list) else data["tasks"]
        tasks = _parse_tasks(items, "tasks")
        training = [t for t in tasks if t.is_training]
        evaluation = [t for t in tasks if not t.is_training]

    catalog = TaskCatalog(training_tasks=training, evaluation_tasks=evaluation)
    logger.info(
        "Loaded %d total tasks: %d training, %d evaluation",
        len(training) + len(evaluation), len(training), len(evaluation),
    )
    return catalog


def load_catalog(path: Union[str, Path]) -> TaskCatalog:
    """Load and normalize a catalog from a JSON file."""
    path = Path(path)
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise CatalogFormatError(f"Task catalog {path} is not valid JSON: {e}") from e
    return parse_catalog(data)


def catalog_to_dict(catalog: TaskCatalog) -> dict:
    """Serialize a catalog in the split wire shape."""
    def wire(task: Task) -> dict:
        out = {
            "taskId": task.id,
            "referenceConclusion": task.reference_text,
            "modelOutputs": {"conclusionA": task.candidate_a, "conclusionB": task.candidate_b},
            "sourceAbstracts": list(task.source_documents),
            "isTraining": task.is_training,
        }
        if task.title is not None:
            out["sourcePaperTitle"] = task.title
        if task.correct_scores is not None:
            out["correctScores"] = {
                "modelA_score": task.correct_scores.score_a,
                "modelB_score": task.correct_scores.score_b,
            }
        return out

    return {
        "trainingTasks": [wire(t) for t in catalog.training_tasks],
        "evaluationTasks": [wire(t) for t in catalog.evaluation_tasks],
    }
