"""Executor inputs/outputs and run results."""

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict

from models.state import TaskStatus, WorkflowState


class SideEffectRecord(BaseModel):
    """A side effect reported by a task executor."""

    model_config = ConfigDict(frozen=True)

    effect_type: str
    description: str = ""


class TaskOutput(BaseModel):
    """Result returned by a task executor.

    `metadata` entries are merged into the workflow metadata when the
    task commits, which is how tasks feed state conditions.
    """

    model_config = ConfigDict(frozen=True)

    task_id: str
    output: Any = None
    metadata: dict[str, Any] = {}
    side_effects: list[SideEffectRecord] = []


class IterationContext(BaseModel):
    """Loop position passed to the executor for loop-body calls."""

    model_config = ConfigDict(frozen=True)

    loop_id: str
    iteration: int
    iterator: str | None = None
    value: Any = None
    variables: dict[str, Any] = {}


class RunOutcome(str, Enum):
    """Terminal result of a workflow run."""

    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


class RunResult(BaseModel):
    """What a host process gets back from a run."""

    workflow_name: str
    outcome: RunOutcome
    timed_out_loop: str | None = None
    task_statuses: dict[str, TaskStatus] = {}
    task_errors: dict[str, str] = {}
    task_results: dict[str, Any] = {}
    blocked_tasks: list[str] = []
    state: WorkflowState

    @property
    def succeeded(self) -> bool:
        return self.outcome == RunOutcome.COMPLETED
