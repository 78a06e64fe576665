"""Debugger models: transitions, breakpoints, snapshots and timeline."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from models.state import TaskStatus, WorkflowState


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class DebugMode(str, Enum):
    """Debugger execution mode."""

    RUNNING = "running"
    PAUSED = "paused"
    STEPPING = "stepping"
    SUSPENDED = "suspended"


class StepMode(str, Enum):
    """How far execution proceeds before halting again."""

    CONTINUE = "continue"
    STEP_TASK = "step_task"
    STEP_ITERATION = "step_iteration"


class TransitionKind(str, Enum):
    TASK_STARTED = "task_started"
    TASK_COMPLETED = "task_completed"
    TASK_FAILED = "task_failed"
    TASK_SKIPPED = "task_skipped"
    ITERATION_STARTED = "iteration_started"
    ITERATION_COMPLETED = "iteration_completed"
    ITERATION_FAILED = "iteration_failed"
    ITERATION_SKIPPED = "iteration_skipped"
    LOOP_FINISHED = "loop_finished"


FAILURE_KINDS = frozenset({TransitionKind.TASK_FAILED, TransitionKind.ITERATION_FAILED})

# Transitions that record the end of work already in flight
COMPLETION_KINDS = frozenset(
    {
        TransitionKind.TASK_COMPLETED,
        TransitionKind.TASK_FAILED,
        TransitionKind.ITERATION_COMPLETED,
        TransitionKind.ITERATION_FAILED,
        TransitionKind.LOOP_FINISHED,
    }
)


class Transition(BaseModel):
    """A state change the scheduler is about to commit."""

    model_config = ConfigDict(frozen=True)

    kind: TransitionKind
    task_id: str
    iteration: int | None = None
    status: TaskStatus | None = None
    error: str | None = None
    detail: str | None = None
    timestamp: datetime = Field(default_factory=_utc_now)


class BreakConditionType(str, Enum):
    TASK_STATUS = "task_status"
    VARIABLE_EQUALS = "variable_equals"
    ON_ERROR = "on_error"
    TASK_ERROR = "task_error"


class BreakCondition(BaseModel):
    """Predicate over the transition being committed."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    type: BreakConditionType
    task: str | None = None
    status: TaskStatus | None = None
    key: str | None = None
    value: Any = None
    pattern: str | None = None

    @model_validator(mode="after")
    def required_fields(self) -> "BreakCondition":
        if self.type == BreakConditionType.TASK_STATUS:
            if not self.task or self.status is None:
                raise ValueError("task_status requires task and status")
        if self.type == BreakConditionType.VARIABLE_EQUALS and not self.key:
            raise ValueError("variable_equals requires key")
        if self.type == BreakConditionType.TASK_ERROR and not self.task:
            raise ValueError("task_error requires task")
        return self


class BreakpointKind(str, Enum):
    TASK = "task"
    CONDITIONAL = "conditional"
    ITERATION = "iteration"


class Breakpoint(BaseModel):
    id: str
    kind: BreakpointKind
    task: str | None = None
    iteration: int | None = None
    condition: BreakCondition | None = None
    label: str | None = None
    enabled: bool = True
    hit_count: int = 0


class TimelineEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    sequence: int
    elapsed_secs: float
    transition: Transition


class Snapshot(BaseModel):
    """A named full copy of workflow state."""

    model_config = ConfigDict(frozen=True)

    id: str
    description: str
    elapsed_secs: float
    current_task: str | None = None
    created_at: datetime = Field(default_factory=_utc_now)
    state: WorkflowState | None = None


class SideEffect(BaseModel):
    model_config = ConfigDict(frozen=True)

    task_id: str
    effect_type: str
    description: str = ""
    timestamp: datetime = Field(default_factory=_utc_now)


class DebugStatus(BaseModel):
    """Summary returned by the inspector's status query."""

    model_config = ConfigDict(frozen=True)

    mode: DebugMode
    step_mode: StepMode
    enabled: bool
    current_task: str | None = None
    suspended_on: Transition | None = None
    waiting: int = 0
    breakpoint_count: int = 0
    timeline_length: int = 0
    snapshot_count: int = 0
    side_effect_count: int = 0
    elapsed_secs: float = 0.0
