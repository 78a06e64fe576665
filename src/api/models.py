"""Request and response models for the REST API."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, field_validator, model_validator

from models.debug import BreakCondition, StepMode


class RunRequest(BaseModel):
    """Request to run a workflow document."""

    model_config = ConfigDict(extra="forbid")

    workflow: dict
    resume: bool = True

    @field_validator("workflow")
    @classmethod
    def workflow_not_empty(cls, v: dict) -> dict:
        if not v:
            raise ValueError("workflow is required")
        return v


class RunResponse(BaseModel):
    """Terminal outcome of a run."""

    model_config = ConfigDict(frozen=True)

    workflow_name: str
    outcome: str
    timed_out_loop: str | None = None
    progress: float
    task_statuses: dict[str, str]
    task_errors: dict[str, str] = {}
    blocked_tasks: list[str] = []


class LoopSummaryResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: str
    current_iteration: int
    total_iterations: int | None = None
    executed_iterations: int


class StateResponse(BaseModel):
    """Saved state of one workflow."""

    model_config = ConfigDict(frozen=True)

    workflow_name: str
    workflow_version: str
    status: str
    progress: float
    task_statuses: dict[str, str]
    task_errors: dict[str, str] = {}
    loops: dict[str, LoopSummaryResponse] = {}
    started_at: datetime
    ended_at: datetime | None = None
    checkpoint_at: datetime | None = None


class StateListResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    workflows: list[str]


class BreakpointRequest(BaseModel):
    """Request to add a breakpoint."""

    model_config = ConfigDict(extra="forbid")

    kind: Literal["task", "iteration", "conditional"]
    task: str | None = None
    iteration: int | None = None
    condition: BreakCondition | None = None
    label: str | None = None

    @model_validator(mode="after")
    def fields_for_kind(self) -> "BreakpointRequest":
        if self.kind in ("task", "iteration") and not self.task:
            raise ValueError("task is required")
        if self.kind == "iteration" and self.iteration is None:
            raise ValueError("iteration is required")
        if self.kind == "conditional" and self.condition is None:
            raise ValueError("condition is required")
        return self


class BreakpointEnableRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    enabled: bool


class StepModeRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    step_mode: StepMode


class ResumeResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    released: bool


class SnapshotResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    description: str
    elapsed_secs: float
    current_task: str | None = None
    created_at: datetime


class SnapshotRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    description: str

    @field_validator("description")
    @classmethod
    def description_not_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("description is required")
        return v


class ErrorResponse(BaseModel):
    """Error response."""

    model_config = ConfigDict(frozen=True)

    detail: str


class HealthResponse(BaseModel):
    """Health check response."""

    model_config = ConfigDict(frozen=True)

    status: str
    running: bool = False
