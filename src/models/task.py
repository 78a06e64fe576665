"""Declared workflow and task definitions."""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from models.condition import ConditionSpec
from models.loop import LoopControl, LoopSpec

MAX_RETRY_DELAY_SECS = 60.0


class ErrorPolicy(BaseModel):
    """Retry and fallback settings consulted before a task is failed."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    retry: int = Field(default=0, ge=0)
    fallback_agent: str | None = None
    retry_delay_secs: float = Field(default=1.0, ge=0)
    exponential_backoff: bool = False

    def delay_for_attempt(self, attempt: int) -> float:
        """Delay before retry `attempt` (1-based)."""
        if not self.exponential_backoff:
            return self.retry_delay_secs
        delay = self.retry_delay_secs * (2 ** max(attempt - 1, 0))
        return min(delay, MAX_RETRY_DELAY_SECS)


class AgentSpec(BaseModel):
    """An agent that leaf tasks may reference."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    description: str = ""
    model: str | None = None
    tools: list[str] = []


class TaskSpec(BaseModel):
    """A declared task; may nest subtasks arbitrarily deep."""

    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)

    description: str = ""
    agent: str | None = None
    command: str | None = None
    uses: str | None = None
    subflow: str | None = None
    inputs: dict[str, Any] = {}
    priority: int = 0
    subtasks: dict[str, "TaskSpec"] = {}
    depends_on: list[str] = []
    parallel_with: list[str] = []
    on_error: ErrorPolicy | None = None
    condition: ConditionSpec | None = None
    loop: LoopSpec | None = None
    loop_control: LoopControl | None = None
    inject_context: bool = False

    @property
    def execution_ref(self) -> str | None:
        """First declared execution reference, if any."""
        for ref in (self.agent, self.command, self.uses, self.subflow):
            if ref:
                return ref
        return None

    @property
    def is_group(self) -> bool:
        """True for a parent that only groups subtasks."""
        return bool(self.subtasks) and self.loop is None


TaskSpec.model_rebuild()


class WorkflowSpec(BaseModel):
    """Top-level workflow document."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str
    version: str = "1.0.0"
    description: str = ""
    agents: dict[str, AgentSpec] = {}
    inputs: dict[str, Any] = {}
    tasks: dict[str, TaskSpec]

    @field_validator("name")
    @classmethod
    def name_not_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("name is required")
        return v

    @field_validator("tasks")
    @classmethod
    def tasks_not_empty(cls, v: dict) -> dict:
        if not v:
            raise ValueError("tasks is required")
        return v
