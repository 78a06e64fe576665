"""Condition expressions for conditional tasks and loop control."""

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

from models.state import TaskStatus


class TaskStatusCondition(BaseModel):
    """True when a task has reached the given status."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    type: Literal["task_status"] = "task_status"
    task: str
    status: TaskStatus


class StateEqualsCondition(BaseModel):
    """True when a state key holds the given value."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    type: Literal["state_equals"] = "state_equals"
    key: str
    value: Any = None


class StateExistsCondition(BaseModel):
    """True when a state key is present."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    type: Literal["state_exists"] = "state_exists"
    key: str


class AlwaysCondition(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    type: Literal["always"] = "always"


class NeverCondition(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    type: Literal["never"] = "never"


class SingleCondition(BaseModel):
    """Wraps one leaf condition."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    type: Literal["single"] = "single"
    condition: "LeafCondition"


class AndCondition(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    type: Literal["and"] = "and"
    conditions: list["ConditionSpec"]


class OrCondition(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    type: Literal["or"] = "or"
    conditions: list["ConditionSpec"]


class NotCondition(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    type: Literal["not"] = "not"
    condition: "ConditionSpec"


LeafCondition = Annotated[
    Union[
        TaskStatusCondition,
        StateEqualsCondition,
        StateExistsCondition,
        AlwaysCondition,
        NeverCondition,
    ],
    Field(discriminator="type"),
]

ConditionSpec = Annotated[
    Union[
        SingleCondition,
        AndCondition,
        OrCondition,
        NotCondition,
        TaskStatusCondition,
        StateEqualsCondition,
        StateExistsCondition,
        AlwaysCondition,
        NeverCondition,
    ],
    Field(discriminator="type"),
]

SingleCondition.model_rebuild()
AndCondition.model_rebuild()
OrCondition.model_rebuild()
NotCondition.model_rebuild()
