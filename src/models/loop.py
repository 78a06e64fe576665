"""Loop declarations: iteration strategies, collection sources and control."""

from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from models.condition import ConditionSpec

DEFAULT_MAX_PARALLEL = 10


class CollectionFormat(str, Enum):
    """Format of a file or HTTP collection payload."""

    JSON = "json"
    JSON_LINES = "json_lines"
    CSV = "csv"
    LINES = "lines"


class InlineSource(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    source: Literal["inline"] = "inline"
    items: list[Any]
    max_items: int | None = Field(default=None, ge=0)


class RangeSource(BaseModel):
    """Numeric range; `end` is exclusive."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    source: Literal["range"] = "range"
    start: int
    end: int
    step: int = 1
    max_items: int | None = Field(default=None, ge=0)

    @field_validator("step")
    @classmethod
    def step_not_zero(cls, v: int) -> int:
        if v == 0:
            raise ValueError("step must not be zero")
        return v


class StateSource(BaseModel):
    """Collection read from workflow metadata."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    source: Literal["state"] = "state"
    key: str
    max_items: int | None = Field(default=None, ge=0)


class FileSource(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    source: Literal["file"] = "file"
    path: str
    format: CollectionFormat = CollectionFormat.JSON
    max_items: int | None = Field(default=None, ge=0)

    @field_validator("path")
    @classmethod
    def path_not_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("path is required")
        return v


class HttpSource(BaseModel):
    """Collection fetched once over HTTP before iteration begins."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    source: Literal["http"] = "http"
    url: str
    method: str = "GET"
    headers: dict[str, str] = {}
    body: Any = None
    format: CollectionFormat = CollectionFormat.JSON
    json_path: str | None = None
    max_items: int | None = Field(default=None, ge=0)

    @field_validator("url")
    @classmethod
    def url_not_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("url is required")
        return v


CollectionSource = Annotated[
    Union[InlineSource, RangeSource, StateSource, FileSource, HttpSource],
    Field(discriminator="source"),
]


class RepeatLoop(BaseModel):
    """Run the body a fixed number of times."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    type: Literal["repeat"] = "repeat"
    count: int = Field(ge=0)
    iterator: str | None = None
    parallel: bool = False
    max_parallel: int | None = Field(default=None, ge=1)

    def effective_max_parallel(self) -> int:
        if self.max_parallel is not None:
            return self.max_parallel
        return max(1, min(self.count, DEFAULT_MAX_PARALLEL))


class ForEachLoop(BaseModel):
    """Run the body once per collection item."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    type: Literal["for_each"] = "for_each"
    collection: CollectionSource
    iterator: str = "item"
    parallel: bool = False
    max_parallel: int | None = Field(default=None, ge=1)

    def effective_max_parallel(self, item_count: int) -> int:
        if self.max_parallel is not None:
            return self.max_parallel
        return max(1, min(item_count, DEFAULT_MAX_PARALLEL))


class RepeatUntilLoop(BaseModel):
    """Run the body, then check the condition (do-while)."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    type: Literal["repeat_until"] = "repeat_until"
    condition: ConditionSpec
    min_iterations: int = Field(default=1, ge=0)
    max_iterations: int = Field(ge=1)
    iteration_variable: str | None = None
    delay_between_secs: float | None = Field(default=None, ge=0)

    @model_validator(mode="after")
    def min_not_above_max(self) -> "RepeatUntilLoop":
        if self.min_iterations > self.max_iterations:
            raise ValueError("min_iterations must not exceed max_iterations")
        return self


class WhileLoop(BaseModel):
    """Check the condition, then run the body."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    type: Literal["while"] = "while"
    condition: ConditionSpec
    max_iterations: int = Field(ge=1)
    iteration_variable: str | None = None
    delay_between_secs: float | None = Field(default=None, ge=0)


LoopSpec = Annotated[
    Union[RepeatLoop, ForEachLoop, RepeatUntilLoop, WhileLoop],
    Field(discriminator="type"),
]


class LoopFailurePolicy(str, Enum):
    """How iteration failures affect the loop as a whole."""

    AGGREGATE = "aggregate"
    FAIL_FAST = "fail_fast"
    IGNORE = "ignore"


class LoopControl(BaseModel):
    """Per-loop control flow settings."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    break_condition: ConditionSpec | None = None
    continue_condition: ConditionSpec | None = None
    collect_results: bool = False
    result_key: str | None = None
    timeout_secs: float | None = Field(default=None, gt=0)
    checkpoint_interval: int | None = Field(default=None, ge=1)
    failure_policy: LoopFailurePolicy = LoopFailurePolicy.AGGREGATE

    def results_binding(self, task_id: str) -> str | None:
        if not self.collect_results:
            return None
        return self.result_key or f"{task_id}_results"
