"""Models package."""

from models.condition import ConditionSpec
from models.debug import Breakpoint, BreakCondition, DebugStatus, StepMode, Transition, TransitionKind
from models.execution import IterationContext, RunOutcome, RunResult, TaskOutput
from models.graph import TaskGraph, TaskNode
from models.loop import CollectionSource, LoopControl, LoopFailurePolicy, LoopSpec
from models.state import (
    IterationRecord,
    LoopState,
    LoopStatus,
    TaskStatus,
    WorkflowState,
    WorkflowStatus,
)
from models.task import AgentSpec, ErrorPolicy, TaskSpec, WorkflowSpec

__all__ = [
    "AgentSpec",
    "BreakCondition",
    "Breakpoint",
    "CollectionSource",
    "ConditionSpec",
    "DebugStatus",
    "ErrorPolicy",
    "IterationContext",
    "IterationRecord",
    "LoopControl",
    "LoopFailurePolicy",
    "LoopSpec",
    "LoopState",
    "LoopStatus",
    "RunOutcome",
    "RunResult",
    "StepMode",
    "TaskGraph",
    "TaskNode",
    "TaskOutput",
    "TaskSpec",
    "TaskStatus",
    "Transition",
    "TransitionKind",
    "WorkflowSpec",
    "WorkflowState",
    "WorkflowStatus",
]
