# Services package

from services.collection_resolver import CollectionResolver, CollectionSourceError
from services.condition_evaluator import ConditionEvaluator
from services.config import EngineConfig
from services.control_client import ControlClient, ControlClientError
from services.debugger import BreakpointNotFoundError, DebugController, WorkflowCancelledError
from services.graph_builder import GraphBuilder, GraphConstructionError
from services.inspector import Inspector
from services.log_service import SizeAndTimeRotatingHandler, configure_logging
from services.loop_controller import LoopController, LoopIterationError, LoopTimeoutError
from services.scheduler import Scheduler
from services.state_store import (
    CheckpointIOError,
    FileStateStore,
    RedisStateStore,
    StateStore,
    WorkflowNotFoundError,
)
from services.task_executor import (
    CallableTaskExecutor,
    HttpTaskExecutor,
    TaskExecutionError,
    TaskExecutor,
    TaskInvoker,
)
from services.workflow_engine import WorkflowEngine
from services.workflow_loader import WorkflowLoader, WorkflowParseError

__all__ = [
    "BreakpointNotFoundError",
    "CallableTaskExecutor",
    "CheckpointIOError",
    "CollectionResolver",
    "CollectionSourceError",
    "ConditionEvaluator",
    "ControlClient",
    "ControlClientError",
    "DebugController",
    "EngineConfig",
    "FileStateStore",
    "GraphBuilder",
    "GraphConstructionError",
    "HttpTaskExecutor",
    "Inspector",
    "LoopController",
    "LoopIterationError",
    "LoopTimeoutError",
    "RedisStateStore",
    "Scheduler",
    "SizeAndTimeRotatingHandler",
    "StateStore",
    "TaskExecutionError",
    "TaskExecutor",
    "TaskInvoker",
    "WorkflowCancelledError",
    "WorkflowEngine",
    "WorkflowLoader",
    "WorkflowParseError",
    "configure_logging",
]
