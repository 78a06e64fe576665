"""Workflow engine: builds the graph, restores state and drives a run."""

import logging
import threading
import time
from typing import Callable, Optional

from models.execution import RunOutcome, RunResult
from models.graph import TaskGraph
from models.state import TaskStatus, WorkflowState
from models.task import WorkflowSpec
from services.collection_resolver import CollectionResolver
from services.condition_evaluator import ConditionEvaluator
from services.debugger import DebugController
from services.execution_context import WorkflowContext
from services.graph_builder import GraphBuilder
from services.loop_controller import LoopController
from services.scheduler import Scheduler
from services.state_store import CheckpointIOError, StateStore
from services.task_executor import TaskExecutor, TaskInvoker


class WorkflowEngine:
    """Runs workflows against a task executor with optional persistence."""

    def __init__(
        self,
        executor: TaskExecutor,
        state_store: Optional[StateStore] = None,
        debugger: Optional[DebugController] = None,
        max_workers: Optional[int] = None,
        resolver: Optional[CollectionResolver] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        if executor is None:
            raise ValueError("executor is required")

        self._state_store = state_store
        self._debugger = debugger
        self._builder = GraphBuilder()
        evaluator = ConditionEvaluator()
        invoker = TaskInvoker(executor, sleep=sleep)
        loop_controller = LoopController(
            invoker,
            evaluator=evaluator,
            resolver=resolver or CollectionResolver(),
            sleep=sleep,
            clock=clock,
        )
        self._scheduler = Scheduler(invoker, loop_controller, evaluator, max_workers)
        self._active: Optional[WorkflowContext] = None
        self._lock = threading.Lock()
        self.logger = logging.getLogger(__name__)

    @property
    def state_store(self) -> Optional[StateStore]:
        return self._state_store

    @property
    def debugger(self) -> Optional[DebugController]:
        return self._debugger

    def build_graph(self, workflow: WorkflowSpec) -> TaskGraph:
        return self._builder.build(workflow)

    def load_or_create_state(
        self, workflow: WorkflowSpec, graph: TaskGraph, resume: bool = True
    ) -> WorkflowState:
        """Load a resumable checkpoint, or start from an empty state."""
        if workflow is None:
            raise ValueError("workflow is required")

        state: Optional[WorkflowState] = None
        if resume and self._state_store is not None and self._state_store.exists(workflow.name):
            try:
                saved = self._state_store.load(workflow.name)
            except CheckpointIOError as e:
                self.logger.warning(f"Ignoring unreadable checkpoint: {e}")
                saved = None

            if saved is not None and saved.can_resume():
                reset = saved.prepare_for_resume()
                done = sum(1 for s in saved.task_statuses.values() if s == TaskStatus.COMPLETED)
                self.logger.info(
                    f"Resuming workflow {workflow.name}: {done} tasks completed, "
                    f"{len(reset)} reset to pending"
                )
                state = saved
            elif saved is not None:
                self.logger.info(
                    f"Saved state for {workflow.name} is {saved.status.value}; starting fresh"
                )

        if state is None:
            state = WorkflowState(
                workflow_name=workflow.name,
                workflow_version=workflow.version,
                metadata=dict(workflow.inputs),
            )

        for task_id in graph.ids:
            state.task_statuses.setdefault(task_id, TaskStatus.PENDING)
        return state

    def run(self, workflow: WorkflowSpec, resume: bool = True) -> RunResult:
        """Run a workflow to a terminal outcome.

        GraphConstructionError surfaces before anything executes.
        """
        if workflow is None:
            raise ValueError("workflow is required")

        graph = self.build_graph(workflow)
        state = self.load_or_create_state(workflow, graph, resume)

        context = WorkflowContext(state, self._state_store, self._debugger)
        with self._lock:
            if self._active is not None:
                raise RuntimeError("A workflow run is already in progress")
            self._active = context
        if self._debugger is not None:
            self._debugger.reset()

        self.logger.info(f"Starting workflow {workflow.name} ({len(graph)} tasks)")
        try:
            outcome, timed_out_loop = self._scheduler.run(graph, context)
        finally:
            with self._lock:
                self._active = None

        def finalize(s: WorkflowState) -> None:
            if outcome == RunOutcome.COMPLETED:
                s.mark_completed()
            elif outcome == RunOutcome.FAILED:
                s.mark_failed()
            else:
                s.mark_paused()

        context.commit(None, finalize)
        context.checkpoint(f"workflow {outcome.value}")

        final = context.snapshot()
        blocked = graph.get_blocked_tasks(final)
        if blocked:
            self.logger.warning(f"Tasks blocked by failed dependencies: {blocked}")
        self.logger.info(f"Workflow {workflow.name} finished: {outcome.value}")

        return RunResult(
            workflow_name=workflow.name,
            outcome=outcome,
            timed_out_loop=timed_out_loop,
            task_statuses=dict(final.task_statuses),
            task_errors=dict(final.task_errors),
            task_results=dict(final.task_results),
            blocked_tasks=blocked,
            state=final,
        )

    def cancel(self) -> bool:
        """Stop dispatching new work for the active run."""
        with self._lock:
            context = self._active
        if context is None:
            return False
        context.cancel()
        if self._debugger is not None:
            self._debugger.cancel()
        self.logger.info("Cancellation requested")
        return True

    def is_running(self) -> bool:
        with self._lock:
            return self._active is not None
