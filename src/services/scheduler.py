"""Scheduler: dispatches ready tasks and commits their results."""

import logging
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Any, Optional, Tuple

from models.debug import Transition, TransitionKind
from models.execution import RunOutcome, TaskOutput
from models.graph import TaskGraph, TaskNode
from models.state import LoopState, TaskStatus, WorkflowState
from services.collection_resolver import CollectionSourceError
from services.condition_evaluator import ConditionEvaluator
from services.debugger import WorkflowCancelledError
from services.execution_context import WorkflowContext
from services.loop_controller import LoopController, LoopIterationError, LoopTimeoutError
from services.task_executor import TaskExecutionError, TaskInvoker
from services.variables import substitute


@dataclass
class _TaskResult:
    node: TaskNode
    output: Optional[TaskOutput] = None
    error: Optional[str] = None
    timed_out: bool = False


class Scheduler:
    """Walks the graph in dependency order on a worker pool.

    Only the scheduling thread commits task transitions, so results are
    applied one at a time in completion order.
    """

    def __init__(
        self,
        invoker: TaskInvoker,
        loop_controller: LoopController,
        evaluator: Optional[ConditionEvaluator] = None,
        max_workers: Optional[int] = None,
    ):
        if invoker is None:
            raise ValueError("invoker is required")
        if loop_controller is None:
            raise ValueError("loop_controller is required")
        if max_workers is not None and max_workers <= 0:
            raise ValueError("max_workers must be positive")

        self._invoker = invoker
        self._loop_controller = loop_controller
        self._evaluator = evaluator or ConditionEvaluator()
        self._max_workers = max_workers
        self.logger = logging.getLogger(__name__)

    def run(self, graph: TaskGraph, context: WorkflowContext) -> Tuple[RunOutcome, Optional[str]]:
        """Run until no task can make progress.

        Returns the outcome and, for a timeout, the ID of the loop task
        that timed out.
        """
        if graph is None:
            raise ValueError("graph is required")
        if context is None:
            raise ValueError("context is required")

        def init_statuses(state: WorkflowState) -> None:
            for task_id in graph.ids:
                state.task_statuses.setdefault(task_id, TaskStatus.PENDING)

        context.commit(None, init_statuses)

        in_flight = {}
        cancelled = False
        timed_out_loop: Optional[str] = None
        max_workers = self._max_workers or max(1, len(graph))
        self.logger.info(f"Scheduling {len(graph)} tasks with {max_workers} workers")

        with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="scheduler") as pool:
            while True:
                if context.is_cancelled():
                    cancelled = True
                dispatching = not cancelled and timed_out_loop is None

                skipped_any = False
                if dispatching:
                    running = {node.id for node in in_flight.values()}
                    ready = context.read(
                        lambda s: [n for n in graph.get_ready_tasks(s) if n.id not in running]
                    )
                    for node in ready:
                        try:
                            if not self._should_run(node, context):
                                self._skip(node, context)
                                skipped_any = True
                                continue
                            self._start(node, context)
                        except WorkflowCancelledError:
                            cancelled = True
                            context.cancel()
                            break
                        in_flight[pool.submit(self._execute, node, context)] = node

                if skipped_any and not cancelled:
                    continue
                if not in_flight:
                    break

                done, _ = wait(in_flight, return_when=FIRST_COMPLETED)
                for future in done:
                    node = in_flight.pop(future)
                    try:
                        result = future.result()
                        self._complete(result, context)
                    except WorkflowCancelledError:
                        cancelled = True
                        context.cancel()
                        continue
                    if result.timed_out and timed_out_loop is None:
                        timed_out_loop = node.id

        if cancelled:
            outcome = RunOutcome.CANCELLED
        elif timed_out_loop is not None:
            outcome = RunOutcome.TIMED_OUT
        elif context.read(lambda s: any(
            s.task_statuses.get(t) == TaskStatus.FAILED for t in graph.ids
        )):
            outcome = RunOutcome.FAILED
        else:
            outcome = RunOutcome.COMPLETED

        self.logger.info(f"Scheduling finished: {outcome.value}")
        return outcome, timed_out_loop

    def _should_run(self, node: TaskNode, context: WorkflowContext) -> bool:
        condition = node.spec.condition
        if condition is None:
            return True
        return context.read(lambda s: self._evaluator.evaluate(condition, s))

    def _skip(self, node: TaskNode, context: WorkflowContext) -> None:
        self.logger.info(f"Task {node.id} skipped: condition not met")
        context.commit(
            Transition(kind=TransitionKind.TASK_SKIPPED, task_id=node.id, status=TaskStatus.SKIPPED),
            lambda s: s.update_task_status(node.id, TaskStatus.SKIPPED),
        )
        context.checkpoint(f"task {node.id} skipped")

    def _start(self, node: TaskNode, context: WorkflowContext) -> None:
        context.commit(None, lambda s: s.update_task_status(node.id, TaskStatus.READY))
        context.commit(
            Transition(kind=TransitionKind.TASK_STARTED, task_id=node.id, status=TaskStatus.RUNNING),
            lambda s: s.update_task_status(node.id, TaskStatus.RUNNING),
        )
        self.logger.info(f"Task {node.id} started")

    def _execute(self, node: TaskNode, context: WorkflowContext) -> _TaskResult:
        """Worker-thread body; never mutates state except through commits."""
        inputs = context.read(lambda s: self._resolve_inputs(node, s))

        def on_attempt(attempt: int) -> None:
            context.commit(None, lambda s: s.record_task_attempt(node.id))

        try:
            if node.is_loop:
                on_attempt(1)
                loop_state = self._loop_controller.run(node, inputs, context)
                return _TaskResult(
                    node=node,
                    output=TaskOutput(task_id=node.id, output=self._loop_summary(node, loop_state)),
                )
            output = self._invoker.invoke(node, inputs, on_attempt=on_attempt)
            return _TaskResult(node=node, output=output)
        except LoopTimeoutError as e:
            return _TaskResult(node=node, error=str(e), timed_out=True)
        except (TaskExecutionError, LoopIterationError, CollectionSourceError) as e:
            return _TaskResult(node=node, error=str(e))
        except WorkflowCancelledError:
            raise
        except Exception as e:
            self.logger.exception(f"Unexpected error in task {node.id}")
            return _TaskResult(node=node, error=f"{type(e).__name__}: {e}")

    def _complete(self, result: _TaskResult, context: WorkflowContext) -> None:
        node = result.node
        if result.error is None:
            output = result.output

            def apply_success(state: WorkflowState) -> None:
                state.update_task_status(node.id, TaskStatus.COMPLETED)
                state.record_task_result(node.id, output.output)
                state.metadata.update(output.metadata)

            context.commit(
                Transition(
                    kind=TransitionKind.TASK_COMPLETED,
                    task_id=node.id,
                    status=TaskStatus.COMPLETED,
                ),
                apply_success,
            )
            for effect in output.side_effects:
                context.record_side_effect(node.id, effect.effect_type, effect.description)
            self.logger.info(f"Task {node.id} completed")
        else:

            def apply_failure(state: WorkflowState) -> None:
                state.update_task_status(node.id, TaskStatus.FAILED)
                state.record_task_error(node.id, result.error)

            context.commit(
                Transition(
                    kind=TransitionKind.TASK_FAILED,
                    task_id=node.id,
                    status=TaskStatus.FAILED,
                    error=result.error,
                ),
                apply_failure,
            )
            self.logger.error(f"Task {node.id} failed: {result.error}")

        context.checkpoint(f"task {node.id} finished")

    def _resolve_inputs(self, node: TaskNode, state: WorkflowState) -> dict[str, Any]:
        inputs = substitute(dict(node.spec.inputs), {}, state)
        if node.inject_context:
            inputs["_context"] = {
                "workflow": state.workflow_name,
                "completed_tasks": sorted(
                    t for t, s in state.task_statuses.items() if s == TaskStatus.COMPLETED
                ),
                "dependency_results": {
                    dep: state.task_results.get(dep) for dep in node.dependencies
                },
            }
        return inputs

    def _loop_summary(self, node: TaskNode, loop_state: LoopState) -> dict[str, Any]:
        summary: dict[str, Any] = {
            "loop_status": loop_state.status.value,
            "executed_iterations": len(loop_state.iteration_statuses),
            "total_iterations": loop_state.total_iterations,
        }
        control = node.loop_control
        key = control.results_binding(node.id) if control else None
        if key:
            summary["results"] = loop_state.results.get(key, [])
        return summary
