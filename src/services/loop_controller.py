"""Loop controller: drives Repeat, ForEach, RepeatUntil and While loops."""

import logging
import time
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator, List, Optional, Tuple

from models.debug import Transition, TransitionKind
from models.execution import IterationContext
from models.graph import TaskNode
from models.loop import (
    ForEachLoop,
    LoopControl,
    LoopFailurePolicy,
    RepeatLoop,
    RepeatUntilLoop,
    WhileLoop,
)
from models.state import IterationRecord, LoopState, LoopStatus, TaskStatus
from services.collection_resolver import CollectionResolver
from services.condition_evaluator import ConditionEvaluator
from services.debugger import WorkflowCancelledError
from services.execution_context import WorkflowContext
from services.task_executor import TaskExecutionError, TaskInvoker
from services.variables import substitute


class LoopTimeoutError(Exception):
    """Raised when a loop exceeds its overall timeout."""

    def __init__(self, task_id: str, elapsed_secs: float, timeout_secs: float):
        self.task_id = task_id
        self.elapsed_secs = elapsed_secs
        self.timeout_secs = timeout_secs
        super().__init__(
            f"Loop {task_id} timed out after {elapsed_secs:.2f}s (limit {timeout_secs}s)"
        )


class LoopIterationError(Exception):
    """Raised when iterations failed and the failure policy fails the loop."""

    def __init__(self, task_id: str, errors: List[Tuple[int, str]]):
        self.task_id = task_id
        self.errors = list(errors)
        details = "; ".join(f"iteration {i}: {err}" for i, err in self.errors)
        super().__init__(f"Loop {task_id} had {len(self.errors)} failed iteration(s): {details}")


@dataclass
class _LoopRun:
    node: TaskNode
    inputs: dict
    context: WorkflowContext
    control: LoopControl
    iterator: Optional[str]
    result_key: Optional[str]
    started: float
    executed: int = 0
    stop: bool = False
    errors: List[Tuple[int, str]] = field(default_factory=list)


class LoopController:
    """Runs the iterations of one loop task against the executor."""

    def __init__(
        self,
        invoker: TaskInvoker,
        evaluator: Optional[ConditionEvaluator] = None,
        resolver: Optional[CollectionResolver] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        if invoker is None:
            raise ValueError("invoker is required")
        self._invoker = invoker
        self._evaluator = evaluator or ConditionEvaluator()
        self._resolver = resolver or CollectionResolver()
        self._sleep = sleep
        self._clock = clock
        self.logger = logging.getLogger(__name__)

    def run(self, node: TaskNode, inputs: dict, context: WorkflowContext) -> LoopState:
        """Execute every iteration of `node` and return its final loop state.

        Raises LoopTimeoutError, LoopIterationError or
        WorkflowCancelledError; the loop state is committed first.
        """
        if node is None or node.spec.loop is None:
            raise ValueError("node with a loop is required")
        if context is None:
            raise ValueError("context is required")

        spec = node.spec.loop
        control = node.loop_control or LoopControl()
        run = _LoopRun(
            node=node,
            inputs=dict(inputs or {}),
            context=context,
            control=control,
            iterator=None,
            result_key=control.results_binding(node.id),
            started=self._clock(),
        )

        items: List[Any] = []
        total: Optional[int] = None
        if isinstance(spec, RepeatLoop):
            items = list(range(spec.count))
            run.iterator = spec.iterator
            total = spec.count
        elif isinstance(spec, ForEachLoop):
            items = self._resolver.resolve(spec.collection, context.snapshot())
            run.iterator = spec.iterator
            total = len(items)
        else:
            run.iterator = spec.iteration_variable

        context.commit(None, lambda s: s.init_loop(node.id).start(total))
        self.logger.info(
            f"Starting {spec.type} loop {node.id}"
            + (f" with {total} iterations" if total is not None else "")
        )

        try:
            if isinstance(spec, (RepeatLoop, ForEachLoop)):
                if spec.parallel:
                    if isinstance(spec, RepeatLoop):
                        max_parallel = spec.effective_max_parallel()
                    else:
                        max_parallel = spec.effective_max_parallel(len(items))
                    status = self._run_parallel(run, items, max_parallel)
                else:
                    status = self._run_sequential(run, items)
            elif isinstance(spec, RepeatUntilLoop):
                status, total = self._run_until(run, spec)
            else:
                status, total = self._run_while(run, spec)
        except LoopTimeoutError as e:
            self.logger.warning(str(e))
            self._finish(run, LoopStatus.TIMED_OUT, total)
            raise
        except WorkflowCancelledError:
            context.checkpoint(f"loop {node.id} cancelled")
            raise

        if run.errors and control.failure_policy != LoopFailurePolicy.IGNORE:
            self._finish(run, LoopStatus.FAILED, total)
            raise LoopIterationError(node.id, sorted(run.errors))

        self._finish(run, status, total)
        return context.read(lambda s: s.get_loop(node.id).model_copy(deep=True))

    # Strategies

    def _run_sequential(self, run: _LoopRun, items: List[Any]) -> LoopStatus:
        for iteration, value in enumerate(items):
            if self._already_completed(run, iteration):
                continue
            self._check_running(run)

            variables = self._variables(run, iteration, value)
            if self._should_skip(run, variables):
                self._skip_iteration(run, iteration, variables)
                continue

            record = self._run_iteration(run, iteration, value, variables)
            if self._after_iteration(run, record, variables):
                return LoopStatus.BROKEN_EARLY
            if run.stop:
                break
        return LoopStatus.COMPLETED

    def _run_parallel(self, run: _LoopRun, items: List[Any], max_parallel: int) -> LoopStatus:
        node = run.node
        pending: Iterator[Tuple[int, Any]] = (
            (i, v) for i, v in enumerate(items) if not self._already_completed(run, i)
        )
        broken = False
        interrupted: Optional[Exception] = None

        self.logger.info(f"Loop {node.id} running with max_parallel={max_parallel}")
        with ThreadPoolExecutor(
            max_workers=max_parallel, thread_name_prefix=f"loop-{node.id}"
        ) as pool:
            in_flight = {}
            dispatching = True
            while True:
                while dispatching and len(in_flight) < max_parallel:
                    entry = next(pending, None)
                    if entry is None:
                        dispatching = False
                        break
                    iteration, value = entry
                    try:
                        self._check_running(run)
                    except (LoopTimeoutError, WorkflowCancelledError) as e:
                        interrupted = e
                        dispatching = False
                        break

                    variables = self._variables(run, iteration, value)
                    if self._should_skip(run, variables):
                        self._skip_iteration(run, iteration, variables)
                        continue
                    future = pool.submit(self._run_iteration, run, iteration, value, variables)
                    in_flight[future] = variables

                if not in_flight:
                    break

                done, _ = wait(in_flight, return_when=FIRST_COMPLETED)
                for future in done:
                    variables = in_flight.pop(future)
                    try:
                        record = future.result()
                    except WorkflowCancelledError as e:
                        interrupted = e
                        dispatching = False
                        continue
                    if self._after_iteration(run, record, variables):
                        broken = True
                        dispatching = False
                    if run.stop:
                        dispatching = False

        if interrupted is not None:
            raise interrupted
        return LoopStatus.BROKEN_EARLY if broken else LoopStatus.COMPLETED

    def _run_until(self, run: _LoopRun, spec: RepeatUntilLoop) -> Tuple[LoopStatus, int]:
        iteration = self._resume_index(run)
        while True:
            self._check_running(run)
            if iteration >= spec.max_iterations:
                self.logger.warning(
                    f"Loop {run.node.id} reached max_iterations={spec.max_iterations} "
                    f"before its condition was met"
                )
                break

            variables = self._variables(run, iteration, iteration)
            if self._should_skip(run, variables):
                self._skip_iteration(run, iteration, variables)
                iteration += 1
                continue

            record = self._run_iteration(run, iteration, iteration, variables)
            iteration += 1
            if self._after_iteration(run, record, variables):
                return LoopStatus.BROKEN_EARLY, iteration
            if run.stop:
                break

            if iteration >= spec.min_iterations:
                check_vars = {**variables, "result": record.result}
                if self._evaluate(run, spec.condition, check_vars):
                    self.logger.info(
                        f"Loop {run.node.id} condition met after {iteration} iterations"
                    )
                    break

            if spec.delay_between_secs:
                self._sleep(spec.delay_between_secs)
        return LoopStatus.COMPLETED, iteration

    def _run_while(self, run: _LoopRun, spec: WhileLoop) -> Tuple[LoopStatus, int]:
        iteration = self._resume_index(run)
        while True:
            self._check_running(run)
            if iteration >= spec.max_iterations:
                self.logger.warning(
                    f"Loop {run.node.id} reached max_iterations={spec.max_iterations}"
                )
                break

            variables = self._variables(run, iteration, iteration)
            if not self._evaluate(run, spec.condition, variables):
                break
            if self._should_skip(run, variables):
                self._skip_iteration(run, iteration, variables)
                iteration += 1
                continue

            record = self._run_iteration(run, iteration, iteration, variables)
            iteration += 1
            if self._after_iteration(run, record, variables):
                return LoopStatus.BROKEN_EARLY, iteration
            if run.stop:
                break

            if spec.delay_between_secs:
                self._sleep(spec.delay_between_secs)
        return LoopStatus.COMPLETED, iteration

    # Iteration steps

    def _run_iteration(
        self, run: _LoopRun, iteration: int, value: Any, variables: dict
    ) -> IterationRecord:
        node = run.node
        context = run.context
        iteration_context = IterationContext(
            loop_id=node.id,
            iteration=iteration,
            iterator=run.iterator,
            value=value,
            variables=variables,
        )

        context.commit(
            Transition(kind=TransitionKind.ITERATION_STARTED, task_id=node.id, iteration=iteration),
            lambda s: s.get_loop(node.id).begin_iteration(iteration, variables),
        )

        metadata: dict = {}
        try:
            if node.body:
                result, metadata = self._run_body(run, iteration_context)
            else:
                inputs = context.read(lambda s: substitute(run.inputs, variables, s))
                if run.iterator and run.iterator not in inputs:
                    inputs[run.iterator] = value
                output = self._invoker.invoke(node, inputs, iteration_context)
                for effect in output.side_effects:
                    context.record_side_effect(node.id, effect.effect_type, effect.description)
                result, metadata = output.output, output.metadata
            record = IterationRecord(iteration=iteration, status=TaskStatus.COMPLETED, result=result)
        except TaskExecutionError as e:
            self.logger.warning(f"Loop {node.id} iteration {iteration} failed: {e.message}")
            record = IterationRecord(iteration=iteration, status=TaskStatus.FAILED, error=e.message)

        def apply(state):
            state.metadata.update(metadata)
            state.get_loop(node.id).record_iteration(record, run.result_key)

        kind = (
            TransitionKind.ITERATION_COMPLETED
            if record.status == TaskStatus.COMPLETED
            else TransitionKind.ITERATION_FAILED
        )
        context.commit(
            Transition(
                kind=kind,
                task_id=node.id,
                iteration=iteration,
                status=record.status,
                error=record.error,
            ),
            apply,
        )
        return record

    def _run_body(self, run: _LoopRun, iteration_context: IterationContext) -> Tuple[dict, dict]:
        """Run the body subtasks in order; the first failure fails the iteration."""
        context = run.context
        variables = dict(iteration_context.variables)
        results: dict = {}
        metadata: dict = {}

        for body_node in run.node.body:
            if body_node.spec.condition is not None:
                should_run = context.read(
                    lambda s: self._evaluator.evaluate(body_node.spec.condition, s, variables)
                )
                if not should_run:
                    self.logger.debug(f"Body task {body_node.id} skipped by condition")
                    continue

            inputs = context.read(lambda s: substitute(body_node.spec.inputs, variables, s))
            if run.iterator and run.iterator not in inputs:
                inputs[run.iterator] = iteration_context.value
            output = self._invoker.invoke(body_node, inputs, iteration_context)
            for effect in output.side_effects:
                context.record_side_effect(body_node.id, effect.effect_type, effect.description)

            results[body_node.name] = output.output
            variables[body_node.id] = output.output
            variables[body_node.name] = output.output
            metadata.update(output.metadata)
        return results, metadata

    def _after_iteration(self, run: _LoopRun, record: IterationRecord, variables: dict) -> bool:
        """Bookkeeping after an iteration; returns True when the loop should break."""
        run.executed += 1
        interval = run.control.checkpoint_interval
        if interval and run.executed % interval == 0:
            run.context.checkpoint(f"loop {run.node.id} iteration {record.iteration}")

        if record.status == TaskStatus.FAILED:
            run.errors.append((record.iteration, record.error or "unknown error"))
            if run.control.failure_policy == LoopFailurePolicy.FAIL_FAST:
                run.stop = True

        if run.control.break_condition is not None:
            check_vars = {**variables, "result": record.result}
            if self._evaluate(run, run.control.break_condition, check_vars):
                self.logger.info(f"Loop {run.node.id} break condition met at iteration {record.iteration}")
                return True
        return False

    def _skip_iteration(self, run: _LoopRun, iteration: int, variables: dict) -> None:
        node_id = run.node.id
        self.logger.debug(f"Loop {node_id} iteration {iteration} skipped by continue condition")
        run.context.commit(
            Transition(kind=TransitionKind.ITERATION_SKIPPED, task_id=node_id, iteration=iteration),
            lambda s: s.get_loop(node_id).begin_iteration(iteration, variables),
        )

    def _finish(self, run: _LoopRun, status: LoopStatus, total: Optional[int]) -> None:
        node_id = run.node.id

        def apply(state):
            loop = state.get_loop(node_id)
            if run.result_key:
                state.metadata[run.result_key] = loop.rebuild_results(run.result_key)
            if loop.total_iterations is None and total is not None:
                loop.total_iterations = total
            loop.finish(status)

        run.context.commit(
            Transition(kind=TransitionKind.LOOP_FINISHED, task_id=node_id, detail=status.value),
            apply,
        )
        run.context.checkpoint(f"loop {node_id} {status.value}")
        self.logger.info(f"Loop {node_id} finished with status {status.value}")

    # Helpers

    def _variables(self, run: _LoopRun, iteration: int, value: Any) -> dict:
        variables = {"iteration": iteration, "loop_id": run.node.id}
        if run.iterator:
            variables[run.iterator] = value
        return variables

    def _evaluate(self, run: _LoopRun, condition, variables: dict) -> bool:
        return run.context.read(lambda s: self._evaluator.evaluate(condition, s, variables))

    def _should_skip(self, run: _LoopRun, variables: dict) -> bool:
        condition = run.control.continue_condition
        return condition is not None and self._evaluate(run, condition, variables)

    def _already_completed(self, run: _LoopRun, iteration: int) -> bool:
        return run.context.read(lambda s: s.is_iteration_completed(run.node.id, iteration))

    def _resume_index(self, run: _LoopRun) -> int:
        last = run.context.read(lambda s: s.get_last_completed_iteration(run.node.id))
        if last is not None:
            self.logger.info(f"Resuming loop {run.node.id} after iteration {last}")
            return last + 1
        return 0

    def _check_running(self, run: _LoopRun) -> None:
        """Raise on cancellation or when the loop timeout has elapsed."""
        run.context.check_cancelled()
        timeout = run.control.timeout_secs
        if timeout is None:
            return
        elapsed = self._clock() - run.started
        if elapsed >= timeout:
            raise LoopTimeoutError(run.node.id, elapsed, timeout)
