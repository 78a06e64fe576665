"""Unit tests for LoopController."""

import threading
import time
from unittest.mock import MagicMock

import pytest

from models.execution import TaskOutput
from models.state import IterationRecord, LoopStatus, TaskStatus, WorkflowState
from models.task import WorkflowSpec
from services.debugger import DebugController, WorkflowCancelledError
from services.execution_context import WorkflowContext
from services.graph_builder import GraphBuilder
from services.loop_controller import LoopController, LoopIterationError, LoopTimeoutError
from services.task_executor import CallableTaskExecutor, TaskInvoker


def make_loop_node(spec: dict, task_id: str = "loop"):
    """Build the graph node for a single loop task."""
    workflow = WorkflowSpec.model_validate({"name": "wf", "tasks": {task_id: spec}})
    return GraphBuilder().build(workflow).get(task_id)


def make_context(metadata: dict | None = None, state_store=None) -> WorkflowContext:
    state = WorkflowState(
        workflow_name="wf",
        task_statuses={"loop": TaskStatus.RUNNING},
        metadata=metadata or {},
    )
    return WorkflowContext(state, state_store=state_store)


class RecordingExecutor:
    """Records calls and returns `result(iteration_context)` as output."""

    def __init__(self, result=None, fail_on=()):
        self.calls = []
        self._result = result or (lambda ctx: ctx.value if ctx else None)
        self._fail_on = set(fail_on)
        self._lock = threading.Lock()

    def __call__(self, task_id, inputs, ctx, agent):
        with self._lock:
            self.calls.append((task_id, dict(inputs), ctx))
        if ctx is not None and ctx.iteration in self._fail_on:
            raise RuntimeError(f"boom at {ctx.iteration}")
        return self._result(ctx)

    @property
    def iterations(self) -> list[int]:
        return sorted(ctx.iteration for _, _, ctx in self.calls)


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def make_controller(func, clock=None) -> LoopController:
    invoker = TaskInvoker(CallableTaskExecutor(func), sleep=lambda s: None)
    return LoopController(invoker, sleep=lambda s: None, clock=clock or FakeClock())


class TestRepeatLoop:
    """Tests for fixed-count loops."""

    def test_runs_count_times(self):
        executor = RecordingExecutor()
        node = make_loop_node({"agent": "x", "loop": {"type": "repeat", "count": 3}})
        context = make_context()

        loop_state = make_controller(executor).run(node, {}, context)

        assert executor.iterations == [0, 1, 2]
        assert loop_state.status == LoopStatus.COMPLETED
        assert loop_state.total_iterations == 3
        assert len(loop_state.iteration_statuses) == 3

    def test_zero_count(self):
        executor = RecordingExecutor()
        node = make_loop_node({"agent": "x", "loop": {"type": "repeat", "count": 0}})

        loop_state = make_controller(executor).run(node, {}, make_context())

        assert executor.calls == []
        assert loop_state.status == LoopStatus.COMPLETED

    def test_iterator_bound_in_inputs(self):
        executor = RecordingExecutor()
        node = make_loop_node(
            {
                "agent": "x",
                "inputs": {"page": "{{i}}", "label": "page-{{i}}"},
                "loop": {"type": "repeat", "count": 2, "iterator": "i"},
            }
        )

        make_controller(executor).run(node, node.spec.inputs, make_context())

        inputs = [call[1] for call in executor.calls]
        assert inputs[0] == {"page": 0, "label": "page-0", "i": 0}
        assert inputs[1] == {"page": 1, "label": "page-1", "i": 1}

    def test_collect_results(self):
        executor = RecordingExecutor(result=lambda ctx: ctx.iteration * 10)
        node = make_loop_node(
            {
                "agent": "x",
                "loop": {"type": "repeat", "count": 3},
                "loop_control": {"collect_results": True, "result_key": "scores"},
            }
        )
        context = make_context()

        loop_state = make_controller(executor).run(node, {}, context)

        assert loop_state.results["scores"] == [0, 10, 20]
        assert context.state.metadata["scores"] == [0, 10, 20]

    def test_checkpoint_interval(self):
        store = MagicMock()
        node = make_loop_node(
            {
                "agent": "x",
                "loop": {"type": "repeat", "count": 4},
                "loop_control": {"checkpoint_interval": 2},
            }
        )

        make_controller(RecordingExecutor()).run(node, {}, make_context(state_store=store))

        # every 2 iterations, plus the loop finish
        assert store.save.call_count == 3


class TestForEachLoop:
    """Tests for collection loops."""

    def test_iterates_items_in_order(self):
        executor = RecordingExecutor()
        node = make_loop_node(
            {
                "agent": "x",
                "loop": {
                    "type": "for_each",
                    "collection": {"source": "inline", "items": ["a", "b", "c"]},
                    "iterator": "file",
                },
            }
        )

        loop_state = make_controller(executor).run(node, {}, make_context())

        assert [call[2].value for call in executor.calls] == ["a", "b", "c"]
        assert [call[1]["file"] for call in executor.calls] == ["a", "b", "c"]
        assert loop_state.total_iterations == 3

    def test_collection_from_state(self):
        executor = RecordingExecutor()
        node = make_loop_node(
            {
                "agent": "x",
                "loop": {
                    "type": "for_each",
                    "collection": {"source": "state", "key": "targets"},
                },
            }
        )

        make_controller(executor).run(node, {}, make_context({"targets": [1, 2]}))

        assert [call[2].value for call in executor.calls] == [1, 2]

    def test_parallel_respects_max_parallel(self):
        lock = threading.Lock()
        active = {"now": 0, "peak": 0}

        def slow(task_id, inputs, ctx, agent):
            with lock:
                active["now"] += 1
                active["peak"] = max(active["peak"], active["now"])
            time.sleep(0.05)
            with lock:
                active["now"] -= 1
            return ctx.value * 2

        node = make_loop_node(
            {
                "agent": "x",
                "loop": {
                    "type": "for_each",
                    "collection": {"source": "inline", "items": [1, 2, 3, 4, 5]},
                    "parallel": True,
                    "max_parallel": 2,
                },
                "loop_control": {"collect_results": True},
            }
        )
        context = make_context()

        loop_state = make_controller(slow).run(node, {}, context)

        assert active["peak"] <= 2
        assert loop_state.status == LoopStatus.COMPLETED
        assert context.state.metadata["loop_results"] == [2, 4, 6, 8, 10]


class TestLoopControl:
    """Tests for continue, break and failure policies."""

    def test_continue_skips_without_record(self):
        executor = RecordingExecutor()
        node = make_loop_node(
            {
                "agent": "x",
                "loop": {
                    "type": "for_each",
                    "collection": {"source": "inline", "items": ["keep", "skip", "keep"]},
                },
                "loop_control": {
                    "continue_condition": {"type": "state_equals", "key": "item", "value": "skip"}
                },
            }
        )

        loop_state = make_controller(executor).run(node, {}, make_context())

        assert executor.iterations == [0, 2]
        assert [r.iteration for r in loop_state.iteration_statuses] == [0, 2]
        assert loop_state.status == LoopStatus.COMPLETED

    def test_break_on_result(self):
        executor = RecordingExecutor()
        node = make_loop_node(
            {
                "agent": "x",
                "loop": {"type": "repeat", "count": 10},
                "loop_control": {
                    "break_condition": {"type": "state_equals", "key": "result", "value": 3}
                },
            }
        )

        loop_state = make_controller(executor).run(node, {}, make_context())

        assert executor.iterations == [0, 1, 2, 3]
        assert loop_state.status == LoopStatus.BROKEN_EARLY

    def test_aggregate_failures(self):
        executor = RecordingExecutor(fail_on={1, 3})
        node = make_loop_node({"agent": "x", "loop": {"type": "repeat", "count": 4}})
        context = make_context()

        with pytest.raises(LoopIterationError) as exc:
            make_controller(executor).run(node, {}, context)

        assert executor.iterations == [0, 1, 2, 3]
        assert [i for i, _ in exc.value.errors] == [1, 3]
        assert "boom at 1" in exc.value.errors[0][1]
        assert context.state.get_loop("loop").status == LoopStatus.FAILED

    def test_fail_fast_stops(self):
        executor = RecordingExecutor(fail_on={1})
        node = make_loop_node(
            {
                "agent": "x",
                "loop": {"type": "repeat", "count": 5},
                "loop_control": {"failure_policy": "fail_fast"},
            }
        )

        with pytest.raises(LoopIterationError):
            make_controller(executor).run(node, {}, make_context())

        assert executor.iterations == [0, 1]

    def test_ignore_failures(self):
        executor = RecordingExecutor(fail_on={0})
        node = make_loop_node(
            {
                "agent": "x",
                "loop": {"type": "repeat", "count": 3},
                "loop_control": {"failure_policy": "ignore", "collect_results": True},
            }
        )
        context = make_context()

        loop_state = make_controller(executor).run(node, {}, context)

        assert loop_state.status == LoopStatus.COMPLETED
        assert [r.iteration for r in loop_state.failed_iterations()] == [0]
        assert context.state.metadata["loop_results"] == [1, 2]

    def test_timeout(self):
        clock = FakeClock()

        def tick(task_id, inputs, ctx, agent):
            clock.now += 10
            return None

        node = make_loop_node(
            {
                "agent": "x",
                "loop": {"type": "repeat", "count": 5},
                "loop_control": {"timeout_secs": 25},
            }
        )
        context = make_context()

        with pytest.raises(LoopTimeoutError) as exc:
            make_controller(tick, clock=clock).run(node, {}, context)

        assert exc.value.task_id == "loop"
        assert exc.value.timeout_secs == 25
        loop_state = context.state.get_loop("loop")
        assert loop_state.status == LoopStatus.TIMED_OUT
        assert len(loop_state.iteration_statuses) == 3

    def test_cancelled(self):
        node = make_loop_node({"agent": "x", "loop": {"type": "repeat", "count": 3}})
        context = make_context()
        context.cancel()

        with pytest.raises(WorkflowCancelledError):
            make_controller(RecordingExecutor()).run(node, {}, context)


class TestParallelLoopControl:
    """Tests for break, timeout, cancel and failures with parallel iterations."""

    def test_aggregate_failures(self):
        executor = RecordingExecutor(fail_on={1, 4})
        node = make_loop_node(
            {"agent": "x", "loop": {"type": "repeat", "count": 6, "parallel": True, "max_parallel": 3}}
        )
        context = make_context()

        with pytest.raises(LoopIterationError) as exc:
            make_controller(executor).run(node, {}, context)

        assert executor.iterations == [0, 1, 2, 3, 4, 5]
        assert [i for i, _ in exc.value.errors] == [1, 4]
        assert "boom at 4" in exc.value.errors[1][1]
        loop_state = context.state.get_loop("loop")
        assert loop_state.status == LoopStatus.FAILED
        assert len(loop_state.iteration_statuses) == 6

    def test_break_drains_in_flight(self):
        def handler(task_id, inputs, ctx, agent):
            if ctx.iteration == 0:
                time.sleep(0.2)
            return ctx.iteration

        node = make_loop_node(
            {
                "agent": "x",
                "loop": {"type": "repeat", "count": 20, "parallel": True, "max_parallel": 2},
                "loop_control": {
                    "break_condition": {"type": "state_equals", "key": "result", "value": 1}
                },
            }
        )
        context = make_context()

        loop_state = make_controller(handler).run(node, {}, context)

        assert loop_state.status == LoopStatus.BROKEN_EARLY
        assert sorted(r.iteration for r in loop_state.iteration_statuses) == [0, 1]
        assert all(r.status == TaskStatus.COMPLETED for r in loop_state.iteration_statuses)

    def test_timeout_drains_in_flight(self):
        clock = FakeClock()
        clock_moved = threading.Event()
        calls = []

        def handler(task_id, inputs, ctx, agent):
            calls.append(ctx.iteration)
            if ctx.iteration == 1:
                clock.now = 30
                clock_moved.set()
                time.sleep(0.2)
            else:
                clock_moved.wait(timeout=5)
            return ctx.iteration

        node = make_loop_node(
            {
                "agent": "x",
                "loop": {"type": "repeat", "count": 6, "parallel": True, "max_parallel": 2},
                "loop_control": {"timeout_secs": 25},
            }
        )
        context = make_context()

        with pytest.raises(LoopTimeoutError):
            make_controller(handler, clock=clock).run(node, {}, context)

        assert sorted(calls) == [0, 1]
        loop_state = context.state.get_loop("loop")
        assert loop_state.status == LoopStatus.TIMED_OUT
        assert sorted(r.iteration for r in loop_state.iteration_statuses) == [0, 1]

    def test_cancel_with_debugger_keeps_in_flight_iterations(self):
        debugger = DebugController()
        context = WorkflowContext(
            WorkflowState(workflow_name="wf", task_statuses={"loop": TaskStatus.RUNNING}),
            debugger=debugger,
        )
        second_started = threading.Event()
        cancelled = threading.Event()

        def handler(task_id, inputs, ctx, agent):
            if ctx.iteration == 0:
                second_started.wait(timeout=5)
                context.cancel()
                debugger.cancel()
                cancelled.set()
            else:
                second_started.set()
                cancelled.wait(timeout=5)
            return ctx.iteration

        node = make_loop_node(
            {"agent": "x", "loop": {"type": "repeat", "count": 5, "parallel": True, "max_parallel": 2}}
        )

        with pytest.raises(WorkflowCancelledError):
            make_controller(handler).run(node, {}, context)

        loop_state = context.state.get_loop("loop")
        assert sorted(r.iteration for r in loop_state.iteration_statuses) == [0, 1]
        assert all(r.status == TaskStatus.COMPLETED for r in loop_state.iteration_statuses)


class TestConditionalLoops:
    """Tests for repeat_until and while loops."""

    def test_until_respects_min_iterations(self):
        executor = RecordingExecutor()
        node = make_loop_node(
            {
                "agent": "x",
                "loop": {
                    "type": "repeat_until",
                    "condition": {"type": "always"},
                    "min_iterations": 3,
                    "max_iterations": 10,
                },
            }
        )

        loop_state = make_controller(executor).run(node, {}, make_context())

        assert executor.iterations == [0, 1, 2]
        assert loop_state.status == LoopStatus.COMPLETED
        assert loop_state.total_iterations == 3

    def test_until_checks_result(self):
        executor = RecordingExecutor(result=lambda ctx: "done" if ctx.iteration == 4 else "pending")
        node = make_loop_node(
            {
                "agent": "x",
                "loop": {
                    "type": "repeat_until",
                    "condition": {"type": "state_equals", "key": "result", "value": "done"},
                    "max_iterations": 10,
                },
            }
        )

        make_controller(executor).run(node, {}, make_context())

        assert executor.iterations == [0, 1, 2, 3, 4]

    def test_until_stops_at_max(self):
        executor = RecordingExecutor()
        node = make_loop_node(
            {
                "agent": "x",
                "loop": {
                    "type": "repeat_until",
                    "condition": {"type": "never"},
                    "max_iterations": 4,
                },
            }
        )

        loop_state = make_controller(executor).run(node, {}, make_context())

        assert executor.iterations == [0, 1, 2, 3]
        assert loop_state.status == LoopStatus.COMPLETED

    def test_while_reads_task_metadata(self):
        def poll(task_id, inputs, ctx, agent):
            return TaskOutput(task_id=task_id, output=ctx.iteration, metadata={"more": ctx.iteration < 2})

        node = make_loop_node(
            {
                "agent": "x",
                "loop": {
                    "type": "while",
                    "condition": {"type": "state_equals", "key": "more", "value": True},
                    "max_iterations": 10,
                    "iteration_variable": "n",
                },
            }
        )
        executor = RecordingExecutor(result=lambda ctx: poll("loop", {}, ctx, None))

        make_controller(executor).run(node, {}, make_context({"more": True}))

        assert executor.iterations == [0, 1, 2]
        assert executor.calls[1][1]["n"] == 1

    def test_while_false_initially(self):
        executor = RecordingExecutor()
        node = make_loop_node(
            {
                "agent": "x",
                "loop": {"type": "while", "condition": {"type": "never"}, "max_iterations": 5},
            }
        )

        loop_state = make_controller(executor).run(node, {}, make_context())

        assert executor.calls == []
        assert loop_state.status == LoopStatus.COMPLETED


class TestResume:
    """Tests for skipping iterations completed before a restart."""

    def test_resume_after_nine_of_twenty(self):
        executor = RecordingExecutor()
        node = make_loop_node({"agent": "x", "loop": {"type": "repeat", "count": 20}})
        context = make_context()
        loop_state = context.state.init_loop("loop")
        for i in range(10):
            loop_state.record_iteration(IterationRecord(iteration=i, status=TaskStatus.COMPLETED, result=i))

        result = make_controller(executor).run(node, {}, context)

        assert executor.iterations == list(range(10, 20))
        assert len(result.iteration_statuses) == 20
        assert result.status == LoopStatus.COMPLETED

    def test_resume_retries_failed_iteration(self):
        executor = RecordingExecutor()
        node = make_loop_node({"agent": "x", "loop": {"type": "repeat", "count": 3}})
        context = make_context()
        loop_state = context.state.init_loop("loop")
        loop_state.record_iteration(IterationRecord(iteration=0, status=TaskStatus.COMPLETED))
        loop_state.record_iteration(IterationRecord(iteration=1, status=TaskStatus.FAILED, error="x"))

        result = make_controller(executor).run(node, {}, context)

        assert executor.iterations == [1, 2]
        assert result.failed_iterations() == []

    def test_until_resumes_after_last_completed(self):
        executor = RecordingExecutor()
        node = make_loop_node(
            {
                "agent": "x",
                "loop": {
                    "type": "repeat_until",
                    "condition": {"type": "never"},
                    "max_iterations": 8,
                },
            }
        )
        context = make_context()
        loop_state = context.state.init_loop("loop")
        for i in range(5):
            loop_state.record_iteration(IterationRecord(iteration=i, status=TaskStatus.COMPLETED))

        make_controller(executor).run(node, {}, context)

        assert executor.iterations == [5, 6, 7]


class TestLoopBody:
    """Tests for loops whose body is a list of subtasks."""

    def test_body_runs_in_order_each_iteration(self):
        calls = []

        def body(task_id, inputs, ctx, agent):
            calls.append((ctx.iteration, task_id))
            return f"{task_id}:{inputs.get('item')}"

        node = make_loop_node(
            {
                "agent": "worker",
                "loop": {
                    "type": "for_each",
                    "collection": {"source": "inline", "items": ["a", "b"]},
                },
                "loop_control": {"collect_results": True},
                "subtasks": {
                    "read": {},
                    "check": {"depends_on": ["read"], "inputs": {"previous": "{{read}}"}},
                },
            }
        )
        context = make_context()

        make_controller(body).run(node, {}, context)

        assert calls == [
            (0, "loop.read"),
            (0, "loop.check"),
            (1, "loop.read"),
            (1, "loop.check"),
        ]
        assert context.state.metadata["loop_results"][0] == {
            "read": "loop.read:a",
            "check": "loop.check:a",
        }
