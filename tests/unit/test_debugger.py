"""Unit tests for DebugController and Inspector."""

import threading
import time

import pytest

from models.debug import (
    BreakCondition,
    BreakConditionType,
    DebugMode,
    StepMode,
    Transition,
    TransitionKind,
)
from models.state import TaskStatus, WorkflowState
from services.debugger import BreakpointNotFoundError, DebugController, WorkflowCancelledError
from services.inspector import Inspector


def make_state(**metadata) -> WorkflowState:
    return WorkflowState(
        workflow_name="wf",
        task_statuses={"build": TaskStatus.RUNNING},
        task_attempts={"build": 1},
        metadata=metadata,
    )


def started(task_id: str) -> Transition:
    return Transition(kind=TransitionKind.TASK_STARTED, task_id=task_id, status=TaskStatus.RUNNING)


def iteration(task_id: str, index: int) -> Transition:
    return Transition(kind=TransitionKind.ITERATION_STARTED, task_id=task_id, iteration=index)


def failed(task_id: str, error: str) -> Transition:
    return Transition(
        kind=TransitionKind.TASK_FAILED, task_id=task_id, status=TaskStatus.FAILED, error=error
    )


def wait_for_suspension(controller: DebugController, timeout: float = 5.0) -> None:
    deadline = time.monotonic() + timeout
    while controller.status().waiting == 0:
        if time.monotonic() > deadline:
            raise AssertionError("controller never suspended")
        time.sleep(0.01)


def run_in_thread(controller: DebugController, transition: Transition, state=None):
    """Call before_transition on a worker thread; returns (thread, outcome)."""
    outcome = {}

    def target():
        try:
            controller.before_transition(transition, state or make_state())
            outcome["result"] = "released"
        except WorkflowCancelledError:
            outcome["result"] = "cancelled"

    thread = threading.Thread(target=target)
    thread.start()
    return thread, outcome


@pytest.fixture
def controller():
    return DebugController()


class TestBreakpoints:
    """Tests for breakpoint management."""

    def test_task_breakpoint_id(self, controller):
        bp = controller.add_task_breakpoint("build", label="before build")
        assert bp.id == "task:build"
        assert bp.label == "before build"

    def test_iteration_breakpoint_id(self, controller):
        assert controller.add_iteration_breakpoint("poll", 3).id == "loop:poll:3"

    def test_conditional_breakpoint_ids_increase(self, controller):
        cond = BreakCondition(type=BreakConditionType.ON_ERROR)
        assert controller.add_conditional_breakpoint(cond).id == "cond:1"
        assert controller.add_conditional_breakpoint(cond).id == "cond:2"

    def test_remove_missing_raises(self, controller):
        with pytest.raises(BreakpointNotFoundError):
            controller.remove_breakpoint("task:ghost")

    def test_remove(self, controller):
        controller.add_task_breakpoint("build")
        controller.remove_breakpoint("task:build")
        assert controller.list_breakpoints() == []

    def test_disable(self, controller):
        controller.add_task_breakpoint("build")
        bp = controller.set_breakpoint_enabled("task:build", False)
        assert bp.enabled is False

    def test_break_condition_validation(self):
        with pytest.raises(ValueError, match="task_status requires task and status"):
            BreakCondition(type=BreakConditionType.TASK_STATUS, task="build")


class TestSuspension:
    """Tests for halting and releasing transitions."""

    def test_no_breakpoint_does_not_block(self, controller):
        controller.before_transition(started("build"), make_state())
        assert controller.status().mode == DebugMode.RUNNING
        assert len(controller.timeline()) == 1
        assert controller.current_task == "build"

    def test_task_breakpoint_blocks_until_resume(self, controller):
        controller.add_task_breakpoint("build")
        thread, outcome = run_in_thread(controller, started("build"))

        wait_for_suspension(controller)
        status = controller.status()
        assert status.mode == DebugMode.SUSPENDED
        assert status.suspended_on.task_id == "build"

        assert controller.resume() is True
        thread.join(timeout=5)
        assert outcome["result"] == "released"
        assert controller.status().mode == DebugMode.RUNNING
        assert controller.list_breakpoints()[0].hit_count == 1

    def test_disabled_breakpoint_ignored(self, controller):
        controller.add_task_breakpoint("build")
        controller.set_breakpoint_enabled("task:build", False)
        controller.before_transition(started("build"), make_state())
        assert controller.status().waiting == 0

    def test_globally_disabled(self, controller):
        controller.add_task_breakpoint("build")
        controller.set_enabled(False)
        controller.before_transition(started("build"), make_state())
        assert controller.status().waiting == 0

    def test_iteration_breakpoint_matches_index_only(self, controller):
        controller.add_iteration_breakpoint("poll", 2)
        controller.before_transition(iteration("poll", 1), make_state())
        assert controller.status().waiting == 0

        thread, outcome = run_in_thread(controller, iteration("poll", 2))
        wait_for_suspension(controller)
        controller.resume()
        thread.join(timeout=5)
        assert outcome["result"] == "released"

    def test_on_error_condition(self, controller):
        controller.add_conditional_breakpoint(BreakCondition(type=BreakConditionType.ON_ERROR))
        controller.before_transition(started("build"), make_state())
        assert controller.status().waiting == 0

        thread, _ = run_in_thread(controller, failed("build", "boom"))
        wait_for_suspension(controller)
        controller.resume()
        thread.join(timeout=5)

    def test_task_error_pattern(self, controller):
        controller.add_conditional_breakpoint(
            BreakCondition(type=BreakConditionType.TASK_ERROR, task="build", pattern="timeout")
        )
        controller.before_transition(failed("build", "disk full"), make_state())
        assert controller.status().waiting == 0

        thread, _ = run_in_thread(controller, failed("build", "connect timeout"))
        wait_for_suspension(controller)
        controller.resume()
        thread.join(timeout=5)

    def test_variable_equals_condition(self, controller):
        controller.add_conditional_breakpoint(
            BreakCondition(type=BreakConditionType.VARIABLE_EQUALS, key="stage", value="deploy")
        )
        controller.before_transition(started("build"), make_state(stage="test"))
        assert controller.status().waiting == 0

        thread, _ = run_in_thread(controller, started("build"), make_state(stage="deploy"))
        wait_for_suspension(controller)
        controller.resume()
        thread.join(timeout=5)

    def test_pause_halts_next_transition(self, controller):
        controller.pause()
        assert controller.status().mode == DebugMode.PAUSED

        thread, outcome = run_in_thread(controller, started("build"))
        wait_for_suspension(controller)
        controller.resume()
        thread.join(timeout=5)
        assert outcome["result"] == "released"

    def test_resume_without_waiter_clears_pause(self, controller):
        controller.pause()
        assert controller.resume() is False
        assert controller.status().mode == DebugMode.RUNNING

    def test_step_task_halts_at_every_task(self, controller):
        controller.set_step_mode(StepMode.STEP_TASK)
        assert controller.status().mode == DebugMode.STEPPING

        controller.before_transition(iteration("poll", 0), make_state())
        assert controller.status().waiting == 0

        thread, _ = run_in_thread(controller, started("build"))
        wait_for_suspension(controller)
        assert controller.step(StepMode.CONTINUE) is True
        thread.join(timeout=5)
        assert controller.status().mode == DebugMode.RUNNING

    def test_cancel_releases_waiter_with_error(self, controller):
        controller.add_task_breakpoint("build")
        thread, outcome = run_in_thread(controller, started("build"))
        wait_for_suspension(controller)

        controller.cancel()
        thread.join(timeout=5)

        assert outcome["result"] == "cancelled"
        with pytest.raises(WorkflowCancelledError):
            controller.before_transition(started("other"), make_state())

    def test_completion_recorded_after_cancel(self, controller):
        """Work already in flight can still report its result."""
        controller.add_conditional_breakpoint(BreakCondition(type=BreakConditionType.ON_ERROR))
        controller.cancel()

        controller.before_transition(failed("build", "boom"), make_state())
        controller.before_transition(
            Transition(kind=TransitionKind.ITERATION_COMPLETED, task_id="poll", iteration=2),
            make_state(),
        )

        kinds = [e.transition.kind for e in controller.timeline()]
        assert kinds == [TransitionKind.TASK_FAILED, TransitionKind.ITERATION_COMPLETED]
        assert controller.status().waiting == 0
        with pytest.raises(WorkflowCancelledError):
            controller.before_transition(iteration("poll", 3), make_state())

    def test_cancel_releases_suspended_completion(self, controller):
        controller.add_conditional_breakpoint(BreakCondition(type=BreakConditionType.ON_ERROR))
        thread, outcome = run_in_thread(controller, failed("build", "boom"))
        wait_for_suspension(controller)

        controller.cancel()
        thread.join(timeout=5)

        assert outcome["result"] == "released"

    def test_reset_keeps_breakpoints(self, controller):
        controller.add_task_breakpoint("build")
        controller.before_transition(started("x"), make_state())
        controller.cancel()

        controller.reset()

        assert controller.timeline() == []
        assert len(controller.list_breakpoints()) == 1
        controller.before_transition(started("x"), make_state())


class TestRecording:
    """Tests for snapshots and side effects."""

    def test_snapshot_of_last_state(self, controller):
        controller.before_transition(started("build"), make_state(stage="a"))

        snap = controller.take_snapshot("after build started")

        assert snap.id == "snap-1"
        assert snap.current_task == "build"
        assert snap.state.metadata == {"stage": "a"}

    def test_snapshot_is_a_copy(self, controller):
        state = make_state(stage="a")
        snap = controller.take_snapshot("explicit", state)
        state.metadata["stage"] = "changed"
        assert snap.state.metadata["stage"] == "a"

    def test_side_effects(self, controller):
        controller.record_side_effect("build", "file_write", "wrote app.tar")
        controller.record_side_effect("build", "file_write", "wrote log")
        controller.record_side_effect("wf", "checkpoint")
        assert Inspector(controller).side_effect_summary() == {"file_write": 2, "checkpoint": 1}


class TestInspector:
    """Tests for inspector queries."""

    @pytest.fixture
    def inspector(self, controller):
        state = make_state(stage="deploy")
        state.task_statuses["poll"] = TaskStatus.RUNNING
        loop = state.init_loop("poll")
        loop.begin_iteration(2, {"iteration": 2, "item": "c"})
        controller.before_transition(started("build"), state)
        controller.before_transition(iteration("poll", 2), state)
        return Inspector(controller)

    def test_init_without_controller_raises(self):
        with pytest.raises(ValueError, match="controller is required"):
            Inspector(None)

    def test_timeline_limit(self, inspector):
        assert len(inspector.timeline()) == 2
        events = inspector.timeline(limit=1)
        assert [e.transition.kind for e in events] == [TransitionKind.ITERATION_STARTED]
        assert inspector.timeline(limit=0) == []

    def test_variables_all(self, inspector):
        variables = inspector.inspect_variables()
        assert variables["workflow"] == {"workflow.stage": "deploy"}
        assert variables["loop"]["poll"]["item"] == "c"
        assert variables["task"]["task_id"] == "build"
        assert variables["task"]["attempts"] == 1

    def test_variables_scope(self, inspector):
        assert set(inspector.inspect_variables("loop")) == {"loop"}

    def test_unknown_scope_raises(self, inspector):
        with pytest.raises(ValueError, match="scope must be one of"):
            inspector.inspect_variables("global")

    def test_inspect_task(self, inspector):
        record = inspector.inspect_task("poll")
        assert record["loop"]["current_iteration"] == 2

    def test_inspect_unknown_task(self, inspector):
        with pytest.raises(KeyError):
            inspector.inspect_task("ghost")

    def test_variables_before_any_transition(self, controller):
        assert Inspector(controller).inspect_variables() == {}
