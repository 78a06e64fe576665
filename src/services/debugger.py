"""Debug controller: breakpoints, stepping, pause/resume and recording."""

import logging
import queue
import threading
import time
from typing import Callable, Optional

from models.debug import (
    COMPLETION_KINDS,
    FAILURE_KINDS,
    BreakCondition,
    BreakConditionType,
    Breakpoint,
    BreakpointKind,
    DebugMode,
    DebugStatus,
    SideEffect,
    Snapshot,
    StepMode,
    TimelineEvent,
    Transition,
    TransitionKind,
)
from models.state import WorkflowState
from services.condition_evaluator import lookup_path

_CONTINUE = "continue"
_CANCEL = "cancel"


class WorkflowCancelledError(Exception):
    """Raised at a suspension point once the run has been cancelled."""

    def __init__(self, reason: str = "cancelled"):
        self.reason = reason
        super().__init__(f"Workflow cancelled: {reason}")


class BreakpointNotFoundError(Exception):
    def __init__(self, breakpoint_id: str):
        self.breakpoint_id = breakpoint_id
        super().__init__(f"Breakpoint not found: {breakpoint_id}")


class DebugController:
    """Sits between a transition decision and its commit.

    `before_transition` records the transition on the timeline and,
    when paused, stepping or on a matching breakpoint, blocks until a
    continue token arrives on the control channel. A cancel token makes
    a waiting start transition raise WorkflowCancelledError.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self.logger = logging.getLogger(__name__)
        self._clock = clock
        self._started = clock()
        self._lock = threading.RLock()
        self._channel: "queue.Queue[str]" = queue.Queue()
        self._breakpoints: dict[str, Breakpoint] = {}
        self._next_condition_id = 1
        self._enabled = True
        self._mode = DebugMode.RUNNING
        self._step_mode = StepMode.CONTINUE
        self._waiting = 0
        self._cancelled = False
        self._suspended_on: Optional[Transition] = None
        self._current_task: Optional[str] = None
        self._current_state: Optional[WorkflowState] = None
        self._timeline: list[TimelineEvent] = []
        self._snapshots: list[Snapshot] = []
        self._side_effects: list[SideEffect] = []

    def _elapsed(self) -> float:
        return self._clock() - self._started

    # Breakpoint management

    def add_task_breakpoint(self, task_id: str, label: Optional[str] = None) -> Breakpoint:
        """Halt immediately before `task_id` starts running."""
        if not task_id:
            raise ValueError("task_id is required")
        bp = Breakpoint(id=f"task:{task_id}", kind=BreakpointKind.TASK, task=task_id, label=label)
        with self._lock:
            self._breakpoints[bp.id] = bp
        self.logger.info(f"Added breakpoint {bp.id}")
        return bp

    def add_iteration_breakpoint(
        self, task_id: str, iteration: int, label: Optional[str] = None
    ) -> Breakpoint:
        """Halt before iteration `iteration` of loop `task_id`."""
        if not task_id:
            raise ValueError("task_id is required")
        if iteration < 0:
            raise ValueError("iteration must not be negative")
        bp = Breakpoint(
            id=f"loop:{task_id}:{iteration}",
            kind=BreakpointKind.ITERATION,
            task=task_id,
            iteration=iteration,
            label=label,
        )
        with self._lock:
            self._breakpoints[bp.id] = bp
        self.logger.info(f"Added breakpoint {bp.id}")
        return bp

    def add_conditional_breakpoint(
        self, condition: BreakCondition, label: Optional[str] = None
    ) -> Breakpoint:
        """Halt whenever `condition` matches the transition being committed."""
        if condition is None:
            raise ValueError("condition is required")
        with self._lock:
            bp = Breakpoint(
                id=f"cond:{self._next_condition_id}",
                kind=BreakpointKind.CONDITIONAL,
                condition=condition,
                label=label,
            )
            self._next_condition_id += 1
            self._breakpoints[bp.id] = bp
        self.logger.info(f"Added breakpoint {bp.id} ({condition.type.value})")
        return bp

    def remove_breakpoint(self, breakpoint_id: str) -> None:
        with self._lock:
            if breakpoint_id not in self._breakpoints:
                raise BreakpointNotFoundError(breakpoint_id)
            del self._breakpoints[breakpoint_id]

    def set_breakpoint_enabled(self, breakpoint_id: str, enabled: bool) -> Breakpoint:
        with self._lock:
            if breakpoint_id not in self._breakpoints:
                raise BreakpointNotFoundError(breakpoint_id)
            self._breakpoints[breakpoint_id].enabled = enabled
            return self._breakpoints[breakpoint_id].model_copy()

    def list_breakpoints(self) -> list[Breakpoint]:
        with self._lock:
            return [bp.model_copy() for bp in self._breakpoints.values()]

    def clear_breakpoints(self) -> None:
        with self._lock:
            self._breakpoints.clear()

    def set_enabled(self, enabled: bool) -> None:
        """Globally enable or disable breakpoint matching."""
        with self._lock:
            self._enabled = enabled

    # Execution control

    def set_step_mode(self, step_mode: StepMode) -> None:
        with self._lock:
            self._step_mode = step_mode
            if self._mode == DebugMode.RUNNING and step_mode != StepMode.CONTINUE:
                self._mode = DebugMode.STEPPING
            elif self._mode == DebugMode.STEPPING and step_mode == StepMode.CONTINUE:
                self._mode = DebugMode.RUNNING
        self.logger.info(f"Step mode set to {step_mode.value}")

    def pause(self) -> None:
        """Halt at the next transition."""
        with self._lock:
            if self._mode != DebugMode.SUSPENDED:
                self._mode = DebugMode.PAUSED
        self.logger.info("Execution pause requested")

    def resume(self) -> bool:
        """Release one suspended transition, or clear a pending pause.

        Returns True when a waiting transition was released.
        """
        with self._lock:
            if self._mode == DebugMode.PAUSED:
                self._mode = self._running_mode()
            if self._waiting == 0:
                return False
            self._channel.put(_CONTINUE)
        return True

    def step(self, step_mode: StepMode = StepMode.STEP_TASK) -> bool:
        """Set a step mode and release the current suspension."""
        self.set_step_mode(step_mode)
        return self.resume()

    def cancel(self) -> None:
        """Unblock every waiter with a cancel token."""
        with self._lock:
            self._cancelled = True
            for _ in range(self._waiting):
                self._channel.put(_CANCEL)
        self.logger.info("Execution cancelled from debugger")

    def reset(self) -> None:
        """Prepare for a new run; breakpoints are kept."""
        with self._lock:
            self._cancelled = False
            self._mode = self._running_mode()
            self._suspended_on = None
            self._current_task = None
            self._started = self._clock()
            self._timeline = []
            self._snapshots = []
            self._side_effects = []
            while not self._channel.empty():
                self._channel.get_nowait()

    def _running_mode(self) -> DebugMode:
        if self._step_mode == StepMode.CONTINUE:
            return DebugMode.RUNNING
        return DebugMode.STEPPING

    # Transition hook

    def before_transition(self, transition: Transition, state: WorkflowState) -> None:
        """Record a transition and block while execution should be halted.

        After a cancel, completion transitions are recorded and let
        through without halting; any other transition is refused.
        """
        completion = transition.kind in COMPLETION_KINDS
        with self._lock:
            if self._cancelled and not completion:
                raise WorkflowCancelledError()

            self._timeline.append(
                TimelineEvent(
                    sequence=len(self._timeline),
                    elapsed_secs=self._elapsed(),
                    transition=transition,
                )
            )
            self._current_state = state
            if transition.kind == TransitionKind.TASK_STARTED:
                self._current_task = transition.task_id
            if self._cancelled:
                return

            hits = self._matching_breakpoints(transition, state)
            halt = bool(hits) or self._should_step(transition) or self._mode == DebugMode.PAUSED
            if not halt:
                return

            for bp in hits:
                bp.hit_count += 1
            reason = ", ".join(bp.id for bp in hits) or self._mode.value
            self._mode = DebugMode.SUSPENDED
            self._suspended_on = transition
            self._waiting += 1

        self.logger.info(
            f"Suspended before {transition.kind.value} of {transition.task_id} ({reason})"
        )
        token = self._channel.get()

        with self._lock:
            self._waiting -= 1
            if self._waiting == 0:
                self._suspended_on = None
                if self._mode == DebugMode.SUSPENDED:
                    self._mode = self._running_mode()

        if token == _CANCEL and not completion:
            raise WorkflowCancelledError()

    def _should_step(self, transition: Transition) -> bool:
        if self._step_mode == StepMode.STEP_TASK:
            return transition.kind == TransitionKind.TASK_STARTED
        if self._step_mode == StepMode.STEP_ITERATION:
            return transition.kind == TransitionKind.ITERATION_STARTED
        return False

    def _matching_breakpoints(self, transition: Transition, state: WorkflowState) -> list[Breakpoint]:
        if not self._enabled:
            return []
        return [
            bp
            for bp in self._breakpoints.values()
            if bp.enabled and self._matches(bp, transition, state)
        ]

    def _matches(self, bp: Breakpoint, transition: Transition, state: WorkflowState) -> bool:
        if bp.kind == BreakpointKind.TASK:
            return (
                transition.kind == TransitionKind.TASK_STARTED
                and transition.task_id == bp.task
            )
        if bp.kind == BreakpointKind.ITERATION:
            return (
                transition.kind == TransitionKind.ITERATION_STARTED
                and transition.task_id == bp.task
                and transition.iteration == bp.iteration
            )
        return self._condition_matches(bp.condition, transition, state)

    def _condition_matches(
        self, condition: BreakCondition, transition: Transition, state: WorkflowState
    ) -> bool:
        if condition.type == BreakConditionType.ON_ERROR:
            return transition.kind in FAILURE_KINDS
        if condition.type == BreakConditionType.TASK_ERROR:
            if transition.kind not in FAILURE_KINDS or transition.task_id != condition.task:
                return False
            return not condition.pattern or condition.pattern in (transition.error or "")
        if condition.type == BreakConditionType.TASK_STATUS:
            return transition.task_id == condition.task and transition.status == condition.status
        if condition.type == BreakConditionType.VARIABLE_EQUALS:
            found, value = lookup_path(state.metadata, condition.key)
            return found and value == condition.value
        return False

    # Recording

    def take_snapshot(
        self, description: str, state: Optional[WorkflowState] = None
    ) -> Snapshot:
        """Store a named copy of `state` (or the last observed state)."""
        with self._lock:
            source = state if state is not None else self._current_state
            snapshot = Snapshot(
                id=f"snap-{len(self._snapshots) + 1}",
                description=description,
                elapsed_secs=self._elapsed(),
                current_task=self._current_task,
                state=source.model_copy(deep=True) if source is not None else None,
            )
            self._snapshots.append(snapshot)
        self.logger.info(f"Snapshot {snapshot.id} taken: {description}")
        return snapshot

    def record_side_effect(self, task_id: str, effect_type: str, description: str = "") -> None:
        with self._lock:
            self._side_effects.append(
                SideEffect(task_id=task_id, effect_type=effect_type, description=description)
            )

    # Read access for the inspector

    def status(self) -> DebugStatus:
        with self._lock:
            return DebugStatus(
                mode=self._mode,
                step_mode=self._step_mode,
                enabled=self._enabled,
                current_task=self._current_task,
                suspended_on=self._suspended_on,
                waiting=self._waiting,
                breakpoint_count=len(self._breakpoints),
                timeline_length=len(self._timeline),
                snapshot_count=len(self._snapshots),
                side_effect_count=len(self._side_effects),
                elapsed_secs=self._elapsed(),
            )

    def timeline(self) -> list[TimelineEvent]:
        with self._lock:
            return list(self._timeline)

    def snapshots(self) -> list[Snapshot]:
        with self._lock:
            return list(self._snapshots)

    def side_effects(self) -> list[SideEffect]:
        with self._lock:
            return list(self._side_effects)

    def current_state(self) -> Optional[WorkflowState]:
        """Deep copy of the last state seen at a transition."""
        with self._lock:
            if self._current_state is None:
                return None
            return self._current_state.model_copy(deep=True)

    @property
    def current_task(self) -> Optional[str]:
        with self._lock:
            return self._current_task
