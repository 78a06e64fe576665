"""Read-only queries over the debug controller's recordings."""

from collections import Counter
from typing import Any, Optional

from models.debug import DebugStatus, Snapshot, TimelineEvent
from services.debugger import DebugController

VARIABLE_SCOPES = ("all", "workflow", "loop", "task")


class Inspector:
    """Answers status, timeline, snapshot and variable queries."""

    def __init__(self, controller: DebugController):
        if controller is None:
            raise ValueError("controller is required")
        self._controller = controller

    def status(self) -> DebugStatus:
        return self._controller.status()

    def timeline(self, limit: Optional[int] = None) -> list[TimelineEvent]:
        """Transitions in commit order; `limit` keeps the most recent."""
        events = self._controller.timeline()
        if limit is not None:
            if limit < 0:
                raise ValueError("limit must not be negative")
            events = events[-limit:] if limit else []
        return events

    def snapshots(self) -> list[Snapshot]:
        return self._controller.snapshots()

    def inspect_variables(self, scope: str = "all") -> dict[str, Any]:
        """Variables visible at the current suspension point.

        Workflow metadata is prefixed with `workflow.`, loop variables are
        grouped per loop task and `task` holds the current task's record.
        """
        if scope not in VARIABLE_SCOPES:
            raise ValueError(f"scope must be one of {', '.join(VARIABLE_SCOPES)}")

        state = self._controller.current_state()
        if state is None:
            return {}

        variables: dict[str, Any] = {}
        if scope in ("all", "workflow"):
            variables["workflow"] = {
                f"workflow.{key}": value for key, value in state.metadata.items()
            }
        if scope in ("all", "loop"):
            variables["loop"] = {
                task_id: dict(loop.loop_variables)
                for task_id, loop in state.loop_states.items()
            }
        if scope in ("all", "task"):
            current = self._controller.current_task
            variables["task"] = self._task_record(state, current) if current else {}
        return variables

    def inspect_task(self, task_id: str) -> dict[str, Any]:
        """Status, timings, attempts, result, error and loop progress of a task."""
        if not task_id:
            raise ValueError("task_id is required")
        state = self._controller.current_state()
        if state is None or task_id not in state.task_statuses:
            raise KeyError(task_id)
        return self._task_record(state, task_id)

    def _task_record(self, state, task_id: str) -> dict[str, Any]:
        record: dict[str, Any] = {
            "task_id": task_id,
            "status": state.task_statuses.get(task_id),
            "started_at": state.task_start_times.get(task_id),
            "ended_at": state.task_end_times.get(task_id),
            "attempts": state.task_attempts.get(task_id, 0),
            "result": state.task_results.get(task_id),
            "error": state.task_errors.get(task_id),
        }
        loop = state.loop_states.get(task_id)
        if loop is not None:
            record["loop"] = {
                "status": loop.status,
                "current_iteration": loop.current_iteration,
                "total_iterations": loop.total_iterations,
                "executed_iterations": len(loop.iteration_statuses),
                "variables": dict(loop.loop_variables),
            }
        return record

    def side_effect_summary(self) -> dict[str, int]:
        """Count of recorded side effects per effect type."""
        return dict(Counter(e.effect_type for e in self._controller.side_effects()))
