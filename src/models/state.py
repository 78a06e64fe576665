"""State models for workflow, task and loop tracking."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class WorkflowStatus(str, Enum):
    """Workflow execution status."""

    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


class TaskStatus(str, Enum):
    """Task execution status."""

    PENDING = "pending"
    READY = "ready"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class LoopStatus(str, Enum):
    """Loop instance status."""

    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    BROKEN_EARLY = "broken_early"
    TIMED_OUT = "timed_out"
    FAILED = "failed"


SATISFIED_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.SKIPPED})
TERMINAL_STATUSES = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.SKIPPED}
)


class IterationRecord(BaseModel):
    """Outcome of one executed loop iteration."""

    iteration: int
    status: TaskStatus
    result: Any = None
    error: str | None = None
    completed_at: datetime = Field(default_factory=_utc_now)


class LoopState(BaseModel):
    """Progress of a single looping task."""

    task_id: str
    status: LoopStatus = LoopStatus.IDLE
    current_iteration: int = 0
    total_iterations: int | None = None
    iteration_statuses: list[IterationRecord] = []
    loop_variables: dict[str, Any] = {}
    results: dict[str, list[Any]] = {}
    started_at: datetime | None = None
    last_iteration_at: datetime | None = None
    ended_at: datetime | None = None

    def start(self, total_iterations: int | None) -> None:
        self.status = LoopStatus.RUNNING
        self.total_iterations = total_iterations
        if self.started_at is None:
            self.started_at = _utc_now()

    def begin_iteration(self, iteration: int, variables: dict[str, Any]) -> None:
        """Move the cursor forward; it never goes backwards."""
        self.current_iteration = max(self.current_iteration, iteration)
        self.loop_variables = dict(variables)
        self.last_iteration_at = _utc_now()

    def record_iteration(
        self, record: IterationRecord, result_key: str | None = None
    ) -> None:
        """Store an executed iteration, replacing an earlier attempt."""
        self.iteration_statuses = [
            r for r in self.iteration_statuses if r.iteration != record.iteration
        ]
        self.iteration_statuses.append(record)
        self.last_iteration_at = record.completed_at
        if result_key and record.status == TaskStatus.COMPLETED:
            self.results.setdefault(result_key, []).append(record.result)

    def rebuild_results(self, result_key: str) -> list[Any]:
        """Order collected results by iteration index."""
        ordered = sorted(self.iteration_statuses, key=lambda r: r.iteration)
        values = [r.result for r in ordered if r.status == TaskStatus.COMPLETED]
        self.results[result_key] = values
        return values

    def finish(self, status: LoopStatus) -> None:
        self.status = status
        self.ended_at = _utc_now()

    def is_iteration_completed(self, iteration: int) -> bool:
        return any(
            r.iteration == iteration and r.status == TaskStatus.COMPLETED
            for r in self.iteration_statuses
        )

    def get_last_completed_iteration(self) -> int | None:
        completed = [
            r.iteration
            for r in self.iteration_statuses
            if r.status == TaskStatus.COMPLETED
        ]
        return max(completed) if completed else None

    def failed_iterations(self) -> list[IterationRecord]:
        return [r for r in self.iteration_statuses if r.status == TaskStatus.FAILED]


class WorkflowState(BaseModel):
    """Persistent state of a workflow run."""

    workflow_name: str
    workflow_version: str = "1.0.0"
    status: WorkflowStatus = WorkflowStatus.RUNNING
    task_statuses: dict[str, TaskStatus] = {}
    task_start_times: dict[str, datetime] = {}
    task_end_times: dict[str, datetime] = {}
    task_attempts: dict[str, int] = {}
    task_results: dict[str, Any] = {}
    task_errors: dict[str, str] = {}
    loop_states: dict[str, LoopState] = {}
    metadata: dict[str, Any] = {}
    started_at: datetime = Field(default_factory=_utc_now)
    ended_at: datetime | None = None
    checkpoint_at: datetime | None = None

    def get_task_status(self, task_id: str) -> TaskStatus | None:
        return self.task_statuses.get(task_id)

    def update_task_status(self, task_id: str, status: TaskStatus) -> None:
        """Set a task status and stamp start/end times."""
        self.task_statuses[task_id] = status
        now = _utc_now()
        if status == TaskStatus.RUNNING:
            self.task_start_times[task_id] = now
            self.task_end_times.pop(task_id, None)
        elif status in TERMINAL_STATUSES:
            self.task_end_times[task_id] = now

    def record_task_attempt(self, task_id: str) -> int:
        self.task_attempts[task_id] = self.task_attempts.get(task_id, 0) + 1
        return self.task_attempts[task_id]

    def record_task_error(self, task_id: str, error: str) -> None:
        self.task_errors[task_id] = error

    def record_task_result(self, task_id: str, result: Any) -> None:
        self.task_results[task_id] = result

    def mark_running(self) -> None:
        self.status = WorkflowStatus.RUNNING
        self.ended_at = None

    def mark_completed(self) -> None:
        self.status = WorkflowStatus.COMPLETED
        self.ended_at = _utc_now()

    def mark_failed(self) -> None:
        self.status = WorkflowStatus.FAILED
        self.ended_at = _utc_now()

    def mark_paused(self) -> None:
        self.status = WorkflowStatus.PAUSED

    def mark_checkpoint(self) -> None:
        self.checkpoint_at = _utc_now()

    def can_resume(self) -> bool:
        return self.status in (WorkflowStatus.RUNNING, WorkflowStatus.PAUSED)

    def get_progress(self) -> float:
        """Fraction of tasks that are completed or skipped."""
        if not self.task_statuses:
            return 0.0
        done = sum(1 for s in self.task_statuses.values() if s in SATISFIED_STATUSES)
        return done / len(self.task_statuses)

    def prepare_for_resume(self) -> list[str]:
        """Reset unfinished tasks to pending.

        Completed and skipped tasks are kept so they are never re-run.
        Returns the IDs of tasks that were reset.
        """
        reset = []
        for task_id, status in self.task_statuses.items():
            if status not in SATISFIED_STATUSES and status != TaskStatus.PENDING:
                self.task_statuses[task_id] = TaskStatus.PENDING
                self.task_errors.pop(task_id, None)
                reset.append(task_id)
        self.mark_running()
        return reset

    def init_loop(self, task_id: str) -> LoopState:
        """Return the loop state for a task, creating it when absent."""
        if task_id not in self.loop_states:
            self.loop_states[task_id] = LoopState(task_id=task_id)
        return self.loop_states[task_id]

    def get_loop(self, task_id: str) -> LoopState | None:
        return self.loop_states.get(task_id)

    def is_iteration_completed(self, task_id: str, iteration: int) -> bool:
        loop = self.loop_states.get(task_id)
        return loop is not None and loop.is_iteration_completed(iteration)

    def get_last_completed_iteration(self, task_id: str) -> int | None:
        loop = self.loop_states.get(task_id)
        if loop is None:
            return None
        return loop.get_last_completed_iteration()
