"""Single-writer access to the workflow state during a run."""

import logging
import threading
from typing import Any, Callable, Optional, TypeVar

from models.debug import Transition
from models.state import WorkflowState
from services.debugger import DebugController, WorkflowCancelledError
from services.state_store import CheckpointIOError, StateStore

T = TypeVar("T")


class WorkflowContext:
    """Owns the WorkflowState of one run.

    Every mutation goes through `commit`, which first hands the
    transition to the debug controller (possibly blocking) and then
    applies the change under the lock, in completion order.
    """

    def __init__(
        self,
        state: WorkflowState,
        state_store: Optional[StateStore] = None,
        debugger: Optional[DebugController] = None,
        cancel_event: Optional[threading.Event] = None,
    ):
        if state is None:
            raise ValueError("state is required")
        self._state = state
        self._state_store = state_store
        self._debugger = debugger
        self._cancel_event = cancel_event or threading.Event()
        self._lock = threading.RLock()
        # Held across copy and save so checkpoints land in the order taken
        self._checkpoint_lock = threading.Lock()
        self.logger = logging.getLogger(__name__)

    @property
    def state(self) -> WorkflowState:
        """The live state; only read it while holding no expectations of stability."""
        return self._state

    @property
    def cancel_event(self) -> threading.Event:
        return self._cancel_event

    def commit(self, transition: Optional[Transition], apply: Callable[[WorkflowState], T]) -> T:
        """Run the debug hook for `transition`, then apply the mutation."""
        if transition is not None and self._debugger is not None:
            self._debugger.before_transition(transition, self.snapshot())
        with self._lock:
            return apply(self._state)

    def read(self, reader: Callable[[WorkflowState], T]) -> T:
        with self._lock:
            return reader(self._state)

    def snapshot(self) -> WorkflowState:
        """Consistent deep copy of the state."""
        with self._lock:
            return self._state.model_copy(deep=True)

    def is_cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def check_cancelled(self) -> None:
        if self._cancel_event.is_set():
            raise WorkflowCancelledError()

    def cancel(self) -> None:
        self._cancel_event.set()

    def record_side_effect(self, task_id: str, effect_type: str, description: str = "") -> None:
        if self._debugger is not None:
            self._debugger.record_side_effect(task_id, effect_type, description)

    def checkpoint(self, reason: str = "") -> bool:
        """Persist the state; failures are logged and retried next time."""
        if self._state_store is None:
            return False

        with self._checkpoint_lock:
            with self._lock:
                self._state.mark_checkpoint()
                state_copy = self._state.model_copy(deep=True)

            try:
                self._state_store.save(state_copy)
            except CheckpointIOError as e:
                self.logger.warning(f"Checkpoint failed ({reason}): {e}")
                return False

        self.logger.debug(f"Checkpoint written for {state_copy.workflow_name} ({reason})")
        self.record_side_effect(state_copy.workflow_name, "checkpoint", reason)
        return True

    def merge_metadata(self, values: dict[str, Any]) -> None:
        if not values:
            return
        with self._lock:
            self._state.metadata.update(values)
