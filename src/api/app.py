"""FastAPI REST API for the workflow engine."""

from typing import Optional

from fastapi import FastAPI, HTTPException

from api.models import (
    BreakpointEnableRequest,
    BreakpointRequest,
    ErrorResponse,
    HealthResponse,
    LoopSummaryResponse,
    ResumeResponse,
    RunRequest,
    RunResponse,
    SnapshotRequest,
    SnapshotResponse,
    StateListResponse,
    StateResponse,
    StepModeRequest,
)
from models.debug import Breakpoint, DebugStatus, Snapshot, TimelineEvent
from models.state import WorkflowState
from services.debugger import BreakpointNotFoundError, DebugController
from services.graph_builder import GraphConstructionError
from services.inspector import VARIABLE_SCOPES, Inspector
from services.state_store import CheckpointIOError, StateStore, WorkflowNotFoundError
from services.workflow_engine import WorkflowEngine
from services.workflow_loader import WorkflowLoader, WorkflowParseError


def _state_response(state: WorkflowState) -> StateResponse:
    return StateResponse(
        workflow_name=state.workflow_name,
        workflow_version=state.workflow_version,
        status=state.status.value,
        progress=state.get_progress(),
        task_statuses={k: v.value for k, v in state.task_statuses.items()},
        task_errors=dict(state.task_errors),
        loops={
            task_id: LoopSummaryResponse(
                status=loop.status.value,
                current_iteration=loop.current_iteration,
                total_iterations=loop.total_iterations,
                executed_iterations=len(loop.iteration_statuses),
            )
            for task_id, loop in state.loop_states.items()
        },
        started_at=state.started_at,
        ended_at=state.ended_at,
        checkpoint_at=state.checkpoint_at,
    )


def _snapshot_response(snapshot: Snapshot) -> SnapshotResponse:
    return SnapshotResponse(
        id=snapshot.id,
        description=snapshot.description,
        elapsed_secs=snapshot.elapsed_secs,
        current_task=snapshot.current_task,
        created_at=snapshot.created_at,
    )


class LoopflowAPI:
    """REST API for running, inspecting and debugging workflows."""

    def __init__(
        self,
        engine: WorkflowEngine,
        loader: WorkflowLoader,
        debugger: DebugController,
        state_store: Optional[StateStore] = None,
    ):
        if engine is None:
            raise ValueError("engine is required")
        if loader is None:
            raise ValueError("loader is required")
        if debugger is None:
            raise ValueError("debugger is required")

        self._engine = engine
        self._loader = loader
        self._debugger = debugger
        self._inspector = Inspector(debugger)
        self._state_store = state_store

    def _require_store(self) -> StateStore:
        if self._state_store is None:
            raise HTTPException(status_code=404, detail="No state store configured")
        return self._state_store

    def create_app(self) -> FastAPI:
        """Create FastAPI application."""
        app = FastAPI(
            title="Loopflow API",
            description="Run, inspect and debug looping task-graph workflows",
            version="1.0.0",
        )

        @app.post(
            "/workflows/run",
            response_model=RunResponse,
            responses={400: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
        )
        def run_workflow(request: RunRequest) -> RunResponse:
            """Run a workflow to completion (blocks until it finishes)."""
            try:
                workflow = self._loader.parse_json(request.workflow)
            except WorkflowParseError as e:
                raise HTTPException(status_code=400, detail=f"Invalid workflow: {e}")

            try:
                result = self._engine.run(workflow, resume=request.resume)
            except GraphConstructionError as e:
                raise HTTPException(status_code=400, detail=f"Invalid task graph: {e}")
            except RuntimeError as e:
                raise HTTPException(status_code=409, detail=str(e))

            return RunResponse(
                workflow_name=result.workflow_name,
                outcome=result.outcome.value,
                timed_out_loop=result.timed_out_loop,
                progress=result.state.get_progress(),
                task_statuses={k: v.value for k, v in result.task_statuses.items()},
                task_errors=result.task_errors,
                blocked_tasks=result.blocked_tasks,
            )

        @app.post("/workflows/cancel", responses={409: {"model": ErrorResponse}})
        def cancel_workflow() -> dict:
            """Cancel the active run."""
            if not self._engine.cancel():
                raise HTTPException(status_code=409, detail="No workflow is running")
            return {"status": "cancelling"}

        @app.get("/states", response_model=StateListResponse)
        def list_states() -> StateListResponse:
            """List workflows with saved state."""
            return StateListResponse(workflows=self._require_store().list_states())

        @app.get(
            "/states/{workflow_name}",
            response_model=StateResponse,
            responses={404: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
        )
        def get_state(workflow_name: str) -> StateResponse:
            """Get the saved state of a workflow."""
            try:
                state = self._require_store().load(workflow_name)
            except WorkflowNotFoundError:
                raise HTTPException(status_code=404, detail="Workflow state not found")
            except CheckpointIOError as e:
                raise HTTPException(status_code=500, detail=str(e))
            return _state_response(state)

        @app.delete("/states/{workflow_name}", responses={404: {"model": ErrorResponse}})
        def delete_state(workflow_name: str) -> dict:
            """Delete the saved state of a workflow."""
            if not self._require_store().delete(workflow_name):
                raise HTTPException(status_code=404, detail="Workflow state not found")
            return {"status": "deleted"}

        @app.get("/debug/breakpoints", response_model=list[Breakpoint])
        def list_breakpoints() -> list[Breakpoint]:
            return self._debugger.list_breakpoints()

        @app.post("/debug/breakpoints", response_model=Breakpoint)
        def add_breakpoint(request: BreakpointRequest) -> Breakpoint:
            """Add a task, iteration or conditional breakpoint."""
            if request.kind == "task":
                return self._debugger.add_task_breakpoint(request.task, request.label)
            if request.kind == "iteration":
                return self._debugger.add_iteration_breakpoint(
                    request.task, request.iteration, request.label
                )
            return self._debugger.add_conditional_breakpoint(request.condition, request.label)

        @app.patch(
            "/debug/breakpoints/{breakpoint_id}",
            response_model=Breakpoint,
            responses={404: {"model": ErrorResponse}},
        )
        def enable_breakpoint(breakpoint_id: str, request: BreakpointEnableRequest) -> Breakpoint:
            try:
                return self._debugger.set_breakpoint_enabled(breakpoint_id, request.enabled)
            except BreakpointNotFoundError:
                raise HTTPException(status_code=404, detail="Breakpoint not found")

        @app.delete(
            "/debug/breakpoints/{breakpoint_id}",
            responses={404: {"model": ErrorResponse}},
        )
        def remove_breakpoint(breakpoint_id: str) -> dict:
            try:
                self._debugger.remove_breakpoint(breakpoint_id)
            except BreakpointNotFoundError:
                raise HTTPException(status_code=404, detail="Breakpoint not found")
            return {"status": "deleted"}

        @app.put("/debug/step-mode", response_model=DebugStatus)
        def set_step_mode(request: StepModeRequest) -> DebugStatus:
            self._debugger.set_step_mode(request.step_mode)
            return self._inspector.status()

        @app.post("/debug/pause", response_model=DebugStatus)
        def pause() -> DebugStatus:
            self._debugger.pause()
            return self._inspector.status()

        @app.post("/debug/resume", response_model=ResumeResponse)
        def resume() -> ResumeResponse:
            return ResumeResponse(released=self._debugger.resume())

        @app.get("/debug/status", response_model=DebugStatus)
        def debug_status() -> DebugStatus:
            return self._inspector.status()

        @app.get("/debug/timeline", response_model=list[TimelineEvent])
        def timeline(limit: Optional[int] = None) -> list[TimelineEvent]:
            if limit is not None and limit < 0:
                raise HTTPException(status_code=400, detail="limit must not be negative")
            return self._inspector.timeline(limit)

        @app.get("/debug/snapshots", response_model=list[SnapshotResponse])
        def snapshots() -> list[SnapshotResponse]:
            return [_snapshot_response(s) for s in self._inspector.snapshots()]

        @app.post("/debug/snapshots", response_model=SnapshotResponse)
        def take_snapshot(request: SnapshotRequest) -> SnapshotResponse:
            return _snapshot_response(self._debugger.take_snapshot(request.description))

        @app.get("/debug/variables", responses={400: {"model": ErrorResponse}})
        def variables(scope: str = "all") -> dict:
            if scope not in VARIABLE_SCOPES:
                raise HTTPException(status_code=400, detail=f"Unknown scope: {scope}")
            return self._inspector.inspect_variables(scope)

        @app.get("/debug/tasks/{task_id}", responses={404: {"model": ErrorResponse}})
        def inspect_task(task_id: str) -> dict:
            try:
                return self._inspector.inspect_task(task_id)
            except KeyError:
                raise HTTPException(status_code=404, detail="Task not found")

        @app.get("/debug/side-effects")
        def side_effects() -> dict[str, int]:
            return self._inspector.side_effect_summary()

        @app.get("/health", response_model=HealthResponse)
        def health_check() -> HealthResponse:
            """Health check endpoint."""
            return HealthResponse(status="ok", running=self._engine.is_running())

        return app
