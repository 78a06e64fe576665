"""Integration tests for RedisStateStore with real Redis."""

import pytest
from redis import Redis
from testcontainers.redis import RedisContainer

from models.state import IterationRecord, LoopStatus, TaskStatus, WorkflowState, WorkflowStatus
from services.state_store import RedisStateStore, WorkflowNotFoundError


@pytest.fixture(scope="module")
def redis_container():
    with RedisContainer() as container:
        yield container


@pytest.fixture(params=[False, True], ids=["bytes", "decoded"])
def redis_client(request, redis_container):
    client = Redis(
        host=redis_container.get_container_host_ip(),
        port=redis_container.get_exposed_port(6379),
        decode_responses=request.param,
    )
    yield client
    client.flushdb()
    client.close()


@pytest.fixture
def state_store(redis_client):
    return RedisStateStore(redis_client)


def create_state(name: str) -> WorkflowState:
    state = WorkflowState(
        workflow_name=name,
        task_statuses={"fetch": TaskStatus.COMPLETED, "process": TaskStatus.RUNNING},
        task_results={"fetch": ["a", "b", "c"]},
        metadata={"batch": 7},
    )
    loop = state.init_loop("process")
    loop.start(3)
    loop.record_iteration(
        IterationRecord(iteration=0, status=TaskStatus.COMPLETED, result="A"), "processed"
    )
    loop.record_iteration(IterationRecord(iteration=1, status=TaskStatus.FAILED, error="bad row"))
    return state


class TestCheckpointIntegration:
    """Integration tests for saving and restoring checkpoints."""

    def test_roundtrip(self, state_store):
        state_store.save(create_state("wf-int-1"))

        loaded = state_store.load("wf-int-1")

        assert loaded.task_results["fetch"] == ["a", "b", "c"]
        loop = loaded.loop_states["process"]
        assert loop.status == LoopStatus.RUNNING
        assert loop.results == {"processed": ["A"]}
        assert loop.get_last_completed_iteration() == 0
        assert [r.error for r in loop.failed_iterations()] == ["bad row"]

    def test_overwrite_keeps_latest(self, state_store):
        state = create_state("wf-int-2")
        state_store.save(state)
        state.mark_paused()
        state_store.save(state)

        assert state_store.load("wf-int-2").status == WorkflowStatus.PAUSED
        assert state_store.list_states() == ["wf-int-2"]

    def test_list_and_delete(self, state_store):
        state_store.save(create_state("beta"))
        state_store.save(create_state("alpha"))

        assert state_store.list_states() == ["alpha", "beta"]

        assert state_store.delete("alpha") is True
        assert state_store.list_states() == ["beta"]
        with pytest.raises(WorkflowNotFoundError):
            state_store.load("alpha")

    def test_resume_flow(self, state_store):
        """A paused checkpoint restores to a resumable state."""
        state = create_state("wf-int-3")
        state.mark_paused()
        state_store.save(state)

        restored = state_store.load("wf-int-3")
        assert restored.can_resume()
        assert restored.prepare_for_resume() == ["process"]
        assert restored.task_statuses["fetch"] == TaskStatus.COMPLETED
