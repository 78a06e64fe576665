"""Durable stores for workflow state checkpoints."""

import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Protocol

from pydantic import ValidationError
from redis import Redis
from redis.exceptions import RedisError

from models.state import WorkflowState

STATE_FILE_SUFFIX = ".state.json"


class WorkflowNotFoundError(Exception):
    """Raised when no saved state exists for a workflow."""

    def __init__(self, workflow_name: str):
        self.workflow_name = workflow_name
        super().__init__(f"Workflow state not found: {workflow_name}")


class CheckpointIOError(Exception):
    """Raised when a checkpoint cannot be written or read."""

    def __init__(self, workflow_name: str, message: str):
        self.workflow_name = workflow_name
        super().__init__(f"Checkpoint failed for {workflow_name}: {message}")


class StateStore(Protocol):
    """One saved WorkflowState per workflow name."""

    def save(self, state: WorkflowState) -> None: ...

    def load(self, workflow_name: str) -> WorkflowState: ...

    def exists(self, workflow_name: str) -> bool: ...

    def delete(self, workflow_name: str) -> bool: ...

    def list_states(self) -> list[str]: ...


def state_file_name(workflow_name: str) -> str:
    """Deterministic file name for a workflow."""
    safe = re.sub(r"[^A-Za-z0-9._-]", "_", workflow_name.strip())
    return f"{safe}{STATE_FILE_SUFFIX}"


class FileStateStore:
    """Stores each workflow state as a JSON file in a directory."""

    def __init__(self, state_dir: str):
        if not state_dir:
            raise ValueError("state_dir is required")
        self._state_dir = Path(state_dir)
        self.logger = logging.getLogger(__name__)

    @property
    def state_dir(self) -> Path:
        return self._state_dir

    def _path(self, workflow_name: str) -> Path:
        if not workflow_name or not workflow_name.strip():
            raise ValueError("workflow_name is required")
        return self._state_dir / state_file_name(workflow_name)

    def save(self, state: WorkflowState) -> None:
        """Write the full state atomically (temp file, then rename)."""
        if state is None:
            raise ValueError("state is required")

        path = self._path(state.workflow_name)
        try:
            self._state_dir.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                dir=self._state_dir, prefix=".tmp-", suffix=STATE_FILE_SUFFIX
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(state.model_dump_json(indent=2))
                os.replace(tmp_path, path)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise
        except OSError as e:
            raise CheckpointIOError(state.workflow_name, str(e)) from e

        self.logger.debug(f"Saved state for {state.workflow_name} to {path}")

    def load(self, workflow_name: str) -> WorkflowState:
        path = self._path(workflow_name)
        if not path.exists():
            raise WorkflowNotFoundError(workflow_name)

        try:
            with open(path, "r", encoding="utf-8") as f:
                data = f.read()
            return WorkflowState.model_validate_json(data)
        except OSError as e:
            raise CheckpointIOError(workflow_name, str(e)) from e
        except ValidationError as e:
            raise CheckpointIOError(workflow_name, f"Invalid state file: {e}") from e

    def exists(self, workflow_name: str) -> bool:
        return self._path(workflow_name).exists()

    def delete(self, workflow_name: str) -> bool:
        """Remove saved state. Returns False when there was none."""
        path = self._path(workflow_name)
        if not path.exists():
            return False
        try:
            path.unlink()
        except OSError as e:
            raise CheckpointIOError(workflow_name, str(e)) from e
        self.logger.info(f"Deleted state for {workflow_name}")
        return True

    def list_states(self) -> list[str]:
        """Workflow names with saved state, sorted."""
        if not self._state_dir.exists():
            return []

        names = []
        for path in self._state_dir.glob(f"*{STATE_FILE_SUFFIX}"):
            if path.name.startswith(".tmp-"):
                continue
            try:
                with open(path, "r", encoding="utf-8") as f:
                    names.append(WorkflowState.model_validate_json(f.read()).workflow_name)
            except (OSError, ValidationError) as e:
                self.logger.warning(f"Skipping unreadable state file {path}: {e}")
        return sorted(names)


class RedisStateStore:
    """Stores workflow states in Redis, one key per workflow."""

    def __init__(self, redis_client: Redis, prefix: str = "loopflow"):
        if redis_client is None:
            raise ValueError("redis_client is required")
        self._redis = redis_client
        self._prefix = prefix
        self.logger = logging.getLogger(__name__)

    def _state_key(self, workflow_name: str) -> str:
        if not workflow_name or not workflow_name.strip():
            raise ValueError("workflow_name is required")
        return f"{self._prefix}:state:{workflow_name}"

    def _index_key(self) -> str:
        return f"{self._prefix}:states"

    def save(self, state: WorkflowState) -> None:
        if state is None:
            raise ValueError("state is required")

        key = self._state_key(state.workflow_name)
        try:
            pipe = self._redis.pipeline()
            pipe.set(key, state.model_dump_json())
            pipe.sadd(self._index_key(), state.workflow_name)
            pipe.execute()
        except RedisError as e:
            raise CheckpointIOError(state.workflow_name, str(e)) from e

    def load(self, workflow_name: str) -> WorkflowState:
        key = self._state_key(workflow_name)
        try:
            data = self._redis.get(key)
        except RedisError as e:
            raise CheckpointIOError(workflow_name, str(e)) from e
        if data is None:
            raise WorkflowNotFoundError(workflow_name)

        try:
            return WorkflowState.model_validate_json(data)
        except ValidationError as e:
            raise CheckpointIOError(workflow_name, f"Invalid state: {e}") from e

    def exists(self, workflow_name: str) -> bool:
        return bool(self._redis.exists(self._state_key(workflow_name)))

    def delete(self, workflow_name: str) -> bool:
        key = self._state_key(workflow_name)
        try:
            removed = self._redis.delete(key)
            self._redis.srem(self._index_key(), workflow_name)
        except RedisError as e:
            raise CheckpointIOError(workflow_name, str(e)) from e
        return bool(removed)

    def list_states(self) -> list[str]:
        names = []
        for name in self._redis.smembers(self._index_key()):
            if isinstance(name, bytes):
                name = name.decode("utf-8")
            names.append(name)
        return sorted(names)
