"""Task executor interface, adapters and retry/fallback invocation."""

import logging
import time
from typing import Any, Callable, Optional, Protocol

from models.execution import IterationContext, TaskOutput
from models.graph import TaskNode
from services.control_client import ControlClient, ControlClientError


class TaskExecutionError(Exception):
    """Raised when the executor reports a task failure."""

    def __init__(self, task_id: str, message: str, attempts: int = 1):
        self.task_id = task_id
        self.message = message
        self.attempts = attempts
        super().__init__(f"Task {task_id} failed: {message}")


class TaskExecutor(Protocol):
    """Runs the opaque work of one leaf task.

    Must be safe to call concurrently for distinct task IDs.
    """

    def execute(
        self,
        task_id: str,
        inputs: dict[str, Any],
        iteration_context: Optional[IterationContext] = None,
        agent: Optional[str] = None,
    ) -> TaskOutput:
        ...


class CallableTaskExecutor:
    """Adapts a plain function to the TaskExecutor interface.

    The function receives (task_id, inputs, iteration_context, agent) and
    may return a TaskOutput or any value, which becomes the output.
    """

    def __init__(self, func: Callable[..., Any]):
        if func is None:
            raise ValueError("func is required")
        self._func = func

    def execute(
        self,
        task_id: str,
        inputs: dict[str, Any],
        iteration_context: Optional[IterationContext] = None,
        agent: Optional[str] = None,
    ) -> TaskOutput:
        result = self._func(task_id, inputs, iteration_context, agent)
        if isinstance(result, TaskOutput):
            return result
        return TaskOutput(task_id=task_id, output=result)


class HttpTaskExecutor:
    """Executes tasks on remote agent services over the control API."""

    def __init__(
        self,
        client: ControlClient,
        endpoints: dict[str, str],
        workflow_name: str = "loopflow",
        poll_interval: float = 5.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if client is None:
            raise ValueError("client is required")
        if endpoints is None:
            raise ValueError("endpoints is required")
        if not workflow_name:
            raise ValueError("workflow_name is required")
        if poll_interval <= 0:
            raise ValueError("poll_interval must be positive")

        self._client = client
        self._endpoints = endpoints
        self._workflow_name = workflow_name
        self._poll_interval = poll_interval
        self._sleep = sleep
        self.logger = logging.getLogger(__name__)

    def execute(
        self,
        task_id: str,
        inputs: dict[str, Any],
        iteration_context: Optional[IterationContext] = None,
        agent: Optional[str] = None,
    ) -> TaskOutput:
        if not agent or agent not in self._endpoints:
            raise TaskExecutionError(task_id, f"Endpoint not found for agent: {agent}")
        base_url = self._endpoints[agent]

        parameters: dict[str, Any] = {}
        if iteration_context is not None:
            parameters["iteration"] = iteration_context.model_dump(mode="json")

        try:
            response = self._client.execute(
                base_url=base_url,
                method=task_id.rsplit(".", 1)[-1],
                workflow_name=self._workflow_name,
                task_id=task_id,
                inputs=inputs,
                parameters=parameters,
            )

            if response.status == "failed":
                raise TaskExecutionError(
                    task_id, response.error or "Service returned failed status"
                )
            if response.status == "running":
                return self._poll_until_complete(base_url, response.task_id, task_id)

            return TaskOutput(
                task_id=task_id, output=response.output, metadata=response.metadata
            )
        except ControlClientError as e:
            raise TaskExecutionError(task_id, str(e)) from e

    def _poll_until_complete(
        self, base_url: str, service_task_id: Optional[str], task_id: str
    ) -> TaskOutput:
        """Poll service status until complete."""
        if not service_task_id:
            raise TaskExecutionError(task_id, "Service returned running without task_id")

        while True:
            status = self._client.get_status(base_url, service_task_id)

            if status.status == "complete":
                output = self._client.get_output(base_url, service_task_id)
                return TaskOutput(
                    task_id=task_id, output=output.output, metadata=output.metadata
                )

            if status.status == "failed":
                raise TaskExecutionError(task_id, status.error or "Service task failed")

            self.logger.debug(f"Task {task_id} still running ({status.progress}%)")
            self._sleep(self._poll_interval)


class TaskInvoker:
    """Calls the executor for one node, applying its error policy.

    Attempts are 1 + `retry`; when all fail and a fallback agent is
    declared, it gets one final attempt.
    """

    def __init__(self, executor: TaskExecutor, sleep: Callable[[float], None] = time.sleep):
        if executor is None:
            raise ValueError("executor is required")
        self._executor = executor
        self._sleep = sleep
        self.logger = logging.getLogger(__name__)

    def invoke(
        self,
        node: TaskNode,
        inputs: dict[str, Any],
        iteration_context: Optional[IterationContext] = None,
        on_attempt: Optional[Callable[[int], None]] = None,
    ) -> TaskOutput:
        policy = node.on_error
        max_attempts = 1 + (policy.retry if policy else 0)
        last_error = ""

        for attempt in range(1, max_attempts + 1):
            if attempt > 1:
                delay = policy.delay_for_attempt(attempt - 1)
                self.logger.info(
                    f"Retrying task {node.id} (attempt {attempt}/{max_attempts}) in {delay}s"
                )
                self._sleep(delay)
            if on_attempt:
                on_attempt(attempt)
            try:
                return self._call(node.id, inputs, iteration_context, node.agent)
            except TaskExecutionError as e:
                last_error = e.message
                self.logger.warning(f"Task {node.id} attempt {attempt} failed: {e.message}")

        if policy and policy.fallback_agent:
            self.logger.info(f"Task {node.id} falling back to agent {policy.fallback_agent}")
            if on_attempt:
                on_attempt(max_attempts + 1)
            try:
                return self._call(node.id, inputs, iteration_context, policy.fallback_agent)
            except TaskExecutionError as e:
                raise TaskExecutionError(
                    node.id, f"fallback agent failed: {e.message}", max_attempts + 1
                ) from e

        raise TaskExecutionError(node.id, last_error, max_attempts)

    def _call(
        self,
        task_id: str,
        inputs: dict[str, Any],
        iteration_context: Optional[IterationContext],
        agent: Optional[str],
    ) -> TaskOutput:
        try:
            return self._executor.execute(task_id, inputs, iteration_context, agent)
        except TaskExecutionError:
            raise
        except Exception as e:
            raise TaskExecutionError(task_id, f"{type(e).__name__}: {e}") from e
