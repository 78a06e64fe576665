"""HTTP client for remote agent control endpoints."""

from typing import Any, Literal

import httpx
from pydantic import BaseModel, ConfigDict, field_validator


class ControlClientError(Exception):
    """Raised when a control call fails."""

    pass


class ExecuteRequest(BaseModel):
    """Request body for /control/execute."""

    model_config = ConfigDict(frozen=True)

    method: str
    workflow_name: str
    task_id: str
    inputs: dict[str, Any] = {}
    parameters: dict[str, Any] = {}

    @field_validator("method", "workflow_name", "task_id")
    @classmethod
    def field_not_empty(cls, v: str, info) -> str:
        if not v or not v.strip():
            raise ValueError(f"{info.field_name} is required")
        return v


class ExecuteResponse(BaseModel):
    """Response from /control/execute."""

    model_config = ConfigDict(frozen=True)

    status: Literal["complete", "running", "failed"]
    task_id: str | None = None
    output: Any = None
    metadata: dict[str, Any] = {}
    error: str | None = None


class StatusResponse(BaseModel):
    """Response from /control/status."""

    model_config = ConfigDict(frozen=True)

    status: Literal["running", "complete", "failed"]
    progress: int | None = None
    error: str | None = None


class OutputResponse(BaseModel):
    """Response from /control/output."""

    model_config = ConfigDict(frozen=True)

    output: Any = None
    metadata: dict[str, Any] = {}


class ControlClient:
    """Calls the execute/status/output endpoints of an agent service."""

    def __init__(self, timeout: float = 30.0):
        if timeout <= 0:
            raise ValueError("timeout must be positive")
        self._timeout = timeout

    def _send(self, method: str, url: str, body: dict | None = None) -> Any:
        try:
            with httpx.Client(timeout=self._timeout) as client:
                response = client.request(method, url, json=body)
        except httpx.ConnectError as e:
            raise ControlClientError(f"Connection failed: {e}") from e
        except httpx.TimeoutException as e:
            raise ControlClientError(f"Request timed out: {e}") from e
        except httpx.RequestError as e:
            raise ControlClientError(f"Request failed: {e}") from e

        if response.status_code >= 400:
            raise ControlClientError(f"HTTP {response.status_code}: {response.text}")

        try:
            return response.json()
        except ValueError as e:
            raise ControlClientError(f"Invalid response: {e}") from e

    def _url(self, base_url: str, path: str) -> str:
        if not base_url or not base_url.strip():
            raise ValueError("base_url is required")
        return f"{base_url.rstrip('/')}{path}"

    def execute(
        self,
        base_url: str,
        method: str,
        workflow_name: str,
        task_id: str,
        inputs: dict[str, Any] | None = None,
        parameters: dict[str, Any] | None = None,
    ) -> ExecuteResponse:
        """Call POST /control/execute."""
        url = self._url(base_url, "/control/execute")
        request = ExecuteRequest(
            method=method,
            workflow_name=workflow_name,
            task_id=task_id,
            inputs=inputs or {},
            parameters=parameters or {},
        )
        data = self._send("POST", url, request.model_dump(mode="json"))
        try:
            return ExecuteResponse.model_validate(data)
        except Exception as e:
            raise ControlClientError(f"Invalid response: {e}") from e

    def get_status(self, base_url: str, task_id: str) -> StatusResponse:
        """Call GET /control/status/{task_id}."""
        if not task_id or not task_id.strip():
            raise ValueError("task_id is required")
        data = self._send("GET", self._url(base_url, f"/control/status/{task_id}"))
        try:
            return StatusResponse.model_validate(data)
        except Exception as e:
            raise ControlClientError(f"Invalid response: {e}") from e

    def get_output(self, base_url: str, task_id: str) -> OutputResponse:
        """Call GET /control/output/{task_id}."""
        if not task_id or not task_id.strip():
            raise ValueError("task_id is required")
        data = self._send("GET", self._url(base_url, f"/control/output/{task_id}"))
        try:
            return OutputResponse.model_validate(data)
        except Exception as e:
            raise ControlClientError(f"Invalid response: {e}") from e
