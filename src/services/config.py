"""Engine configuration read from the environment."""

import json
import os
from typing import Literal, Mapping

from pydantic import BaseModel, ConfigDict, Field, field_validator


class EngineConfig(BaseModel):
    """Settings shared by the API server and the runner CLI."""

    model_config = ConfigDict(frozen=True)

    state_backend: Literal["file", "redis"] = "file"
    state_dir: str = ".loopflow/state"
    redis_url: str = "redis://localhost:6379"
    max_workers: int | None = Field(default=None, ge=1)
    log_dir: str = "logs"
    log_level: str = "info"
    executor_timeout: float = Field(default=30.0, gt=0)
    poll_interval: float = Field(default=5.0, gt=0)
    agent_endpoints: dict[str, str] = {}

    @field_validator("log_level")
    @classmethod
    def log_level_known(cls, v: str) -> str:
        v = v.lower()
        if v not in ("debug", "info", "warning", "error"):
            raise ValueError("log_level must be one of debug, info, warning, error")
        return v

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "EngineConfig":
        """Build config from LOOPFLOW_* variables, REDIS_URL and LOG_LEVEL."""
        env = os.environ if environ is None else environ
        values: dict = {
            "state_backend": env.get("LOOPFLOW_STATE_BACKEND", "file").lower(),
            "state_dir": env.get("LOOPFLOW_STATE_DIR", ".loopflow/state"),
            "redis_url": env.get("REDIS_URL", "redis://localhost:6379"),
            "log_dir": env.get("LOOPFLOW_LOG_DIR", "logs"),
            "log_level": env.get("LOG_LEVEL", "info"),
            "executor_timeout": float(env.get("LOOPFLOW_EXECUTOR_TIMEOUT", "30.0")),
            "poll_interval": float(env.get("LOOPFLOW_POLL_INTERVAL", "5.0")),
        }
        if env.get("LOOPFLOW_MAX_WORKERS"):
            values["max_workers"] = int(env["LOOPFLOW_MAX_WORKERS"])
        if env.get("LOOPFLOW_AGENT_ENDPOINTS"):
            try:
                values["agent_endpoints"] = json.loads(env["LOOPFLOW_AGENT_ENDPOINTS"])
            except json.JSONDecodeError as e:
                raise ValueError(f"LOOPFLOW_AGENT_ENDPOINTS is not valid JSON: {e}") from e
        return cls(**values)
