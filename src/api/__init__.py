# API package

from api.app import LoopflowAPI
from api.models import (
    BreakpointRequest,
    ErrorResponse,
    HealthResponse,
    RunRequest,
    RunResponse,
    StateListResponse,
    StateResponse,
)

__all__ = [
    "BreakpointRequest",
    "ErrorResponse",
    "HealthResponse",
    "LoopflowAPI",
    "RunRequest",
    "RunResponse",
    "StateListResponse",
    "StateResponse",
]
