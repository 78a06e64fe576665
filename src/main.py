"""Main entry point for the loopflow API server."""

import argparse
import logging
import os
import sys
from typing import Optional

import redis
import uvicorn

from api.app import LoopflowAPI
from services.config import EngineConfig
from services.control_client import ControlClient
from services.debugger import DebugController
from services.log_service import configure_logging, parse_level
from services.state_store import FileStateStore, RedisStateStore, StateStore
from services.task_executor import HttpTaskExecutor
from services.workflow_engine import WorkflowEngine
from services.workflow_loader import WorkflowLoader

logger = logging.getLogger(__name__)


def get_redis_client(redis_url: str) -> redis.Redis:
    """Create Redis client for the given URL."""
    return redis.Redis.from_url(redis_url, decode_responses=True)


def create_state_store(config: EngineConfig) -> StateStore:
    """Create the state store selected by `config.state_backend`."""
    if config.state_backend == "redis":
        return RedisStateStore(get_redis_client(config.redis_url))
    return FileStateStore(config.state_dir)


def create_engine(
    config: EngineConfig,
    state_store: Optional[StateStore] = None,
    debugger: Optional[DebugController] = None,
) -> WorkflowEngine:
    """Create a workflow engine that calls agent services over HTTP."""
    executor = HttpTaskExecutor(
        ControlClient(timeout=config.executor_timeout),
        config.agent_endpoints,
        poll_interval=config.poll_interval,
    )
    return WorkflowEngine(
        executor,
        state_store=state_store,
        debugger=debugger,
        max_workers=config.max_workers,
    )


def create_app(config: Optional[EngineConfig] = None):
    """Create FastAPI application with all dependencies."""
    config = config or EngineConfig.from_env()
    state_store = create_state_store(config)
    debugger = DebugController()
    engine = create_engine(config, state_store, debugger)

    api = LoopflowAPI(engine, WorkflowLoader(), debugger, state_store)
    return api.create_app()


def main() -> int:
    """Run the loopflow API server."""
    config = EngineConfig.from_env()

    parser = argparse.ArgumentParser(description="Loopflow API Server")
    parser.add_argument(
        "--host",
        default=os.environ.get("HOST", "0.0.0.0"),
        help="Host to bind to (default: 0.0.0.0)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=int(os.environ.get("PORT", "8000")),
        help="Port to bind to (default: 8000)",
    )
    parser.add_argument(
        "--log-level",
        choices=["debug", "info", "warning", "error"],
        default=config.log_level,
        help="Log level (default: info)",
    )
    args = parser.parse_args()

    configure_logging(
        log_dir=config.log_dir,
        log_file="loopflow-api.log",
        level=parse_level(args.log_level),
    )

    logger.info("Starting loopflow API server")
    logger.info(f"State backend: {config.state_backend}")

    app = create_app(config)
    uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level)
    return 0


def get_app():
    """Get or create the FastAPI application (for uvicorn import)."""
    return create_app()


if __name__ == "__main__":
    sys.exit(main())
