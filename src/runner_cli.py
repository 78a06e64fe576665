"""Runner CLI: execute one workflow document to a terminal outcome."""

import argparse
import logging
import sys
from concurrent.futures import ThreadPoolExecutor

from main import create_engine, create_state_store
from models.execution import RunOutcome
from services.config import EngineConfig
from services.graph_builder import GraphConstructionError
from services.log_service import configure_logging, parse_level
from services.workflow_loader import WorkflowLoader, WorkflowParseError

logger = logging.getLogger(__name__)

EXIT_CODES = {
    RunOutcome.COMPLETED: 0,
    RunOutcome.FAILED: 1,
    RunOutcome.TIMED_OUT: 2,
    RunOutcome.CANCELLED: 130,
}


def main(argv: list[str] | None = None) -> int:
    """Run a workflow file once."""
    config = EngineConfig.from_env()

    parser = argparse.ArgumentParser(description="Loopflow Runner")
    parser.add_argument(
        "workflow",
        help="Path to the workflow JSON document",
    )
    parser.add_argument(
        "--no-resume",
        action="store_true",
        help="Ignore saved state and start from scratch",
    )
    parser.add_argument(
        "--state-dir",
        default=None,
        help=f"Directory for file checkpoints (default: {config.state_dir})",
    )
    parser.add_argument(
        "--max-workers",
        type=int,
        default=None,
        help="Maximum tasks running at once (default: one per task)",
    )
    parser.add_argument(
        "--log-level",
        choices=["debug", "info", "warning", "error"],
        default=config.log_level,
        help="Log level (default: info)",
    )
    args = parser.parse_args(argv)

    configure_logging(
        log_dir=config.log_dir,
        log_file="loopflow-runner.log",
        level=parse_level(args.log_level),
    )

    overrides = {}
    if args.state_dir:
        overrides["state_backend"] = "file"
        overrides["state_dir"] = args.state_dir
    if args.max_workers:
        overrides["max_workers"] = args.max_workers
    if overrides:
        config = config.model_copy(update=overrides)

    try:
        workflow = WorkflowLoader().parse_file(args.workflow)
    except (FileNotFoundError, WorkflowParseError) as e:
        logger.error(f"Cannot load workflow: {e}")
        return 1

    engine = create_engine(config, create_state_store(config))
    resume = not args.no_resume

    logger.info(f"Running workflow {workflow.name} (resume={resume})")
    with ThreadPoolExecutor(max_workers=1) as pool:
        future = pool.submit(engine.run, workflow, resume)
        try:
            result = future.result()
        except KeyboardInterrupt:
            logger.warning("Interrupted, waiting for running tasks to finish")
            engine.cancel()
            result = None
        except GraphConstructionError as e:
            logger.error(f"Invalid task graph: {e}")
            return 1

        if result is None:
            try:
                result = future.result()
            except GraphConstructionError as e:
                logger.error(f"Invalid task graph: {e}")
                return 1

    if result.blocked_tasks:
        logger.warning(f"Blocked tasks: {', '.join(result.blocked_tasks)}")
    for task_id, error in result.task_errors.items():
        logger.error(f"Task {task_id} failed: {error}")
    if result.timed_out_loop:
        logger.error(f"Loop {result.timed_out_loop} timed out")

    logger.info(f"Workflow {result.workflow_name}: {result.outcome.value}")
    return EXIT_CODES[result.outcome]


if __name__ == "__main__":
    sys.exit(main())
