"""Non-interactive entry point for running one stack from the environment.

Reads Config from the environment, loads the stack file, and runs either
a dry-run plan (DRY_RUN=true) or an apply. The provider is resolved from
VMSTACK_PROVIDER, a ``module:callable`` import path to a factory taking
the SessionContext.

Exit codes:
    0  success (or a plan with no errors)
    1  configuration, validation or load error, or total failure
    3  partial failure
"""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from datetime import UTC

from .config import Config, ConfigurationError
from .dependency import DependencyError
from .diff_normalizer import create_diff_processor_from_env
from .ignore_rules import IgnoreRulesError
from .models import StackValidationError
from .planner import Planner, compose_and_plan
from .provider import load_provider_factory
from .reconciler import Reconciler
from .report import RunStatus, render_plan
from .spec_loader import SpecLoadError, load_stack
from .state import FileStateStore, StateStoreError

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_PARTIAL_FAILURE = 3

PROVIDER_ENV_VAR = "VMSTACK_PROVIDER"


def exit_code_for(status: RunStatus) -> int:
    match status:
        case RunStatus.SUCCESS:
            return EXIT_SUCCESS
        case RunStatus.PARTIAL_FAILURE:
            return EXIT_PARTIAL_FAILURE
        case _:
            return EXIT_FAILURE


def setup_logging(level: int = logging.INFO) -> None:
    """Configure structured logging with JSON output for production."""
    import json
    from datetime import datetime

    class JsonFormatter(logging.Formatter):
        """Format logs as JSON for structured logging."""

        def format(self, record: logging.LogRecord) -> str:
            log_data = {
                "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
                "level": record.levelname,
                "message": record.getMessage(),
                "logger": record.name,
            }

            # Add extra fields from the record
            for key, value in record.__dict__.items():
                if key not in _STANDARD_RECORD_ATTRS:
                    log_data[key] = value

            # Add exception info if present
            if record.exc_info:
                log_data["exception"] = self.formatException(record.exc_info)

            return json.dumps(log_data, default=str)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Reduce noise from HTTP client libraries a provider may use
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("google").setLevel(logging.WARNING)


_STANDARD_RECORD_ATTRS = frozenset({
    "name",
    "msg",
    "args",
    "created",
    "filename",
    "funcName",
    "levelname",
    "levelno",
    "lineno",
    "module",
    "msecs",
    "pathname",
    "process",
    "processName",
    "relativeCreated",
    "stack_info",
    "exc_info",
    "exc_text",
    "thread",
    "threadName",
    "taskName",
    "message",
})


async def main() -> int:
    """Run one reconciliation from environment configuration.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    setup_logging()
    logger = logging.getLogger(__name__)

    try:
        config = Config.from_env()
        diff_processor = create_diff_processor_from_env()
    except (ConfigurationError, IgnoreRulesError) as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return EXIT_FAILURE

    logger.info(
        "Starting vmstack",
        extra={
            "project_id": config.project_id,
            "region": config.region,
            "stack_file": str(config.stack_file),
            "dry_run": config.dry_run,
        },
    )

    try:
        stack = load_stack(config.stack_file)
        state = FileStateStore(config.state_file)
    except (SpecLoadError, StateStoreError) as e:
        logger.error("Failed to load inputs", extra={"error": str(e)})
        return EXIT_FAILURE

    if config.dry_run:
        try:
            _, plan = compose_and_plan(
                stack, config.session, state, Planner(diff_processor)
            )
        except (StackValidationError, DependencyError) as e:
            logger.error("Stack rejected", extra={"error": str(e)})
            return EXIT_FAILURE
        logger.info("Dry run plan", extra={"plan": render_plan(plan), "counts": plan.counts()})
        return EXIT_SUCCESS

    provider_path = os.environ.get(PROVIDER_ENV_VAR, "")
    if not provider_path:
        logger.error(f"{PROVIDER_ENV_VAR} is required unless DRY_RUN is true")
        return EXIT_FAILURE

    try:
        provider = load_provider_factory(provider_path)(config.session)
    except ValueError as e:
        logger.error("Failed to load provider", extra={"error": str(e)})
        return EXIT_FAILURE

    reconciler = Reconciler(config, provider, state, diff_processor)
    try:
        report = await reconciler.apply(stack)
    except (StackValidationError, DependencyError) as e:
        logger.error("Stack rejected", extra={"error": str(e)})
        return EXIT_FAILURE
    except Exception as e:
        logger.exception("Unhandled exception", extra={"error": str(e)})
        return EXIT_FAILURE

    return exit_code_for(report.status)


def run() -> None:
    """Entry point for the environment-driven runner."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
