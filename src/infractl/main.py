"""Non-interactive entry point and logging setup.

`infractl-apply` runs a single apply configured entirely from INFRACTL_*
environment variables, for use in pipelines. It never prompts: the run
only proceeds when INFRACTL_AUTO_APPROVE is set, otherwise it stops after
printing the plan.

SIGTERM / SIGINT cancel the apply: no new operations start, in-flight
operations finish and their state is checkpointed.
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from datetime import UTC, datetime
from typing import TextIO

from .config import Config, ConfigurationError, LogFormat
from .planner import ChangeSet
from .provider import ProviderLoadError, load_provider
from .reconciler import Reconciler
from .render import render_apply, render_plan

_HANDLER_NAME = "infractl"

# LogRecord attributes that are not user-supplied `extra` fields
_RESERVED_ATTRS = frozenset(
    {
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
    }
)


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
            if key not in _RESERVED_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class TextFormatter(logging.Formatter):
    """Plain one-line format with extra fields appended as key=value."""

    def __init__(self) -> None:
        super().__init__("%(levelname)s %(name)s: %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        extras = [
            f"{key}={value}"
            for key, value in record.__dict__.items()
            if key not in _RESERVED_ATTRS
        ]
        if extras:
            line = f"{line} [{' '.join(extras)}]"
        return line


def setup_logging(
    log_format: LogFormat = LogFormat.JSON,
    level: str = "INFO",
    stream: TextIO | None = None,
) -> None:
    """Configure root logging.

    JSON goes to stdout for machine consumption. Text goes to stderr so it
    does not mix with command output.
    """
    if log_format == LogFormat.JSON:
        handler = logging.StreamHandler(stream or sys.stdout)
        handler.setFormatter(JsonFormatter())
    else:
        handler = logging.StreamHandler(stream or sys.stderr)
        handler.setFormatter(TextFormatter())

    handler.set_name(_HANDLER_NAME)

    # Replace a handler installed by an earlier call, keep everyone else's
    root_logger = logging.getLogger()
    for existing in list(root_logger.handlers):
        if existing.get_name() == _HANDLER_NAME:
            root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(level.upper())

    # Reduce noise from libraries
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("filelock").setLevel(logging.WARNING)


async def main() -> int:
    """Run one apply from environment configuration.

    Returns:
        Exit code: 0 on success, 1 if operations failed or were not
        approved, 2 on configuration or pre-apply errors.
    """
    try:
        config = Config.from_env()
    except ConfigurationError as e:
        setup_logging()
        logging.getLogger(__name__).error("Configuration error", extra={"error": str(e)})
        return 2

    setup_logging(config.log_format, config.log_level)
    logger = logging.getLogger(__name__)

    if config.provider is None:
        logger.error("INFRACTL_PROVIDER is required")
        return 2

    try:
        provider = load_provider(config.provider)
    except ProviderLoadError as e:
        logger.error("Failed to load provider", extra={"error": str(e)})
        return 2

    reconciler = Reconciler(config, provider)

    logger.info(
        "Starting infractl apply",
        extra={
            "config_dir": str(config.config_dir),
            "state_path": str(config.state_path),
            "provider": config.provider,
        },
    )

    # Set up signal handlers for graceful cancellation
    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        reconciler.cancel()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

    # Only consulted without INFRACTL_AUTO_APPROVE
    def confirm(change_set: ChangeSet) -> bool:
        print(render_plan(change_set))
        logger.warning("INFRACTL_AUTO_APPROVE not set, stopping after plan")
        return False

    result = await reconciler.apply(confirm=confirm)

    if result.apply_result is not None:
        print(render_apply(result.apply_result))

    if result.error is not None:
        return 1 if result.apply_result is not None else 2
    if not result.approved or not result.success:
        return 1
    return 0


def run() -> None:
    """Entry point for the non-interactive apply."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
