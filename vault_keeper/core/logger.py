"""
Logger module for the Vault Keeper.

This module provides the logging configuration for the application: structured
JSON logging through structlog on top of the standard logging handlers,
rotating log files, a dedicated distributions log and timing decorators.
"""

import inspect
import json
import logging
import logging.handlers
import os
import sys
import time
from collections.abc import Callable
from datetime import UTC, datetime
from functools import wraps
from pathlib import Path
from typing import Any

# Third-party imports
import structlog
from pythonjsonlogger import jsonlogger

# Default log level
DEFAULT_LOG_LEVEL = "INFO"

# Default log directory, overridden by VAULT_KEEPER_LOG_DIR
DEFAULT_LOG_DIR = "logs"

# Log file names
MAIN_LOG_FILE = "vault_keeper.log"
ERROR_LOG_FILE = "error.log"
DISTRIBUTION_LOG_FILE = "distributions.log"

# Logger names
ROOT_LOGGER_NAME = "vault_keeper"
DISTRIBUTION_LOGGER_NAME = "vault_keeper.distributions"

# Max log file size (10MB)
MAX_LOG_SIZE = 10 * 1024 * 1024

# Number of backup log files
BACKUP_COUNT = 5


def ensure_log_directory() -> str:
    """
    Ensure the log directory exists.

    Returns:
        Path to the log directory
    """
    log_dir = Path(os.environ.get("VAULT_KEEPER_LOG_DIR", DEFAULT_LOG_DIR))
    log_dir.mkdir(parents=True, exist_ok=True)
    return str(log_dir)


def get_log_level() -> int:
    """
    Get the log level from environment variable or use default.

    Returns:
        Logging level as an integer
    """
    log_level_name = os.environ.get("VAULT_KEEPER_LOG_LEVEL", DEFAULT_LOG_LEVEL).upper()
    return getattr(logging, log_level_name, logging.INFO)


def configure_json_formatter() -> jsonlogger.JsonFormatter:
    """
    Configure JSON formatter for logs.

    Returns:
        Configured JSON formatter
    """
    log_format = {
        "timestamp": "%(asctime)s",
        "level": "%(levelname)s",
        "name": "%(name)s",
        "module": "%(module)s",
        "function": "%(funcName)s",
        "line": "%(lineno)d",
        "process": "%(process)d",
        "message": "%(message)s",
    }

    return jsonlogger.JsonFormatter(
        json_ensure_ascii=False, json_default=str, fmt=json.dumps(log_format)
    )


def configure_console_handler() -> logging.Handler:
    """
    Configure console handler for logs.

    Returns:
        Configured console handler
    """
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(configure_json_formatter())
    return console_handler


def configure_file_handler(log_file: str, level: int = logging.DEBUG) -> logging.Handler:
    """
    Configure file handler for logs with rotation.

    Args:
        log_file: Log file name
        level: Log level for this handler

    Returns:
        Configured file handler
    """
    log_path = os.path.join(ensure_log_directory(), log_file)

    file_handler = logging.handlers.RotatingFileHandler(
        log_path, maxBytes=MAX_LOG_SIZE, backupCount=BACKUP_COUNT, encoding="utf-8"
    )
    file_handler.setLevel(level)
    file_handler.setFormatter(configure_json_formatter())
    return file_handler


# ======== structlog processors ========


def add_process_info(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Add process id and program name to the event."""
    event_dict.setdefault("pid", os.getpid())
    event_dict.setdefault("process_name", sys.argv[0])
    return event_dict


def add_exception_info(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """
    Add exception type and message when an exception is being handled.

    The full traceback is rendered separately by ``format_exc_info`` when the
    caller passes ``exc_info=True``.
    """
    exception_type, exception_value, _ = sys.exc_info()
    if exception_type is not None:
        event_dict.setdefault("exception_type", exception_type.__name__)
        event_dict.setdefault("exception_message", str(exception_value))
    return event_dict


def add_timestamp(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Add ISO-format UTC timestamp to the event."""
    event_dict["timestamp"] = datetime.now(UTC).isoformat().replace("+00:00", "Z")
    return event_dict


def setup_logger(name: str = ROOT_LOGGER_NAME) -> logging.Logger:
    """
    Set up and configure the application logger.

    Configures structlog globally, then attaches a console handler, a main
    rotating file and an error-only file to the named stdlib logger. The
    distributions logger gets its own file and does not propagate.

    Args:
        name: Logger name

    Returns:
        Configured stdlib logger instance
    """
    log_level = get_log_level()

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            add_timestamp,
            add_process_info,
            add_exception_info,
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer(ensure_ascii=False, default=str),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logger = logging.getLogger(name)
    logger.setLevel(log_level)
    logger.propagate = False

    if logger.handlers:
        for handler in list(logger.handlers):
            logger.removeHandler(handler)
            handler.close()

    logger.addHandler(configure_console_handler())
    logger.addHandler(configure_file_handler(MAIN_LOG_FILE))
    logger.addHandler(configure_file_handler(ERROR_LOG_FILE, logging.ERROR))

    distribution_logger = logging.getLogger(DISTRIBUTION_LOGGER_NAME)
    distribution_logger.setLevel(log_level)
    distribution_logger.propagate = False
    for handler in list(distribution_logger.handlers):
        distribution_logger.removeHandler(handler)
        handler.close()
    distribution_logger.addHandler(configure_file_handler(DISTRIBUTION_LOG_FILE))

    return logger


def get_logger(name: str = ROOT_LOGGER_NAME) -> structlog.stdlib.BoundLogger:
    """Return a structlog logger bound to the given stdlib logger name."""
    return structlog.get_logger(name)


def get_distribution_logger() -> structlog.stdlib.BoundLogger:
    """
    Get the distribution-specific logger.

    Returns:
        Logger writing executed transfers to the distributions log
    """
    return structlog.get_logger(DISTRIBUTION_LOGGER_NAME)


def log_execution_time(logger: Any | None = None) -> Callable:
    """
    Decorator to log function execution time.

    Works for both regular and ``async def`` functions.

    Args:
        logger: structlog logger (default: the application logger)

    Returns:
        Decorator function
    """

    def decorator(func: Callable) -> Callable:
        def _log_success(log: Any, started: float) -> None:
            log.debug(
                f"Completed {func.__name__}",
                execution_time=round(time.monotonic() - started, 6),
                status="success",
            )

        def _log_failure(log: Any, started: float, error: Exception) -> None:
            log.error(
                f"Error in {func.__name__}: {error}",
                execution_time=round(time.monotonic() - started, 6),
                status="error",
                exc_info=True,
            )

        if inspect.iscoroutinefunction(func):

            @wraps(func)
            async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
                log = logger or get_logger()
                log.debug(f"Starting {func.__name__}")
                started = time.monotonic()
                try:
                    result = await func(*args, **kwargs)
                except Exception as e:
                    _log_failure(log, started, e)
                    raise
                _log_success(log, started)
                return result

            return async_wrapper

        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            log = logger or get_logger()
            log.debug(f"Starting {func.__name__}")
            started = time.monotonic()
            try:
                result = func(*args, **kwargs)
            except Exception as e:
                _log_failure(log, started, e)
                raise
            _log_success(log, started)
            return result

        return wrapper

    return decorator


def log_cycle_step(step_name: str) -> Callable:
    """
    Decorator to log the start, completion and failure of a keeper cycle step.

    Args:
        step_name: Name of the step, e.g. "fees" or "harvest"

    Returns:
        Decorator function
    """
    step_logger = structlog.get_logger(f"{ROOT_LOGGER_NAME}.steps.{step_name}")

    def _started() -> float:
        step_logger.info(f"Executing step: {step_name}", step=step_name, action="start")
        return time.monotonic()

    def _finished(started: float, error: Exception | None = None) -> None:
        elapsed = round(time.monotonic() - started, 6)
        if error is None:
            step_logger.info(
                f"Step completed: {step_name}",
                step=step_name,
                action="complete",
                execution_time=elapsed,
                status="success",
            )
        else:
            step_logger.error(
                f"Step failed: {step_name} - {error}",
                step=step_name,
                action="error",
                execution_time=elapsed,
                status="error",
                exc_info=True,
            )

    def decorator(func: Callable) -> Callable:
        if inspect.iscoroutinefunction(func):

            @wraps(func)
            async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
                started = _started()
                try:
                    result = await func(*args, **kwargs)
                except Exception as e:
                    _finished(started, e)
                    raise
                _finished(started)
                return result

            return async_wrapper

        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            started = _started()
            try:
                result = func(*args, **kwargs)
            except Exception as e:
                _finished(started, e)
                raise
            _finished(started)
            return result

        return wrapper

    return decorator
