"""Centralised structlog setup for caskade."""

from __future__ import annotations

import contextlib
import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Iterator

import structlog
from structlog.types import FilteringBoundLogger

_CONFIGURED = False


def caskade_home() -> Path:
    """Directory holding caskade's own state (logs, cache)."""
    return Path(os.environ.get("CASKADE_HOME", Path.home() / ".caskade"))


def sanitise_context(logger: Any, method_name: str, event_dict: dict) -> dict:
    """Drop None values so renderers never see them.

    Args:
        logger: The logger instance.
        method_name: The name of the method called on the logger.
        event_dict: The event dictionary to sanitise.

    Returns:
        The sanitised event dictionary.
    """
    return {k: v for k, v in event_dict.items() if v is not None}


def configure_logging(
    level: str = "INFO", log_file: Path | None = None, enable_console: bool = False
) -> None:
    """Configure logging for caskade.

    Args:
        level: The logging level as a string (e.g., "DEBUG", "INFO").
        log_file: Optional path to a log file. Defaults to
            ``$CASKADE_HOME/logs/caskade.log``.
        enable_console: Whether to also render events on stderr.
    """
    global _CONFIGURED
    if _CONFIGURED:
        return

    numeric_level = getattr(logging, level.upper())

    if log_file is None:
        log_dir = caskade_home() / "logs"
        log_dir.mkdir(parents=True, exist_ok=True)
        log_file = log_dir / "caskade.log"

    file_handler = RotatingFileHandler(log_file, maxBytes=2_000_000, backupCount=2)
    file_handler.setLevel(numeric_level)

    shared_processors = [
        sanitise_context,
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]

    if enable_console:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(numeric_level)
        console_handler.setFormatter(logging.Formatter("%(message)s"))
        logging.root.addHandler(console_handler)
        renderers = [
            structlog.processors.ExceptionRenderer(),
            structlog.dev.ConsoleRenderer(colors=True),
        ]
    else:
        renderers = [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

    structlog.configure(
        processors=shared_processors + renderers,
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.root.setLevel(numeric_level)
    logging.root.addHandler(file_handler)

    _CONFIGURED = True


def get_logger(name: str = "caskade") -> FilteringBoundLogger:
    """Get a structlog logger instance.

    Args:
        name: Optional name for the logger, typically the module name.

    Returns:
        A structlog FilteringBoundLogger instance.

    Usage:
        log = get_logger(__name__)
        log.info("event_name", package="foo", duration_ms=123)

    Standard context keys:
        - package (str): Token or name of the package
        - kind (str): "formula" or "cask"
        - operation (str): install, uninstall, upgrade, reinstall, zap
        - duration_ms (int): Operation duration in milliseconds
        - error (str): Error message if applicable
    """
    if not _CONFIGURED:
        configure_logging()
    return structlog.get_logger(name)


@contextlib.contextmanager
def bound_operation(operation: str, **context: Any) -> Iterator[None]:
    """Bind operation-wide context to every event logged inside the block.

    Usage:
        with bound_operation("install", package="firefox"):
            ...
    """
    tokens = structlog.contextvars.bind_contextvars(operation=operation, **context)
    try:
        yield
    finally:
        structlog.contextvars.reset_contextvars(**tokens)
