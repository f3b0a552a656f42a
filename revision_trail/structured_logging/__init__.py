"""Structured logging for revision-trail.

All modules log through structlog with event-style names
(``logger.info("audit_record_appended", record_id=...)``). Every entry emitted
inside a unit of work carries the ambient correlation ID and actor, so log
lines can be joined with the audit records the same operation produced.
"""

import logging
import sys
from pathlib import Path

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

from revision_trail.actor_context import get_actor, get_correlation_id

_FILE_HANDLER_NAME = "revision_trail_file"


def add_audit_context(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Stamp the ambient correlation ID and actor onto a log event.

    Keys already present on the event are left alone.

    Args:
        logger: The wrapped logger instance
        method_name: The name of the method being called
        event_dict: The event dictionary to modify

    Returns:
        The event dictionary, with correlation_id and actor when ambient
    """
    correlation_id = get_correlation_id()
    if correlation_id:
        event_dict.setdefault("correlation_id", correlation_id)
    actor = get_actor()
    if actor is not None:
        event_dict.setdefault("actor", str(actor))
    return event_dict


def build_processors(json_output: bool = True) -> list[Processor]:
    """Processor chain shared by every revision-trail logger."""
    renderer: Processor = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer()
    )
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        add_audit_context,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        renderer,
    ]


def _replace_file_handler(log_file: str, level: int) -> None:
    """Point the root logger's revision-trail file handler at ``log_file``."""
    root = logging.getLogger()
    for handler in list(root.handlers):
        if handler.get_name() == _FILE_HANDLER_NAME:
            root.removeHandler(handler)
            handler.close()

    log_path = Path(log_file)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    file_handler = logging.FileHandler(log_path, encoding="utf-8")
    file_handler.set_name(_FILE_HANDLER_NAME)
    file_handler.setLevel(level)
    file_handler.setFormatter(logging.Formatter("%(message)s"))
    root.addHandler(file_handler)


def setup_logging(
    level: str = "INFO",
    log_file: str | None = None,
    json_output: bool = True,
) -> None:
    """Configure structlog and the stdlib root logger.

    Safe to call more than once: the latest call wins, and at most one log
    file handler is installed.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional file receiving a copy of the console output
        json_output: JSON lines when True, coloured console output otherwise
    """
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    logging.basicConfig(format="%(message)s", stream=sys.stdout)
    logging.getLogger().setLevel(numeric_level)

    structlog.configure(
        processors=build_processors(json_output),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    if log_file:
        _replace_file_handler(log_file, numeric_level)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance.

    Args:
        name: Logger name, usually the calling module's ``__name__``

    Returns:
        structlog logger bound to the shared configuration
    """
    return structlog.get_logger(name)


def setup_dev_logging() -> None:
    """Verbose console output for local work."""
    setup_logging(level="DEBUG", json_output=False)


def setup_prod_logging(log_file: str = "logs/revision_trail.log") -> None:
    """JSON output to stdout and to ``log_file``."""
    setup_logging(level="INFO", log_file=log_file, json_output=True)


__all__ = [
    "add_audit_context",
    "build_processors",
    "get_logger",
    "setup_dev_logging",
    "setup_logging",
    "setup_prod_logging",
]
