"""
Structured logging for instrument-spine.

Every module logs through ``get_logger(__name__)``. The orchestrator wraps
each run (and each batch inside it) in ``LogContext`` so ``run_id`` and
``batch_no`` ride along on every event without being passed around.

Architecture:
    ::

        configure_logging(level, json_format, service, stream)
            │
            ├── TimeStamper (ISO, UTC)
            ├── merge_contextvars        run_id / batch_no from LogContext
            ├── add_log_level, add_logger_name
            ├── service metadata
            └── json:    format_exc_info → ECS field names → JSONRenderer
                console: ConsoleRenderer (colours only on a tty)

    Output goes to stderr by default so CLI stdout stays machine-readable.

Examples:
    >>> configure_logging(level="INFO", json_format=True)
    >>> logger = get_logger(__name__)
    >>> with LogContext(run_id="run-1"):
    ...     logger.info("batch_committed", batch_no=1, records=500)
    {"event": "batch_committed", "migration.run_id": "run-1", ...}

Tags:
    logging, structlog, observability, json-logging, instrument-spine
"""

from __future__ import annotations

import logging
import sys
from contextlib import ExitStack
from typing import IO, Any

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

_SERVICE_NAME = "instrument-spine"

# Context keys grouped under ``migration.*`` in JSON output.
_MIGRATION_KEYS = ("run_id", "batch_no", "state")


def _add_service(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    event_dict.setdefault("service.name", _SERVICE_NAME)
    return event_dict


def _ecs_fields(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    """Rename to ECS-style keys for log aggregation."""
    if "timestamp" in event_dict:
        event_dict["@timestamp"] = event_dict.pop("timestamp")
    if "level" in event_dict:
        event_dict["log.level"] = event_dict.pop("level")
    for key in _MIGRATION_KEYS:
        if key in event_dict:
            event_dict[f"migration.{key}"] = event_dict.pop(key)
    return event_dict


def configure_logging(
    level: str = "INFO",
    json_format: bool | None = None,
    service: str = "instrument-spine",
    stream: IO[str] | None = None,
) -> None:
    """Configure structlog and the stdlib root logger.

    Args:
        level: DEBUG, INFO, WARNING or ERROR
        json_format: JSON lines if True, console if False, JSON unless
            ``stream`` is a tty if None
        service: Value of ``service.name`` on every event
        stream: Destination (default ``sys.stderr``)
    """
    global _SERVICE_NAME
    _SERVICE_NAME = service
    out = stream if stream is not None else sys.stderr
    is_tty = hasattr(out, "isatty") and out.isatty()
    if json_format is None:
        json_format = not is_tty
    numeric_level = getattr(logging, level.upper())

    processors: list[Processor] = [
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        _add_service,
    ]
    if json_format:
        processors += [
            structlog.processors.format_exc_info,
            _ecs_fields,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=is_tty))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=out),
        cache_logger_on_first_use=True,
    )
    logging.basicConfig(format="%(message)s", stream=out, level=numeric_level, force=True)


def get_logger(name: str | None = None) -> Any:
    """Structured logger, usually ``get_logger(__name__)``."""
    return structlog.get_logger(name)


class LogContext:
    """Bind key/values onto every event logged inside the block.

    Nested blocks restore the outer values on exit.

    Example:
        with LogContext(run_id="run-1"):
            with LogContext(batch_no=3):
                logger.info("batch_committed")   # run_id and batch_no
            logger.info("run_completed")         # run_id only
    """

    def __init__(self, **kwargs: Any) -> None:
        self._context = kwargs
        self._stack = ExitStack()

    def __enter__(self) -> LogContext:
        self._stack.enter_context(structlog.contextvars.bound_contextvars(**self._context))
        return self

    def __exit__(self, *args: Any) -> None:
        self._stack.close()


__all__ = ["configure_logging", "get_logger", "LogContext"]
