"""Log output of the SDK itself.

Worker progress, exporter failures and mirrored diagnostics are written
through structlog; this is separate from the telemetry the SDK records
on behalf of the application. Records from stdlib loggers (host code,
httpx, SQLAlchemy) are routed through the same ProcessorFormatter chain
so a process has a single output format.

Two entry points:

- ``configure_logging`` takes explicit values.
- ``configure_from_settings`` resolves them from ``TelemarkSettings``
  (``debug``, ``logging.level``, ``logging.json_output``) with CLI flags
  taking precedence.

The trace/span ids bound by the context store are merged into every
record while a session is active.
"""

from __future__ import annotations

import logging
import sys
from typing import TYPE_CHECKING, Any, TextIO

import structlog
from structlog.stdlib import ProcessorFormatter

if TYPE_CHECKING:
    from telemark.core.config import TelemarkSettings

# Capped at WARNING even when telemark runs at DEBUG
_CHATTY_LIBRARIES: tuple[str, ...] = ("httpx", "httpcore", "sqlalchemy")


def _strip_formatter_keys(
    logger: logging.Logger | None,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Drop the bookkeeping keys ProcessorFormatter adds to every record."""
    event_dict.pop("_record", None)
    event_dict.pop("_from_structlog", None)
    return event_dict


def _pre_chain() -> list[Any]:
    """Processors shared by structlog and stdlib records."""
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
    ]


def _rendering(json_output: bool, stream: TextIO) -> list[Any]:
    if json_output:
        return [
            _strip_formatter_keys,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(sort_keys=True),
        ]
    return [
        _strip_formatter_keys,
        structlog.dev.ConsoleRenderer(colors=stream.isatty()),
    ]


def configure_logging(
    *,
    json_output: bool = False,
    level: str = "INFO",
    stream: TextIO | None = None,
) -> None:
    """Install telemark's log format on the root logger.

    Args:
        json_output: One JSON object per line instead of console text.
        level: Root level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        stream: Destination; defaults to the current ``sys.stderr``
            because the console exporter writes telemetry to stdout.
    """
    log_level = logging.getLevelName(level.upper())
    if not isinstance(log_level, int):
        raise ValueError(f"Unknown log level: {level!r}")
    target = stream if stream is not None else sys.stderr
    pre_chain = _pre_chain()

    structlog.configure(
        processors=[*pre_chain, ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        # Reconfigured per CLI invocation, so loggers must not be cached
        cache_logger_on_first_use=False,
    )

    handler = logging.StreamHandler(target)
    handler.setFormatter(ProcessorFormatter(processors=_rendering(json_output, target), foreign_pre_chain=pre_chain))

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(log_level)

    for name in _CHATTY_LIBRARIES:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))


def configure_from_settings(
    settings: TelemarkSettings,
    *,
    verbose: bool = False,
    json_logs: bool = False,
    stream: TextIO | None = None,
) -> None:
    """Configure logging from loaded settings.

    ``verbose`` forces DEBUG and ``json_logs`` forces JSON; otherwise
    ``settings.log_level`` (DEBUG when ``debug`` is set) and
    ``logging.json_output`` apply.
    """
    configure_logging(
        json_output=json_logs or settings.logging.json_output,
        level="DEBUG" if verbose else settings.log_level,
        stream=stream,
    )
