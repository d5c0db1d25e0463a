"""
Structured logging for the scoring engine (structlog).

Lines carry event_type, level, logger and an ISO timestamp. Inside
event_context() the current event's user_address and tx_hash are attached
to every line logged on that thread, so scorer, anomaly, scheduler and
store lines can be joined per transaction without threading the ids
through each call. Enum values (dimensions, priorities, severities) are
rendered as their string value.

No backend_credit imports here; every other module imports this one.
"""

from __future__ import annotations

import logging
import os
import sys
from contextlib import contextmanager
from enum import Enum
from typing import Any, Iterator

import structlog

DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_LOG_FORMAT = "json"


def _enum_values(
    logger: Any,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Render Enum members (and lists of them) as their .value."""
    for key, value in event_dict.items():
        if isinstance(value, Enum):
            event_dict[key] = value.value
        elif isinstance(value, (list, tuple)) and any(isinstance(v, Enum) for v in value):
            event_dict[key] = [v.value if isinstance(v, Enum) else v for v in value]
    return event_dict


def configure_logging(level: str | None = None, fmt: str | None = None) -> None:
    """
    Configure structlog. level/fmt default to LOG_LEVEL and LOG_FORMAT
    ("json" or "console").
    """
    level_name = (level or os.getenv("LOG_LEVEL", DEFAULT_LOG_LEVEL)).strip().upper()
    fmt = (fmt or os.getenv("LOG_FORMAT", DEFAULT_LOG_FORMAT)).strip().lower()

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True, key="timestamp"),
        structlog.processors.format_exc_info,
        _enum_values,
    ]
    if fmt == "json":
        processors += [
            structlog.processors.EventRenamer("event_type"),
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level_name, logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )


if not structlog.is_configured():
    configure_logging()


def get_logger(name: str) -> structlog.BoundLogger:
    """
    Structured logger for a module. Log with the event type first:
        logger.info("engine_event_processed", updated=[Dimension.DEFI_RELIABILITY])
    """
    return structlog.get_logger(name).bind(logger=name)


@contextmanager
def event_context(**values: Any) -> Iterator[None]:
    """
    Bind values (user_address, tx_hash, ...) to every log line emitted on
    this thread inside the block. None values are skipped.
    """
    bound = {k: v for k, v in values.items() if v is not None}
    with structlog.contextvars.bound_contextvars(**bound):
        yield
