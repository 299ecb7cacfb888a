"""
Structured logging for the worker and the analysis engine.

Every event is one structlog call: a snake_case event_type plus keyword
fields. While a transaction is being handled, transaction_context() puts
transaction_id and the queue name into contextvars, so store, resolver and
queue events logged underneath carry them without passing them around.

LOG_FORMAT picks the renderer (json, the default, or console) and LOG_LEVEL
the threshold. Only stdlib logging and structlog are imported here.
"""

from __future__ import annotations

import logging
import os
import sys
from contextlib import contextmanager
from typing import Any, Iterator, TextIO

import structlog

RENDERERS = ("json", "console")


def _level_value(level: str | None) -> int:
    name = (level or os.getenv("LOG_LEVEL", "INFO")).strip().upper()
    value = logging.getLevelName(name)
    return value if isinstance(value, int) else logging.INFO


def _log_format(log_format: str | None) -> str:
    fmt = (log_format or os.getenv("LOG_FORMAT", "json")).strip().lower()
    if fmt not in RENDERERS:
        raise ValueError(f"LOG_FORMAT must be one of {RENDERERS}, got {fmt!r}")
    return fmt


def _rename_event(
    logger: Any,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """structlog's 'event' key becomes event_type."""
    if "event" in event_dict and "event_type" not in event_dict:
        event_dict["event_type"] = event_dict.pop("event")
    return event_dict


def build_processors(log_format: str | None = None) -> list[Any]:
    """Processor chain ending in the renderer for log_format (env LOG_FORMAT if None)."""
    fmt = _log_format(log_format)
    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True, key="timestamp"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if fmt == "json":
        processors.append(_rename_event)
        processors.append(structlog.processors.JSONRenderer(sort_keys=True))
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()))
    return processors


def configure_structlog(
    log_format: str | None = None,
    level: str | None = None,
    stream: TextIO | None = None,
) -> None:
    """Global structlog setup; arguments left as None fall back to LOG_FORMAT / LOG_LEVEL."""
    structlog.configure(
        processors=build_processors(log_format),
        wrapper_class=structlog.make_filtering_bound_logger(_level_value(level)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=stream or sys.stdout),
        cache_logger_on_first_use=True,
    )


if not structlog.is_configured():
    configure_structlog()


def get_logger(name: str) -> structlog.BoundLogger:
    """
    Module logger; the module name is bound as logger.

        logger = get_logger(__name__)
        logger.info("connected_transactions_resolved", transaction_id=42, count=7)
    """
    return structlog.get_logger(name).bind(logger=name)


@contextmanager
def transaction_context(transaction_id: int, queue: str | None = None) -> Iterator[None]:
    """
    Bind transaction_id (and queue, when given) for every event logged in the block.

    Contextvars are per thread, so concurrent workers do not see each other's
    bindings. Previous values are restored on exit.
    """
    bound: dict[str, Any] = {"transaction_id": transaction_id}
    if queue is not None:
        bound["queue"] = queue
    with structlog.contextvars.bound_contextvars(**bound):
        yield
