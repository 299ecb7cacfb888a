"""
Structured logging for Backend Frida.

get_logger() in every module; transaction_context() around per-transaction work.
"""

from backend_frida.frida_logging.logger import (
    build_processors,
    configure_structlog,
    get_logger,
    transaction_context,
)

__all__ = ["build_processors", "configure_structlog", "get_logger", "transaction_context"]
