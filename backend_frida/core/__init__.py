"""
Core utilities: exceptions and cross-cutting concerns.

Error taxonomy shared by the database backends, the analysis engine and the
processing worker.
"""

from backend_frida.core.exceptions import (
    FridaError,
    PersistenceError,
    ResolverTimeoutError,
    ValidationError,
)

__all__ = [
    "FridaError",
    "PersistenceError",
    "ResolverTimeoutError",
    "ValidationError",
]
