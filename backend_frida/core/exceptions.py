"""
Application-level exceptions.

Responsibilities:
- Define domain exceptions for the transaction-linking engine.
- Keep persistence, validation and timeout failures distinguishable so the
  processing worker can requeue or fail a transaction without guessing.

A transaction with no connections is not an error: resolvers return [].
"""

from __future__ import annotations


class FridaError(Exception):
    """Base class for all engine errors."""


class PersistenceError(FridaError):
    """Read or write failure against the match node / link store."""


class ValidationError(FridaError, ValueError):
    """Malformed input rejected before touching the store."""


class ResolverTimeoutError(FridaError, TimeoutError):
    """A resolver call exceeded its wall-clock budget; no partial result is returned."""

    def __init__(self, transaction_id: int, timeout_sec: float) -> None:
        super().__init__(
            f"connection resolution for transaction {transaction_id} exceeded {timeout_sec}s"
        )
        self.transaction_id = transaction_id
        self.timeout_sec = timeout_sec
