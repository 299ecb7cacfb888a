"""
Domain models for the match node graph.

Match nodes, their links to transactions, and the computed connection rows.
Used by the backends and the analysis engine; no ORM coupling so backends stay
swappable. Identifiers are plain ints (arena-style): nodes and transactions
refer to each other by id, never by object reference.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any


@dataclass(frozen=True)
class MatchingField:
    """One identity attribute extracted from a transaction (input only)."""

    matcher: str
    """Matcher name, e.g. customer.email."""
    value: str


@dataclass(frozen=True)
class MatchNode:
    """Stored (matcher, value) identity node."""

    id: int
    matcher: str
    value: str
    confidence: int
    """0-100; fixed from the matcher registry when the node is first seen."""
    importance: int
    """0-100; weighting for downstream scoring, orthogonal to confidence."""


@dataclass(frozen=True)
class MatchNodeLink:
    """Association of one node with one transaction; unique per (node_id, transaction_id)."""

    node_id: int
    transaction_id: int
    created_at: int
    """Unix timestamp (seconds): transaction time supplied by the caller, else link time."""


@dataclass(frozen=True)
class LinkEdge:
    """Flattened node + link row, the unit of a prefetched graph."""

    node_id: int
    matcher: str
    value: str
    confidence: int
    importance: int
    transaction_id: int
    created_at: int
    """The transaction's created_at (earliest of all its links), not this link's."""

    @property
    def node(self) -> MatchNode:
        return MatchNode(
            id=self.node_id,
            matcher=self.matcher,
            value=self.value,
            confidence=self.confidence,
            importance=self.importance,
        )


@dataclass
class ConnectedTransaction:
    """Transitively reachable transaction with its best path from the root."""

    transaction_id: int
    path_matchers: list[str] = field(default_factory=list)
    path_values: list[str] = field(default_factory=list)
    depth: int = 0
    confidence: int = 100
    importance: int = 0
    """Importance of the last hop's node."""
    created_at: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class DirectConnection:
    """One shared node between the root and another transaction (depth 1)."""

    transaction_id: int
    matcher: str
    confidence: int
    importance: int
    created_at: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
