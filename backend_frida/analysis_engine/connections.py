"""
Connection resolution over the match node graph.

Two transactions are directly connected when they share a match node. The
transitive resolver walks node -> transaction -> node hops from a root and
keeps, per reached transaction, the best path found:

    confidence(path) = floor(parent_confidence * node_confidence / 100)

Higher confidence wins; on a tie the shorter path wins. Among paths of equal
confidence and length the first found is kept (sources by ascending
transaction id, nodes by ascending node id). Every path of at most max_depth
hops that avoids the root is considered, so which transactions come back, and
at what confidence and depth, does not depend on how ids are numbered.

The reducer (resolve_connections) is pure and runs over a GraphView. Two views
exist: StoreGraph reads the backend one expansion at a time, EdgeListGraph
wraps the edge list returned by one recursive prefetch query. Both give the
same answer.
"""

from __future__ import annotations

import time
from collections import defaultdict
from dataclasses import dataclass
from typing import Iterable, Protocol

from backend_frida.core.exceptions import ResolverTimeoutError, ValidationError
from backend_frida.database.database import Database
from backend_frida.database.models import (
    ConnectedTransaction,
    DirectConnection,
    LinkEdge,
    MatchNode,
)
from backend_frida.frida_logging import get_logger

logger = get_logger(__name__)

DEFAULT_MAX_DEPTH = 10
"""Hop bound when the caller gives none."""

DEFAULT_MIN_CONFIDENCE = 0

ROOT_CONFIDENCE = 100


class GraphView(Protocol):
    """Read-only adjacency used by the reducer. Lists come back in ascending id order."""

    def nodes_for(self, transaction_id: int) -> list[MatchNode]: ...

    def transactions_for(self, node_id: int) -> list[int]: ...

    def created_at(self, transaction_id: int) -> int | None: ...


class StoreGraph:
    """Live view: backend lookups on demand, memoised for the lifetime of one call."""

    def __init__(self, db: Database) -> None:
        self._db = db
        self._nodes: dict[int, list[MatchNode]] = {}
        self._members: dict[int, list[int]] = {}
        self._stamps: dict[int, int] = {}

    def nodes_for(self, transaction_id: int) -> list[MatchNode]:
        nodes = self._nodes.get(transaction_id)
        if nodes is None:
            nodes = sorted(self._db.list_nodes_for_transaction(transaction_id), key=lambda n: n.id)
            self._nodes[transaction_id] = nodes
        return nodes

    def transactions_for(self, node_id: int) -> list[int]:
        members = self._members.get(node_id)
        if members is None:
            members = sorted(self._db.list_transactions_for_node(node_id))
            self._members[node_id] = members
            missing = [tx for tx in members if tx not in self._stamps]
            if missing:
                self._stamps.update(self._db.get_transaction_timestamps(missing))
        return members

    def created_at(self, transaction_id: int) -> int | None:
        if transaction_id not in self._stamps:
            self._stamps.update(self._db.get_transaction_timestamps([transaction_id]))
        return self._stamps.get(transaction_id)


class EdgeListGraph:
    """In-memory view built from prefetched LinkEdge rows."""

    def __init__(self, edges: Iterable[LinkEdge]) -> None:
        nodes: dict[int, dict[int, MatchNode]] = defaultdict(dict)
        members: dict[int, set[int]] = defaultdict(set)
        self._stamps: dict[int, int] = {}
        for edge in edges:
            nodes[edge.transaction_id][edge.node_id] = edge.node
            members[edge.node_id].add(edge.transaction_id)
            self._stamps[edge.transaction_id] = edge.created_at
        self._nodes = {tx: [by_id[k] for k in sorted(by_id)] for tx, by_id in nodes.items()}
        self._members = {node_id: sorted(txs) for node_id, txs in members.items()}

    def nodes_for(self, transaction_id: int) -> list[MatchNode]:
        return self._nodes.get(transaction_id, [])

    def transactions_for(self, node_id: int) -> list[int]:
        return self._members.get(node_id, [])

    def created_at(self, transaction_id: int) -> int | None:
        return self._stamps.get(transaction_id)


@dataclass(frozen=True)
class ResolveParams:
    """Normalised resolver arguments."""

    max_depth: int = DEFAULT_MAX_DEPTH
    min_confidence: int = DEFAULT_MIN_CONFIDENCE
    limit: int | None = None
    min_created_at: int | None = None
    max_created_at: int | None = None

    def in_window(self, created_at: int | None) -> bool:
        if self.min_created_at is None and self.max_created_at is None:
            return True
        if created_at is None:
            return False
        if self.min_created_at is not None and created_at < self.min_created_at:
            return False
        if self.max_created_at is not None and created_at > self.max_created_at:
            return False
        return True


def _optional_int(name: str, value: object) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{name} must be an integer, got {value!r}")
    return value


def normalize_params(
    max_depth: int | None = None,
    limit: int | None = None,
    min_confidence: int | None = None,
    min_created_at: int | None = None,
    max_created_at: int | None = None,
) -> ResolveParams:
    """
    Apply defaults and bounds.

    max_depth: default 10; negative -> ValidationError; 0 is raised to 1.
    limit: None means unbounded; negative -> ValidationError.
    min_confidence: default 0, clamped to [0, 100].
    """
    depth = _optional_int("max_depth", max_depth)
    lim = _optional_int("limit", limit)
    min_conf = _optional_int("min_confidence", min_confidence)
    lo = _optional_int("min_created_at", min_created_at)
    hi = _optional_int("max_created_at", max_created_at)

    if depth is None:
        depth = DEFAULT_MAX_DEPTH
    elif depth < 0:
        raise ValidationError(f"max_depth must not be negative, got {depth}")
    if lim is not None and lim < 0:
        raise ValidationError(f"limit must not be negative, got {lim}")
    if min_conf is None:
        min_conf = DEFAULT_MIN_CONFIDENCE
    return ResolveParams(
        max_depth=max(1, depth),
        min_confidence=max(0, min(100, min_conf)),
        limit=lim,
        min_created_at=lo,
        max_created_at=hi,
    )


def _check_deadline(root: int, deadline: float | None, timeout_sec: float | None) -> None:
    if deadline is not None and time.monotonic() > deadline:
        raise ResolverTimeoutError(root, timeout_sec or 0.0)


def resolve_connections(
    root_transaction_id: int,
    graph: GraphView,
    params: ResolveParams,
    *,
    timeout_sec: float | None = None,
) -> list[ConnectedTransaction]:
    """
    Best-path relaxation from root over graph, one hop layer at a time.

    Layer d holds, per transaction, the best record reachable in exactly d
    hops. Layer d + 1 is built only from layer d, so a record never serves as
    a parent in the layer that produced it. A layer record is kept only when it
    beats every shallower record for that transaction: a shallower record with
    at least the same confidence reaches everything the deeper one could, with
    hops to spare. Candidates below min_confidence are dropped since decay
    never raises confidence again.
    """
    deadline = time.monotonic() + timeout_sec if timeout_sec is not None else None
    best: dict[int, ConnectedTransaction] = {}
    layer: dict[int, ConnectedTransaction] = {
        root_transaction_id: ConnectedTransaction(
            transaction_id=root_transaction_id, depth=0, confidence=ROOT_CONFIDENCE
        )
    }

    for depth in range(1, params.max_depth + 1):
        next_layer: dict[int, ConnectedTransaction] = {}
        for source in sorted(layer):
            _check_deadline(root_transaction_id, deadline, timeout_sec)
            parent = layer[source]
            for node in graph.nodes_for(source):
                if node.confidence < params.min_confidence:
                    continue
                confidence = parent.confidence * node.confidence // 100
                if confidence < params.min_confidence:
                    continue
                for target in graph.transactions_for(node.id):
                    if target == root_transaction_id or target == source:
                        continue
                    shallower = best.get(target)
                    if shallower is not None and confidence <= shallower.confidence:
                        continue
                    current = next_layer.get(target)
                    if current is not None and confidence <= current.confidence:
                        continue
                    created_at = graph.created_at(target)
                    if not params.in_window(created_at):
                        continue
                    next_layer[target] = ConnectedTransaction(
                        transaction_id=target,
                        path_matchers=parent.path_matchers + [node.matcher],
                        path_values=parent.path_values + [node.value],
                        depth=depth,
                        confidence=confidence,
                        importance=node.importance,
                        created_at=created_at,
                    )
        if not next_layer:
            break
        best.update(next_layer)
        layer = next_layer

    results = sorted(
        (r for r in best.values() if r.confidence >= params.min_confidence),
        key=lambda r: (-r.confidence, r.transaction_id),
    )
    if params.limit is not None:
        results = results[: params.limit]
    return results


def find_connected_transactions(
    db: Database,
    transaction_id: int,
    *,
    max_depth: int | None = None,
    limit: int | None = None,
    min_confidence: int | None = None,
    min_created_at: int | None = None,
    max_created_at: int | None = None,
    timeout_sec: float | None = None,
    prefetch: bool = False,
) -> list[ConnectedTransaction]:
    """
    Transactions reachable from transaction_id through shared match nodes.

    Args:
        db: Database over the match node graph.
        transaction_id: Root; never part of its own result.
        max_depth: Hop bound (default 10, at least 1).
        limit: Max results after sorting; None = unbounded, 0 = empty.
        min_confidence: Nodes and results below this are ignored (default 0).
        min_created_at / max_created_at: Inclusive window on a transaction's
            created_at; transactions outside it are neither returned nor walked.
        timeout_sec: Wall-clock budget; exceeded -> ResolverTimeoutError.
        prefetch: Load the reachable subgraph with one recursive query first.

    Returns:
        ConnectedTransaction list sorted by (confidence desc, transaction_id asc).

    Raises:
        ValidationError: bad arguments.
        PersistenceError: backend failure (no partial results).
        ResolverTimeoutError: timeout_sec exceeded.
    """
    if isinstance(transaction_id, bool) or not isinstance(transaction_id, int):
        raise ValidationError(f"transaction_id must be an integer, got {transaction_id!r}")
    params = normalize_params(max_depth, limit, min_confidence, min_created_at, max_created_at)
    if params.limit == 0:
        return []

    start = time.perf_counter()
    graph: GraphView
    if prefetch:
        edges = db.fetch_reachable_links(
            transaction_id, params.max_depth, params.min_confidence
        )
        graph = EdgeListGraph(edges)
    else:
        graph = StoreGraph(db)
    results = resolve_connections(transaction_id, graph, params, timeout_sec=timeout_sec)

    logger.debug(
        "connected_transactions_resolved",
        transaction_id=transaction_id,
        count=len(results),
        max_depth=params.max_depth,
        min_confidence=params.min_confidence,
        prefetch=prefetch,
        duration_ms=round((time.perf_counter() - start) * 1000, 2),
    )
    return results


def get_direct_connections(db: Database, transaction_id: int) -> list[DirectConnection]:
    """
    One row per (shared node, other transaction), ordered by (transaction_id, matcher).

    Two matchers shared with the same transaction give two rows; the root is
    never listed. No shared nodes -> [].
    """
    if isinstance(transaction_id, bool) or not isinstance(transaction_id, int):
        raise ValidationError(f"transaction_id must be an integer, got {transaction_id!r}")
    pairs: list[tuple[int, MatchNode]] = []
    for node in sorted(db.list_nodes_for_transaction(transaction_id), key=lambda n: n.id):
        for other in db.list_transactions_for_node(node.id):
            if other != transaction_id:
                pairs.append((other, node))
    if not pairs:
        return []

    stamps = db.get_transaction_timestamps({tx for tx, _ in pairs})
    pairs.sort(key=lambda p: (p[0], p[1].matcher))
    return [
        DirectConnection(
            transaction_id=tx,
            matcher=node.matcher,
            confidence=node.confidence,
            importance=node.importance,
            created_at=stamps.get(tx),
        )
        for tx, node in pairs
    ]
