"""
Database abstraction layer for match nodes and their transaction links.

Default backend is SQLite (stdlib sqlite3); the SQLAlchemy backend in
sqlalchemy_backend.py serves PostgreSQL (or any SQLAlchemy URL) through the same
abstract interface. All access goes through MatchNodeBackend; SQL is
backend-specific.

Concurrency: uniqueness on (matcher, value) and (node_id, transaction_id) makes
find-or-create safe under racing writers; a conflicting insert is resolved by
fetching the existing row. unit_of_work() groups several primitive calls into
one atomic transaction on the calling thread.
"""

from __future__ import annotations

import sqlite3
import threading
import time
from abc import ABC, abstractmethod
from collections import deque
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterable, Iterator

from backend_frida.core.exceptions import PersistenceError
from backend_frida.database.models import LinkEdge, MatchNode
from backend_frida.frida_logging import get_logger

logger = get_logger(__name__)

# Keep IN (...) lists under SQLite's host parameter limit
_IN_CHUNK = 500

# -----------------------------------------------------------------------------
# Schema (SQLite). For PostgreSQL see sqlalchemy_backend.py.
# -----------------------------------------------------------------------------

SCHEMA_MATCH_NODES = """
CREATE TABLE IF NOT EXISTS match_nodes (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    matcher TEXT NOT NULL,
    value TEXT NOT NULL,
    confidence INTEGER NOT NULL CHECK (confidence BETWEEN 0 AND 100),
    importance INTEGER NOT NULL CHECK (importance BETWEEN 0 AND 100),
    created_at INTEGER,
    UNIQUE(matcher, value)
);
"""

SCHEMA_MATCH_NODE_LINKS = """
CREATE TABLE IF NOT EXISTS match_node_links (
    node_id INTEGER NOT NULL REFERENCES match_nodes(id),
    transaction_id INTEGER NOT NULL,
    created_at INTEGER NOT NULL,
    PRIMARY KEY (node_id, transaction_id)
);
CREATE INDEX IF NOT EXISTS ix_match_node_links_transaction ON match_node_links(transaction_id);
"""

# Every link of every qualifying node touching a transaction that lies within
# max_depth - 1 hops of the root. Superset of what the reducer can expand.
# Named parameters work for both sqlite3 and SQLAlchemy text().
REACHABLE_LINKS_SQL = """
WITH RECURSIVE reach(transaction_id, depth) AS (
    SELECT CAST(:root AS BIGINT), 0
    UNION
    SELECT l2.transaction_id, reach.depth + 1
    FROM reach
    JOIN match_node_links l1 ON l1.transaction_id = reach.transaction_id
    JOIN match_nodes n ON n.id = l1.node_id AND n.confidence >= :min_confidence
    JOIN match_node_links l2 ON l2.node_id = l1.node_id
    WHERE reach.depth + 1 < :max_depth AND l2.transaction_id != :root
)
SELECT DISTINCT
    n.id AS node_id,
    n.matcher AS matcher,
    n.value AS value,
    n.confidence AS confidence,
    n.importance AS importance,
    l2.transaction_id AS transaction_id,
    (SELECT MIN(t.created_at) FROM match_node_links t
     WHERE t.transaction_id = l2.transaction_id) AS created_at
FROM (SELECT DISTINCT transaction_id FROM reach) r
JOIN match_node_links l1 ON l1.transaction_id = r.transaction_id
JOIN match_nodes n ON n.id = l1.node_id AND n.confidence >= :min_confidence
JOIN match_node_links l2 ON l2.node_id = n.id
ORDER BY node_id, transaction_id
"""


def _chunks(ids: list[int], size: int = _IN_CHUNK) -> Iterator[list[int]]:
    for i in range(0, len(ids), size):
        yield ids[i : i + size]


# -----------------------------------------------------------------------------
# Abstract backend: SQLite (here) and SQLAlchemy (sqlalchemy_backend.py).
# -----------------------------------------------------------------------------


class MatchNodeBackend(ABC):
    """Abstract interface for the match node / link store."""

    @abstractmethod
    def ensure_schema(self) -> None:
        """Create tables and indexes if they do not exist."""
        ...

    @abstractmethod
    def unit_of_work(self) -> Any:
        """
        Context manager: every primitive called on this thread inside the block
        runs in one transaction, committed on exit and rolled back on error.
        Nested blocks join the outer one.
        """
        ...

    @abstractmethod
    def list_nodes_for_transaction(self, transaction_id: int) -> list[MatchNode]:
        """Nodes linked to the transaction, ordered by node id."""
        ...

    @abstractmethod
    def list_transactions_for_node(self, node_id: int) -> list[int]:
        """Transaction ids linked to the node, ascending."""
        ...

    @abstractmethod
    def find_node_by_matcher_value(self, matcher: str, value: str) -> MatchNode | None:
        ...

    @abstractmethod
    def create_node(
        self, matcher: str, value: str, confidence: int, importance: int
    ) -> MatchNode:
        """
        Insert a node. If (matcher, value) already exists (including a concurrent
        insert), return the stored node unchanged.
        """
        ...

    @abstractmethod
    def link_exists(self, node_id: int, transaction_id: int) -> bool:
        ...

    @abstractmethod
    def create_link(self, node_id: int, transaction_id: int, created_at: int) -> None:
        """Insert a link; an existing (node_id, transaction_id) is left untouched."""
        ...

    @abstractmethod
    def get_transaction_timestamps(self, transaction_ids: Iterable[int]) -> dict[int, int]:
        """Return {transaction_id: earliest link created_at}; unknown ids are omitted."""
        ...

    @abstractmethod
    def count_nodes(self) -> int:
        ...

    @abstractmethod
    def count_links(self) -> int:
        ...

    def fetch_reachable_links(
        self, root_transaction_id: int, max_depth: int, min_confidence: int
    ) -> list[LinkEdge]:
        """
        Return every link of every node (confidence >= min_confidence) attached to
        a transaction within max_depth - 1 hops of the root.

        Generic breadth-first version over the primitives; SQL backends override
        it with a single recursive query.
        """
        hops: dict[int, int] = {root_transaction_id: 0}
        queue: deque[int] = deque([root_transaction_id])
        nodes: dict[int, MatchNode] = {}
        members: dict[int, list[int]] = {}
        while queue:
            tx = queue.popleft()
            for node in self.list_nodes_for_transaction(tx):
                if node.confidence < min_confidence:
                    continue
                if node.id not in members:
                    nodes[node.id] = node
                    members[node.id] = self.list_transactions_for_node(node.id)
                if hops[tx] + 1 >= max_depth:
                    continue
                for other in members[node.id]:
                    if other == root_transaction_id or other in hops:
                        continue
                    hops[other] = hops[tx] + 1
                    queue.append(other)
        all_txs = {tx for txs in members.values() for tx in txs}
        stamps = self.get_transaction_timestamps(all_txs)
        return [
            LinkEdge(
                node_id=node.id,
                matcher=node.matcher,
                value=node.value,
                confidence=node.confidence,
                importance=node.importance,
                transaction_id=tx,
                created_at=stamps.get(tx, 0),
            )
            for node in sorted(nodes.values(), key=lambda n: n.id)
            for tx in members[node.id]
        ]


# -----------------------------------------------------------------------------
# SQLite backend
# -----------------------------------------------------------------------------


class SQLiteBackend(MatchNodeBackend):
    """
    SQLite implementation; single file, one connection per operation, or one
    shared connection per thread while a unit of work is open.
    """

    def __init__(self, path: str | Path, *, timeout_sec: float = 5.0) -> None:
        self._path = Path(path)
        self._timeout_sec = timeout_sec
        self._local = threading.local()

    def _connect(self) -> sqlite3.Connection:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        # Autocommit mode; unit_of_work issues BEGIN IMMEDIATE / COMMIT itself
        conn = sqlite3.connect(
            str(self._path), timeout=self._timeout_sec, isolation_level=None
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        conn.execute("PRAGMA journal_mode = WAL")
        return conn

    @contextmanager
    def _cursor(self) -> Iterator[sqlite3.Cursor]:
        active: sqlite3.Connection | None = getattr(self._local, "conn", None)
        if active is not None:
            try:
                yield active.cursor()
            except sqlite3.Error as e:
                raise PersistenceError(f"sqlite error: {e}") from e
            return
        conn: sqlite3.Connection | None = None
        try:
            conn = self._connect()
            yield conn.cursor()
        except sqlite3.Error as e:
            raise PersistenceError(f"sqlite error: {e}") from e
        finally:
            if conn is not None:
                conn.close()

    @contextmanager
    def unit_of_work(self) -> Iterator[None]:
        if getattr(self._local, "conn", None) is not None:
            yield
            return
        try:
            conn = self._connect()
            conn.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as e:
            raise PersistenceError(f"sqlite error: {e}") from e
        self._local.conn = conn
        try:
            yield
            conn.execute("COMMIT")
        except sqlite3.Error as e:
            self._rollback(conn)
            raise PersistenceError(f"sqlite error: {e}") from e
        except BaseException:
            self._rollback(conn)
            raise
        finally:
            self._local.conn = None
            conn.close()

    @staticmethod
    def _rollback(conn: sqlite3.Connection) -> None:
        if conn.in_transaction:
            try:
                conn.execute("ROLLBACK")
            except sqlite3.Error as e:
                logger.warning("sqlite_rollback_failed", error=str(e))

    def ensure_schema(self) -> None:
        with self._cursor() as cur:
            for stmt in (SCHEMA_MATCH_NODES, SCHEMA_MATCH_NODE_LINKS):
                cur.executescript(stmt)

    @staticmethod
    def _row_to_node(row: sqlite3.Row) -> MatchNode:
        return MatchNode(
            id=row["id"],
            matcher=row["matcher"],
            value=row["value"],
            confidence=row["confidence"],
            importance=row["importance"],
        )

    def list_nodes_for_transaction(self, transaction_id: int) -> list[MatchNode]:
        with self._cursor() as cur:
            cur.execute(
                """
                SELECT n.id, n.matcher, n.value, n.confidence, n.importance
                FROM match_node_links l
                JOIN match_nodes n ON n.id = l.node_id
                WHERE l.transaction_id = ?
                ORDER BY n.id
                """,
                (transaction_id,),
            )
            rows = cur.fetchall()
        return [self._row_to_node(row) for row in rows]

    def list_transactions_for_node(self, node_id: int) -> list[int]:
        with self._cursor() as cur:
            cur.execute(
                "SELECT transaction_id FROM match_node_links WHERE node_id = ? ORDER BY transaction_id",
                (node_id,),
            )
            return [row["transaction_id"] for row in cur.fetchall()]

    def find_node_by_matcher_value(self, matcher: str, value: str) -> MatchNode | None:
        with self._cursor() as cur:
            cur.execute(
                "SELECT id, matcher, value, confidence, importance FROM match_nodes WHERE matcher = ? AND value = ?",
                (matcher, value),
            )
            row = cur.fetchone()
        return self._row_to_node(row) if row is not None else None

    def create_node(
        self, matcher: str, value: str, confidence: int, importance: int
    ) -> MatchNode:
        now = int(time.time())
        with self._cursor() as cur:
            cur.execute(
                """
                INSERT INTO match_nodes (matcher, value, confidence, importance, created_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(matcher, value) DO NOTHING
                """,
                (matcher, value, confidence, importance, now),
            )
            cur.execute(
                "SELECT id, matcher, value, confidence, importance FROM match_nodes WHERE matcher = ? AND value = ?",
                (matcher, value),
            )
            row = cur.fetchone()
        if row is None:
            raise PersistenceError(f"match node ({matcher!r}, {value!r}) vanished after insert")
        return self._row_to_node(row)

    def link_exists(self, node_id: int, transaction_id: int) -> bool:
        with self._cursor() as cur:
            cur.execute(
                "SELECT 1 FROM match_node_links WHERE node_id = ? AND transaction_id = ?",
                (node_id, transaction_id),
            )
            return cur.fetchone() is not None

    def create_link(self, node_id: int, transaction_id: int, created_at: int) -> None:
        with self._cursor() as cur:
            cur.execute(
                """
                INSERT INTO match_node_links (node_id, transaction_id, created_at)
                VALUES (?, ?, ?)
                ON CONFLICT(node_id, transaction_id) DO NOTHING
                """,
                (node_id, transaction_id, created_at),
            )

    def get_transaction_timestamps(self, transaction_ids: Iterable[int]) -> dict[int, int]:
        ids = sorted(set(transaction_ids))
        result: dict[int, int] = {}
        if not ids:
            return result
        with self._cursor() as cur:
            for chunk in _chunks(ids):
                placeholders = ",".join("?" for _ in chunk)
                cur.execute(
                    f"""
                    SELECT transaction_id, MIN(created_at) AS created_at
                    FROM match_node_links
                    WHERE transaction_id IN ({placeholders})
                    GROUP BY transaction_id
                    """,
                    chunk,
                )
                for row in cur.fetchall():
                    result[row["transaction_id"]] = row["created_at"]
        return result

    def count_nodes(self) -> int:
        with self._cursor() as cur:
            cur.execute("SELECT COUNT(*) FROM match_nodes")
            return int(cur.fetchone()[0])

    def count_links(self) -> int:
        with self._cursor() as cur:
            cur.execute("SELECT COUNT(*) FROM match_node_links")
            return int(cur.fetchone()[0])

    def fetch_reachable_links(
        self, root_transaction_id: int, max_depth: int, min_confidence: int
    ) -> list[LinkEdge]:
        with self._cursor() as cur:
            cur.execute(
                REACHABLE_LINKS_SQL,
                {
                    "root": root_transaction_id,
                    "max_depth": max_depth,
                    "min_confidence": min_confidence,
                },
            )
            rows = cur.fetchall()
        return [
            LinkEdge(
                node_id=row["node_id"],
                matcher=row["matcher"],
                value=row["value"],
                confidence=row["confidence"],
                importance=row["importance"],
                transaction_id=row["transaction_id"],
                created_at=row["created_at"],
            )
            for row in rows
        ]


# -----------------------------------------------------------------------------
# Database facade: single entrypoint; backend is swappable.
# -----------------------------------------------------------------------------


class Database:
    """
    Database abstraction over the match node graph.

    Uses a MatchNodeBackend (SQLite by default, SQLAlchemy for PostgreSQL).
    """

    def __init__(self, backend: MatchNodeBackend) -> None:
        self._backend = backend

    @property
    def backend(self) -> MatchNodeBackend:
        return self._backend

    def ensure_schema(self) -> None:
        """Create tables and indexes if they do not exist."""
        self._backend.ensure_schema()

    def unit_of_work(self) -> Any:
        """Group the calls inside the with-block into one atomic transaction."""
        return self._backend.unit_of_work()

    # --- Nodes ---

    def list_nodes_for_transaction(self, transaction_id: int) -> list[MatchNode]:
        return self._backend.list_nodes_for_transaction(transaction_id)

    def find_node_by_matcher_value(self, matcher: str, value: str) -> MatchNode | None:
        return self._backend.find_node_by_matcher_value(matcher, value)

    def create_node(
        self, matcher: str, value: str, confidence: int, importance: int
    ) -> MatchNode:
        return self._backend.create_node(matcher, value, confidence, importance)

    def count_nodes(self) -> int:
        return self._backend.count_nodes()

    # --- Links ---

    def list_transactions_for_node(self, node_id: int) -> list[int]:
        return self._backend.list_transactions_for_node(node_id)

    def link_exists(self, node_id: int, transaction_id: int) -> bool:
        return self._backend.link_exists(node_id, transaction_id)

    def create_link(
        self, node_id: int, transaction_id: int, created_at: int | None = None
    ) -> None:
        """created_at defaults to now (unix seconds)."""
        stamp = created_at if created_at is not None else int(time.time())
        self._backend.create_link(node_id, transaction_id, stamp)

    def count_links(self) -> int:
        return self._backend.count_links()

    # --- Graph reads ---

    def get_transaction_timestamps(self, transaction_ids: Iterable[int]) -> dict[int, int]:
        return self._backend.get_transaction_timestamps(transaction_ids)

    def fetch_reachable_links(
        self, root_transaction_id: int, max_depth: int, min_confidence: int
    ) -> list[LinkEdge]:
        return self._backend.fetch_reachable_links(
            root_transaction_id, max_depth, min_confidence
        )


def get_database(path: str | Path | None = None, *, url: str | None = None) -> Database:
    """
    Return a Database with its schema ensured.

    url: SQLAlchemy URL (e.g. postgresql+psycopg://...); selects SQLAlchemyBackend.
    path: SQLite file for the stdlib backend. Default: "frida.db" in cwd.
    """
    backend: MatchNodeBackend
    if url:
        from backend_frida.database.sqlalchemy_backend import SQLAlchemyBackend

        backend = SQLAlchemyBackend(url)
    else:
        backend = SQLiteBackend(path if path is not None else Path("frida.db"))
    db = Database(backend)
    db.ensure_schema()
    return db
