"""
SQLAlchemy-backed match node store.

Serves DATABASE_URL (PostgreSQL in production) and also runs against SQLite
URLs, so the same contract tests cover both backends. Inserts use the dialect's
ON CONFLICT DO NOTHING where available; other dialects fall back to a savepoint
and treat IntegrityError as "already exists".
"""

from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from typing import Any, Iterable, Iterator

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    Column,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    func,
    text,
)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from backend_frida.core.exceptions import PersistenceError
from backend_frida.database.database import (
    REACHABLE_LINKS_SQL,
    MatchNodeBackend,
    _chunks,
)
from backend_frida.database.models import LinkEdge, MatchNode
from backend_frida.frida_logging import get_logger

logger = get_logger(__name__)

Base = declarative_base()

# -----------------------------------------------------------------------------
# SQLAlchemy models
# -----------------------------------------------------------------------------


class MatchNodeRow(Base):
    """One (matcher, value) identity; confidence/importance frozen at insert."""

    __tablename__ = "match_nodes"
    __table_args__ = (
        UniqueConstraint("matcher", "value", name="uq_match_nodes_matcher_value"),
        CheckConstraint("confidence BETWEEN 0 AND 100", name="ck_match_nodes_confidence"),
        CheckConstraint("importance BETWEEN 0 AND 100", name="ck_match_nodes_importance"),
    )

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    matcher = Column(String(255), nullable=False)
    value = Column(Text, nullable=False)
    confidence = Column(Integer, nullable=False)
    importance = Column(Integer, nullable=False)
    created_at = Column(BigInteger, nullable=True)  # Unix

    def to_model(self) -> MatchNode:
        return MatchNode(
            id=self.id,
            matcher=self.matcher,
            value=self.value,
            confidence=self.confidence,
            importance=self.importance,
        )


class MatchNodeLinkRow(Base):
    """Node-to-transaction link; the composite primary key is the idempotency key."""

    __tablename__ = "match_node_links"

    node_id = Column(BigInteger, ForeignKey("match_nodes.id"), primary_key=True)
    transaction_id = Column(BigInteger, primary_key=True, index=True)
    created_at = Column(BigInteger, nullable=False)  # Unix


def _dialect_insert(dialect_name: str) -> Any:
    """Return the dialect insert() supporting on_conflict_do_nothing, or None."""
    if dialect_name == "postgresql":
        from sqlalchemy.dialects.postgresql import insert

        return insert
    if dialect_name == "sqlite":
        from sqlalchemy.dialects.sqlite import insert

        return insert
    return None


class SQLAlchemyBackend(MatchNodeBackend):
    """SQLAlchemy implementation; one session per call or per unit of work."""

    def __init__(self, url: str, **engine_kwargs: Any) -> None:
        connect_args: dict[str, Any] = {}
        if url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self._url = url
        self._engine = create_engine(
            url, connect_args=connect_args, pool_pre_ping=True, **engine_kwargs
        )
        self._session_factory = sessionmaker(autocommit=False, autoflush=False, bind=self._engine)
        self._insert = _dialect_insert(self._engine.dialect.name)
        self._local = threading.local()
        logger.info(
            "sqlalchemy_backend_engine",
            url=url.split("?")[0].split("//")[-1].split("@")[-1],
            dialect=self._engine.dialect.name,
        )

    @contextmanager
    def _session_scope(self) -> Iterator[Session]:
        """Join the thread's unit of work if open; otherwise commit/rollback a fresh session."""
        active: Session | None = getattr(self._local, "session", None)
        if active is not None:
            try:
                yield active
            except SQLAlchemyError as e:
                raise PersistenceError(f"database error: {e}") from e
            return
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError(f"database error: {e}") from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @contextmanager
    def unit_of_work(self) -> Iterator[None]:
        if getattr(self._local, "session", None) is not None:
            yield
            return
        session = self._session_factory()
        self._local.session = session
        try:
            yield
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError(f"database error: {e}") from e
        except BaseException:
            session.rollback()
            raise
        finally:
            self._local.session = None
            session.close()

    def ensure_schema(self) -> None:
        try:
            Base.metadata.create_all(bind=self._engine)
        except SQLAlchemyError as e:
            raise PersistenceError(f"schema creation failed: {e}") from e

    def dispose(self) -> None:
        """Close pooled connections (tests, shutdown)."""
        self._engine.dispose()

    def list_nodes_for_transaction(self, transaction_id: int) -> list[MatchNode]:
        with self._session_scope() as session:
            rows = (
                session.query(MatchNodeRow)
                .join(MatchNodeLinkRow, MatchNodeLinkRow.node_id == MatchNodeRow.id)
                .filter(MatchNodeLinkRow.transaction_id == transaction_id)
                .order_by(MatchNodeRow.id)
                .all()
            )
            return [r.to_model() for r in rows]

    def list_transactions_for_node(self, node_id: int) -> list[int]:
        with self._session_scope() as session:
            rows = (
                session.query(MatchNodeLinkRow.transaction_id)
                .filter(MatchNodeLinkRow.node_id == node_id)
                .order_by(MatchNodeLinkRow.transaction_id)
                .all()
            )
            return [r[0] for r in rows]

    def find_node_by_matcher_value(self, matcher: str, value: str) -> MatchNode | None:
        with self._session_scope() as session:
            row = (
                session.query(MatchNodeRow)
                .filter(MatchNodeRow.matcher == matcher, MatchNodeRow.value == value)
                .one_or_none()
            )
            return row.to_model() if row else None

    def create_node(
        self, matcher: str, value: str, confidence: int, importance: int
    ) -> MatchNode:
        values = {
            "matcher": matcher,
            "value": value,
            "confidence": confidence,
            "importance": importance,
            "created_at": int(time.time()),
        }
        with self._session_scope() as session:
            if self._insert is not None:
                stmt = self._insert(MatchNodeRow.__table__).values(**values)
                session.execute(stmt.on_conflict_do_nothing(index_elements=["matcher", "value"]))
            else:
                try:
                    with session.begin_nested():
                        session.add(MatchNodeRow(**values))
                except IntegrityError:
                    logger.debug("match_node_insert_conflict", matcher=matcher)
            row = (
                session.query(MatchNodeRow)
                .filter(MatchNodeRow.matcher == matcher, MatchNodeRow.value == value)
                .one_or_none()
            )
            if row is None:
                raise PersistenceError(f"match node ({matcher!r}, {value!r}) vanished after insert")
            return row.to_model()

    def link_exists(self, node_id: int, transaction_id: int) -> bool:
        with self._session_scope() as session:
            row = (
                session.query(MatchNodeLinkRow.node_id)
                .filter(
                    MatchNodeLinkRow.node_id == node_id,
                    MatchNodeLinkRow.transaction_id == transaction_id,
                )
                .first()
            )
            return row is not None

    def create_link(self, node_id: int, transaction_id: int, created_at: int) -> None:
        values = {"node_id": node_id, "transaction_id": transaction_id, "created_at": created_at}
        with self._session_scope() as session:
            if self._insert is not None:
                stmt = self._insert(MatchNodeLinkRow.__table__).values(**values)
                session.execute(
                    stmt.on_conflict_do_nothing(index_elements=["node_id", "transaction_id"])
                )
                return
            try:
                with session.begin_nested():
                    session.add(MatchNodeLinkRow(**values))
            except IntegrityError:
                logger.debug("match_node_link_insert_conflict", node_id=node_id)

    def get_transaction_timestamps(self, transaction_ids: Iterable[int]) -> dict[int, int]:
        ids = sorted(set(transaction_ids))
        result: dict[int, int] = {}
        if not ids:
            return result
        with self._session_scope() as session:
            for chunk in _chunks(ids):
                rows = (
                    session.query(
                        MatchNodeLinkRow.transaction_id, func.min(MatchNodeLinkRow.created_at)
                    )
                    .filter(MatchNodeLinkRow.transaction_id.in_(chunk))
                    .group_by(MatchNodeLinkRow.transaction_id)
                    .all()
                )
                result.update({r[0]: r[1] for r in rows})
        return result

    def count_nodes(self) -> int:
        with self._session_scope() as session:
            return int(session.query(func.count(MatchNodeRow.id)).scalar() or 0)

    def count_links(self) -> int:
        with self._session_scope() as session:
            return int(session.query(func.count()).select_from(MatchNodeLinkRow).scalar() or 0)

    def fetch_reachable_links(
        self, root_transaction_id: int, max_depth: int, min_confidence: int
    ) -> list[LinkEdge]:
        with self._session_scope() as session:
            rows = session.execute(
                text(REACHABLE_LINKS_SQL),
                {
                    "root": root_transaction_id,
                    "max_depth": max_depth,
                    "min_confidence": min_confidence,
                },
            ).mappings().all()
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
