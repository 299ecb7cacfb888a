"""
Match node store: idempotent upsert of a transaction's matching fields.

Each (matcher, value) becomes one shared node; the transaction is linked to
every node it carries. All writes of one call happen inside a single backend
unit of work, so a failure leaves no partial nodes or links behind.
"""

from __future__ import annotations

import time
from typing import Sequence

from backend_frida.analysis_engine.matcher_registry import MatcherRegistry
from backend_frida.core.exceptions import ValidationError
from backend_frida.database.database import Database
from backend_frida.database.models import MatchingField, MatchNode
from backend_frida.frida_logging import get_logger

logger = get_logger(__name__)


def _validate_fields(transaction_id: object, fields: Sequence[MatchingField]) -> None:
    if isinstance(transaction_id, bool) or not isinstance(transaction_id, int):
        raise ValidationError(f"transaction_id must be an integer, got {transaction_id!r}")
    for f in fields:
        if not isinstance(f, MatchingField):
            raise ValidationError(f"expected MatchingField, got {type(f).__name__}")
        if not isinstance(f.matcher, str) or not f.matcher:
            raise ValidationError(f"matching field needs a non-empty matcher, got {f.matcher!r}")
        if not isinstance(f.value, str):
            raise ValidationError(f"value for matcher {f.matcher!r} must be a string")


class MatchNodeStore:
    """Find-or-create nodes and links against a Database."""

    def __init__(self, db: Database, registry: MatcherRegistry) -> None:
        self._db = db
        self._registry = registry

    @property
    def db(self) -> Database:
        return self._db

    @property
    def registry(self) -> MatcherRegistry:
        return self._registry

    def _find_or_create_node(self, field: MatchingField) -> MatchNode:
        node = self._db.find_node_by_matcher_value(field.matcher, field.value)
        if node is not None:
            return node
        confidence, importance = self._registry.config_for(field.matcher)
        # Unique (matcher, value): a concurrent insert resolves to the existing row
        return self._db.create_node(field.matcher, field.value, confidence, importance)

    def upsert_and_link(
        self,
        transaction_id: int,
        matching_fields: Sequence[MatchingField],
        created_at: int | None = None,
    ) -> None:
        """
        Ensure a node exists per field and link it to transaction_id.

        Args:
            transaction_id: Transaction being ingested.
            matching_fields: Identity attributes; empty means no-op.
            created_at: Transaction time (unix seconds) stored on new links;
                defaults to now.

        Raises:
            ValidationError: malformed transaction_id or field (before any write).
            PersistenceError: backend failure; nothing from this call is kept.
        """
        fields = list(matching_fields)
        _validate_fields(transaction_id, fields)
        if not fields:
            return
        stamp = created_at if created_at is not None else int(time.time())

        start = time.perf_counter()
        new_links = 0
        with self._db.unit_of_work():
            for field in fields:
                node = self._find_or_create_node(field)
                if self._db.link_exists(node.id, transaction_id):
                    continue
                self._db.create_link(node.id, transaction_id, stamp)
                new_links += 1

        logger.info(
            "match_nodes_linked",
            transaction_id=transaction_id,
            field_count=len(fields),
            new_links=new_links,
            duration_ms=round((time.perf_counter() - start) * 1000, 2),
        )
