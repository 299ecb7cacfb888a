"""
Transaction processor: matching fields -> graph -> features -> score.

process(tx):      extract matching fields, upsert nodes/links, resolve
                  connected + direct transactions, build graph and simple
                  features, score, persist, mark processed.
recalculate(tx):  same from the resolvers on, graph features only.

Any failure marks the queue item failed and re-raises; the caller logs it. A
transaction is never scored with empty graph features after a resolver error.
Events logged while a transaction is handled carry its transaction_id and queue.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Protocol, Sequence

from backend_frida.agent_worker.queue import InMemoryQueue
from backend_frida.analysis_engine.connections import (
    find_connected_transactions,
    get_direct_connections,
)
from backend_frida.analysis_engine.graph_features import Feature, build_graph_features
from backend_frida.analysis_engine.match_store import MatchNodeStore
from backend_frida.database.models import MatchingField
from backend_frida.frida_logging import get_logger, transaction_context

logger = get_logger(__name__)

# Resolver arguments used for every processed transaction
PROCESS_MAX_DEPTH = 3
PROCESS_LIMIT = 100
PROCESS_MIN_CONFIDENCE = 50


@dataclass(frozen=True)
class ScorerResult:
    """One fired rule or model output."""

    name: str
    score: int


class MatchingFieldExtractor(Protocol):
    def extract_matching_fields(self, transaction_id: int) -> Sequence[MatchingField]: ...

    def extract_simple_features(self, transaction_id: int) -> Sequence[Feature]: ...


class Scorer(Protocol):
    def score(self, features: Sequence[Feature]) -> list[ScorerResult]: ...


class FeatureSink(Protocol):
    def save_features(
        self,
        transaction_id: int,
        simple_features: Sequence[Feature] | None,
        graph_features: Sequence[Feature],
    ) -> None: ...

    def save_scores(self, transaction_id: int, results: Sequence[ScorerResult]) -> None: ...


class Processor:
    """Runs one transaction through the pipeline; queues are marked here."""

    def __init__(
        self,
        store: MatchNodeStore,
        extractor: MatchingFieldExtractor,
        scorer: Scorer,
        sink: FeatureSink,
        proc_queue: InMemoryQueue,
        recalc_queue: InMemoryQueue,
        *,
        max_depth: int = PROCESS_MAX_DEPTH,
        limit: int | None = PROCESS_LIMIT,
        min_confidence: int = PROCESS_MIN_CONFIDENCE,
        timeout_sec: float | None = None,
        prefetch: bool = True,
    ) -> None:
        self.store = store
        self.extractor = extractor
        self.scorer = scorer
        self.sink = sink
        self.proc_queue = proc_queue
        self.recalc_queue = recalc_queue
        self.max_depth = max_depth
        self.limit = limit
        self.min_confidence = min_confidence
        self.timeout_sec = timeout_sec
        self.prefetch = prefetch

    def _graph_features(self, transaction_id: int) -> list[Feature]:
        db = self.store.db
        connected = find_connected_transactions(
            db,
            transaction_id,
            max_depth=self.max_depth,
            limit=self.limit,
            min_confidence=self.min_confidence,
            timeout_sec=self.timeout_sec,
            prefetch=self.prefetch,
        )
        direct = get_direct_connections(db, transaction_id)
        logger.info("connections_found", connected=len(connected), direct=len(direct))
        return build_graph_features(connected, direct)

    def _score_and_save(
        self,
        transaction_id: int,
        simple_features: list[Feature] | None,
        graph_features: list[Feature],
    ) -> list[ScorerResult]:
        self.sink.save_features(transaction_id, simple_features, graph_features)
        results = self.scorer.score((simple_features or []) + graph_features)
        self.sink.save_scores(transaction_id, results)
        return results

    def process(self, transaction_id: int) -> list[ScorerResult]:
        with transaction_context(transaction_id, queue=self.proc_queue.name):
            start = time.perf_counter()
            try:
                fields = list(self.extractor.extract_matching_fields(transaction_id))
                self.store.upsert_and_link(transaction_id, fields)
                graph_features = self._graph_features(transaction_id)
                simple_features = list(self.extractor.extract_simple_features(transaction_id))
                results = self._score_and_save(transaction_id, simple_features, graph_features)
            except Exception as e:
                self.proc_queue.mark_failed(transaction_id, e)
                raise
            self.proc_queue.mark_processed(transaction_id)
            logger.info(
                "transaction_processed",
                matching_fields=len(fields),
                total_score=sum(r.score for r in results),
                duration_ms=round((time.perf_counter() - start) * 1000, 2),
            )
            return results

    def recalculate(self, transaction_id: int) -> list[ScorerResult]:
        with transaction_context(transaction_id, queue=self.recalc_queue.name):
            try:
                graph_features = self._graph_features(transaction_id)
                results = self._score_and_save(transaction_id, None, graph_features)
            except Exception as e:
                self.recalc_queue.mark_failed(transaction_id, e)
                raise
            self.recalc_queue.mark_processed(transaction_id)
            logger.info("transaction_recalculated", total_score=sum(r.score for r in results))
            return results
