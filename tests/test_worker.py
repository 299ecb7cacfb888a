"""
Tests for the queue, Processor and worker loop with in-memory fakes for the
extractor, scorer and feature sink.
"""

from __future__ import annotations

import threading

import pytest
import structlog
from structlog.testing import capture_logs

from backend_frida.agent_worker import (
    InMemoryQueue,
    Processor,
    ScorerResult,
    WorkerConfig,
    build_processor,
    run_worker,
)
from backend_frida.analysis_engine.graph_features import Feature
from backend_frida.config.settings import Settings
from backend_frida.core.exceptions import PersistenceError
from backend_frida.database.models import MatchingField

from conftest import TEST_MATCHERS


class FakeExtractor:
    def __init__(self, fields_by_tx):
        self.fields_by_tx = fields_by_tx

    def extract_matching_fields(self, transaction_id):
        return [MatchingField(matcher=m, value=v) for m, v in self.fields_by_tx.get(transaction_id, [])]

    def extract_simple_features(self, transaction_id):
        return [Feature("amount", transaction_id * 10)]


class CountingScorer:
    """Score = number of connected transactions."""

    def score(self, features):
        values = {f.name: f.value for f in features}
        return [ScorerResult(name="graph", score=values["connected_transaction_count"])]


class ContextScorer(CountingScorer):
    """Records the logging contextvars seen while scoring."""

    def __init__(self):
        self.contexts = []

    def score(self, features):
        self.contexts.append(structlog.contextvars.get_contextvars())
        return super().score(features)


class RecordingSink:
    def __init__(self):
        self.features = {}
        self.scores = {}
        self._lock = threading.Lock()

    def save_features(self, transaction_id, simple_features, graph_features):
        with self._lock:
            self.features[transaction_id] = (simple_features, list(graph_features))

    def save_scores(self, transaction_id, results):
        with self._lock:
            self.scores[transaction_id] = list(results)


EMAIL_DEVICE = {
    1: [("email", "e1")],
    2: [("email", "e1"), ("device", "d1")],
    3: [("device", "d1")],
}


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def processor(store, sink):
    return Processor(
        store,
        FakeExtractor(EMAIL_DEVICE),
        CountingScorer(),
        sink,
        InMemoryQueue("processing"),
        InMemoryQueue("recalculation"),
    )


def _graph_value(sink, tx, name):
    _, graph = sink.features[tx]
    return {f.name: f.value for f in graph}[name]


# -----------------------------------------------------------------------------
# Queue
# -----------------------------------------------------------------------------


def test_queue_fifo_and_dedup():
    q = InMemoryQueue()
    q.enqueue(1)
    q.enqueue(2)
    q.enqueue(1)
    assert q.pending_count() == 2
    assert q.fetch_next() == 1
    q.enqueue(1)  # in flight
    assert q.fetch_next() == 2
    assert q.fetch_next() is None
    q.mark_processed(1)
    q.mark_failed(2, RuntimeError("boom"))
    assert q.processed == [1]
    assert q.failed == {2: "boom"}
    assert q.in_flight_count() == 0


# -----------------------------------------------------------------------------
# Processor
# -----------------------------------------------------------------------------


def test_process_links_and_scores(processor, sink, store):
    for tx in (1, 2, 3):
        processor.process(tx)
    assert store.db.count_nodes() == 2
    assert store.db.count_links() == 4
    # tx 3: B at 80 via device, A at 72 via device then email
    assert _graph_value(sink, 3, "connected_transaction_count") == 2
    assert _graph_value(sink, 3, "direct_connection_count") == 1
    simple, _ = sink.features[3]
    assert simple == [Feature("amount", 30)]
    assert sink.scores[3] == [ScorerResult(name="graph", score=2)]
    assert processor.proc_queue.processed == [1, 2, 3]


def test_process_uses_min_confidence(store, sink):
    extractor = FakeExtractor({1: [("weak", "w")], 2: [("weak", "w")]})
    proc = Processor(
        store, extractor, CountingScorer(), sink, InMemoryQueue(), InMemoryQueue()
    )
    proc.process(1)
    proc.process(2)
    # weak (40) is below the processing min_confidence of 50
    assert _graph_value(sink, 2, "connected_transaction_count") == 0
    assert _graph_value(sink, 2, "direct_connection_count") == 1


def test_process_failure_marks_failed_and_skips_scoring(processor, sink, store, monkeypatch):
    def broken(*args, **kwargs):
        raise PersistenceError("connection lost")

    monkeypatch.setattr(store.db.backend, "fetch_reachable_links", broken)
    with pytest.raises(PersistenceError):
        processor.process(1)
    assert 1 in processor.proc_queue.failed
    assert sink.scores == {}
    assert sink.features == {}


def test_recalculate_uses_graph_features_only(processor, sink):
    for tx in (1, 2, 3):
        processor.process(tx)
    processor.recalculate(1)
    simple, graph = sink.features[1]
    assert simple is None
    assert {f.name: f.value for f in graph}["connected_transaction_count"] == 2
    assert processor.recalc_queue.processed == [1]


def test_process_failure_leaves_traceback_to_caller(processor, store, monkeypatch):
    def broken(*args, **kwargs):
        raise PersistenceError("connection lost")

    monkeypatch.setattr(store.db.backend, "fetch_reachable_links", broken)
    with capture_logs() as logs:
        with pytest.raises(PersistenceError):
            processor.process(1)
    assert not [e for e in logs if e.get("exc_info")]
    assert [e["event"] for e in logs if e["log_level"] == "warning"] == ["queue_item_failed"]


def test_transaction_context_bound_while_handling(store, sink):
    scorer = ContextScorer()
    proc = Processor(
        store,
        FakeExtractor(EMAIL_DEVICE),
        scorer,
        sink,
        InMemoryQueue("processing"),
        InMemoryQueue("recalculation"),
    )
    proc.process(2)
    proc.recalculate(2)
    assert scorer.contexts == [
        {"transaction_id": 2, "queue": "processing"},
        {"transaction_id": 2, "queue": "recalculation"},
    ]
    assert structlog.contextvars.get_contextvars() == {}


# -----------------------------------------------------------------------------
# Worker loop
# -----------------------------------------------------------------------------


def test_run_worker_drains_both_queues(processor, sink):
    for tx in (1, 2, 3):
        processor.proc_queue.enqueue(tx)
    processor.recalc_queue.enqueue(1)
    stats = run_worker(WorkerConfig(threads=2, sleep_ms=10, stop_when_idle=True), processor)
    assert stats.processed == 3
    assert stats.recalculated == 1
    assert stats.errors == 0
    assert sorted(processor.proc_queue.processed) == [1, 2, 3]
    assert set(sink.scores) == {1, 2, 3}


def test_run_worker_isolates_failures(processor, sink, monkeypatch):
    original = processor.store.upsert_and_link

    def flaky(transaction_id, fields, created_at=None):
        if transaction_id == 2:
            raise PersistenceError("disk full")
        return original(transaction_id, fields, created_at)

    monkeypatch.setattr(processor.store, "upsert_and_link", flaky)
    for tx in (1, 2, 3):
        processor.proc_queue.enqueue(tx)
    stats = run_worker(WorkerConfig(threads=1, sleep_ms=10, stop_when_idle=True), processor)
    assert stats.processed == 2
    assert stats.errors == 1
    assert set(processor.proc_queue.failed) == {2}
    assert set(sink.scores) == {1, 3}


def test_failed_item_traceback_logged_once(processor, monkeypatch):
    def broken(transaction_id, fields, created_at=None):
        raise PersistenceError("disk full")

    monkeypatch.setattr(processor.store, "upsert_and_link", broken)
    processor.proc_queue.enqueue(2)
    with capture_logs() as logs:
        stats = run_worker(WorkerConfig(threads=1, sleep_ms=10, stop_when_idle=True), processor)
    assert stats.errors == 1
    with_traceback = [e for e in logs if e.get("exc_info")]
    assert [e["event"] for e in with_traceback] == ["worker_item_failed"]
    assert with_traceback[0]["transaction_id"] == 2


def test_run_worker_stops_on_event(processor):
    stop = threading.Event()
    stop.set()
    processor.proc_queue.enqueue(1)
    stats = run_worker(WorkerConfig(threads=2, sleep_ms=10), processor, stop_event=stop)
    assert stats.processed == 0
    assert processor.proc_queue.pending_count() == 1


def test_run_worker_in_background_thread(processor):
    stop = threading.Event()
    result = {}

    def target():
        result["stats"] = run_worker(WorkerConfig(threads=1, sleep_ms=5), processor, stop_event=stop)

    thread = threading.Thread(target=target)
    thread.start()
    for tx in (1, 2):
        processor.proc_queue.enqueue(tx)
    for _ in range(400):
        if len(processor.proc_queue.processed) == 2:
            break
        stop.wait(0.01)
    stop.set()
    thread.join(timeout=10)
    assert not thread.is_alive()
    assert result["stats"].processed == 2


def test_worker_config_bounds():
    config = WorkerConfig(threads=0, sleep_ms=-5)
    assert config.threads == 1
    assert config.sleep_ms == 0


def test_build_processor_from_settings(tmp_path, sink):
    settings = Settings(
        db_path=tmp_path / "worker.db",
        matcher_configs=dict(TEST_MATCHERS),
        connection_max_depth=2,
        connection_limit=10,
        connection_min_confidence=60,
    )
    proc = build_processor(settings, FakeExtractor(EMAIL_DEVICE), CountingScorer(), sink)
    assert (proc.max_depth, proc.limit, proc.min_confidence) == (2, 10, 60)
    for tx in (1, 2, 3):
        proc.process(tx)
    assert (tmp_path / "worker.db").exists()
    # tx 1 -> 2 at 90; 3 at 72 is within depth 2 and above 60
    assert _graph_value(sink, 1, "connected_transaction_count") == 0
    assert _graph_value(sink, 3, "connected_transaction_count") == 2
    config = WorkerConfig.from_settings(settings, stop_when_idle=True)
    assert config.threads == settings.processor_threads
