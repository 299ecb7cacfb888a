"""
Persistent worker loop for the processor.

Each worker thread prefers the processing queue, falls back to the
recalculation queue, and sleeps sleep_ms when both are empty. Exception
isolation per item; the loop never crashes. Safe shutdown on SIGTERM or when
the stop event is set.
"""

from __future__ import annotations

import signal
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any

from backend_frida.agent_worker.processor import (
    FeatureSink,
    MatchingFieldExtractor,
    Processor,
    Scorer,
)
from backend_frida.agent_worker.queue import InMemoryQueue
from backend_frida.analysis_engine.match_store import MatchNodeStore
from backend_frida.config.settings import (
    DEFAULT_PROCESSOR_SLEEP_MS,
    DEFAULT_PROCESSOR_THREADS,
    Settings,
)
from backend_frida.frida_logging import get_logger

logger = get_logger(__name__)

MIN_THREADS = 1


@dataclass
class WorkerConfig:
    """
    Config for the worker loop.

    threads: Number of worker threads pulling from the queues.
    sleep_ms: Idle sleep when both queues are empty.
    stop_when_idle: Return once both queues are drained (batch runs, tests).
    """

    threads: int = DEFAULT_PROCESSOR_THREADS
    sleep_ms: int = DEFAULT_PROCESSOR_SLEEP_MS
    stop_when_idle: bool = False

    def __post_init__(self) -> None:
        self.threads = max(MIN_THREADS, int(self.threads))
        self.sleep_ms = max(0, int(self.sleep_ms))

    @classmethod
    def from_settings(cls, settings: Settings, **overrides: Any) -> "WorkerConfig":
        return cls(
            threads=overrides.pop("threads", settings.processor_threads),
            sleep_ms=overrides.pop("sleep_ms", settings.processor_sleep_ms),
            **overrides,
        )


@dataclass
class WorkerStats:
    processed: int = 0
    recalculated: int = 0
    errors: int = 0


def build_processor(
    settings: Settings,
    extractor: MatchingFieldExtractor,
    scorer: Scorer,
    sink: FeatureSink,
    *,
    proc_queue: InMemoryQueue | None = None,
    recalc_queue: InMemoryQueue | None = None,
) -> Processor:
    """Wire database, registry, store and queues from settings."""
    from backend_frida.database import get_database

    db = get_database(settings.db_path, url=settings.database_url)
    store = MatchNodeStore(db, settings.matcher_registry())
    return Processor(
        store,
        extractor,
        scorer,
        sink,
        proc_queue or InMemoryQueue("processing"),
        recalc_queue or InMemoryQueue("recalculation"),
        max_depth=settings.connection_max_depth,
        limit=settings.connection_limit,
        min_confidence=settings.connection_min_confidence,
        timeout_sec=settings.connection_timeout_sec,
    )


def _handle_next(processor: Processor, stats: WorkerStats, lock: threading.Lock) -> bool:
    """
    Handle one queue item. Returns False when both queues were empty.
    Exceptions are logged and counted, never raised.
    """
    transaction_id = processor.proc_queue.fetch_next()
    recalc = False
    if transaction_id is None:
        transaction_id = processor.recalc_queue.fetch_next()
        recalc = True
    if transaction_id is None:
        return False
    try:
        if recalc:
            processor.recalculate(transaction_id)
        else:
            processor.process(transaction_id)
        with lock:
            if recalc:
                stats.recalculated += 1
            else:
                stats.processed += 1
    except Exception as e:
        with lock:
            stats.errors += 1
        logger.warning(
            "worker_item_failed",
            transaction_id=transaction_id,
            recalculation=recalc,
            error=str(e),
            exc_info=True,
        )
    return True


def _worker_loop(
    worker_index: int,
    processor: Processor,
    config: WorkerConfig,
    stop: threading.Event,
    stats: WorkerStats,
    lock: threading.Lock,
) -> None:
    while not stop.is_set():
        if _handle_next(processor, stats, lock):
            continue
        if config.stop_when_idle:
            break
        stop.wait(config.sleep_ms / 1000.0)
    logger.debug("worker_thread_exit", worker=worker_index)


def run_worker(
    config: WorkerConfig,
    processor: Processor,
    stop_event: threading.Event | None = None,
) -> WorkerStats:
    """
    Run config.threads worker loops until stop_event is set, SIGTERM arrives, or
    (with stop_when_idle) both queues are empty. Returns aggregate counts.
    """
    stop = stop_event or threading.Event()
    stats = WorkerStats()
    lock = threading.Lock()

    def request_shutdown(*args: Any, **kwargs: Any) -> None:
        stop.set()

    previous_handler: Any = None
    try:
        previous_handler = signal.signal(signal.SIGTERM, request_shutdown)
    except (AttributeError, ValueError):
        # Not on the main thread, or unsupported platform
        previous_handler = None

    logger.info(
        "worker_started",
        threads=config.threads,
        sleep_ms=config.sleep_ms,
        stop_when_idle=config.stop_when_idle,
    )
    start = time.monotonic()
    try:
        with ThreadPoolExecutor(max_workers=config.threads) as executor:
            futures = [
                executor.submit(_worker_loop, i, processor, config, stop, stats, lock)
                for i in range(config.threads)
            ]
            for fut in futures:
                fut.result()
    except KeyboardInterrupt:
        stop.set()
        logger.info("worker_shutdown_signal")
    finally:
        if previous_handler is not None:
            signal.signal(signal.SIGTERM, previous_handler)

    logger.info(
        "worker_stopped",
        processed=stats.processed,
        recalculated=stats.recalculated,
        errors=stats.errors,
        duration_sec=round(time.monotonic() - start, 2),
    )
    return stats
