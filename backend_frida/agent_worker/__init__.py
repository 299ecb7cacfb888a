"""
Agent worker package: queues, the transaction processor and the worker loop.
"""

from backend_frida.agent_worker.processor import (
    FeatureSink,
    MatchingFieldExtractor,
    Processor,
    Scorer,
    ScorerResult,
)
from backend_frida.agent_worker.queue import InMemoryQueue
from backend_frida.agent_worker.runtime import (
    WorkerConfig,
    WorkerStats,
    build_processor,
    run_worker,
)

__all__ = [
    "FeatureSink",
    "InMemoryQueue",
    "MatchingFieldExtractor",
    "Processor",
    "Scorer",
    "ScorerResult",
    "WorkerConfig",
    "WorkerStats",
    "build_processor",
    "run_worker",
]
