"""
Analysis engine: matcher registry, match node store, connection resolvers and
graph features.
"""

from backend_frida.analysis_engine.connections import (
    EdgeListGraph,
    StoreGraph,
    find_connected_transactions,
    get_direct_connections,
    resolve_connections,
)
from backend_frida.analysis_engine.graph_features import Feature, build_graph_features
from backend_frida.analysis_engine.match_store import MatchNodeStore
from backend_frida.analysis_engine.matcher_registry import (
    DEFAULT_MATCHER_CONFIGS,
    MatcherRegistry,
)

__all__ = [
    "DEFAULT_MATCHER_CONFIGS",
    "EdgeListGraph",
    "Feature",
    "MatchNodeStore",
    "MatcherRegistry",
    "StoreGraph",
    "build_graph_features",
    "find_connected_transactions",
    "get_direct_connections",
    "resolve_connections",
]
