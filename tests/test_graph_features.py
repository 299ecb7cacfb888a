"""
Tests for build_graph_features and Feature serialization.
"""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from backend_frida.analysis_engine.graph_features import Feature, build_graph_features
from backend_frida.database.models import ConnectedTransaction, DirectConnection


def _by_name(features):
    return {f.name: f for f in features}


def test_empty_inputs():
    features = _by_name(build_graph_features([], []))
    assert features["connected_transaction_count"].value == 0
    assert features["direct_connection_count"].value == 0
    assert features["max_connected_confidence"].value == 0
    assert features["direct_connection_matchers"].value == []


def test_counts_and_confidence():
    connected = [
        ConnectedTransaction(transaction_id=2, path_matchers=["email"], path_values=["e"], depth=1, confidence=90),
        ConnectedTransaction(
            transaction_id=3, path_matchers=["email", "device"], path_values=["e", "d"], depth=2, confidence=72
        ),
    ]
    direct = [
        DirectConnection(transaction_id=2, matcher="email", confidence=90, importance=70),
        DirectConnection(transaction_id=2, matcher="phone", confidence=90, importance=80),
        DirectConnection(transaction_id=4, matcher="email", confidence=90, importance=70),
    ]
    features = _by_name(build_graph_features(connected, direct))
    assert features["connected_transaction_count"].value == 2
    assert features["direct_connection_count"].value == 3
    assert features["max_connected_confidence"].value == 90
    assert features["direct_connection_matchers"].value == ["email", "phone"]


@pytest.mark.parametrize(
    "value, type_name",
    [(3, "int"), (1.5, "double"), ("x", "string"), (True, "bool"), ([1, 2], "int_list"), (["a"], "string_list")],
)
def test_feature_to_dict(value, type_name):
    assert Feature("f", value).to_dict() == {"name": "f", "type": type_name, "value": value}


def test_datetime_feature_serializes_iso():
    ts = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    out = Feature("seen_at", ts).to_dict()
    assert out["type"] == "datetime"
    assert out["value"] == "2024-01-02T03:04:05+00:00"


def test_unsupported_feature_type():
    with pytest.raises(TypeError):
        Feature("bad", {"a": 1}).to_dict()
