"""
Graph features for downstream scoring.

Turns resolver output into named Feature values. Pure: no I/O, no logging,
empty inputs are fine.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Sequence

from backend_frida.database.models import ConnectedTransaction, DirectConnection


def _type_name(value: Any) -> str:
    if isinstance(value, bool):
        return "bool"
    if isinstance(value, int):
        return "int"
    if isinstance(value, float):
        return "double"
    if isinstance(value, str):
        return "string"
    if isinstance(value, datetime):
        return "datetime"
    if isinstance(value, (list, tuple)):
        inner = {_type_name(v) for v in value}
        return f"{inner.pop()}_list" if len(inner) == 1 else "list"
    raise TypeError(f"unsupported feature value type: {type(value).__name__}")


@dataclass(frozen=True)
class Feature:
    """Named scalar or list value handed to a scorer."""

    name: str
    value: Any

    @property
    def type(self) -> str:
        return _type_name(self.value)

    def to_dict(self) -> dict[str, Any]:
        value = self.value.isoformat() if isinstance(self.value, datetime) else self.value
        if isinstance(value, tuple):
            value = list(value)
        return {"name": self.name, "type": self.type, "value": value}


def build_graph_features(
    connected: Sequence[ConnectedTransaction],
    direct: Sequence[DirectConnection],
) -> list[Feature]:
    """
    Features: connected_transaction_count, direct_connection_count,
    max_connected_confidence (0 when nothing is connected) and
    direct_connection_matchers (sorted distinct matcher names).
    """
    return [
        Feature("connected_transaction_count", len(connected)),
        Feature("direct_connection_count", len(direct)),
        Feature("max_connected_confidence", max((c.confidence for c in connected), default=0)),
        Feature("direct_connection_matchers", sorted({d.matcher for d in direct})),
    ]
