"""
Matcher registry: (confidence, importance) per matcher name.

Values are copied onto a match node when it is first created; changing the
registry later does not touch existing nodes.
"""

from __future__ import annotations

from types import MappingProxyType
from typing import Mapping

from backend_frida.core.exceptions import ValidationError

MatcherConfig = tuple[int, int]
"""(confidence, importance), both integers in [0, 100]."""

DEFAULT_CONFIDENCE = 80
DEFAULT_IMPORTANCE = 50

DEFAULT_MATCHER_CONFIGS: Mapping[str, MatcherConfig] = MappingProxyType(
    {
        "customer.email": (100, 90),
        "billing.payment_details": (100, 80),
        "ip.address": (70, 60),
        "device.id": (90, 70),
        "phone.number": (95, 85),
    }
)
"""Built-in overrides for the common identity matchers."""


def _check_score(matcher: str, name: str, value: object) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{name} for matcher {matcher!r} must be an integer, got {value!r}")
    if not 0 <= value <= 100:
        raise ValidationError(f"{name} for matcher {matcher!r} must be in [0, 100], got {value}")
    return value


class MatcherRegistry:
    """Immutable matcher -> (confidence, importance) lookup with a system default."""

    def __init__(
        self,
        overrides: Mapping[str, MatcherConfig] | None = None,
        *,
        default: MatcherConfig = (DEFAULT_CONFIDENCE, DEFAULT_IMPORTANCE),
    ) -> None:
        self._default = (
            _check_score("<default>", "confidence", default[0]),
            _check_score("<default>", "importance", default[1]),
        )
        checked: dict[str, MatcherConfig] = {}
        for matcher, config in (overrides or {}).items():
            if not isinstance(matcher, str) or not matcher:
                raise ValidationError(f"matcher name must be a non-empty string, got {matcher!r}")
            try:
                confidence, importance = config
            except (TypeError, ValueError) as e:
                raise ValidationError(
                    f"config for matcher {matcher!r} must be (confidence, importance), got {config!r}"
                ) from e
            checked[matcher] = (
                _check_score(matcher, "confidence", confidence),
                _check_score(matcher, "importance", importance),
            )
        self._overrides: Mapping[str, MatcherConfig] = MappingProxyType(checked)

    @classmethod
    def with_defaults(cls) -> "MatcherRegistry":
        return cls(DEFAULT_MATCHER_CONFIGS)

    @property
    def overrides(self) -> Mapping[str, MatcherConfig]:
        return self._overrides

    @property
    def default(self) -> MatcherConfig:
        return self._default

    def config_for(self, matcher: str) -> MatcherConfig:
        return self._overrides.get(matcher, self._default)

    def __repr__(self) -> str:
        return f"MatcherRegistry(overrides={dict(self._overrides)!r}, default={self._default!r})"
