"""
Engine configuration.

Every tunable of the resolver, learner, cache and orchestrator lives on
one frozen dataclass. Values can be loaded from a YAML file, either as a
flat mapping or nested under a top-level ``engine:`` key:

    engine:
      learner_min_confidence: 0.6
      cache_ttl_seconds: 86400
      unresolved_fallback: zero
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path
from typing import Any, Union

import yaml

from jurisdiction_engine.exceptions import ConfigurationError

_FALLBACK_MODES = ("zero", "state")


@dataclass(frozen=True)
class EngineConfig:
    """Tunables for jurisdiction resolution and tax calculation."""

    # Pattern learner
    learner_min_confidence: float = 0.6
    learner_alpha: float = 0.1
    learner_default_confidence: float = 0.5
    learner_retire_below: float = 0.2

    # External lookup cache
    cache_ttl_seconds: int = 86400
    cache_failure_ttl_seconds: int = 300
    max_in_flight_per_provider: int = 4
    lookup_timeout_seconds: float = 5.0
    default_provider: str = "default"

    # Orchestrator
    unresolved_fallback: str = "zero"  # zero, state
    require_verified_exemptions: bool = False
    batch_workers: int = 4

    def __post_init__(self) -> None:
        for name in (
            "learner_min_confidence",
            "learner_alpha",
            "learner_default_confidence",
            "learner_retire_below",
        ):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ConfigurationError(f"{name} must be within [0, 1], got {value}")
        if self.learner_alpha == 0.0:
            raise ConfigurationError("learner_alpha must be greater than 0")
        for name in (
            "cache_ttl_seconds",
            "cache_failure_ttl_seconds",
            "max_in_flight_per_provider",
            "batch_workers",
        ):
            if getattr(self, name) < 1:
                raise ConfigurationError(f"{name} must be at least 1")
        if self.lookup_timeout_seconds <= 0:
            raise ConfigurationError("lookup_timeout_seconds must be positive")
        if self.unresolved_fallback not in _FALLBACK_MODES:
            raise ConfigurationError(
                f"unresolved_fallback must be one of {_FALLBACK_MODES}, "
                f"got {self.unresolved_fallback!r}"
            )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EngineConfig":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigurationError(f"Unknown configuration keys: {', '.join(unknown)}")
        return cls(**data)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def with_overrides(self, **overrides: Any) -> "EngineConfig":
        return replace(self, **overrides)


def load_config(path: Union[str, Path]) -> EngineConfig:
    """
    Load an EngineConfig from a YAML file.

    A missing file raises FileNotFoundError; malformed YAML propagates
    yaml.YAMLError; bad keys or values raise ConfigurationError.
    """
    with open(Path(path), encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise ConfigurationError(f"Configuration root must be a mapping: {path}")
    if "engine" in data:
        data = data["engine"] or {}
        if not isinstance(data, dict):
            raise ConfigurationError(f"'engine' section must be a mapping: {path}")
    return EngineConfig.from_dict(data)
