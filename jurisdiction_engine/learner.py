"""
Confidence-scored jurisdiction patterns learned from external lookups.

When a provider reports the authorities for a locality, the mapping is
stored as a LearnedPattern keyed by (authority_name, authority_id).
Confidence starts at 0.5 and moves by an exponential moving average as
later lookups agree or disagree with the stored mapping:

    confidence' = confidence + alpha * (outcome - confidence)

so repeated agreement converges on 1.0 without ever overshooting it.
Patterns are never deleted; below the retirement floor they are kept
for audit but no longer matched.
"""

from __future__ import annotations

import logging
import threading
from collections import Counter
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from jurisdiction_engine.config import EngineConfig

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class LearnedPattern:
    """A learned authority -> jurisdiction mapping."""

    authority_name: str
    authority_id: str
    pattern_type: str = "discovered"
    confidence: float = 0.5
    pattern_data: dict[str, Any] = field(default_factory=dict)
    observations: int = 1
    agreements: int = 0
    discovered_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.authority_name, self.authority_id)

    @property
    def jurisdiction_codes(self) -> list[str]:
        return list(self.pattern_data.get("jurisdiction_codes", []))

    def satisfies(self, criteria: dict[str, Any]) -> bool:
        """Every criterion must equal (case-insensitively) the pattern's data."""
        for name, expected in criteria.items():
            if expected is None:
                continue
            actual = self.pattern_data.get(name)
            if actual is None:
                return False
            if str(actual).strip().upper() != str(expected).strip().upper():
                return False
        return True


def _normalize_key(authority_name: str, authority_id: str) -> tuple[str, str]:
    return (" ".join(authority_name.upper().split()), str(authority_id).strip())


class PatternLearner:
    """
    Thread-safe store of learned patterns.

    All read-modify-write operations run under one lock, so two
    concurrent outcomes for the same pattern are both applied.
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.config = config or EngineConfig()
        self._clock = clock
        self._lock = threading.Lock()
        self._patterns: dict[tuple[str, str], LearnedPattern] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._patterns)

    def get(self, authority_name: str, authority_id: str) -> Optional[LearnedPattern]:
        with self._lock:
            return self._patterns.get(_normalize_key(authority_name, authority_id))

    def all_patterns(self) -> list[LearnedPattern]:
        with self._lock:
            return list(self._patterns.values())

    def is_retired(self, pattern: LearnedPattern) -> bool:
        return pattern.confidence < self.config.learner_retire_below

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def learn(
        self,
        authority_name: str,
        authority_id: str,
        pattern_data: Optional[dict[str, Any]] = None,
        pattern_type: str = "discovered",
    ) -> LearnedPattern:
        """Insert a pattern at the default confidence; existing rows win."""
        key = _normalize_key(authority_name, authority_id)
        with self._lock:
            existing = self._patterns.get(key)
            if existing is not None:
                return existing
            pattern = self._insert(key, pattern_data, pattern_type)
        logger.info("Learned new jurisdiction pattern %s (%s)", key[0], key[1])
        return pattern

    def restore(self, pattern: LearnedPattern) -> LearnedPattern:
        """Load a previously persisted pattern as-is, replacing any row with its key."""
        key = _normalize_key(pattern.authority_name, pattern.authority_id)
        confidence = min(1.0, max(0.0, pattern.confidence))
        restored = replace(pattern, authority_name=key[0], authority_id=key[1], confidence=confidence)
        with self._lock:
            self._patterns[key] = restored
        return restored

    def record_outcome(
        self,
        authority_name: str,
        authority_id: str,
        agreed: bool,
    ) -> LearnedPattern:
        """
        Move a pattern's confidence toward 1.0 (agreed) or 0.0 (contradicted).

        An unknown pattern is created at the default confidence first.
        """
        key = _normalize_key(authority_name, authority_id)
        with self._lock:
            previous, updated = self._apply_outcome(key, agreed)
        self._log_retirement(previous, updated)
        return updated

    def observe(
        self,
        authority_name: str,
        authority_id: str,
        pattern_data: dict[str, Any],
    ) -> LearnedPattern:
        """
        Learn an unseen mapping, or reinforce/contradict a known one.

        Agreement means the observation reports the same jurisdiction
        codes as the stored pattern. Stored data is never overwritten.
        """
        key = _normalize_key(authority_name, authority_id)
        with self._lock:
            existing = self._patterns.get(key)
            if existing is None:
                pattern = self._insert(key, pattern_data, "discovered")
            else:
                agreed = sorted(existing.jurisdiction_codes) == sorted(
                    pattern_data.get("jurisdiction_codes", [])
                )
                previous, pattern = self._apply_outcome(key, agreed)
        if existing is None:
            logger.info("Learned new jurisdiction pattern %s (%s)", key[0], key[1])
        else:
            self._log_retirement(previous, pattern)
        return pattern

    # Callers hold self._lock.

    def _insert(
        self,
        key: tuple[str, str],
        pattern_data: Optional[dict[str, Any]],
        pattern_type: str,
    ) -> LearnedPattern:
        now = self._clock()
        pattern = LearnedPattern(
            authority_name=key[0],
            authority_id=key[1],
            pattern_type=pattern_type,
            confidence=self.config.learner_default_confidence,
            pattern_data=dict(pattern_data or {}),
            discovered_at=now,
            updated_at=now,
        )
        self._patterns[key] = pattern
        return pattern

    def _apply_outcome(
        self, key: tuple[str, str], agreed: bool
    ) -> tuple[LearnedPattern, LearnedPattern]:
        pattern = self._patterns.get(key)
        if pattern is None:
            pattern = LearnedPattern(
                authority_name=key[0],
                authority_id=key[1],
                confidence=self.config.learner_default_confidence,
                observations=0,
                discovered_at=self._clock(),
            )
        outcome = 1.0 if agreed else 0.0
        confidence = pattern.confidence + self.config.learner_alpha * (outcome - pattern.confidence)
        confidence = min(1.0, max(0.0, confidence))
        updated = replace(
            pattern,
            confidence=confidence,
            observations=pattern.observations + 1,
            agreements=pattern.agreements + (1 if agreed else 0),
            updated_at=self._clock(),
        )
        self._patterns[key] = updated
        return pattern, updated

    def _log_retirement(self, previous: LearnedPattern, updated: LearnedPattern) -> None:
        if self.is_retired(updated) and not self.is_retired(previous):
            logger.warning(
                "Pattern %s (%s) retired at confidence %.3f",
                updated.authority_name,
                updated.authority_id,
                updated.confidence,
            )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def best_match(
        self,
        criteria: dict[str, Any],
        min_confidence: Optional[float] = None,
    ) -> Optional[LearnedPattern]:
        """
        Highest-confidence live pattern whose data satisfies ``criteria``.

        Ties go to the most recently updated pattern.
        """
        floor = self.config.learner_min_confidence if min_confidence is None else min_confidence
        candidates = [
            p
            for p in self.all_patterns()
            if not self.is_retired(p) and p.confidence >= floor and p.satisfies(criteria)
        ]
        if not candidates:
            return None
        epoch = datetime.min.replace(tzinfo=timezone.utc)
        return max(candidates, key=lambda p: (p.confidence, p.updated_at or epoch))

    def statistics(self) -> dict[str, Any]:
        """Totals, per-type counts and a 0.1-bucket confidence histogram."""
        patterns = self.all_patterns()
        types = Counter(p.pattern_type for p in patterns)
        buckets = Counter(round(p.confidence, 1) for p in patterns)
        return {
            "total_patterns": len(patterns),
            "retired_patterns": sum(1 for p in patterns if self.is_retired(p)),
            "pattern_types": dict(types),
            "confidence_distribution": {k: buckets[k] for k in sorted(buckets)},
        }
