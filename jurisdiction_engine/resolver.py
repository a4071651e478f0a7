"""
Address -> jurisdiction resolution.

Resolution runs three tiers and stops at the first that answers:

1. exact     - an imported address range covers the house number
2. learned   - a learned pattern for the ZIP (or city) above the floor
3. external  - the injected provider lookup, through the lookup cache

An address none of them can place resolves as ``unresolved``. That is
a valid result, not an error; the orchestrator turns it into a flagged
calculation for manual review.

Providers are expected to answer with

    {"authorities": [{"name": ..., "id": ..., "code": ..., "type": ...}]}

where ``code`` is the jurisdiction code within the address's state.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from jurisdiction_engine.addresses import (
    Address,
    AddressRangeIndex,
    NormalizedAddress,
    normalize_address,
)
from jurisdiction_engine.config import EngineConfig
from jurisdiction_engine.directory import JurisdictionDirectory
from jurisdiction_engine.learner import LearnedPattern, PatternLearner
from jurisdiction_engine.lookup_cache import ExternalLookupCache, LookupAdapter

logger = logging.getLogger(__name__)

QUERY_TYPE = "jurisdictions"


class ResolutionConfidence(Enum):
    EXACT = "exact"
    LEARNED = "learned"
    EXTERNAL = "external"
    UNRESOLVED = "unresolved"


@dataclass
class ResolvedJurisdictions:
    """Jurisdictions governing an address, and how they were found."""

    confidence: ResolutionConfidence
    jurisdiction_ids: tuple[int, ...]
    address: NormalizedAddress
    score: float = 0.0
    source: str = ""
    external_calls: int = 0
    lookup_status: Optional[str] = None
    orphaned_ids: tuple[int, ...] = ()
    warnings: list[str] = field(default_factory=list)

    @property
    def is_resolved(self) -> bool:
        return self.confidence is not ResolutionConfidence.UNRESOLVED


class AddressResolver:
    """Resolve service addresses against the index, learner and cache."""

    def __init__(
        self,
        directory: JurisdictionDirectory,
        index: AddressRangeIndex,
        learner: Optional[PatternLearner] = None,
        cache: Optional[ExternalLookupCache] = None,
        config: Optional[EngineConfig] = None,
    ) -> None:
        self.config = config or EngineConfig()
        self.directory = directory
        self.index = index
        self.learner = learner if learner is not None else PatternLearner(self.config)
        self.cache = cache if cache is not None else ExternalLookupCache(self.config)

    def resolve(
        self,
        address: Address,
        lookup: Optional[LookupAdapter] = None,
        provider: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> ResolvedJurisdictions:
        """
        Resolve ``address`` to jurisdiction ids.

        ``lookup`` is only consulted when neither the index nor the
        learner can place the address, and is never called twice for
        the same normalized query within the cache TTL.
        """
        normalized = normalize_address(address)

        result = self._from_index(normalized)
        if result is None:
            result = self._from_learner(normalized)
        if result is None:
            result = self._from_external(normalized, lookup, provider, timeout)

        orphans = tuple(j for j in result.jurisdiction_ids if self.directory.is_orphaned(j))
        if orphans:
            result.orphaned_ids = orphans
            result.warnings.append(
                "Jurisdictions without a state ancestor: "
                + ", ".join(self.directory.get(j).code for j in orphans)
            )
        logger.debug(
            "Resolved %s %s %s via %s (%s)",
            normalized.number,
            normalized.street_name,
            normalized.zip_code,
            result.confidence.value,
            result.source,
        )
        return result

    # ------------------------------------------------------------------
    # Tiers
    # ------------------------------------------------------------------

    def _from_index(self, address: NormalizedAddress) -> Optional[ResolvedJurisdictions]:
        match = self.index.find(address)
        if match is None:
            return None
        warnings: list[str] = []
        if match.ambiguous:
            warnings.append(
                f"{len(match.candidates)} overlapping address ranges matched; "
                f"used range {match.range.id}"
            )
        ids = [j for j in match.range.jurisdiction_ids if j in self.directory]
        return ResolvedJurisdictions(
            confidence=ResolutionConfidence.EXACT,
            jurisdiction_ids=tuple(self.directory.sort_ids(ids)),
            address=address,
            score=1.0,
            source=f"address_range:{match.range.id}",
            warnings=warnings,
        )

    def _from_learner(self, address: NormalizedAddress) -> Optional[ResolvedJurisdictions]:
        criteria: list[dict[str, Any]] = [{"state": address.state, "zip": address.zip5}]
        if address.city:
            criteria.append({"state": address.state, "city": address.city})

        for criterion in criteria:
            pattern = self.learner.best_match(criterion)
            if pattern is None:
                continue
            ids = self._map_codes(address.state, pattern.jurisdiction_codes)
            if not ids:
                continue
            return ResolvedJurisdictions(
                confidence=ResolutionConfidence.LEARNED,
                jurisdiction_ids=tuple(ids),
                address=address,
                score=pattern.confidence,
                source=f"pattern:{pattern.authority_name}:{pattern.authority_id}",
            )
        return None

    def _from_external(
        self,
        address: NormalizedAddress,
        lookup: Optional[LookupAdapter],
        provider: Optional[str],
        timeout: Optional[float],
    ) -> ResolvedJurisdictions:
        unresolved = ResolvedJurisdictions(
            confidence=ResolutionConfidence.UNRESOLVED,
            jurisdiction_ids=(),
            address=address,
            source="none",
        )
        if lookup is None:
            return unresolved

        provider = provider or self.config.default_provider
        query = {
            "state": address.state,
            "zip": address.zip_code,
            "city": address.city,
            "number": address.number,
            "street": address.street_name,
            "pre_directional": address.pre_directional,
            "suffix": address.suffix,
        }
        result = self.cache.lookup(provider, QUERY_TYPE, query, fetch=lookup, timeout=timeout)
        unresolved.external_calls = 1 if result.external_call else 0
        unresolved.lookup_status = result.status.value
        unresolved.source = f"external:{provider}"
        if not result.ok:
            unresolved.warnings.append(f"External lookup failed: {result.error or result.status.value}")
            return unresolved

        authorities = self._authorities(result.response)
        codes = [a["code"] for a in authorities]
        ids = self._map_codes(address.state, codes)
        if not ids:
            unresolved.warnings.append("External lookup returned no known jurisdictions")
            return unresolved

        if result.external_call:
            self._learn(address, authorities, codes)

        return ResolvedJurisdictions(
            confidence=ResolutionConfidence.EXTERNAL,
            jurisdiction_ids=tuple(ids),
            address=address,
            score=self.config.learner_default_confidence,
            source=f"external:{provider}",
            external_calls=unresolved.external_calls,
            lookup_status=result.status.value,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _authorities(response: Any) -> list[dict[str, str]]:
        if not isinstance(response, dict):
            return []
        authorities = []
        for item in response.get("authorities") or []:
            if not isinstance(item, dict) or not item.get("code"):
                continue
            authorities.append(
                {
                    "name": str(item.get("name") or item["code"]),
                    "id": str(item.get("id") or item["code"]),
                    "code": str(item["code"]).strip().upper(),
                    "type": str(item.get("type") or ""),
                }
            )
        return authorities

    def _map_codes(self, state: str, codes: list[str]) -> list[int]:
        ids: list[int] = []
        for code in codes:
            jurisdiction = self.directory.by_code(state, code)
            if jurisdiction is None:
                logger.warning("Unknown jurisdiction code %s in %s", code, state)
                continue
            ids.append(jurisdiction.id)
        return self.directory.sort_ids(ids)

    def _learn(
        self,
        address: NormalizedAddress,
        authorities: list[dict[str, str]],
        codes: list[str],
    ) -> list[LearnedPattern]:
        learned = []
        for authority in authorities:
            data = {
                "state": address.state,
                "zip": address.zip5,
                "city": address.city,
                "jurisdiction_code": authority["code"],
                "jurisdiction_type": authority["type"],
                "jurisdiction_codes": sorted(codes),
            }
            learned.append(self.learner.observe(authority["name"], authority["id"], data))
        return learned
