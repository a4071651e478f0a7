"""Tests for the address resolver's tiers."""

import pytest

from conftest import CountingAdapter, authorities
from jurisdiction_engine.addresses import Address, AddressRange, AddressRangeIndex
from jurisdiction_engine.config import EngineConfig
from jurisdiction_engine.directory import JurisdictionDirectory, JurisdictionType
from jurisdiction_engine.exceptions import ValidationError
from jurisdiction_engine.learner import LearnedPattern, PatternLearner
from jurisdiction_engine.resolver import AddressResolver, ResolutionConfidence


@pytest.fixture
def learner(config, clock) -> PatternLearner:
    return PatternLearner(config, clock=clock)


@pytest.fixture
def resolver(directory, index, learner, cache, config) -> AddressResolver:
    return AddressResolver(directory, index, learner, cache, config)


def _addr(line1="1200 Main St", city="Houston", zip_code="77002"):
    return Address.parse(line1, city, "TX", zip_code)


def test_keeps_injected_empty_learner_and_cache(resolver: AddressResolver, learner, cache):
    assert len(learner) == 0
    assert len(cache) == 0
    assert resolver.learner is learner
    assert resolver.cache is cache


# ── Exact tier ───────────────────────────────────────────────────────


def test_exact_match(resolver: AddressResolver, ids):
    result = resolver.resolve(_addr())
    assert result.confidence is ResolutionConfidence.EXACT
    assert result.is_resolved
    assert result.score == 1.0
    assert result.source == "address_range:1"
    assert result.jurisdiction_ids == (ids["TX"], ids["HARRIS"], ids["HOUSTON"], ids["METRO"])
    assert result.external_calls == 0


def test_exact_match_includes_additional_jurisdictions(resolver: AddressResolver, ids):
    result = resolver.resolve(_addr("151 Elm", zip_code="77003"))
    assert result.jurisdiction_ids == (ids["TX"], ids["HARRIS"], ids["ESD7"])


def test_exact_match_never_calls_adapter(resolver: AddressResolver):
    adapter = CountingAdapter(authorities("TX"))
    resolver.resolve(_addr(), lookup=adapter)
    assert adapter.calls == 0


def test_overlapping_ranges_warn(directory, ids, learner, cache, config):
    index = AddressRangeIndex(
        [
            AddressRange(1, "TX", "201", "MAIN", 1, 9999, "77002", state_jurisdiction_id=ids["TX"]),
            AddressRange(2, "TX", "201", "MAIN", 1000, 1999, "77002", state_jurisdiction_id=ids["TX"],
                         city_jurisdiction_id=ids["HOUSTON"]),
        ]
    )
    result = AddressResolver(directory, index, learner, cache, config).resolve(_addr())
    assert result.source == "address_range:2"
    assert any("overlapping" in w for w in result.warnings)


# ── Learned tier ─────────────────────────────────────────────────────


def test_learned_pattern_used_above_floor(resolver: AddressResolver, learner, ids):
    learner.restore(
        LearnedPattern(
            "Harris County",
            "A-HARRIS",
            confidence=0.8,
            pattern_data={"state": "TX", "zip": "77010", "jurisdiction_codes": ["HARRIS", "TX"]},
        )
    )
    result = resolver.resolve(_addr("500 Louisiana St", zip_code="77010"))
    assert result.confidence is ResolutionConfidence.LEARNED
    assert result.jurisdiction_ids == (ids["TX"], ids["HARRIS"])
    assert result.score == 0.8
    assert result.source == "pattern:HARRIS COUNTY:A-HARRIS"


def test_learned_pattern_by_city(resolver: AddressResolver, learner):
    learner.restore(
        LearnedPattern(
            "Houston", "A-H", confidence=0.7,
            pattern_data={"state": "TX", "city": "HOUSTON", "jurisdiction_codes": ["TX", "HOUSTON"]},
        )
    )
    result = resolver.resolve(_addr("500 Louisiana St", zip_code="77010"))
    assert result.confidence is ResolutionConfidence.LEARNED


def test_learned_pattern_below_floor_ignored(resolver: AddressResolver, learner):
    learner.restore(
        LearnedPattern(
            "Harris County", "A-HARRIS", confidence=0.55,
            pattern_data={"state": "TX", "zip": "77010", "jurisdiction_codes": ["TX"]},
        )
    )
    result = resolver.resolve(_addr("500 Louisiana St", zip_code="77010"))
    assert result.confidence is ResolutionConfidence.UNRESOLVED


# ── External tier ────────────────────────────────────────────────────


def test_external_lookup_resolves_and_learns(resolver: AddressResolver, learner, ids):
    adapter = CountingAdapter(authorities("TX", "HARRIS", "UNKNOWN"))
    result = resolver.resolve(_addr("500 Louisiana St", zip_code="77010"), lookup=adapter, provider="vertex")

    assert result.confidence is ResolutionConfidence.EXTERNAL
    assert result.jurisdiction_ids == (ids["TX"], ids["HARRIS"])
    assert result.source == "external:vertex"
    assert result.external_calls == 1
    assert result.score == 0.5
    assert len(learner) == 3
    assert learner.get("HARRIS Authority", "A-HARRIS").confidence == 0.5


def test_repeat_external_lookup_uses_cache(resolver: AddressResolver, learner):
    adapter = CountingAdapter(authorities("TX", "HARRIS"))
    address = _addr("500 Louisiana St", zip_code="77010")
    resolver.resolve(address, lookup=adapter)
    second = resolver.resolve(address, lookup=adapter)

    assert adapter.calls == 1
    assert second.confidence is ResolutionConfidence.EXTERNAL
    assert second.external_calls == 0
    # cache hits do not count as fresh agreement
    assert learner.get("TX Authority", "A-TX").observations == 1


def test_external_without_known_codes_is_unresolved(resolver: AddressResolver):
    adapter = CountingAdapter(authorities("ZZZ"))
    result = resolver.resolve(_addr("500 Louisiana St", zip_code="77010"), lookup=adapter)
    assert result.confidence is ResolutionConfidence.UNRESOLVED
    assert any("no known jurisdictions" in w for w in result.warnings)


def test_external_failure_is_unresolved(resolver: AddressResolver):
    adapter = CountingAdapter(error=ConnectionError("down"))
    result = resolver.resolve(_addr("500 Louisiana St", zip_code="77010"), lookup=adapter)
    assert result.confidence is ResolutionConfidence.UNRESOLVED
    assert result.lookup_status == "error"
    assert result.jurisdiction_ids == ()


def test_no_adapter_is_unresolved(resolver: AddressResolver):
    result = resolver.resolve(_addr("500 Louisiana St", zip_code="77010"))
    assert not result.is_resolved
    assert result.source == "none"


# ── Validation and orphans ───────────────────────────────────────────


def test_invalid_address_raises_before_lookup(resolver: AddressResolver):
    adapter = CountingAdapter(authorities("TX"))
    with pytest.raises(ValidationError):
        resolver.resolve(Address("12", "MAIN", "TX", "bad"), lookup=adapter)
    assert adapter.calls == 0


def test_orphan_jurisdictions_are_flagged(learner, cache):
    config = EngineConfig()
    directory = JurisdictionDirectory()
    tx = directory.add("TX", "Texas", JurisdictionType.STATE, "TX")
    lost = directory.add("LOST", "Lost District", JurisdictionType.SPECIAL, "TX")
    index = AddressRangeIndex(
        [AddressRange(1, "TX", "201", "MAIN", 1, 9999, "77002",
                      state_jurisdiction_id=tx.id, additional_jurisdiction_ids=(lost.id,))]
    )
    result = AddressResolver(directory, index, learner, cache, config).resolve(_addr())
    assert result.orphaned_ids == (lost.id,)
    assert any("LOST" in w for w in result.warnings)
