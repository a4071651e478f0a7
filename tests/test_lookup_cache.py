"""Tests for the external lookup cache."""

import threading

import pytest

from conftest import CountingAdapter, authorities
from jurisdiction_engine.config import EngineConfig
from jurisdiction_engine.lookup_cache import (
    CacheStatus,
    ExternalLookupCache,
    normalize_query,
    query_hash,
)

QUERY = {"state": "TX", "zip": "77010", "city": "Houston", "number": 100, "street": "MAIN"}


# ── Hashing ──────────────────────────────────────────────────────────


def test_normalize_query_canonicalizes():
    assert normalize_query({"City": "  houston   heights ", "Zip": "77010", "unit": None, "x": ""}) == {
        "city": "HOUSTON HEIGHTS",
        "zip": "77010",
    }


def test_query_hash_ignores_key_order_case_and_nulls():
    a = query_hash({"state": "tx", "zip": "77010", "city": None})
    b = query_hash({"ZIP": "77010", "State": " TX "})
    assert a == b
    assert len(a) == 64
    assert a != query_hash({"state": "TX", "zip": "77011"})


# ── Hits and misses ──────────────────────────────────────────────────


def test_second_lookup_is_served_from_cache(cache: ExternalLookupCache):
    adapter = CountingAdapter(authorities("TX"))
    first = cache.lookup("vertex", "jurisdictions", QUERY, fetch=adapter)
    second = cache.lookup("vertex", "jurisdictions", dict(QUERY, city="HOUSTON"), fetch=adapter)

    assert adapter.calls == 1
    assert first.ok and first.external_call and not first.from_cache
    assert second.ok and second.from_cache and not second.external_call
    assert second.response == first.response


def test_adapter_receives_normalized_query(cache: ExternalLookupCache):
    adapter = CountingAdapter(authorities("TX"))
    cache.lookup("vertex", "jurisdictions", QUERY, fetch=adapter)
    assert adapter.queries[0]["city"] == "HOUSTON"
    assert adapter.queries[0]["query_type"] == "jurisdictions"


def test_providers_are_cached_separately(cache: ExternalLookupCache):
    adapter = CountingAdapter(authorities("TX"))
    cache.lookup("vertex", "jurisdictions", QUERY, fetch=adapter)
    cache.lookup("avalara", "jurisdictions", QUERY, fetch=adapter)
    assert adapter.calls == 2


def test_success_expires_after_ttl(cache: ExternalLookupCache, clock):
    adapter = CountingAdapter(authorities("TX"))
    cache.lookup("vertex", "jurisdictions", QUERY, fetch=adapter)
    clock.advance(86399)
    cache.lookup("vertex", "jurisdictions", QUERY, fetch=adapter)
    assert adapter.calls == 1
    clock.advance(2)
    cache.lookup("vertex", "jurisdictions", QUERY, fetch=adapter)
    assert adapter.calls == 2


def test_miss_without_adapter(cache: ExternalLookupCache):
    result = cache.lookup("vertex", "jurisdictions", QUERY)
    assert result.status is CacheStatus.ERROR
    assert result.error == "no lookup adapter"


# ── Failures ─────────────────────────────────────────────────────────


def test_adapter_exception_is_stored_and_read_as_miss(cache: ExternalLookupCache):
    failing = CountingAdapter(error=RuntimeError("boom"))
    result = cache.lookup("vertex", "jurisdictions", QUERY, fetch=failing)
    assert result.status is CacheStatus.ERROR
    assert "boom" in result.error
    assert cache.get("vertex", "jurisdictions", QUERY).status is CacheStatus.ERROR

    working = CountingAdapter(authorities("TX"))
    assert cache.lookup("vertex", "jurisdictions", QUERY, fetch=working).ok
    assert working.calls == 1


def test_unknown_status_is_an_error(cache: ExternalLookupCache):
    adapter = CountingAdapter(authorities("TX"), status="maybe")
    result = cache.lookup("vertex", "jurisdictions", QUERY, fetch=adapter)
    assert result.status is CacheStatus.ERROR


def test_rate_limited_suppresses_calls_until_expiry(cache: ExternalLookupCache, clock):
    limited = CountingAdapter(status="rate_limited")
    first = cache.lookup("vertex", "jurisdictions", QUERY, fetch=limited)
    assert first.status is CacheStatus.RATE_LIMITED

    clock.advance(299)
    second = cache.lookup("vertex", "jurisdictions", QUERY, fetch=limited)
    assert second.status is CacheStatus.RATE_LIMITED
    assert second.from_cache
    assert limited.calls == 1

    clock.advance(2)
    working = CountingAdapter(authorities("TX"))
    assert cache.lookup("vertex", "jurisdictions", QUERY, fetch=working).ok
    assert working.calls == 1


def test_timeout_returns_error_without_blocking(cache: ExternalLookupCache):
    gate = threading.Event()
    slow = CountingAdapter(authorities("TX"), gate=gate)
    try:
        result = cache.lookup("vertex", "jurisdictions", QUERY, fetch=slow, timeout=0.05)
        assert result.status is CacheStatus.ERROR
        assert "timed out" in result.error
    finally:
        gate.set()


# ── Concurrency ──────────────────────────────────────────────────────


def test_concurrent_identical_lookups_call_once(cache: ExternalLookupCache):
    gate = threading.Event()
    adapter = CountingAdapter(authorities("TX"), gate=gate)
    results = []

    def worker():
        results.append(cache.lookup("vertex", "jurisdictions", QUERY, fetch=adapter, timeout=5))

    threads = [threading.Thread(target=worker) for _ in range(6)]
    for t in threads:
        t.start()
    assert adapter.started.wait(timeout=5)
    gate.set()
    for t in threads:
        t.join()

    assert adapter.calls == 1
    assert len(results) == 6
    assert all(r.ok for r in results)
    assert sum(1 for r in results if r.external_call) == 1


def test_saturated_provider_returns_miss(clock):
    config = EngineConfig(max_in_flight_per_provider=1)
    gate = threading.Event()
    slow = CountingAdapter(authorities("TX"), gate=gate)
    other = CountingAdapter(authorities("TX"))

    with ExternalLookupCache(config, clock=clock) as cache:
        holder = threading.Thread(
            target=cache.lookup,
            args=("vertex", "jurisdictions", QUERY),
            kwargs={"fetch": slow, "timeout": 5},
        )
        holder.start()
        assert slow.started.wait(timeout=5)

        result = cache.lookup("vertex", "jurisdictions", dict(QUERY, zip="77011"), fetch=other)
        assert result.status is CacheStatus.ERROR
        assert result.error == "provider saturated"
        assert other.calls == 0

        # another provider is unaffected
        assert cache.lookup("avalara", "jurisdictions", QUERY, fetch=other).ok

        gate.set()
        holder.join()
        assert cache.statistics()["vertex"]["saturated"] == 1


# ── Maintenance ──────────────────────────────────────────────────────


def test_statistics_and_invalidate(cache: ExternalLookupCache):
    adapter = CountingAdapter(authorities("TX"))
    cache.lookup("vertex", "jurisdictions", QUERY, fetch=adapter)
    cache.lookup("vertex", "jurisdictions", QUERY, fetch=adapter)
    cache.lookup("avalara", "jurisdictions", QUERY, fetch=adapter)

    stats = cache.statistics()
    assert stats["vertex"]["hits"] == 1
    assert stats["vertex"]["misses"] == 1
    assert stats["vertex"]["calls"] == 1
    assert stats["vertex"]["entries"] == 1

    assert cache.invalidate("vertex") == 1
    assert len(cache) == 1
    assert cache.invalidate() == 1
    assert len(cache) == 0


def test_purge_expired(cache: ExternalLookupCache, clock):
    cache.lookup("vertex", "jurisdictions", QUERY, fetch=CountingAdapter(error=RuntimeError("x")))
    cache.lookup("vertex", "jurisdictions", dict(QUERY, zip="77011"), fetch=CountingAdapter(authorities("TX")))
    assert len(cache) == 2
    assert cache.purge_expired() == 1
    assert len(cache) == 1
