"""
Cache for third-party geocoding / tax-authority lookups.

The engine never talks to a network itself. Callers inject a lookup
adapter with the signature

    adapter(provider, query) -> (response, status, latency_ms)

and this module memoizes its answers by (provider, query_type, sha256
of the normalized query). Identical normalized queries issued within
the TTL reach the adapter only once, including concurrent ones.

Failure bookkeeping:
- ``error`` (adapter exception, bad status or timeout) is stored for
  audit and always read as a miss.
- ``rate_limited`` suppresses new calls until its short expiry.
- A provider already running ``max_in_flight_per_provider`` lookups
  returns a miss immediately instead of queueing.
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Optional

from jurisdiction_engine.config import EngineConfig
from jurisdiction_engine.exceptions import ExternalLookupFailure

logger = logging.getLogger(__name__)

LookupAdapter = Callable[[str, dict[str, Any]], tuple[Any, str, float]]


class CacheStatus(Enum):
    SUCCESS = "success"
    ERROR = "error"
    RATE_LIMITED = "rate_limited"


@dataclass(frozen=True)
class ExternalQueryCacheEntry:
    provider: str
    query_type: str
    query_hash: str
    query: dict[str, Any]
    response: Any
    status: CacheStatus
    called_at: datetime
    expires_at: datetime
    latency_ms: float = 0.0
    error: Optional[str] = None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass
class LookupResult:
    """Outcome of a cache lookup, as seen by the resolver."""

    response: Any
    status: CacheStatus
    from_cache: bool
    external_call: bool
    cache_key: tuple[str, str, str]
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status is CacheStatus.SUCCESS


def _normalize_value(value: Any) -> Any:
    if isinstance(value, str):
        return " ".join(value.upper().split())
    if isinstance(value, dict):
        return normalize_query(value)
    if isinstance(value, (list, tuple)):
        return [_normalize_value(v) for v in value]
    return value


def normalize_query(params: dict[str, Any]) -> dict[str, Any]:
    """Lowercase keys, drop None/empty values, canonicalize strings."""
    normalized: dict[str, Any] = {}
    for key, value in params.items():
        if value is None or value == "":
            continue
        normalized[str(key).strip().lower()] = _normalize_value(value)
    return normalized


def query_hash(params: dict[str, Any]) -> str:
    """Deterministic SHA-256 of the normalized query parameters."""
    canonical = json.dumps(
        normalize_query(params), sort_keys=True, separators=(",", ":"), default=str
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ExternalLookupCache:
    """
    TTL cache in front of an injected lookup adapter.

    Entries are upserted last-writer-wins. Lookups run on a private
    thread pool so a slow provider can be abandoned after ``timeout``
    without blocking the calculation that asked.
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        clock: Callable[[], datetime] = _utcnow,
        max_workers: Optional[int] = None,
    ) -> None:
        self.config = config or EngineConfig()
        self._clock = clock
        self._lock = threading.RLock()
        self._entries: dict[tuple[str, str, str], ExternalQueryCacheEntry] = {}
        self._in_flight: dict[tuple[str, str, str], Future] = {}
        self._semaphores: dict[str, threading.BoundedSemaphore] = {}
        self._stats: dict[str, dict[str, int]] = {}
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers or self.config.max_in_flight_per_provider * 4,
            thread_name_prefix="tax-lookup",
        )

    def close(self) -> None:
        self._executor.shutdown(wait=False)

    def __enter__(self) -> "ExternalLookupCache":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Bookkeeping helpers
    # ------------------------------------------------------------------

    def _bump(self, provider: str, counter: str) -> None:
        stats = self._stats.setdefault(
            provider,
            {"hits": 0, "misses": 0, "calls": 0, "errors": 0, "rate_limited": 0, "saturated": 0},
        )
        stats[counter] += 1

    def _semaphore(self, provider: str) -> threading.BoundedSemaphore:
        sem = self._semaphores.get(provider)
        if sem is None:
            sem = threading.BoundedSemaphore(self.config.max_in_flight_per_provider)
            self._semaphores[provider] = sem
        return sem

    def _store(
        self,
        key: tuple[str, str, str],
        query: dict[str, Any],
        response: Any,
        status: CacheStatus,
        latency_ms: float,
        error: Optional[str] = None,
    ) -> ExternalQueryCacheEntry:
        now = self._clock()
        if status is CacheStatus.SUCCESS:
            ttl = self.config.cache_ttl_seconds
        elif status is CacheStatus.RATE_LIMITED:
            ttl = self.config.cache_failure_ttl_seconds
        else:
            ttl = 0
        entry = ExternalQueryCacheEntry(
            provider=key[0],
            query_type=key[1],
            query_hash=key[2],
            query=query,
            response=response,
            status=status,
            called_at=now,
            expires_at=now + timedelta(seconds=ttl),
            latency_ms=latency_ms,
            error=error,
        )
        with self._lock:
            self._entries[key] = entry
        return entry

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def get(self, provider: str, query_type: str, params: dict[str, Any]) -> Optional[ExternalQueryCacheEntry]:
        """Raw entry for a query, expired or not."""
        return self._entries.get((provider, query_type, query_hash(params)))

    def lookup(
        self,
        provider: str,
        query_type: str,
        params: dict[str, Any],
        fetch: Optional[LookupAdapter] = None,
        timeout: Optional[float] = None,
    ) -> LookupResult:
        """
        Return a cached response or call ``fetch`` on a miss.

        Never raises for provider problems: failures come back as a
        LookupResult with a non-success status.
        """
        query = normalize_query(params)
        key = (provider, query_type, query_hash(query))
        timeout = self.config.lookup_timeout_seconds if timeout is None else timeout
        now = self._clock()

        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and not entry.is_expired(now):
                if entry.status is CacheStatus.SUCCESS:
                    self._bump(provider, "hits")
                    logger.debug("Lookup cache hit for %s/%s", provider, query_type)
                    return LookupResult(entry.response, entry.status, True, False, key)
                if entry.status is CacheStatus.RATE_LIMITED:
                    self._bump(provider, "rate_limited")
                    return LookupResult(
                        None, entry.status, True, False, key, "provider rate limited"
                    )

            self._bump(provider, "misses")
            if fetch is None:
                return LookupResult(None, CacheStatus.ERROR, False, False, key, "no lookup adapter")

            future = self._in_flight.get(key)
            owner = future is None
            if owner:
                sem = self._semaphore(provider)
                if not sem.acquire(blocking=False):
                    self._bump(provider, "saturated")
                    logger.warning("Provider %s saturated; skipping lookup", provider)
                    return LookupResult(
                        None, CacheStatus.ERROR, False, False, key, "provider saturated"
                    )
                self._bump(provider, "calls")
                future = self._executor.submit(self._call, fetch, key, query)
                self._in_flight[key] = future
                future.add_done_callback(lambda _f, k=key, s=sem: self._finish(k, s))

        try:
            entry = future.result(timeout=timeout)
        except FutureTimeout:
            error = f"timed out after {timeout}s"
            logger.warning("Lookup via %s %s", provider, error)
            if owner:
                with self._lock:
                    self._bump(provider, "errors")
                    current = self._entries.get(key)
                    if current is None or current.status is not CacheStatus.SUCCESS:
                        self._store(key, query, None, CacheStatus.ERROR, timeout * 1000, error)
            return LookupResult(None, CacheStatus.ERROR, False, owner, key, error)

        return LookupResult(
            entry.response, entry.status, not owner, owner, key, entry.error
        )

    def _finish(self, key: tuple[str, str, str], sem: threading.BoundedSemaphore) -> None:
        with self._lock:
            self._in_flight.pop(key, None)
        sem.release()

    def _call(
        self,
        fetch: LookupAdapter,
        key: tuple[str, str, str],
        query: dict[str, Any],
    ) -> ExternalQueryCacheEntry:
        provider = key[0]
        started = time.perf_counter()
        try:
            try:
                response, status, latency_ms = fetch(provider, dict(query, query_type=key[1]))
            except Exception as e:
                raise ExternalLookupFailure(provider, str(e)) from e
            try:
                cache_status = CacheStatus(status)
            except ValueError:
                raise ExternalLookupFailure(provider, f"unknown status {status!r}") from None
        except ExternalLookupFailure as e:
            elapsed = (time.perf_counter() - started) * 1000
            logger.warning("%s", e)
            with self._lock:
                self._bump(provider, "errors")
            return self._store(key, query, None, CacheStatus.ERROR, elapsed, e.reason)

        if cache_status is CacheStatus.RATE_LIMITED:
            logger.warning("Provider %s rate limited the lookup", provider)
        elif cache_status is CacheStatus.ERROR:
            with self._lock:
                self._bump(provider, "errors")
        return self._store(key, query, response, cache_status, float(latency_ms or 0.0))

    def invalidate(self, provider: Optional[str] = None) -> int:
        """Drop all entries (or those of one provider). Returns count removed."""
        with self._lock:
            keys = [k for k in self._entries if provider is None or k[0] == provider]
            for k in keys:
                del self._entries[k]
        return len(keys)

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [k for k, e in self._entries.items() if e.is_expired(now)]
            for k in expired:
                del self._entries[k]
        return len(expired)

    def statistics(self) -> dict[str, dict[str, int]]:
        with self._lock:
            stats = {p: dict(s) for p, s in self._stats.items()}
            for provider in stats:
                stats[provider]["entries"] = sum(1 for k in self._entries if k[0] == provider)
        return stats

    def __len__(self) -> int:
        return len(self._entries)
