"""Shared fixtures: a small Houston, TX directory with ranges and rates."""

import threading
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Optional

import pytest

from jurisdiction_engine.addresses import AddressRange, AddressRangeIndex, Parity
from jurisdiction_engine.config import EngineConfig
from jurisdiction_engine.directory import JurisdictionDirectory, JurisdictionType
from jurisdiction_engine.exemptions import ExemptionEvaluator
from jurisdiction_engine.lookup_cache import ExternalLookupCache
from jurisdiction_engine.orchestrator import TaxEngine
from jurisdiction_engine.rates import RateCatalog, RateType, TaxRate

AS_OF = date(2024, 6, 15)


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime(2024, 6, 15, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class CountingAdapter:
    """
    Stand-in for a provider client. Counts calls and can be held open
    on an event to simulate a slow provider.
    """

    def __init__(
        self,
        response: Any = None,
        status: str = "success",
        error: Optional[Exception] = None,
        gate: Optional[threading.Event] = None,
    ) -> None:
        self.response = response
        self.status = status
        self.error = error
        self.gate = gate
        self.started = threading.Event()
        self.calls = 0
        self.queries: list[dict[str, Any]] = []
        self._lock = threading.Lock()

    def __call__(self, provider: str, query: dict[str, Any]) -> tuple[Any, str, float]:
        with self._lock:
            self.calls += 1
            self.queries.append(query)
        self.started.set()
        if self.gate is not None:
            self.gate.wait(timeout=5)
        if self.error is not None:
            raise self.error
        return self.response, self.status, 12.5


def authorities(*codes: str) -> dict[str, Any]:
    return {
        "authorities": [
            {"name": f"{code} Authority", "id": f"A-{code}", "code": code, "type": "local"}
            for code in codes
        ]
    }


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def config() -> EngineConfig:
    return EngineConfig()


@pytest.fixture
def directory() -> JurisdictionDirectory:
    d = JurisdictionDirectory()
    tx = d.add("TX", "Texas", JurisdictionType.STATE, "TX")
    harris = d.add("HARRIS", "Harris County", JurisdictionType.COUNTY, "TX", parent_id=tx.id)
    d.add("HOUSTON", "City of Houston", JurisdictionType.CITY, "TX", parent_id=harris.id)
    d.add("METRO", "Houston METRO", JurisdictionType.TRANSIT, "TX", parent_id=harris.id)
    d.add("ESD7", "Harris County ESD 7", JurisdictionType.SPECIAL, "TX", parent_id=harris.id)
    return d


@pytest.fixture
def ids(directory: JurisdictionDirectory) -> dict[str, int]:
    return {j.code: j.id for j in directory}


@pytest.fixture
def index(ids: dict[str, int]) -> AddressRangeIndex:
    return AddressRangeIndex(
        [
            AddressRange(
                id=1,
                state="TX",
                county_code="201",
                street_name="MAIN",
                address_from=1000,
                address_to=1999,
                zip5="77002",
                suffix="ST",
                state_jurisdiction_id=ids["TX"],
                county_jurisdiction_id=ids["HARRIS"],
                city_jurisdiction_id=ids["HOUSTON"],
                transit_jurisdiction_id=ids["METRO"],
            ),
            AddressRange(
                id=2,
                state="TX",
                county_code="201",
                street_name="ELM",
                address_from=101,
                address_to=199,
                zip5="77003",
                parity=Parity.ODD,
                state_jurisdiction_id=ids["TX"],
                county_jurisdiction_id=ids["HARRIS"],
                additional_jurisdiction_ids=(ids["ESD7"],),
            ),
        ]
    )


def percentage_rate(
    rate_id: int,
    jurisdiction_id: int,
    pct: str,
    tax_type: str = "sales",
    **kwargs: Any,
) -> TaxRate:
    kwargs.setdefault("effective_date", date(2020, 1, 1))
    kwargs.setdefault("tax_name", f"{tax_type.title()} Tax {rate_id}")
    return TaxRate(
        id=rate_id,
        jurisdiction_id=jurisdiction_id,
        tax_type=tax_type,
        rate_type=RateType.PERCENTAGE,
        percentage_rate=Decimal(pct),
        **kwargs,
    )


@pytest.fixture
def catalog(ids: dict[str, int]) -> RateCatalog:
    # TX 6.25% + Houston 1% + METRO 1% = 8.25% on Main St
    return RateCatalog(
        [
            percentage_rate(1, ids["TX"], "0.0625", tax_name="Texas State Sales Tax"),
            percentage_rate(2, ids["HOUSTON"], "0.01", tax_name="Houston City Sales Tax"),
            percentage_rate(3, ids["METRO"], "0.01", tax_name="METRO Transit Tax"),
        ]
    )


@pytest.fixture
def cache(config: EngineConfig, clock: FakeClock):
    c = ExternalLookupCache(config, clock=clock)
    yield c
    c.close()


@pytest.fixture
def engine(directory, index, catalog, cache, config, clock) -> TaxEngine:
    return TaxEngine(
        directory,
        index,
        catalog,
        evaluator=ExemptionEvaluator(config=config),
        cache=cache,
        config=config,
        clock=clock,
    )
