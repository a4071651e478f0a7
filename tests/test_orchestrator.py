"""End-to-end tests for the TaxEngine facade."""

from datetime import date
from decimal import Decimal

import pytest

from conftest import AS_OF, CountingAdapter, authorities, percentage_rate
from jurisdiction_engine.addresses import Address
from jurisdiction_engine.calculation import (
    CalculableKind,
    CalculableRef,
    CalculationFlag,
    CalculationStatus,
    LineItem,
)
from jurisdiction_engine.config import EngineConfig
from jurisdiction_engine.exceptions import (
    CalculationNotFoundError,
    CalculationSuperseded,
    InvalidStatusTransition,
    ValidationError,
)
from jurisdiction_engine.exemptions import ExemptionEvaluator, TaxExemption
from jurisdiction_engine.learner import PatternLearner
from jurisdiction_engine.orchestrator import CalculationRequest, TaxEngine
from jurisdiction_engine.storage import InMemoryCalculationStore

MAIN_ST = Address.parse("1200 Main St", "Houston", "TX", "77002")
LOUISIANA_ST = Address.parse("500 Louisiana St", "Houston", "TX", "77010")
INVOICE_ITEM = CalculableRef(CalculableKind.INVOICE_ITEM, "INV-100-1")


def _item(amount="100.00", service="telecom", client="C-1", **kwargs):
    return LineItem(amount=amount, service_type=service, client_id=client, **kwargs)


# ── Calculation ──────────────────────────────────────────────────────


def test_exact_address_calculation(engine: TaxEngine):
    calc = engine.calculate(_item(), MAIN_ST, AS_OF, INVOICE_ITEM)

    assert calc.status is CalculationStatus.PENDING
    assert calc.total_tax_amount == Decimal("8.25")
    assert calc.final_amount == Decimal("108.25")
    assert calc.effective_tax_rate == Decimal("0.082500")
    assert calc.breakdown_total == calc.total_tax_amount
    assert [b.jurisdiction_code for b in calc.tax_breakdown] == ["TX", "HOUSTON", "METRO"]
    assert calc.tax_breakdown[0].tax_name == "Texas State Sales Tax"
    assert calc.metadata.resolution == "exact"
    assert calc.metadata.confidence == 1.0
    assert calc.flags == ()
    assert len(engine.store) == 1


def test_as_of_defaults_to_clock(engine: TaxEngine):
    assert engine.calculate(_item(), MAIN_ST).as_of_date == AS_OF


def test_zero_amount_has_zero_rate(engine: TaxEngine):
    calc = engine.calculate(_item("0"), MAIN_ST, AS_OF)
    assert calc.total_tax_amount == Decimal("0")
    assert calc.effective_tax_rate == Decimal("0")


def test_invalid_input_stores_nothing(engine: TaxEngine):
    with pytest.raises(ValidationError):
        engine.calculate(_item("-5"), MAIN_ST, AS_OF)
    with pytest.raises(ValidationError):
        engine.calculate(_item(), Address("1200", "MAIN", "TX", "7700"), AS_OF)
    assert len(engine.store) == 0


def test_unresolved_address_is_flagged_not_raised(engine: TaxEngine):
    calc = engine.calculate(_item(), LOUISIANA_ST, AS_OF)
    assert calc.status is CalculationStatus.UNRESOLVED
    assert calc.has_flag(CalculationFlag.UNRESOLVED_ADDRESS)
    assert calc.total_tax_amount == Decimal("0")
    assert calc.final_amount == calc.base_amount
    assert calc.jurisdiction_ids == ()


def test_unresolved_state_fallback(directory, index, catalog, clock, ids):
    engine = TaxEngine(
        directory, index, catalog, config=EngineConfig(unresolved_fallback="state"), clock=clock
    )
    calc = engine.calculate(_item(), LOUISIANA_ST, AS_OF)
    assert calc.status is CalculationStatus.UNRESOLVED
    assert calc.jurisdiction_ids == (ids["TX"],)
    assert calc.total_tax_amount == Decimal("6.25")


def test_no_rate_in_effect_is_flagged(engine: TaxEngine):
    calc = engine.calculate(_item(), MAIN_ST, date(2019, 12, 31))
    assert calc.has_flag(CalculationFlag.NO_APPLICABLE_RATE)
    assert calc.total_tax_amount == Decimal("0")
    assert calc.status is CalculationStatus.PENDING


def test_overlapping_rates_are_flagged(engine: TaxEngine, ids):
    engine.catalog.add(percentage_rate(20, ids["TX"], "0.07", effective_date=date(2021, 1, 1)))
    calc = engine.calculate(_item(), MAIN_ST, AS_OF)
    assert calc.has_flag(CalculationFlag.INVALID_RATE_WINDOW)
    # newest window wins the tie
    assert calc.tax_breakdown[0].rate_id == 20


def test_exemptions_reduce_tax(directory, index, catalog, cache, config, clock, ids):
    evaluator = ExemptionEvaluator(
        [
            TaxExemption(1, "Houston resale", "resale", client_id="C-1",
                         jurisdiction_id=ids["HOUSTON"], is_blanket=True),
            TaxExemption(2, "Other client", "resale", client_id="C-2", is_blanket=True),
        ],
        config,
    )
    engine = TaxEngine(directory, index, catalog, evaluator=evaluator, cache=cache,
                       config=config, clock=clock)
    calc = engine.calculate(_item(), MAIN_ST, AS_OF)

    assert calc.total_tax_amount == Decimal("7.25")
    houston = next(b for b in calc.tax_breakdown if b.jurisdiction_code == "HOUSTON")
    assert houston.gross_tax_amount == Decimal("1.00")
    assert houston.exempt_amount == Decimal("1.00")
    assert houston.tax_amount == Decimal("0.00")
    assert [e.exemption_id for e in calc.exemptions_applied] == [1]


def test_external_resolution(engine: TaxEngine, ids):
    adapter = CountingAdapter(authorities("TX", "HARRIS"))
    calc = engine.calculate(_item(), LOUISIANA_ST, AS_OF, lookup=adapter, provider="vertex")
    assert calc.metadata.resolution == "external"
    assert calc.metadata.external_calls == 1
    assert calc.jurisdiction_ids == (ids["TX"], ids["HARRIS"])
    assert calc.total_tax_amount == Decimal("6.25")


def test_engine_keeps_injected_empty_collaborators(directory, index, catalog, cache, config, clock):
    learner = PatternLearner(config, clock=clock)
    store = InMemoryCalculationStore()
    evaluator = ExemptionEvaluator(config=config)
    engine = TaxEngine(directory, index, catalog, evaluator=evaluator, learner=learner,
                       cache=cache, store=store, config=config, clock=clock)

    assert engine.learner is learner
    assert engine.cache is cache
    assert engine.store is store
    assert engine.evaluator is evaluator
    assert engine.resolver.learner is learner
    assert engine.resolver.cache is cache

    calc = engine.calculate(_item(), LOUISIANA_ST, AS_OF,
                            lookup=CountingAdapter(authorities("TX", "HARRIS")))
    assert calc.metadata.resolution == "external"
    assert len(learner) == 2
    assert len(cache) == 1
    assert store.get(calc.calculation_id).calculation_id == calc.calculation_id


def test_unevaluable_exemption_condition_is_flagged(directory, index, catalog, cache, config, clock):
    exemption = TaxExemption(
        1, "Seasonal relief", "government", client_id="C-1",
        exemption_conditions=({"field": "as_of_date", "operator": ">=", "value": "mid-June"},),
    )
    engine = TaxEngine(directory, index, catalog, evaluator=ExemptionEvaluator([exemption], config),
                       cache=cache, config=config, clock=clock)

    batch = engine.calculate_batch([CalculationRequest(_item(), MAIN_ST, AS_OF)] * 2)
    assert batch.errors == []
    for calc in batch.calculations:
        assert calc.total_tax_amount == Decimal("8.25")
        assert not calc.exemptions_applied
        assert calc.has_flag(CalculationFlag.EXEMPTION_CONDITION_INVALID)
        assert any("Exemption 1 not applied" in w for w in calc.metadata.warnings)


def test_external_failure_is_flagged(engine: TaxEngine):
    adapter = CountingAdapter(error=TimeoutError("slow"))
    calc = engine.calculate(_item(), LOUISIANA_ST, AS_OF, lookup=adapter)
    assert calc.has_flag(CalculationFlag.EXTERNAL_LOOKUP_FAILED)
    assert calc.has_flag(CalculationFlag.UNRESOLVED_ADDRESS)


# ── Recalculation ────────────────────────────────────────────────────


def test_recalculate_links_records(engine: TaxEngine, ids):
    original = engine.calculate(_item(), MAIN_ST, AS_OF, INVOICE_ITEM)
    engine.catalog.add(percentage_rate(30, ids["HARRIS"], "0.005", tax_type="county"))

    fresh = engine.recalculate(original.calculation_id)
    stored = engine.store.get(original.calculation_id)

    assert fresh.supersedes == original.calculation_id
    assert stored.superseded_by == fresh.calculation_id
    assert stored.total_tax_amount == Decimal("8.25")
    assert fresh.total_tax_amount == Decimal("8.75")
    assert fresh.as_of_date == original.as_of_date


def test_recalculate_superseded_raises(engine: TaxEngine):
    original = engine.calculate(_item(), MAIN_ST, AS_OF)
    fresh = engine.recalculate(original.calculation_id)
    with pytest.raises(CalculationSuperseded):
        engine.recalculate(original.calculation_id)
    assert engine.recalculate(fresh.calculation_id).supersedes == fresh.calculation_id


# ── Lifecycle ────────────────────────────────────────────────────────


def test_validate_persists(engine: TaxEngine):
    calc = engine.calculate(_item(), MAIN_ST, AS_OF)
    engine.validate(calc.calculation_id, "auditor", "ok")
    stored = engine.store.get(calc.calculation_id)
    assert stored.status is CalculationStatus.VALIDATED
    assert stored.validated_by == "auditor"
    with pytest.raises(InvalidStatusTransition):
        engine.dispute(calc.calculation_id, "client")


def test_dispute_then_reopen_requires_actor(engine: TaxEngine):
    calc = engine.calculate(_item(), MAIN_ST, AS_OF)
    engine.dispute(calc.calculation_id, "client", "wrong city")
    with pytest.raises(ValidationError):
        engine.reopen(calc.calculation_id, "")
    reopened = engine.reopen(calc.calculation_id, "supervisor")
    assert reopened.status is CalculationStatus.PENDING
    assert len(reopened.status_history) == 3


def test_unresolved_can_be_validated(engine: TaxEngine):
    calc = engine.calculate(_item(), LOUISIANA_ST, AS_OF)
    assert engine.validate(calc.calculation_id, "auditor").status is CalculationStatus.VALIDATED


def test_unknown_calculation(engine: TaxEngine):
    with pytest.raises(CalculationNotFoundError):
        engine.validate("calc_missing", "auditor")


# ── History and comparison ───────────────────────────────────────────


def test_history_newest_first(engine: TaxEngine):
    first = engine.calculate(_item("100.00"), MAIN_ST, AS_OF, INVOICE_ITEM)
    second = engine.calculate(_item("200.00"), MAIN_ST, AS_OF, INVOICE_ITEM)
    engine.calculate(_item(), MAIN_ST, AS_OF, CalculableRef(CalculableKind.QUOTE, "Q-1"))

    history = engine.history(INVOICE_ITEM)
    assert [c.calculation_id for c in history] == [second.calculation_id, first.calculation_id]
    assert len(engine.history(INVOICE_ITEM, limit=1)) == 1


def test_compare_with_previous(engine: TaxEngine, ids):
    assert engine.compare_with_previous(_item(), MAIN_ST, INVOICE_ITEM, AS_OF) == {
        "has_previous": False,
        "comparison": None,
    }

    engine.calculate(_item(), MAIN_ST, AS_OF, INVOICE_ITEM)
    engine.catalog.add(percentage_rate(30, ids["HARRIS"], "0.005", tax_type="county"))
    result = engine.compare_with_previous(_item(), MAIN_ST, INVOICE_ITEM, AS_OF)

    assert result["has_previous"]
    assert result["comparison"]["tax_amount_diff"] == Decimal("0.50")
    assert result["comparison"]["base_amount_diff"] == Decimal("0")
    assert not result["comparison"]["jurisdictions_changed"]
    # the dry run is not persisted
    assert len(engine.store) == 1


# ── Batch ────────────────────────────────────────────────────────────


def test_batch_keeps_order_and_reports_errors(engine: TaxEngine):
    requests = [
        CalculationRequest(_item("100.00"), MAIN_ST, AS_OF),
        CalculationRequest(_item("-1"), MAIN_ST, AS_OF),
        CalculationRequest(_item("50.00"), LOUISIANA_ST, AS_OF),
    ]
    batch = engine.calculate_batch(requests)

    assert batch.calculation_count == 3
    assert [c.base_amount for c in batch.calculations] == [Decimal("100.00"), Decimal("50.00")]
    assert batch.total_tax == Decimal("8.25")
    assert batch.unresolved_count == 1
    assert batch.flagged_count == 1
    assert len(batch.errors) == 1
    assert batch.errors[0].startswith("Request 2:")


def test_batch_shares_one_external_lookup(engine: TaxEngine):
    adapter = CountingAdapter(authorities("TX", "HARRIS"))
    requests = [CalculationRequest(_item(), LOUISIANA_ST, AS_OF) for _ in range(20)]
    batch = engine.calculate_batch(requests, lookup=adapter, max_workers=8)

    assert adapter.calls == 1
    assert len(batch.calculations) == 20
    assert all(c.metadata.resolution == "external" for c in batch.calculations)
    assert sum(c.metadata.external_calls for c in batch.calculations) == 1
    assert batch.total_tax == Decimal("125.00")


# ── Statistics ───────────────────────────────────────────────────────


def test_statistics(engine: TaxEngine):
    assert engine.statistics()["total_calculations"] == 0

    engine.calculate(_item(), MAIN_ST, AS_OF)
    engine.calculate(_item(), LOUISIANA_ST, AS_OF)
    stats = engine.statistics()

    assert stats["total_calculations"] == 2
    assert stats["total_base"] == Decimal("200.00")
    assert stats["total_tax"] == Decimal("8.25")
    assert stats["flagged"] == 1
    assert stats["by_status"] == {"pending": 1, "unresolved": 1}
    assert stats["by_resolution"] == {"exact": 1, "unresolved": 1}
