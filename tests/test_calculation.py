"""Tests for line items and the calculation record lifecycle."""

from decimal import Decimal

import pytest

from jurisdiction_engine.addresses import Address
from jurisdiction_engine.calculation import (
    CalculableKind,
    CalculableRef,
    CalculationStatus,
    EventKind,
    LineItem,
    TaxCalculation,
)
from jurisdiction_engine.exceptions import InvalidStatusTransition, ValidationError


@pytest.fixture
def calc(engine) -> TaxCalculation:
    return engine.calculate(
        LineItem(amount="100.00", service_type="telecom", client_id="C-1"),
        Address.parse("1200 Main St", "Houston", "TX", "77002"),
        calculable=CalculableRef(CalculableKind.INVOICE_ITEM, "INV-1-1"),
    )


# ── Line items ───────────────────────────────────────────────────────


def test_line_item_coerces_numbers():
    item = LineItem(amount=12.5, service_type="voip", quantity=3)
    assert item.amount == Decimal("12.5")
    assert item.quantity == Decimal("3")


@pytest.mark.parametrize(
    "kwargs",
    [
        {"amount": "-1"},
        {"amount": "NaN"},
        {"quantity": "0"},
        {"service_type": "  "},
    ],
)
def test_line_item_validation(kwargs):
    base = {"amount": "10", "service_type": "telecom"}
    base.update(kwargs)
    with pytest.raises(ValidationError):
        LineItem(**base).validate()


def test_line_item_rejects_non_numeric_amount():
    with pytest.raises(ValidationError) as info:
        LineItem(amount="ten", service_type="telecom")
    assert info.value.field_name == "amount"


def test_line_item_from_dict_requires_amount():
    with pytest.raises(ValidationError):
        LineItem.from_dict({"service_type": "telecom"})


# ── Status machine ───────────────────────────────────────────────────


def test_new_calculation_is_pending_with_created_event(calc: TaxCalculation):
    assert calc.status is CalculationStatus.PENDING
    assert [e.kind for e in calc.events] == [EventKind.CREATED]
    assert calc.status_history[0].to_status is CalculationStatus.PENDING


def test_validate_is_terminal(calc: TaxCalculation):
    calc.transition(CalculationStatus.VALIDATED, actor="auditor", notes="checked")
    assert calc.validated_by == "auditor"
    assert calc.validation_notes == "checked"
    with pytest.raises(InvalidStatusTransition):
        calc.transition(CalculationStatus.DISPUTED, actor="auditor")


def test_dispute_and_reopen(calc: TaxCalculation):
    calc.transition(CalculationStatus.DISPUTED, actor="client")
    assert not calc.can_transition(CalculationStatus.VALIDATED)
    with pytest.raises(ValidationError):
        calc.transition(CalculationStatus.PENDING)
    assert calc.status is CalculationStatus.DISPUTED

    calc.transition(CalculationStatus.PENDING, actor="supervisor")
    assert [e.to_status for e in calc.status_history] == [
        CalculationStatus.PENDING,
        CalculationStatus.DISPUTED,
        CalculationStatus.PENDING,
    ]
    assert calc.status_history[-1].from_status is CalculationStatus.DISPUTED


def test_pending_cannot_reopen(calc: TaxCalculation):
    with pytest.raises(InvalidStatusTransition):
        calc.transition(CalculationStatus.PENDING, actor="x")


def test_mark_superseded_appends_event(calc: TaxCalculation):
    calc.mark_superseded("calc_next")
    assert calc.superseded_by == "calc_next"
    assert calc.events[-1].kind is EventKind.SUPERSEDED
    assert calc.events[-1].reference == "calc_next"
    # superseding is lineage, not a status change
    assert calc.status is CalculationStatus.PENDING


# ── Serialization ────────────────────────────────────────────────────


def test_dict_round_trip_is_exact(calc: TaxCalculation):
    calc.transition(CalculationStatus.VALIDATED, actor="auditor")
    restored = TaxCalculation.from_dict(calc.to_dict())
    assert restored == calc
    assert restored.total_tax_amount == Decimal("8.25")


def test_summary(calc: TaxCalculation):
    summary = calc.summary()
    assert summary["total_tax_amount"] == "8.25"
    assert summary["final_amount"] == "108.25"
    assert summary["resolution"] == "exact"
    assert summary["flags"] == []
