"""
Time-versioned tax rate catalog.

Rates are keyed by (jurisdiction, tax category, service type) and carry
an effective window [effective_date, expiry_date). The catalog is a pure
read path: selecting and evaluating rates never mutates them.

Evaluation order: non-compound rates first, by priority; compound rates
last, each computed on the base plus all non-compound tax so far.
A 5% base rate and a 2% compound rate on $100 give
$5.00 + $105 x 2% = $7.10.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Iterable, Optional, Protocol

logger = logging.getLogger(__name__)

_CENT = Decimal("0.01")
_ZERO = Decimal("0")


def round_money(amount: Decimal) -> Decimal:
    """Round to the nearest cent, halves away from zero."""
    return amount.quantize(_CENT, rounding=ROUND_HALF_UP)


class RateType(Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"
    TIERED = "tiered"


@dataclass(frozen=True)
class TaxRate:
    """A rate record of one jurisdiction for one tax."""

    id: int
    jurisdiction_id: int
    tax_type: str  # e.g. sales, excise, e911, usf
    tax_name: str
    rate_type: RateType
    effective_date: date
    expiry_date: Optional[date] = None
    tax_category: Optional[str] = None  # None matches every category
    service_type: Optional[str] = None  # None matches every service type
    percentage_rate: Optional[Decimal] = None  # 0.0625 = 6.25%
    fixed_amount: Optional[Decimal] = None
    minimum_threshold: Optional[Decimal] = None
    maximum_amount: Optional[Decimal] = None
    calculation_method: str = "standard"  # standard, per_unit
    is_compound: bool = False
    is_recoverable: bool = False
    priority: int = 100
    tier_table: Optional[str] = None

    def is_active(self, as_of: date) -> bool:
        if as_of < self.effective_date:
            return False
        return self.expiry_date is None or as_of < self.expiry_date

    def applies_to(self, service_type: Optional[str], tax_category: Optional[str]) -> bool:
        if self.service_type is not None and self.service_type != service_type:
            return False
        if self.tax_category is not None and self.tax_category != tax_category:
            return False
        return True

    @property
    def rate_applied(self) -> Decimal:
        """The figure reported on breakdown lines."""
        if self.rate_type is RateType.PERCENTAGE:
            return self.percentage_rate or _ZERO
        if self.rate_type is RateType.FIXED:
            return self.fixed_amount or _ZERO
        return _ZERO


class TierStrategy(Protocol):
    """Pluggable evaluator for tiered rates."""

    def __call__(self, rate: TaxRate, taxable_base: Decimal, quantity: Decimal) -> Decimal:
        ...


@dataclass(frozen=True)
class BreakpointTable:
    """
    Marginal bracket schedule: each (upper_bound, rate) pair taxes the
    slice of the base up to that bound. A final bound of None is open.
    """

    brackets: tuple[tuple[Optional[Decimal], Decimal], ...]

    def __call__(self, rate: TaxRate, taxable_base: Decimal, quantity: Decimal) -> Decimal:
        tax = _ZERO
        lower = _ZERO
        for upper, bracket_rate in self.brackets:
            if taxable_base <= lower:
                break
            top = taxable_base if upper is None else min(taxable_base, upper)
            tax += (top - lower) * bracket_rate
            if upper is None:
                break
            lower = upper
        return tax


@dataclass
class RateLine:
    """One evaluated rate: the base it was applied to and the tax it produced."""

    rate: TaxRate
    taxable_base: Decimal
    tax_amount: Decimal
    evaluated: bool = True


@dataclass
class RateSelection:
    """Selected rates plus the data-quality anomalies seen while selecting."""

    rates: list[TaxRate]
    overlaps: list[str] = field(default_factory=list)


@dataclass
class RateEvaluation:
    lines: list[RateLine]
    unevaluated: list[str] = field(default_factory=list)

    @property
    def total_tax(self) -> Decimal:
        return sum((line.tax_amount for line in self.lines), _ZERO)


class RateCatalog:
    """Queryable store of time-bounded, prioritized rates."""

    def __init__(
        self,
        rates: Iterable[TaxRate] = (),
        tier_tables: Optional[dict[str, TierStrategy]] = None,
    ) -> None:
        self._by_jurisdiction: dict[int, list[TaxRate]] = {}
        self.tier_tables: dict[str, TierStrategy] = dict(tier_tables or {})
        for rate in rates:
            self.add(rate)

    def add(self, rate: TaxRate) -> None:
        if rate.rate_type is RateType.PERCENTAGE and rate.percentage_rate is None:
            raise ValueError(f"Percentage rate {rate.id} has no percentage_rate")
        if rate.rate_type is RateType.FIXED and rate.fixed_amount is None:
            raise ValueError(f"Fixed rate {rate.id} has no fixed_amount")
        if rate.expiry_date is not None and rate.expiry_date <= rate.effective_date:
            raise ValueError(f"Rate {rate.id} expires before it takes effect")
        self._by_jurisdiction.setdefault(rate.jurisdiction_id, []).append(rate)

    def register_tier_table(self, name: str, strategy: TierStrategy) -> None:
        self.tier_tables[name] = strategy

    def __len__(self) -> int:
        return sum(len(rates) for rates in self._by_jurisdiction.values())

    def all_rates(self) -> list[TaxRate]:
        return [r for rates in self._by_jurisdiction.values() for r in rates]

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def select(
        self,
        jurisdiction_ids: Iterable[int],
        service_type: Optional[str],
        tax_category: Optional[str],
        as_of_date: date,
    ) -> RateSelection:
        """
        Active, applicable rates for the jurisdictions, in evaluation order.

        Several active rows for the same (jurisdiction, tax_type) are
        reduced to one: lowest priority, then latest effective date, then
        highest id. Rows that tie on priority are reported as overlaps.
        """
        groups: dict[tuple[int, str], list[TaxRate]] = {}
        for jurisdiction_id in dict.fromkeys(jurisdiction_ids):
            for rate in self._by_jurisdiction.get(jurisdiction_id, ()):
                if rate.is_active(as_of_date) and rate.applies_to(service_type, tax_category):
                    groups.setdefault((jurisdiction_id, rate.tax_type), []).append(rate)

        selected: list[TaxRate] = []
        overlaps: list[str] = []
        for (jurisdiction_id, tax_type), rates in groups.items():
            rates.sort(key=lambda r: (r.priority, -r.effective_date.toordinal(), -r.id))
            winner = rates[0]
            tied = [r for r in rates[1:] if r.priority == winner.priority]
            if tied:
                message = (
                    f"Overlapping active {tax_type} rates for jurisdiction "
                    f"{jurisdiction_id} at priority {winner.priority}: "
                    f"kept {winner.id}, ignored {', '.join(str(r.id) for r in tied)}"
                )
                logger.warning("Invalid rate window: %s", message)
                overlaps.append(message)
            elif len(rates) > 1:
                logger.debug(
                    "Rate %d outranks %d other %s rates", winner.id, len(rates) - 1, tax_type
                )
            selected.append(winner)

        selected.sort(key=lambda r: (r.is_compound, r.priority, r.jurisdiction_id, r.id))
        return RateSelection(rates=selected, overlaps=overlaps)

    def rates_for(
        self,
        jurisdiction_ids: Iterable[int],
        service_type: Optional[str],
        tax_category: Optional[str],
        as_of_date: date,
    ) -> list[TaxRate]:
        return self.select(jurisdiction_ids, service_type, tax_category, as_of_date).rates

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def _line_amount(
        self,
        rate: TaxRate,
        taxable_base: Decimal,
        quantity: Decimal,
    ) -> Optional[Decimal]:
        if rate.rate_type is RateType.PERCENTAGE:
            amount = taxable_base * (rate.percentage_rate or _ZERO)
            if taxable_base > 0 and rate.minimum_threshold is not None:
                amount = max(amount, rate.minimum_threshold)
            if rate.maximum_amount is not None:
                amount = min(amount, rate.maximum_amount)
            return amount

        if rate.rate_type is RateType.FIXED:
            amount = rate.fixed_amount or _ZERO
            if rate.calculation_method == "per_unit":
                amount *= quantity
            return amount

        strategy = self.tier_tables.get(rate.tier_table or "")
        if strategy is None:
            return None
        return strategy(rate, taxable_base, quantity)

    def evaluate(
        self,
        rates: Iterable[TaxRate],
        base_amount: Decimal,
        quantity: Decimal = Decimal("1"),
    ) -> RateEvaluation:
        """
        Compute one line per rate. ``rates`` must already be in
        evaluation order (see ``select``).
        """
        lines: list[RateLine] = []
        unevaluated: list[str] = []
        non_compound_tax = _ZERO

        for rate in rates:
            taxable = base_amount + non_compound_tax if rate.is_compound else base_amount
            amount = self._line_amount(rate, taxable, quantity)
            if amount is None:
                logger.warning(
                    "Tiered rate %d references unregistered table %r", rate.id, rate.tier_table
                )
                unevaluated.append(f"{rate.tax_name} (table {rate.tier_table})")
                lines.append(RateLine(rate, taxable, _ZERO, evaluated=False))
                continue
            amount = round_money(max(amount, _ZERO))
            if not rate.is_compound:
                non_compound_tax += amount
            lines.append(RateLine(rate, taxable, amount))

        return RateEvaluation(lines=lines, unevaluated=unevaluated)
