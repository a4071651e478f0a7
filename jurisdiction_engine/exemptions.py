"""
Tax exemption evaluation.

An exemption is scoped by client, jurisdiction and tax category (None is
a wildcard for each). Blanket exemptions cover every tax in scope;
conditional ones are restricted to listed tax types and services and to
structured conditions over the line item:

    {"field": "amount", "operator": ">=", "value": "1000"}
    {"field": "service_type", "operator": "in", "value": ["voip", "local"]}
    {"type": "date_range", "start_date": "2024-01-01", "end_date": "2024-12-31"}

Per tax line, at most one blanket exemption applies (the most specific
scope wins) and may zero the line outright; conditional exemptions then
reduce the remainder proportionally, never below zero.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Iterable, Optional, Sequence

from jurisdiction_engine.config import EngineConfig
from jurisdiction_engine.rates import RateLine, round_money

logger = logging.getLogger(__name__)

_ZERO = Decimal("0")
_HUNDRED = Decimal("100")


class ExemptionStatus(Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    REVOKED = "revoked"


class VerificationStatus(Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    REJECTED = "rejected"
    EXPIRED = "expired"
    NEEDS_RENEWAL = "needs_renewal"


@dataclass(frozen=True)
class TaxExemption:
    """An exemption certificate as read from intake."""

    id: int
    exemption_name: str
    exemption_type: str  # resale, non_profit, government, ...
    client_id: Optional[str] = None
    jurisdiction_id: Optional[int] = None
    tax_category: Optional[str] = None
    is_blanket: bool = False
    applicable_tax_types: tuple[str, ...] = ()
    applicable_services: tuple[str, ...] = ()
    exemption_conditions: tuple[dict[str, Any], ...] = ()
    exemption_percentage: Optional[Decimal] = None  # 0-100, None = full
    maximum_exemption_amount: Optional[Decimal] = None
    status: ExemptionStatus = ExemptionStatus.ACTIVE
    verification_status: VerificationStatus = VerificationStatus.PENDING
    issue_date: Optional[date] = None
    expiry_date: Optional[date] = None
    certificate_number: Optional[str] = None
    issuing_state: Optional[str] = None

    def __post_init__(self) -> None:
        pct = self.exemption_percentage
        if pct is not None and not _ZERO <= pct <= _HUNDRED:
            raise ValueError(f"Exemption {self.id}: percentage {pct} outside 0-100")
        for condition in self.exemption_conditions:
            try:
                validate_condition(condition)
            except ValueError as e:
                raise ValueError(f"Exemption {self.id}: {e}") from e

    def effective_status(self, as_of: date) -> ExemptionStatus:
        """Active certificates past their expiry date read as expired."""
        if (
            self.status is ExemptionStatus.ACTIVE
            and self.expiry_date is not None
            and as_of > self.expiry_date
        ):
            return ExemptionStatus.EXPIRED
        return self.status

    def in_effect(self, as_of: date) -> bool:
        if self.effective_status(as_of) is not ExemptionStatus.ACTIVE:
            return False
        return self.issue_date is None or self.issue_date <= as_of

    def expires_soon(self, as_of: date, days: int = 30) -> bool:
        if self.expiry_date is None or not self.in_effect(as_of):
            return False
        return self.expiry_date <= as_of + timedelta(days=days)

    @property
    def specificity(self) -> int:
        """Number of scope fields pinned to a value."""
        return sum(
            1 for v in (self.client_id, self.jurisdiction_id, self.tax_category) if v is not None
        )

    @property
    def fraction(self) -> Decimal:
        if self.exemption_percentage is None:
            return Decimal("1")
        return self.exemption_percentage / _HUNDRED

    def applies_to_tax_type(self, tax_type: str) -> bool:
        if self.is_blanket or not self.applicable_tax_types:
            return True
        return tax_type in self.applicable_tax_types

    def applies_to_service(self, service_type: Optional[str]) -> bool:
        if self.is_blanket or not self.applicable_services:
            return True
        return service_type in self.applicable_services

    def exempt_amount(self, tax_amount: Decimal) -> Decimal:
        amount = tax_amount * self.fraction
        if self.maximum_exemption_amount is not None:
            amount = min(amount, self.maximum_exemption_amount)
        return round_money(max(amount, _ZERO))


# ---------------------------------------------------------------------------
# Condition interpreter
# ---------------------------------------------------------------------------


OPERATORS = frozenset({"=", "==", "!=", ">", ">=", "<", "<=", "in", "not_in", "between"})

# Raised by a condition whose values cannot be compared with the line item.
UNEVALUABLE = (ValueError, TypeError, KeyError, InvalidOperation)


def _check_date(value: Any, name: str) -> None:
    try:
        date.fromisoformat(str(value))
    except ValueError:
        raise ValueError(f"{name} {value!r} is not an ISO date") from None


def validate_condition(condition: Any) -> None:
    """Reject conditions the interpreter cannot evaluate. Raises ValueError."""
    if not isinstance(condition, dict):
        raise ValueError(f"condition must be a mapping, got {condition!r}")
    kind = condition.get("type")
    if kind == "date_range":
        for name in ("start_date", "end_date"):
            if condition.get(name):
                _check_date(condition[name], name)
        return
    if kind in ("minimum_amount", "service_type") and "value" not in condition:
        raise ValueError(f"{kind} condition needs a value")
    if kind == "minimum_amount":
        try:
            Decimal(str(condition["value"]))
        except InvalidOperation:
            raise ValueError(f"minimum_amount {condition['value']!r} is not a number") from None
    if kind is None and condition.get("field") is None:
        raise ValueError(f"condition names no field or type: {condition!r}")

    operator = condition.get("operator", "=")
    if operator not in OPERATORS:
        raise ValueError(f"Unknown condition operator: {operator!r}")
    if operator == "between":
        value = condition.get("value")
        if not isinstance(value, (list, tuple)) or len(value) != 2:
            raise ValueError(f"between needs [low, high], got {value!r}")


def _coerce(actual: Any, expected: Any) -> tuple[Any, Any]:
    """Compare numbers as Decimal and dates as dates; everything else as is."""
    if isinstance(actual, (int, float, Decimal)) and not isinstance(actual, bool):
        try:
            return Decimal(str(actual)), Decimal(str(expected))
        except (InvalidOperation, ValueError):
            return actual, expected
    if isinstance(actual, date) and isinstance(expected, str):
        return actual, date.fromisoformat(expected)
    return actual, expected


def _compare(actual: Any, operator: str, expected: Any) -> bool:
    if operator in ("in", "not_in"):
        values = expected if isinstance(expected, (list, tuple, set)) else [expected]
        found = any(_coerce(actual, v)[0] == _coerce(actual, v)[1] for v in values)
        return found if operator == "in" else not found
    if operator == "between":
        low, high = expected
        a, lo = _coerce(actual, low)
        _, hi = _coerce(actual, high)
        return lo <= a <= hi

    a, e = _coerce(actual, expected)
    if operator in ("=", "=="):
        return a == e
    if operator == "!=":
        return a != e
    try:
        if operator == ">":
            return a > e
        if operator == ">=":
            return a >= e
        if operator == "<":
            return a < e
        if operator == "<=":
            return a <= e
    except TypeError:
        return False
    raise ValueError(f"Unknown condition operator: {operator!r}")


def evaluate_condition(condition: dict[str, Any], context: dict[str, Any]) -> bool:
    """Evaluate one structured predicate against the line item context."""
    kind = condition.get("type")
    if kind == "date_range":
        as_of = context.get("as_of_date")
        if as_of is None:
            return False
        start = condition.get("start_date")
        end = condition.get("end_date")
        if start and as_of < date.fromisoformat(str(start)):
            return False
        if end and as_of > date.fromisoformat(str(end)):
            return False
        return True
    if kind == "minimum_amount":
        return _compare(context.get("amount"), condition.get("operator", ">="), condition["value"])
    if kind == "service_type":
        return _compare(context.get("service_type"), "in", condition["value"])

    name = condition.get("field", kind)
    if name is None or name not in context or context[name] is None:
        return False
    return _compare(context[name], condition.get("operator", "="), condition.get("value"))


def conditions_pass(conditions: Iterable[dict[str, Any]], context: dict[str, Any]) -> bool:
    return all(evaluate_condition(c, context) for c in conditions)


# ---------------------------------------------------------------------------
# Evaluator
# ---------------------------------------------------------------------------


@dataclass
class ExemptionApplication:
    """Audit record of one exemption reducing one tax line."""

    exemption_id: int
    exemption_name: str
    line_index: int
    tax_name: str
    jurisdiction_id: int
    original_amount: Decimal
    exempted_amount: Decimal
    is_blanket: bool


@dataclass
class ExemptionOutcome:
    net_amounts: list[Decimal]
    exempted_amounts: list[Decimal]
    applications: list[ExemptionApplication] = field(default_factory=list)
    conflicts: list[str] = field(default_factory=list)

    @property
    def total_exempted(self) -> Decimal:
        return sum(self.exempted_amounts, _ZERO)


class ExemptionEvaluator:
    """Selects the exemptions in force for a line and applies them."""

    def __init__(
        self,
        exemptions: Iterable[TaxExemption] = (),
        config: Optional[EngineConfig] = None,
    ) -> None:
        self.config = config or EngineConfig()
        self._exemptions: dict[int, TaxExemption] = {}
        for exemption in exemptions:
            self.add(exemption)

    def add(self, exemption: TaxExemption) -> None:
        self._exemptions[exemption.id] = exemption

    def __len__(self) -> int:
        return len(self._exemptions)

    def all_exemptions(self) -> list[TaxExemption]:
        return list(self._exemptions.values())

    def expiring(self, as_of: date, days: int = 30) -> list[TaxExemption]:
        return [e for e in self._exemptions.values() if e.expires_soon(as_of, days)]

    def applicable(
        self,
        client_id: Optional[str],
        jurisdiction_ids: Iterable[int],
        tax_category: Optional[str],
        service_type: Optional[str],
        as_of_date: date,
        context: Optional[dict[str, Any]] = None,
        issues: Optional[list[str]] = None,
    ) -> list[TaxExemption]:
        """
        Exemptions whose scope, status, dates and conditions all hold.

        A condition that cannot be evaluated against this line item
        leaves its exemption out; the reason is logged and appended to
        ``issues`` when a list is given.
        """
        ids = set(jurisdiction_ids)
        context = dict(context or {})
        context.setdefault("service_type", service_type)
        context.setdefault("tax_category", tax_category)
        context.setdefault("client_id", client_id)
        context.setdefault("as_of_date", as_of_date)

        found: list[TaxExemption] = []
        for exemption in self._exemptions.values():
            if exemption.client_id is not None and exemption.client_id != client_id:
                continue
            if exemption.jurisdiction_id is not None and exemption.jurisdiction_id not in ids:
                continue
            if exemption.tax_category is not None and exemption.tax_category != tax_category:
                continue
            if not exemption.in_effect(as_of_date):
                continue
            if (
                self.config.require_verified_exemptions
                and exemption.verification_status is not VerificationStatus.VERIFIED
            ):
                continue
            if not exemption.is_blanket:
                if not exemption.applies_to_service(service_type):
                    continue
                try:
                    passed = conditions_pass(exemption.exemption_conditions, context)
                except UNEVALUABLE as e:
                    message = f"Exemption {exemption.id} not applied: condition not evaluable ({e})"
                    logger.warning(message)
                    if issues is not None:
                        issues.append(message)
                    continue
                if not passed:
                    continue
            found.append(exemption)
        return sorted(found, key=lambda e: e.id)

    @staticmethod
    def _pick_blanket(blankets: list[TaxExemption]) -> tuple[TaxExemption, list[TaxExemption]]:
        ranked = sorted(
            blankets,
            key=lambda e: (
                -e.specificity,
                -e.fraction,
                -(e.maximum_exemption_amount if e.maximum_exemption_amount is not None else Decimal("Infinity")),
                e.id,
            ),
        )
        return ranked[0], ranked[1:]

    def apply(
        self,
        lines: Sequence[RateLine],
        exemptions: Iterable[TaxExemption],
    ) -> ExemptionOutcome:
        """
        Reduce each line's tax by the exemptions that cover it.

        Each exemption id is applied at most once per line, so passing
        the same exemption twice changes nothing.
        """
        unique = list({e.id: e for e in exemptions}.values())
        outcome = ExemptionOutcome(net_amounts=[], exempted_amounts=[])

        for index, line in enumerate(lines):
            original = line.tax_amount
            remaining = original
            rate = line.rate
            covering = [
                e
                for e in unique
                if e.jurisdiction_id in (None, rate.jurisdiction_id)
                and e.applies_to_tax_type(rate.tax_type)
            ]
            blankets = [e for e in covering if e.is_blanket]
            conditionals = [e for e in covering if not e.is_blanket]

            if original > 0 and blankets:
                winner, losers = self._pick_blanket(blankets)
                disagreeing = [
                    e
                    for e in losers
                    if (e.fraction, e.maximum_exemption_amount)
                    != (winner.fraction, winner.maximum_exemption_amount)
                ]
                if disagreeing:
                    message = (
                        f"Blanket exemptions {', '.join(str(e.id) for e in disagreeing)} "
                        f"conflict with {winner.id} on {rate.tax_name}; "
                        f"kept {winner.id} (most specific scope)"
                    )
                    logger.warning("Exemption conflict: %s", message)
                    outcome.conflicts.append(message)
                amount = min(winner.exempt_amount(original), remaining)
                if amount > 0:
                    remaining -= amount
                    outcome.applications.append(
                        ExemptionApplication(
                            winner.id, winner.exemption_name, index, rate.tax_name,
                            rate.jurisdiction_id, original, amount, True,
                        )
                    )

            if remaining > 0:
                for exemption in conditionals:
                    amount = min(exemption.exempt_amount(original), remaining)
                    if amount <= 0:
                        continue
                    remaining -= amount
                    outcome.applications.append(
                        ExemptionApplication(
                            exemption.id, exemption.exemption_name, index, rate.tax_name,
                            rate.jurisdiction_id, original, amount, False,
                        )
                    )
                    if remaining <= 0:
                        break

            outcome.net_amounts.append(remaining)
            outcome.exempted_amounts.append(original - remaining)

        return outcome
