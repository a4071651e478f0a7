"""
Tax calculation orchestrator.

Turns (line item, service address, as-of date) into a persisted,
auditable TaxCalculation:

1. validate input (the only step that raises for bad data)
2. resolve jurisdictions: address ranges, learned patterns, external lookup
3. select active rates and evaluate them, simple before compound
4. select exemptions in force and reduce each tax line
5. total, assemble the breakdown and persist a new record

Anything unexpected in the reference data (no rate, unresolved
address, conflicting exemptions, overlapping rate windows) yields a
calculation flagged for review rather than an exception.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Optional, Sequence

import pandas as pd

from jurisdiction_engine.addresses import Address, AddressRangeIndex
from jurisdiction_engine.calculation import (
    AppliedExemption,
    BreakdownLine,
    CalculableRef,
    CalculationEvent,
    CalculationFlag,
    CalculationStatus,
    EngineMetadata,
    EventKind,
    LineItem,
    TaxCalculation,
)
from jurisdiction_engine.config import EngineConfig
from jurisdiction_engine.directory import JurisdictionDirectory
from jurisdiction_engine.exceptions import CalculationSuperseded, TaxEngineError
from jurisdiction_engine.exemptions import ExemptionEvaluator
from jurisdiction_engine.learner import PatternLearner
from jurisdiction_engine.lookup_cache import ExternalLookupCache, LookupAdapter
from jurisdiction_engine.rates import RateCatalog
from jurisdiction_engine.resolver import (
    AddressResolver,
    ResolutionConfidence,
    ResolvedJurisdictions,
)
from jurisdiction_engine.storage import CalculationStore, InMemoryCalculationStore

logger = logging.getLogger(__name__)

_ZERO = Decimal("0")
_RATE_PLACES = Decimal("0.000001")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class CalculationRequest:
    """One item of a batch."""

    line_item: LineItem
    address: Address
    as_of_date: Optional[date] = None
    calculable: Optional[CalculableRef] = None


@dataclass
class BatchResult:
    """Aggregated result for a batch of calculations."""

    calculations: list[TaxCalculation]
    total_base: Decimal
    total_tax: Decimal
    calculation_count: int
    unresolved_count: int
    flagged_count: int
    errors: list[str] = field(default_factory=list)


class TaxEngine:
    """
    Facade over resolver, rate catalog and exemption evaluator.

    Safe to share between threads: reference data is read-only during
    calculation, and the learner, lookup cache and store synchronize
    their own writes.
    """

    def __init__(
        self,
        directory: JurisdictionDirectory,
        index: AddressRangeIndex,
        catalog: RateCatalog,
        evaluator: Optional[ExemptionEvaluator] = None,
        learner: Optional[PatternLearner] = None,
        cache: Optional[ExternalLookupCache] = None,
        store: Optional[CalculationStore] = None,
        config: Optional[EngineConfig] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.config = config or EngineConfig()
        self.directory = directory
        self.catalog = catalog
        self.evaluator = evaluator if evaluator is not None else ExemptionEvaluator(config=self.config)
        self.learner = learner if learner is not None else PatternLearner(self.config)
        self.cache = cache if cache is not None else ExternalLookupCache(self.config)
        self.resolver = AddressResolver(directory, index, self.learner, self.cache, self.config)
        self.store: CalculationStore = store if store is not None else InMemoryCalculationStore()
        self._clock = clock
        self._lifecycle_lock = threading.Lock()

    @classmethod
    def from_dataset(cls, dataset: Any, **kwargs: Any) -> "TaxEngine":
        """Build an engine from a loaded ``importer.Dataset``."""
        config = kwargs.get("config") or EngineConfig()
        kwargs["config"] = config
        engine = cls(
            dataset.directory,
            dataset.index,
            dataset.catalog,
            evaluator=ExemptionEvaluator(dataset.exemptions, config),
            **kwargs,
        )
        for pattern in getattr(dataset, "patterns", ()):
            engine.learner.restore(pattern)
        return engine

    # ------------------------------------------------------------------
    # Calculation
    # ------------------------------------------------------------------

    def _fallback_jurisdictions(self, resolved: ResolvedJurisdictions) -> tuple[int, ...]:
        if self.config.unresolved_fallback != "state":
            return ()
        state = self.directory.state_for(resolved.address.state)
        return (state.id,) if state is not None else ()

    def calculate(
        self,
        line_item: LineItem,
        address: Address,
        as_of_date: Optional[date] = None,
        calculable: Optional[CalculableRef] = None,
        lookup: Optional[LookupAdapter] = None,
        provider: Optional[str] = None,
        timeout: Optional[float] = None,
        persist: bool = True,
    ) -> TaxCalculation:
        """
        Calculate tax for one line item at one address.

        Raises ValidationError for a malformed line item or address;
        every other anomaly is recorded as a flag on the result.
        """
        started = time.perf_counter()
        line_item.validate()
        as_of = as_of_date or self._clock().date()

        resolved = self.resolver.resolve(address, lookup=lookup, provider=provider, timeout=timeout)
        flags: list[CalculationFlag] = []
        warnings = list(resolved.warnings)

        jurisdiction_ids = resolved.jurisdiction_ids
        if not resolved.is_resolved:
            flags.append(CalculationFlag.UNRESOLVED_ADDRESS)
            jurisdiction_ids = self._fallback_jurisdictions(resolved)
            logger.warning(
                "Unresolved address %s %s %s; calculating with %s",
                resolved.address.number,
                resolved.address.street_name,
                resolved.address.zip_code,
                "state only" if jurisdiction_ids else "no jurisdictions",
            )
        if resolved.lookup_status in ("error", "rate_limited"):
            flags.append(CalculationFlag.EXTERNAL_LOOKUP_FAILED)
        if resolved.orphaned_ids:
            flags.append(CalculationFlag.LOW_CONFIDENCE_JURISDICTION)

        base = line_item.amount
        selection = self.catalog.select(
            jurisdiction_ids, line_item.service_type, line_item.tax_category, as_of
        )
        if selection.overlaps:
            flags.append(CalculationFlag.INVALID_RATE_WINDOW)
            warnings.extend(selection.overlaps)
        if not selection.rates and jurisdiction_ids:
            flags.append(CalculationFlag.NO_APPLICABLE_RATE)
            logger.info(
                "No applicable rate for %s/%s in %d jurisdictions",
                line_item.service_type,
                line_item.tax_category,
                len(jurisdiction_ids),
            )

        evaluation = self.catalog.evaluate(selection.rates, base, line_item.quantity)
        if evaluation.unevaluated:
            flags.append(CalculationFlag.TIERED_RATE_UNEVALUATED)
            warnings.extend(f"Tiered rate not evaluated: {u}" for u in evaluation.unevaluated)

        context = line_item.context()
        condition_issues: list[str] = []
        exemptions = self.evaluator.applicable(
            line_item.client_id,
            jurisdiction_ids,
            line_item.tax_category,
            line_item.service_type,
            as_of,
            context,
            issues=condition_issues,
        )
        if condition_issues:
            flags.append(CalculationFlag.EXEMPTION_CONDITION_INVALID)
            warnings.extend(condition_issues)
        outcome = self.evaluator.apply(evaluation.lines, exemptions)
        if outcome.conflicts:
            flags.append(CalculationFlag.EXEMPTION_CONFLICT)
            warnings.extend(outcome.conflicts)

        breakdown: list[BreakdownLine] = []
        for line, net, exempted in zip(
            evaluation.lines, outcome.net_amounts, outcome.exempted_amounts
        ):
            jurisdiction = self.directory.get(line.rate.jurisdiction_id)
            breakdown.append(
                BreakdownLine(
                    jurisdiction_id=jurisdiction.id,
                    jurisdiction_code=jurisdiction.code,
                    jurisdiction_name=jurisdiction.name,
                    jurisdiction_type=jurisdiction.jurisdiction_type.value,
                    rate_id=line.rate.id,
                    tax_type=line.rate.tax_type,
                    tax_name=line.rate.tax_name,
                    rate_type=line.rate.rate_type.value,
                    rate_applied=line.rate.rate_applied,
                    taxable_base=line.taxable_base,
                    gross_tax_amount=line.tax_amount,
                    exempt_amount=exempted,
                    tax_amount=net,
                    is_compound=line.rate.is_compound,
                    is_recoverable=line.rate.is_recoverable,
                )
            )

        total_tax = sum((b.tax_amount for b in breakdown), _ZERO)
        effective = _ZERO if base == 0 else (total_tax / base).quantize(_RATE_PLACES)
        status = (
            CalculationStatus.PENDING
            if resolved.is_resolved
            else CalculationStatus.UNRESOLVED
        )
        now = self._clock()

        calculation = TaxCalculation(
            calculation_id=f"calc_{uuid.uuid4().hex}",
            calculable=calculable,
            line_item=line_item,
            address=address,
            as_of_date=as_of,
            base_amount=base,
            quantity=line_item.quantity,
            jurisdiction_ids=tuple(jurisdiction_ids),
            tax_breakdown=tuple(breakdown),
            total_tax_amount=total_tax,
            final_amount=base + total_tax,
            effective_tax_rate=effective,
            exemptions_applied=tuple(
                AppliedExemption(
                    exemption_id=a.exemption_id,
                    exemption_name=a.exemption_name,
                    tax_name=a.tax_name,
                    jurisdiction_id=a.jurisdiction_id,
                    original_amount=a.original_amount,
                    exempted_amount=a.exempted_amount,
                    is_blanket=a.is_blanket,
                )
                for a in outcome.applications
            ),
            metadata=EngineMetadata(
                resolution=resolved.confidence.value,
                resolution_source=resolved.source,
                confidence=resolved.score,
                external_calls=resolved.external_calls,
                calculation_time_ms=round((time.perf_counter() - started) * 1000, 3),
                warnings=tuple(warnings),
            ),
            status=status,
            flags=tuple(dict.fromkeys(flags)),
            events=[CalculationEvent(kind=EventKind.CREATED, at=now, to_status=status)],
            created_at=now,
        )

        if persist:
            self.store.insert(calculation)
            logger.info(
                "Calculation %s: tax %s on %s via %s (%s)",
                calculation.calculation_id,
                total_tax,
                base,
                resolved.confidence.value,
                status.value,
            )
        return calculation

    def calculate_batch(
        self,
        requests: Sequence[CalculationRequest],
        lookup: Optional[LookupAdapter] = None,
        timeout: Optional[float] = None,
        max_workers: Optional[int] = None,
    ) -> BatchResult:
        """
        Calculate a batch in parallel. Results keep request order;
        a request that fails validation is reported in ``errors``.
        """
        def run(request: CalculationRequest) -> TaxCalculation:
            return self.calculate(
                request.line_item,
                request.address,
                request.as_of_date,
                request.calculable,
                lookup=lookup,
                timeout=timeout,
            )

        calculations: list[TaxCalculation] = []
        errors: list[str] = []
        workers = max_workers or self.config.batch_workers
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="tax-calc") as pool:
            futures = [pool.submit(run, r) for r in requests]
            for i, future in enumerate(futures):
                try:
                    calculations.append(future.result())
                except TaxEngineError as e:
                    errors.append(f"Request {i + 1}: {e}")

        return BatchResult(
            calculations=calculations,
            total_base=sum((c.base_amount for c in calculations), _ZERO),
            total_tax=sum((c.total_tax_amount for c in calculations), _ZERO),
            calculation_count=len(requests),
            unresolved_count=sum(
                1 for c in calculations if c.status is CalculationStatus.UNRESOLVED
            ),
            flagged_count=sum(1 for c in calculations if c.needs_review),
            errors=errors,
        )

    def recalculate(
        self,
        calculation_id: str,
        as_of_date: Optional[date] = None,
        lookup: Optional[LookupAdapter] = None,
        timeout: Optional[float] = None,
    ) -> TaxCalculation:
        """
        Re-run a stored calculation against current reference data.

        Creates a new record linked to the original, which is marked
        superseded. The original's amounts are left untouched.
        """
        with self._lifecycle_lock:
            original = self.store.get(calculation_id)
            if original.superseded_by:
                raise CalculationSuperseded(calculation_id, original.superseded_by)

            fresh = self.calculate(
                original.line_item,
                original.address,
                as_of_date or original.as_of_date,
                original.calculable,
                lookup=lookup,
                timeout=timeout,
                persist=False,
            )
            fresh.supersedes = original.calculation_id
            self.store.insert(fresh)
            original.mark_superseded(fresh.calculation_id, at=self._clock())
            self.store.replace(original)

        logger.info(
            "Calculation %s superseded by %s (tax %s -> %s)",
            original.calculation_id,
            fresh.calculation_id,
            original.total_tax_amount,
            fresh.total_tax_amount,
        )
        return fresh

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _transition(
        self,
        calculation_id: str,
        target: CalculationStatus,
        actor: Optional[str],
        notes: str,
    ) -> TaxCalculation:
        with self._lifecycle_lock:
            calculation = self.store.get(calculation_id)
            calculation.transition(target, actor=actor, notes=notes, at=self._clock())
            self.store.replace(calculation)
        logger.info("Calculation %s -> %s by %s", calculation_id, target.value, actor or "system")
        return calculation

    def validate(self, calculation_id: str, actor: str, notes: str = "") -> TaxCalculation:
        return self._transition(calculation_id, CalculationStatus.VALIDATED, actor, notes)

    def dispute(self, calculation_id: str, actor: str, notes: str = "") -> TaxCalculation:
        return self._transition(calculation_id, CalculationStatus.DISPUTED, actor, notes)

    def reopen(self, calculation_id: str, actor: str, notes: str = "") -> TaxCalculation:
        """Return a disputed calculation to pending. Requires a named actor."""
        return self._transition(calculation_id, CalculationStatus.PENDING, actor, notes)

    # ------------------------------------------------------------------
    # History and reporting
    # ------------------------------------------------------------------

    def history(self, calculable: CalculableRef, limit: int = 10) -> list[TaxCalculation]:
        return self.store.for_calculable(calculable, limit)

    def compare_with_previous(
        self,
        line_item: LineItem,
        address: Address,
        calculable: CalculableRef,
        as_of_date: Optional[date] = None,
    ) -> dict[str, Any]:
        """Dry-run a calculation and diff it against the latest stored one."""
        previous = self.store.for_calculable(calculable, 1)
        if not previous:
            return {"has_previous": False, "comparison": None}

        latest = previous[0]
        current = self.calculate(line_item, address, as_of_date, calculable, persist=False)
        return {
            "has_previous": True,
            "comparison": {
                "previous_calculation_id": latest.calculation_id,
                "previous_created_at": latest.created_at.isoformat(),
                "base_amount_diff": current.base_amount - latest.base_amount,
                "tax_amount_diff": current.total_tax_amount - latest.total_tax_amount,
                "final_amount_diff": current.final_amount - latest.final_amount,
                "rate_diff": current.effective_tax_rate - latest.effective_tax_rate,
                "jurisdictions_changed": current.jurisdiction_ids != latest.jurisdiction_ids,
                "resolution_changed": current.metadata.resolution != latest.metadata.resolution,
            },
        }

    def statistics(self) -> dict[str, Any]:
        """Counts and totals of stored calculations by status and resolution path."""
        rows = [
            {
                "status": c.status.value,
                "resolution": c.metadata.resolution,
                "base_amount": c.base_amount,
                "total_tax_amount": c.total_tax_amount,
                "flagged": c.needs_review,
                "external_calls": c.metadata.external_calls,
            }
            for c in self.store.all()
        ]
        if not rows:
            return {
                "total_calculations": 0,
                "total_base": _ZERO,
                "total_tax": _ZERO,
                "flagged": 0,
                "external_calls": 0,
                "by_status": {},
                "by_resolution": {},
            }

        df = pd.DataFrame(rows)
        return {
            "total_calculations": len(df),
            "total_base": sum(df["base_amount"], _ZERO),
            "total_tax": sum(df["total_tax_amount"], _ZERO),
            "flagged": int(df["flagged"].sum()),
            "external_calls": int(df["external_calls"].sum()),
            "by_status": {k: int(v) for k, v in df["status"].value_counts().items()},
            "by_resolution": {k: int(v) for k, v in df["resolution"].value_counts().items()},
        }
