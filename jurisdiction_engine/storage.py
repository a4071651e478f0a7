"""Persistence boundary for calculation records."""

from __future__ import annotations

import copy
import threading
from typing import Optional, Protocol

from jurisdiction_engine.calculation import CalculableRef, TaxCalculation
from jurisdiction_engine.exceptions import CalculationNotFoundError, TaxEngineError


class CalculationStore(Protocol):
    """Keyed storage for TaxCalculation records."""

    def insert(self, calculation: TaxCalculation) -> None: ...

    def get(self, calculation_id: str) -> TaxCalculation: ...

    def replace(self, calculation: TaxCalculation) -> None: ...

    def for_calculable(self, calculable: CalculableRef, limit: Optional[int] = None) -> list[TaxCalculation]: ...

    def all(self) -> list[TaxCalculation]: ...


class InMemoryCalculationStore:
    """
    Thread-safe dict-backed store.

    Records are copied on the way in and out so callers cannot change
    a stored calculation without going through ``replace``.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._rows: dict[str, TaxCalculation] = {}
        self._by_calculable: dict[CalculableRef, list[str]] = {}

    def __len__(self) -> int:
        return len(self._rows)

    def insert(self, calculation: TaxCalculation) -> None:
        with self._lock:
            if calculation.calculation_id in self._rows:
                raise TaxEngineError(f"Duplicate calculation id {calculation.calculation_id}")
            self._rows[calculation.calculation_id] = copy.deepcopy(calculation)
            if calculation.calculable is not None:
                self._by_calculable.setdefault(calculation.calculable, []).append(
                    calculation.calculation_id
                )

    def get(self, calculation_id: str) -> TaxCalculation:
        with self._lock:
            row = self._rows.get(calculation_id)
            if row is None:
                raise CalculationNotFoundError(calculation_id)
            return copy.deepcopy(row)

    def replace(self, calculation: TaxCalculation) -> None:
        with self._lock:
            if calculation.calculation_id not in self._rows:
                raise CalculationNotFoundError(calculation.calculation_id)
            self._rows[calculation.calculation_id] = copy.deepcopy(calculation)

    def for_calculable(self, calculable: CalculableRef, limit: Optional[int] = None) -> list[TaxCalculation]:
        """Newest first."""
        with self._lock:
            ids = list(reversed(self._by_calculable.get(calculable, [])))
            if limit is not None:
                ids = ids[:limit]
            return [copy.deepcopy(self._rows[i]) for i in ids]

    def all(self) -> list[TaxCalculation]:
        with self._lock:
            return [copy.deepcopy(row) for row in self._rows.values()]
