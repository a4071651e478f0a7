"""
Typed exceptions for the jurisdiction engine.

Only malformed input is a hard error for a caller of the orchestrator.
Data-quality anomalies (no rate, unresolved address, conflicting
exemptions, overlapping rate windows) are recorded as flags on the
calculation instead of being raised.

    TaxEngineError
    +-- ValidationError           (also ValueError)
    +-- ConfigurationError        (also ValueError)
    +-- DirectoryIntegrityError
    +-- CalculationNotFoundError  (also KeyError)
    +-- InvalidStatusTransition
    +-- CalculationSuperseded
    +-- ExternalLookupFailure
"""

from __future__ import annotations

from typing import Optional


class TaxEngineError(Exception):
    """Base class. ``code`` is stable and safe to expose to API callers."""

    code: str = "TAX_ENGINE_ERROR"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class ValidationError(TaxEngineError, ValueError):
    """Malformed line item or address, raised before any resolution work."""

    code = "INVALID_INPUT"

    def __init__(self, message: str, field_name: Optional[str] = None) -> None:
        self.field_name = field_name
        super().__init__(message)


class ConfigurationError(TaxEngineError, ValueError):
    code = "INVALID_CONFIGURATION"


class DirectoryIntegrityError(TaxEngineError):
    """Imported reference data violates a structural invariant."""

    code = "DIRECTORY_INTEGRITY"


class CalculationNotFoundError(TaxEngineError, KeyError):
    code = "CALCULATION_NOT_FOUND"

    def __init__(self, calculation_id: str) -> None:
        self.calculation_id = calculation_id
        super().__init__(f"Calculation not found: {calculation_id}")

    def __str__(self) -> str:
        return self.message


class InvalidStatusTransition(TaxEngineError):
    code = "INVALID_STATUS_TRANSITION"

    def __init__(self, calculation_id: str, current: str, target: str) -> None:
        self.calculation_id = calculation_id
        self.current = current
        self.target = target
        super().__init__(
            f"Calculation {calculation_id} cannot move from "
            f"{current} to {target}"
        )


class CalculationSuperseded(TaxEngineError):
    code = "CALCULATION_SUPERSEDED"

    def __init__(self, calculation_id: str, superseded_by: str) -> None:
        self.calculation_id = calculation_id
        self.superseded_by = superseded_by
        super().__init__(
            f"Calculation {calculation_id} was already superseded by "
            f"{superseded_by}; recalculate the latest record instead"
        )


class ExternalLookupFailure(TaxEngineError):
    """Provider error or timeout. Caught at the cache boundary."""

    code = "EXTERNAL_LOOKUP_FAILURE"

    def __init__(self, provider: str, reason: str) -> None:
        self.provider = provider
        self.reason = reason
        super().__init__(f"Lookup via {provider} failed: {reason}")
