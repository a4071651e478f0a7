"""
Tax Jurisdiction Engine - address-to-authority resolution and auditable tax calculation.

Modules:
    directory        - Hierarchical jurisdiction arena (state, county, city, transit, special)
    addresses        - Address normalization and the address range index
    learner          - Confidence-scored patterns learned from external lookups
    lookup_cache     - Provider-bounded cache in front of injected lookup functions
    resolver         - Address -> jurisdictions (exact, learned, external, unresolved)
    rates            - Time-versioned, prioritized, compounding rate catalog
    exemptions       - Blanket, partial and conditional exemption evaluation
    calculation      - The immutable calculation record and its status machine
    storage          - Calculation persistence port and in-memory store
    orchestrator     - TaxEngine facade: calculate, recalculate, lifecycle, history
    importer         - CSV loaders for reference data
    report_generator - JSON/CSV reports over calculations
"""

__version__ = "1.0.0"

from jurisdiction_engine.addresses import Address, AddressRange, AddressRangeIndex
from jurisdiction_engine.calculation import (
    CalculableKind,
    CalculableRef,
    CalculationFlag,
    CalculationStatus,
    LineItem,
    TaxCalculation,
)
from jurisdiction_engine.config import EngineConfig, load_config
from jurisdiction_engine.directory import Jurisdiction, JurisdictionDirectory, JurisdictionType
from jurisdiction_engine.exceptions import TaxEngineError, ValidationError
from jurisdiction_engine.exemptions import ExemptionEvaluator, TaxExemption
from jurisdiction_engine.learner import LearnedPattern, PatternLearner
from jurisdiction_engine.lookup_cache import ExternalLookupCache
from jurisdiction_engine.orchestrator import CalculationRequest, TaxEngine
from jurisdiction_engine.rates import RateCatalog, RateType, TaxRate
from jurisdiction_engine.resolver import AddressResolver, ResolutionConfidence

__all__ = [
    "Address",
    "AddressRange",
    "AddressRangeIndex",
    "AddressResolver",
    "CalculableKind",
    "CalculableRef",
    "CalculationFlag",
    "CalculationRequest",
    "CalculationStatus",
    "EngineConfig",
    "ExemptionEvaluator",
    "ExternalLookupCache",
    "Jurisdiction",
    "JurisdictionDirectory",
    "JurisdictionType",
    "LearnedPattern",
    "LineItem",
    "PatternLearner",
    "RateCatalog",
    "RateType",
    "ResolutionConfidence",
    "TaxCalculation",
    "TaxEngine",
    "TaxEngineError",
    "TaxExemption",
    "TaxRate",
    "ValidationError",
    "load_config",
]
