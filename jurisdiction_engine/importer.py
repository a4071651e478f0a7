"""
CSV import of reference data.

Expected files in a data directory:

    jurisdictions.csv   code, name, type, state, parent_code
    address_ranges.csv  id, state, county_code, street_name, address_from,
                        address_to, parity, zip, [zip4, pre_directional,
                        suffix, post_directional, state_jurisdiction,
                        county_jurisdiction, city_jurisdiction,
                        transit_jurisdiction, additional_jurisdictions,
                        data_source, imported_at]
    rates.csv           id, state, jurisdiction_code, tax_type, tax_name,
                        rate_type, effective_date, [expiry_date, ...]
    exemptions.csv      optional; id, exemption_name, exemption_type, ...
    patterns.csv        optional; authority_name, authority_id,
                        confidence, [pattern_type, state, zip, city,
                        jurisdiction_codes, observations, agreements]

Jurisdictions are referenced by (state, code). List columns are
semicolon separated; ``exemption_conditions`` holds a JSON array.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Iterable, Optional, Union

import pandas as pd

from jurisdiction_engine.addresses import (
    AddressRange,
    AddressRangeIndex,
    Parity,
    abbreviate_directional,
    abbreviate_suffix,
    normalize_token,
    split_zip,
)
from jurisdiction_engine.directory import (
    JurisdictionDirectory,
    JurisdictionRecord,
    JurisdictionType,
)
from jurisdiction_engine.exceptions import DirectoryIntegrityError
from jurisdiction_engine.exemptions import (
    ExemptionStatus,
    TaxExemption,
    VerificationStatus,
    validate_condition,
)
from jurisdiction_engine.learner import LearnedPattern, PatternLearner
from jurisdiction_engine.rates import RateCatalog, RateType, TaxRate

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

_TRUE = {"1", "true", "yes", "y", "t"}


@dataclass
class Dataset:
    """Everything the engine needs, loaded from one data directory."""

    directory: JurisdictionDirectory
    index: AddressRangeIndex
    catalog: RateCatalog
    exemptions: list[TaxExemption] = field(default_factory=list)
    patterns: list[LearnedPattern] = field(default_factory=list)


def _read(path: PathLike, required: Iterable[str]) -> list[dict[str, str]]:
    csv_path = Path(path)
    if not csv_path.exists():
        raise FileNotFoundError(f"File not found: {csv_path}")
    df = pd.read_csv(csv_path, dtype=str, keep_default_na=False)
    df.columns = [c.strip().lower() for c in df.columns]
    missing = [c for c in required if c not in df.columns]
    if missing:
        raise DirectoryIntegrityError(f"{csv_path.name} is missing columns: {', '.join(missing)}")
    df = df.apply(lambda col: col.str.strip())
    return df.to_dict("records")


def _opt(row: dict[str, str], name: str) -> Optional[str]:
    value = row.get(name, "")
    return value or None


def _opt_decimal(row: dict[str, str], name: str) -> Optional[Decimal]:
    value = _opt(row, name)
    return Decimal(value) if value is not None else None


def _opt_date(row: dict[str, str], name: str) -> Optional[date]:
    value = _opt(row, name)
    return date.fromisoformat(value) if value is not None else None


def _flag(row: dict[str, str], name: str) -> bool:
    return row.get(name, "").lower() in _TRUE


def _list(row: dict[str, str], name: str) -> tuple[str, ...]:
    return tuple(v.strip() for v in row.get(name, "").split(";") if v.strip())


def _jurisdiction_id(
    directory: JurisdictionDirectory,
    state: str,
    code: Optional[str],
    context: str,
) -> Optional[int]:
    if not code:
        return None
    jurisdiction = directory.by_code(state, code)
    if jurisdiction is None:
        raise DirectoryIntegrityError(f"{context}: unknown jurisdiction {code} in {state}")
    return jurisdiction.id


# ---------------------------------------------------------------------------
# Loaders
# ---------------------------------------------------------------------------


def load_jurisdictions(path: PathLike) -> JurisdictionDirectory:
    rows = _read(path, ("code", "name", "type", "state"))
    records = []
    for row in rows:
        try:
            jurisdiction_type = JurisdictionType(row["type"].lower())
        except ValueError:
            raise DirectoryIntegrityError(
                f"Jurisdiction {row['code']}: unknown type {row['type']!r}"
            ) from None
        records.append(
            JurisdictionRecord(
                code=row["code"],
                name=row["name"],
                jurisdiction_type=jurisdiction_type,
                state_code=row["state"],
                parent_code=_opt(row, "parent_code"),
            )
        )
    directory = JurisdictionDirectory.from_records(records)
    logger.info("Loaded %d jurisdictions from %s", len(directory), path)
    return directory


def read_address_ranges(path: PathLike, directory: JurisdictionDirectory) -> list[AddressRange]:
    rows = _read(
        path,
        ("id", "state", "county_code", "street_name", "address_from", "address_to", "zip"),
    )
    ranges = []
    for row in rows:
        state = row["state"].upper()
        context = f"Address range {row['id']}"
        zip5, zip4 = split_zip(row["zip"])
        imported_at = _opt(row, "imported_at")
        ranges.append(
            AddressRange(
                id=int(row["id"]),
                state=state,
                county_code=row["county_code"],
                street_name=normalize_token(row["street_name"]),
                address_from=int(row["address_from"]),
                address_to=int(row["address_to"]),
                zip5=zip5,
                zip4=_opt(row, "zip4") or zip4,
                parity=Parity((row.get("parity") or "both").lower()),
                pre_directional=abbreviate_directional(row.get("pre_directional")),
                suffix=abbreviate_suffix(row.get("suffix")),
                post_directional=abbreviate_directional(row.get("post_directional")),
                state_jurisdiction_id=_jurisdiction_id(
                    directory, state, _opt(row, "state_jurisdiction"), context
                ),
                county_jurisdiction_id=_jurisdiction_id(
                    directory, state, _opt(row, "county_jurisdiction"), context
                ),
                city_jurisdiction_id=_jurisdiction_id(
                    directory, state, _opt(row, "city_jurisdiction"), context
                ),
                transit_jurisdiction_id=_jurisdiction_id(
                    directory, state, _opt(row, "transit_jurisdiction"), context
                ),
                additional_jurisdiction_ids=tuple(
                    _jurisdiction_id(directory, state, code, context)
                    for code in _list(row, "additional_jurisdictions")
                ),
                data_source=row.get("data_source") or "default",
                imported_at=datetime.fromisoformat(imported_at) if imported_at else None,
            )
        )
    return ranges


def load_address_ranges(path: PathLike, directory: JurisdictionDirectory) -> AddressRangeIndex:
    index = AddressRangeIndex(read_address_ranges(path, directory))
    logger.info("Loaded %d address ranges from %s", len(index), path)
    return index


def read_rates(path: PathLike, directory: JurisdictionDirectory) -> list[TaxRate]:
    rows = _read(
        path,
        ("id", "state", "jurisdiction_code", "tax_type", "tax_name", "rate_type", "effective_date"),
    )
    rates = []
    for row in rows:
        state = row["state"].upper()
        jurisdiction_id = _jurisdiction_id(
            directory, state, row["jurisdiction_code"], f"Rate {row['id']}"
        )
        rates.append(
            TaxRate(
                id=int(row["id"]),
                jurisdiction_id=jurisdiction_id,
                tax_type=row["tax_type"],
                tax_name=row["tax_name"],
                rate_type=RateType(row["rate_type"].lower()),
                effective_date=date.fromisoformat(row["effective_date"]),
                expiry_date=_opt_date(row, "expiry_date"),
                tax_category=_opt(row, "tax_category"),
                service_type=_opt(row, "service_type"),
                percentage_rate=_opt_decimal(row, "percentage_rate"),
                fixed_amount=_opt_decimal(row, "fixed_amount"),
                minimum_threshold=_opt_decimal(row, "minimum_threshold"),
                maximum_amount=_opt_decimal(row, "maximum_amount"),
                calculation_method=row.get("calculation_method") or "standard",
                is_compound=_flag(row, "is_compound"),
                is_recoverable=_flag(row, "is_recoverable"),
                priority=int(row.get("priority") or 100),
                tier_table=_opt(row, "tier_table"),
            )
        )
    return rates


def load_rates(path: PathLike, directory: JurisdictionDirectory) -> RateCatalog:
    catalog = RateCatalog(read_rates(path, directory))
    logger.info("Loaded %d tax rates from %s", len(catalog), path)
    return catalog


def load_exemptions(path: PathLike, directory: JurisdictionDirectory) -> list[TaxExemption]:
    rows = _read(path, ("id", "exemption_name", "exemption_type"))
    exemptions = []
    for row in rows:
        context = f"Exemption {row['id']}"
        state = (row.get("state") or "").upper()
        try:
            conditions = json.loads(row.get("exemption_conditions") or "[]")
        except json.JSONDecodeError as e:
            raise DirectoryIntegrityError(f"{context}: exemption_conditions is not JSON ({e})") from e
        if not isinstance(conditions, list):
            raise DirectoryIntegrityError(f"{context}: exemption_conditions must be a JSON array")
        for condition in conditions:
            try:
                validate_condition(condition)
            except ValueError as e:
                raise DirectoryIntegrityError(f"{context}: {e}") from e
        exemptions.append(
            TaxExemption(
                id=int(row["id"]),
                exemption_name=row["exemption_name"],
                exemption_type=row["exemption_type"],
                client_id=_opt(row, "client_id"),
                jurisdiction_id=_jurisdiction_id(
                    directory, state, _opt(row, "jurisdiction_code"), context
                ),
                tax_category=_opt(row, "tax_category"),
                is_blanket=_flag(row, "is_blanket"),
                applicable_tax_types=_list(row, "applicable_tax_types"),
                applicable_services=_list(row, "applicable_services"),
                exemption_conditions=tuple(conditions),
                exemption_percentage=_opt_decimal(row, "exemption_percentage"),
                maximum_exemption_amount=_opt_decimal(row, "maximum_exemption_amount"),
                status=ExemptionStatus((row.get("status") or "active").lower()),
                verification_status=VerificationStatus(
                    (row.get("verification_status") or "pending").lower()
                ),
                issue_date=_opt_date(row, "issue_date"),
                expiry_date=_opt_date(row, "expiry_date"),
                certificate_number=_opt(row, "certificate_number"),
                issuing_state=state or None,
            )
        )
    logger.info("Loaded %d exemptions from %s", len(exemptions), path)
    return exemptions


def load_patterns(path: PathLike) -> list[LearnedPattern]:
    rows = _read(path, ("authority_name", "authority_id", "confidence"))
    patterns = []
    for row in rows:
        data: dict[str, Any] = {
            name: row[name] for name in ("state", "zip", "city") if row.get(name)
        }
        codes = _list(row, "jurisdiction_codes")
        if codes:
            data["jurisdiction_codes"] = sorted(c.upper() for c in codes)
        updated_at = _opt(row, "updated_at")
        patterns.append(
            LearnedPattern(
                authority_name=row["authority_name"],
                authority_id=row["authority_id"],
                pattern_type=row.get("pattern_type") or "discovered",
                confidence=float(row["confidence"]),
                pattern_data=data,
                observations=int(row.get("observations") or 1),
                agreements=int(row.get("agreements") or 0),
                updated_at=datetime.fromisoformat(updated_at) if updated_at else None,
            )
        )
    logger.info("Loaded %d learned patterns from %s", len(patterns), path)
    return patterns


def save_patterns(learner: PatternLearner, path: PathLike) -> int:
    """Write every learned pattern, retired ones included, to ``path``."""
    rows = [
        {
            "authority_name": p.authority_name,
            "authority_id": p.authority_id,
            "pattern_type": p.pattern_type,
            "confidence": p.confidence,
            "state": p.pattern_data.get("state", ""),
            "zip": p.pattern_data.get("zip", ""),
            "city": p.pattern_data.get("city") or "",
            "jurisdiction_codes": ";".join(p.jurisdiction_codes),
            "observations": p.observations,
            "agreements": p.agreements,
            "updated_at": p.updated_at.isoformat() if p.updated_at else "",
        }
        for p in learner.all_patterns()
    ]
    columns = [
        "authority_name", "authority_id", "pattern_type", "confidence", "state", "zip",
        "city", "jurisdiction_codes", "observations", "agreements", "updated_at",
    ]
    pd.DataFrame(rows, columns=columns).to_csv(path, index=False)
    return len(rows)


def load_dataset(data_dir: PathLike) -> Dataset:
    """Load a complete data directory. ``exemptions.csv`` and ``patterns.csv`` are optional."""
    base = Path(data_dir)
    directory = load_jurisdictions(base / "jurisdictions.csv")
    index = load_address_ranges(base / "address_ranges.csv", directory)
    catalog = load_rates(base / "rates.csv", directory)
    exemptions_path = base / "exemptions.csv"
    exemptions = (
        load_exemptions(exemptions_path, directory) if exemptions_path.exists() else []
    )
    patterns_path = base / "patterns.csv"
    patterns = load_patterns(patterns_path) if patterns_path.exists() else []
    return Dataset(
        directory=directory,
        index=index,
        catalog=catalog,
        exemptions=exemptions,
        patterns=patterns,
    )
