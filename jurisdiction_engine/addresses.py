"""
Street address normalization and the address range index.

Address ranges are imported street segments: a street name, a house
number span with parity, a ZIP (optionally ZIP+4) and the jurisdictions
governing every address on that segment. Service addresses are
normalized into the same token shape as the imported ranges before they
are matched.

Sources: USPS Publication 28 (directionals and street suffixes).
"""

from __future__ import annotations

import re
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Iterable, Optional

from jurisdiction_engine.exceptions import ValidationError


class Parity(Enum):
    EVEN = "even"
    ODD = "odd"
    BOTH = "both"

    def matches(self, number: int) -> bool:
        if self is Parity.BOTH:
            return True
        return (number % 2 == 0) == (self is Parity.EVEN)


_DIRECTIONALS: dict[str, str] = {
    "NORTH": "N",
    "SOUTH": "S",
    "EAST": "E",
    "WEST": "W",
    "NORTHEAST": "NE",
    "NORTHWEST": "NW",
    "SOUTHEAST": "SE",
    "SOUTHWEST": "SW",
    "N": "N",
    "S": "S",
    "E": "E",
    "W": "W",
    "NE": "NE",
    "NW": "NW",
    "SE": "SE",
    "SW": "SW",
}

# USPS standard suffix abbreviations (common subset).
_SUFFIXES: dict[str, str] = {
    "ALLEY": "ALY",
    "AVENUE": "AVE",
    "AV": "AVE",
    "AVE": "AVE",
    "BOULEVARD": "BLVD",
    "BLVD": "BLVD",
    "CIRCLE": "CIR",
    "CIR": "CIR",
    "COURT": "CT",
    "CT": "CT",
    "COVE": "CV",
    "CV": "CV",
    "DRIVE": "DR",
    "DR": "DR",
    "EXPRESSWAY": "EXPY",
    "EXPY": "EXPY",
    "FREEWAY": "FWY",
    "FWY": "FWY",
    "HIGHWAY": "HWY",
    "HWY": "HWY",
    "LANE": "LN",
    "LN": "LN",
    "LOOP": "LOOP",
    "PARKWAY": "PKWY",
    "PKWY": "PKWY",
    "PLACE": "PL",
    "PL": "PL",
    "PLAZA": "PLZ",
    "PLZ": "PLZ",
    "ROAD": "RD",
    "RD": "RD",
    "SQUARE": "SQ",
    "SQ": "SQ",
    "STREET": "ST",
    "STR": "ST",
    "ST": "ST",
    "TERRACE": "TER",
    "TER": "TER",
    "TRAIL": "TRL",
    "TRL": "TRL",
    "WAY": "WAY",
}

_UNIT_DESIGNATORS = frozenset(
    {"APT", "APARTMENT", "UNIT", "STE", "SUITE", "BLDG", "BUILDING", "FL", "FLOOR",
     "RM", "ROOM", "LOT", "SPC", "SPACE", "TRLR", "DEPT", "#"}
)

_ZIP_RE = re.compile(r"^(\d{5})(?:-?(\d{4}))?$")
_HOUSE_NUMBER_RE = re.compile(r"^(\d+)[A-Z]?$")
_PUNCTUATION_RE = re.compile(r"[.,]")
_WHITESPACE_RE = re.compile(r"\s+")


def normalize_token(value: Optional[str]) -> str:
    """Uppercase, drop periods/commas and collapse whitespace."""
    if not value:
        return ""
    value = _PUNCTUATION_RE.sub("", value.upper())
    return _WHITESPACE_RE.sub(" ", value).strip()


def abbreviate_directional(value: Optional[str]) -> Optional[str]:
    token = normalize_token(value)
    if not token:
        return None
    return _DIRECTIONALS.get(token, token)


def abbreviate_suffix(value: Optional[str]) -> Optional[str]:
    token = normalize_token(value)
    if not token:
        return None
    return _SUFFIXES.get(token, token)


def split_zip(value: str) -> tuple[str, Optional[str]]:
    """Split '77002-1234' / '770021234' / '77002' into (zip5, zip4)."""
    match = _ZIP_RE.match((value or "").strip())
    if not match:
        raise ValidationError(f"Invalid ZIP code: {value!r}", field_name="zip_code")
    return match.group(1), match.group(2)


@dataclass
class Address:
    """A service address as supplied by a billing collaborator."""

    street_number: str
    street_name: str
    state: str
    zip_code: str
    city: Optional[str] = None
    pre_directional: Optional[str] = None
    suffix: Optional[str] = None
    post_directional: Optional[str] = None
    unit: Optional[str] = None

    @classmethod
    def parse(
        cls,
        line1: str,
        city: Optional[str],
        state: str,
        zip_code: str,
    ) -> "Address":
        """
        Parse a free-form street line such as '1200 N Main Street Apt 4'.

        Unit designators and everything after them are split off into
        ``unit``. A leading/trailing directional and a trailing USPS
        suffix are recognized; the rest is the street name.
        """
        tokens = normalize_token(line1).replace("#", " # ").split()
        if not tokens:
            raise ValidationError("Street line is empty", field_name="street")

        unit: Optional[str] = None
        for i, token in enumerate(tokens):
            if token in _UNIT_DESIGNATORS and i > 1:
                unit = " ".join(tokens[i:])
                tokens = tokens[:i]
                break

        number = tokens.pop(0)
        pre_dir: Optional[str] = None
        post_dir: Optional[str] = None
        suffix: Optional[str] = None

        if len(tokens) > 1 and tokens[0] in _DIRECTIONALS:
            pre_dir = _DIRECTIONALS[tokens.pop(0)]
        if len(tokens) > 1 and tokens[-1] in _DIRECTIONALS:
            post_dir = _DIRECTIONALS[tokens.pop()]
        if len(tokens) > 1 and tokens[-1] in _SUFFIXES:
            suffix = _SUFFIXES[tokens.pop()]

        return cls(
            street_number=number,
            street_name=" ".join(tokens),
            state=state,
            zip_code=zip_code,
            city=city,
            pre_directional=pre_dir,
            suffix=suffix,
            post_directional=post_dir,
            unit=unit,
        )

    @classmethod
    def from_dict(cls, data: dict) -> "Address":
        if "line1" in data and "street_name" not in data:
            return cls.parse(
                data["line1"], data.get("city"), data.get("state", ""), data.get("zip_code", "")
            )
        return cls(
            street_number=str(data.get("street_number", "")),
            street_name=data.get("street_name", ""),
            state=data.get("state", ""),
            zip_code=str(data.get("zip_code", "")),
            city=data.get("city"),
            pre_directional=data.get("pre_directional"),
            suffix=data.get("suffix"),
            post_directional=data.get("post_directional"),
            unit=data.get("unit"),
        )

    def to_dict(self) -> dict:
        return {
            "street_number": self.street_number,
            "street_name": self.street_name,
            "state": self.state,
            "zip_code": self.zip_code,
            "city": self.city,
            "pre_directional": self.pre_directional,
            "suffix": self.suffix,
            "post_directional": self.post_directional,
            "unit": self.unit,
        }


@dataclass(frozen=True)
class NormalizedAddress:
    """Address in the token shape used by AddressRange rows."""

    state: str
    zip5: str
    zip4: Optional[str]
    number: int
    street_name: str
    city: Optional[str] = None
    pre_directional: Optional[str] = None
    suffix: Optional[str] = None
    post_directional: Optional[str] = None

    @property
    def zip_code(self) -> str:
        return f"{self.zip5}-{self.zip4}" if self.zip4 else self.zip5


def normalize_address(address: Address) -> NormalizedAddress:
    """
    Normalize a service address.

    Raises ValidationError for missing state, street name, house number
    or a malformed ZIP.
    """
    state = normalize_token(address.state)
    if len(state) != 2 or not state.isalpha():
        raise ValidationError(f"Invalid state code: {address.state!r}", field_name="state")

    street = normalize_token(address.street_name)
    if not street:
        raise ValidationError("Street name is required", field_name="street_name")

    number_token = normalize_token(address.street_number).replace(" ", "")
    match = _HOUSE_NUMBER_RE.match(number_token)
    if not match:
        raise ValidationError(
            f"Invalid house number: {address.street_number!r}", field_name="street_number"
        )

    zip5, zip4 = split_zip(address.zip_code)
    pre_dir = abbreviate_directional(address.pre_directional)
    post_dir = abbreviate_directional(address.post_directional)
    suffix = abbreviate_suffix(address.suffix)

    # Street names supplied with their suffix or directional still attached.
    tokens = street.split()
    if suffix is None and len(tokens) > 1 and tokens[-1] in _SUFFIXES:
        suffix = _SUFFIXES[tokens.pop()]
    if pre_dir is None and len(tokens) > 1 and tokens[0] in _DIRECTIONALS:
        pre_dir = _DIRECTIONALS[tokens.pop(0)]

    return NormalizedAddress(
        state=state,
        zip5=zip5,
        zip4=zip4,
        number=int(match.group(1)),
        street_name=" ".join(tokens),
        city=normalize_token(address.city) or None,
        pre_directional=pre_dir,
        suffix=suffix,
        post_directional=post_dir,
    )


@dataclass(frozen=True)
class AddressRange:
    """
    Imported street segment mapping a house-number span to jurisdictions.

    Immutable once imported; a re-import replaces every row of its
    data source.
    """

    id: int
    state: str
    county_code: str
    street_name: str
    address_from: int
    address_to: int
    zip5: str
    parity: Parity = Parity.BOTH
    zip4: Optional[str] = None
    pre_directional: Optional[str] = None
    suffix: Optional[str] = None
    post_directional: Optional[str] = None
    state_jurisdiction_id: Optional[int] = None
    county_jurisdiction_id: Optional[int] = None
    city_jurisdiction_id: Optional[int] = None
    transit_jurisdiction_id: Optional[int] = None
    additional_jurisdiction_ids: tuple[int, ...] = ()
    data_source: str = "default"
    imported_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        if self.address_from > self.address_to:
            raise ValidationError(
                f"Address range {self.id}: address_from {self.address_from} "
                f"exceeds address_to {self.address_to}"
            )

    @property
    def width(self) -> int:
        return self.address_to - self.address_from

    @property
    def jurisdiction_ids(self) -> list[int]:
        direct = [
            self.state_jurisdiction_id,
            self.county_jurisdiction_id,
            self.city_jurisdiction_id,
            self.transit_jurisdiction_id,
        ]
        ids = [j for j in direct if j is not None]
        ids.extend(j for j in self.additional_jurisdiction_ids if j not in ids)
        return ids

    def matches(self, address: NormalizedAddress) -> bool:
        if not self.address_from <= address.number <= self.address_to:
            return False
        if not self.parity.matches(address.number):
            return False
        if self.zip4 and address.zip4 and self.zip4 != address.zip4:
            return False
        for mine, theirs in (
            (self.pre_directional, address.pre_directional),
            (self.suffix, address.suffix),
            (self.post_directional, address.post_directional),
        ):
            if mine and theirs and mine != theirs:
                return False
        return True

    def specificity(self, address: NormalizedAddress) -> tuple:
        """Sort key, smaller is better: narrowest span, ZIP+4 hit, newest import."""
        zip4_hit = bool(self.zip4 and address.zip4 and self.zip4 == address.zip4)
        imported = self.imported_at.timestamp() if self.imported_at else float("-inf")
        return (self.width, not zip4_hit, -imported, self.id)


_IndexKey = tuple[str, str, str]


@dataclass
class RangeMatch:
    """Winning range plus the other candidates it beat."""

    range: AddressRange
    candidates: list[AddressRange] = field(default_factory=list)

    @property
    def ambiguous(self) -> bool:
        return len(self.candidates) > 1


class AddressRangeIndex:
    """
    Address ranges indexed on (state, zip5, street name).

    Lookups scan only the segments of one street in one ZIP. Writes build
    a new index and swap it in, so concurrent readers always see either
    the old or the new contents of a data source, never a mix.
    """

    def __init__(self, ranges: Iterable[AddressRange] = ()) -> None:
        self._write_lock = threading.Lock()
        self._index: dict[_IndexKey, tuple[AddressRange, ...]] = {}
        self._rebuild(list(ranges))

    @staticmethod
    def _key(state: str, zip5: str, street_name: str) -> _IndexKey:
        return (normalize_token(state), zip5, normalize_token(street_name))

    def _rebuild(self, ranges: list[AddressRange]) -> None:
        buckets: dict[_IndexKey, list[AddressRange]] = {}
        for r in ranges:
            buckets.setdefault(self._key(r.state, r.zip5, r.street_name), []).append(r)
        self._index = {
            key: tuple(sorted(rows, key=lambda r: (r.address_from, r.address_to, r.id)))
            for key, rows in buckets.items()
        }

    def __len__(self) -> int:
        return sum(len(rows) for rows in self._index.values())

    def all_ranges(self) -> list[AddressRange]:
        return [r for rows in self._index.values() for r in rows]

    def add(self, ranges: Iterable[AddressRange]) -> None:
        with self._write_lock:
            self._rebuild(self.all_ranges() + list(ranges))

    def replace_source(
        self,
        data_source: str,
        ranges: Iterable[AddressRange],
        imported_at: Optional[datetime] = None,
    ) -> int:
        """
        Swap every row of ``data_source`` for ``ranges``. Returns rows removed.

        ``imported_at`` stamps new rows that carry no import time of their own.
        """
        new_rows = [
            replace(r, imported_at=imported_at) if imported_at and r.imported_at is None else r
            for r in ranges
        ]
        for r in new_rows:
            if r.data_source != data_source:
                raise ValidationError(
                    f"Range {r.id} belongs to {r.data_source}, not {data_source}"
                )
        with self._write_lock:
            kept = [r for r in self.all_ranges() if r.data_source != data_source]
            removed = len(self) - len(kept)
            self._rebuild(kept + new_rows)
        return removed

    def candidates(self, address: NormalizedAddress) -> list[AddressRange]:
        index = self._index
        rows = index.get(self._key(address.state, address.zip5, address.street_name), ())
        return [r for r in rows if r.matches(address)]

    def find(self, address: NormalizedAddress) -> Optional[RangeMatch]:
        """Best matching range for an address, or None."""
        matches = self.candidates(address)
        if not matches:
            return None
        matches.sort(key=lambda r: r.specificity(address))
        return RangeMatch(range=matches[0], candidates=matches)
