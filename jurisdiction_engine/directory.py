"""
Jurisdiction directory.

Canonical registry of taxing authorities: states, counties, cities,
transit districts and special districts. Jurisdictions live in an arena
addressed by integer id; the hierarchy is expressed with parent-id links.
The graph is acyclic by construction: a parent must already exist when a
child is added, and ``from_records`` checks bulk imports for cycles.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Iterator, Optional

from jurisdiction_engine.exceptions import DirectoryIntegrityError

logger = logging.getLogger(__name__)


class JurisdictionType(Enum):
    STATE = "state"
    COUNTY = "county"
    CITY = "city"
    TRANSIT = "transit"
    SPECIAL = "special"


# State first, special districts last.
_LEVEL_ORDER: dict[JurisdictionType, int] = {
    JurisdictionType.STATE: 0,
    JurisdictionType.COUNTY: 1,
    JurisdictionType.CITY: 2,
    JurisdictionType.TRANSIT: 3,
    JurisdictionType.SPECIAL: 4,
}


@dataclass(frozen=True)
class Jurisdiction:
    """A taxing authority. ``code`` is unique within its state."""

    id: int
    code: str
    name: str
    jurisdiction_type: JurisdictionType
    state_code: str
    parent_id: Optional[int] = None

    @property
    def level(self) -> int:
        return _LEVEL_ORDER[self.jurisdiction_type]


@dataclass(frozen=True)
class JurisdictionRecord:
    """Import row that names its parent by code instead of by id."""

    code: str
    name: str
    jurisdiction_type: JurisdictionType
    state_code: str
    parent_code: Optional[str] = None


class JurisdictionDirectory:
    """Arena of jurisdictions with code lookup and ancestor traversal."""

    def __init__(self) -> None:
        self._items: list[Jurisdiction] = []
        self._by_code: dict[tuple[str, str], int] = {}

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[Jurisdiction]:
        return iter(self._items)

    def __contains__(self, jurisdiction_id: object) -> bool:
        return isinstance(jurisdiction_id, int) and 0 <= jurisdiction_id < len(self._items)

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    def add(
        self,
        code: str,
        name: str,
        jurisdiction_type: JurisdictionType,
        state_code: str,
        parent_id: Optional[int] = None,
    ) -> Jurisdiction:
        """Append a jurisdiction and return it with its new id."""
        state_code = state_code.strip().upper()
        code = code.strip().upper()
        key = (state_code, code)
        if key in self._by_code:
            raise DirectoryIntegrityError(
                f"Duplicate jurisdiction code {code} in {state_code}"
            )
        if jurisdiction_type is JurisdictionType.STATE and parent_id is not None:
            raise DirectoryIntegrityError(
                f"State jurisdiction {code} cannot have a parent"
            )
        if parent_id is not None and parent_id not in self:
            raise DirectoryIntegrityError(
                f"Unknown parent id {parent_id} for jurisdiction {code}"
            )

        jurisdiction = Jurisdiction(
            id=len(self._items),
            code=code,
            name=name.strip(),
            jurisdiction_type=jurisdiction_type,
            state_code=state_code,
            parent_id=parent_id,
        )
        self._items.append(jurisdiction)
        self._by_code[key] = jurisdiction.id
        return jurisdiction

    @classmethod
    def from_records(cls, records: Iterable[JurisdictionRecord]) -> "JurisdictionDirectory":
        """
        Build a directory from rows in any order.

        Parents are inserted before their children. Rows whose parent
        chain loops back on itself raise DirectoryIntegrityError.
        """
        pending: dict[tuple[str, str], JurisdictionRecord] = {}
        for record in records:
            key = (record.state_code.strip().upper(), record.code.strip().upper())
            if key in pending:
                raise DirectoryIntegrityError(
                    f"Duplicate jurisdiction code {key[1]} in {key[0]}"
                )
            pending[key] = record

        directory = cls()
        visiting: set[tuple[str, str]] = set()

        def insert(key: tuple[str, str]) -> int:
            existing = directory._by_code.get(key)
            if existing is not None:
                return existing
            if key in visiting:
                raise DirectoryIntegrityError(
                    f"Cycle in jurisdiction hierarchy at {key[1]} ({key[0]})"
                )
            record = pending[key]
            parent_id: Optional[int] = None
            if record.parent_code:
                parent_key = (key[0], record.parent_code.strip().upper())
                if parent_key not in pending:
                    raise DirectoryIntegrityError(
                        f"Unknown parent {parent_key[1]} for jurisdiction {key[1]}"
                    )
                visiting.add(key)
                parent_id = insert(parent_key)
                visiting.discard(key)
            return directory.add(
                record.code,
                record.name,
                record.jurisdiction_type,
                record.state_code,
                parent_id,
            ).id

        for key in pending:
            insert(key)

        orphans = [j.code for j in directory if directory.is_orphaned(j.id)]
        if orphans:
            logger.warning(
                "Imported %d jurisdictions without a state ancestor: %s",
                len(orphans),
                ", ".join(orphans),
            )
        return directory

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, jurisdiction_id: int) -> Jurisdiction:
        if jurisdiction_id not in self:
            raise KeyError(f"Unknown jurisdiction id: {jurisdiction_id}")
        return self._items[jurisdiction_id]

    def by_code(self, state_code: str, code: str) -> Optional[Jurisdiction]:
        jurisdiction_id = self._by_code.get((state_code.strip().upper(), code.strip().upper()))
        return None if jurisdiction_id is None else self._items[jurisdiction_id]

    def state_for(self, state_code: str) -> Optional[Jurisdiction]:
        """The state-level jurisdiction for a two-letter state code."""
        state_code = state_code.strip().upper()
        for jurisdiction in self._items:
            if (
                jurisdiction.jurisdiction_type is JurisdictionType.STATE
                and jurisdiction.state_code == state_code
            ):
                return jurisdiction
        return None

    def ancestors(self, jurisdiction_id: int) -> list[Jurisdiction]:
        """Parent chain from the immediate parent up to the root."""
        chain: list[Jurisdiction] = []
        current = self.get(jurisdiction_id)
        while current.parent_id is not None:
            current = self._items[current.parent_id]
            chain.append(current)
        return chain

    def is_orphaned(self, jurisdiction_id: int) -> bool:
        """True when a non-state jurisdiction never reaches a state ancestor."""
        jurisdiction = self.get(jurisdiction_id)
        if jurisdiction.jurisdiction_type is JurisdictionType.STATE:
            return False
        return not any(
            a.jurisdiction_type is JurisdictionType.STATE
            for a in self.ancestors(jurisdiction_id)
        )

    def order_key(self, jurisdiction_id: int) -> tuple[int, int]:
        jurisdiction = self.get(jurisdiction_id)
        return (jurisdiction.level, jurisdiction.id)

    def sort_ids(self, jurisdiction_ids: Iterable[int]) -> list[int]:
        """Unique ids ordered state, county, city, transit, special."""
        return sorted(set(jurisdiction_ids), key=self.order_key)
