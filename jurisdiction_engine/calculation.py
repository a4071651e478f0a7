"""
The auditable tax calculation record.

A TaxCalculation is created once per billing calculation and never
edited in place: amounts and the breakdown are frozen, status changes
are appended to an event log, and a recalculation produces a new record
linked to the one it supersedes.

Status machine:

    pending ----> validated (terminal)
       |  ^
       v  |  (reopen, explicit human action)
    disputed

``unresolved`` is an initial status like ``pending`` for calculations
whose address could not be placed; it leaves the same way.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Optional

from jurisdiction_engine.addresses import Address
from jurisdiction_engine.exceptions import InvalidStatusTransition, ValidationError

_ZERO = Decimal("0")


def _to_decimal(value: Any, field_name: str) -> Decimal:
    try:
        return value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field_name} is not a number: {value!r}", field_name) from None


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class CalculableKind(Enum):
    INVOICE = "invoice"
    INVOICE_ITEM = "invoice_item"
    QUOTE = "quote"
    QUOTE_ITEM = "quote_item"
    RECURRING_CHARGE = "recurring_charge"
    PRODUCT = "product"
    SERVICE = "service"


@dataclass(frozen=True)
class CalculableRef:
    """The billable entity a calculation belongs to."""

    kind: CalculableKind
    id: str

    def to_dict(self) -> dict[str, str]:
        return {"kind": self.kind.value, "id": self.id}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CalculableRef":
        return cls(CalculableKind(data["kind"]), str(data["id"]))


@dataclass
class LineItem:
    """A billable line as handed over by invoicing."""

    amount: Decimal
    service_type: str
    quantity: Decimal = Decimal("1")
    tax_category: Optional[str] = None
    client_id: Optional[str] = None
    description: Optional[str] = None

    def __post_init__(self) -> None:
        self.amount = _to_decimal(self.amount, "amount")
        self.quantity = _to_decimal(self.quantity, "quantity")

    def validate(self) -> None:
        if not self.amount.is_finite() or self.amount < 0:
            raise ValidationError(f"Amount must be a non-negative number, got {self.amount}", "amount")
        if not self.quantity.is_finite() or self.quantity <= 0:
            raise ValidationError(f"Quantity must be positive, got {self.quantity}", "quantity")
        if not self.service_type or not self.service_type.strip():
            raise ValidationError("Service type is required", "service_type")

    def context(self) -> dict[str, Any]:
        """Fields exemption conditions may test."""
        return {
            "amount": self.amount,
            "quantity": self.quantity,
            "service_type": self.service_type,
            "tax_category": self.tax_category,
            "client_id": self.client_id,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "amount": str(self.amount),
            "quantity": str(self.quantity),
            "service_type": self.service_type,
            "tax_category": self.tax_category,
            "client_id": self.client_id,
            "description": self.description,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LineItem":
        if "amount" not in data:
            raise ValidationError("Amount is required", "amount")
        return cls(
            amount=data["amount"],
            service_type=data.get("service_type", ""),
            quantity=data.get("quantity", "1"),
            tax_category=data.get("tax_category"),
            client_id=data.get("client_id"),
            description=data.get("description"),
        )


class CalculationStatus(Enum):
    PENDING = "pending"
    UNRESOLVED = "unresolved"
    VALIDATED = "validated"
    DISPUTED = "disputed"


_TRANSITIONS: dict[CalculationStatus, frozenset[CalculationStatus]] = {
    CalculationStatus.PENDING: frozenset({CalculationStatus.VALIDATED, CalculationStatus.DISPUTED}),
    CalculationStatus.UNRESOLVED: frozenset({CalculationStatus.VALIDATED, CalculationStatus.DISPUTED}),
    CalculationStatus.DISPUTED: frozenset({CalculationStatus.PENDING}),
    CalculationStatus.VALIDATED: frozenset(),
}


class CalculationFlag(Enum):
    UNRESOLVED_ADDRESS = "unresolved_address"
    NO_APPLICABLE_RATE = "no_applicable_rate"
    EXEMPTION_CONFLICT = "exemption_conflict"
    EXEMPTION_CONDITION_INVALID = "exemption_condition_invalid"
    INVALID_RATE_WINDOW = "invalid_rate_window"
    LOW_CONFIDENCE_JURISDICTION = "low_confidence_jurisdiction"
    TIERED_RATE_UNEVALUATED = "tiered_rate_unevaluated"
    EXTERNAL_LOOKUP_FAILED = "external_lookup_failed"


@dataclass(frozen=True)
class BreakdownLine:
    """Tax produced by one rate of one jurisdiction."""

    jurisdiction_id: int
    jurisdiction_code: str
    jurisdiction_name: str
    jurisdiction_type: str
    rate_id: int
    tax_type: str
    tax_name: str
    rate_type: str
    rate_applied: Decimal
    taxable_base: Decimal
    gross_tax_amount: Decimal
    exempt_amount: Decimal
    tax_amount: Decimal
    is_compound: bool = False
    is_recoverable: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "jurisdiction_id": self.jurisdiction_id,
            "jurisdiction_code": self.jurisdiction_code,
            "jurisdiction_name": self.jurisdiction_name,
            "jurisdiction_type": self.jurisdiction_type,
            "rate_id": self.rate_id,
            "tax_type": self.tax_type,
            "tax_name": self.tax_name,
            "rate_type": self.rate_type,
            "rate_applied": str(self.rate_applied),
            "taxable_base": str(self.taxable_base),
            "gross_tax_amount": str(self.gross_tax_amount),
            "exempt_amount": str(self.exempt_amount),
            "tax_amount": str(self.tax_amount),
            "is_compound": self.is_compound,
            "is_recoverable": self.is_recoverable,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BreakdownLine":
        return cls(
            jurisdiction_id=int(data["jurisdiction_id"]),
            jurisdiction_code=data["jurisdiction_code"],
            jurisdiction_name=data.get("jurisdiction_name", ""),
            jurisdiction_type=data.get("jurisdiction_type", ""),
            rate_id=int(data["rate_id"]),
            tax_type=data.get("tax_type", ""),
            tax_name=data["tax_name"],
            rate_type=data.get("rate_type", ""),
            rate_applied=Decimal(data["rate_applied"]),
            taxable_base=Decimal(data["taxable_base"]),
            gross_tax_amount=Decimal(data.get("gross_tax_amount", data["tax_amount"])),
            exempt_amount=Decimal(data.get("exempt_amount", "0")),
            tax_amount=Decimal(data["tax_amount"]),
            is_compound=bool(data.get("is_compound", False)),
            is_recoverable=bool(data.get("is_recoverable", False)),
        )


@dataclass(frozen=True)
class AppliedExemption:
    exemption_id: int
    exemption_name: str
    tax_name: str
    jurisdiction_id: int
    original_amount: Decimal
    exempted_amount: Decimal
    is_blanket: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "exemption_id": self.exemption_id,
            "exemption_name": self.exemption_name,
            "tax_name": self.tax_name,
            "jurisdiction_id": self.jurisdiction_id,
            "original_amount": str(self.original_amount),
            "exempted_amount": str(self.exempted_amount),
            "is_blanket": self.is_blanket,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AppliedExemption":
        return cls(
            exemption_id=int(data["exemption_id"]),
            exemption_name=data["exemption_name"],
            tax_name=data["tax_name"],
            jurisdiction_id=int(data["jurisdiction_id"]),
            original_amount=Decimal(data["original_amount"]),
            exempted_amount=Decimal(data["exempted_amount"]),
            is_blanket=bool(data["is_blanket"]),
        )


class EventKind(Enum):
    CREATED = "created"
    STATUS_CHANGED = "status_changed"
    SUPERSEDED = "superseded"


@dataclass(frozen=True)
class CalculationEvent:
    """Immutable entry in a calculation's audit log."""

    kind: EventKind
    at: datetime
    to_status: Optional[CalculationStatus] = None
    from_status: Optional[CalculationStatus] = None
    actor: Optional[str] = None
    notes: str = ""
    reference: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "at": self.at.isoformat(),
            "to_status": self.to_status.value if self.to_status else None,
            "from_status": self.from_status.value if self.from_status else None,
            "actor": self.actor,
            "notes": self.notes,
            "reference": self.reference,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CalculationEvent":
        return cls(
            kind=EventKind(data["kind"]),
            at=datetime.fromisoformat(data["at"]),
            to_status=CalculationStatus(data["to_status"]) if data.get("to_status") else None,
            from_status=CalculationStatus(data["from_status"]) if data.get("from_status") else None,
            actor=data.get("actor"),
            notes=data.get("notes", ""),
            reference=data.get("reference"),
        )


@dataclass(frozen=True)
class EngineMetadata:
    """How the engine reached its answer."""

    resolution: str  # exact, learned, external, unresolved
    resolution_source: str
    confidence: float
    external_calls: int = 0
    calculation_time_ms: float = 0.0
    warnings: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "resolution": self.resolution,
            "resolution_source": self.resolution_source,
            "confidence": self.confidence,
            "external_calls": self.external_calls,
            "calculation_time_ms": self.calculation_time_ms,
            "warnings": list(self.warnings),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EngineMetadata":
        return cls(
            resolution=data["resolution"],
            resolution_source=data.get("resolution_source", ""),
            confidence=float(data.get("confidence", 0.0)),
            external_calls=int(data.get("external_calls", 0)),
            calculation_time_ms=float(data.get("calculation_time_ms", 0.0)),
            warnings=tuple(data.get("warnings", ())),
        )


@dataclass
class TaxCalculation:
    """One immutable, auditable tax computation for one line item."""

    calculation_id: str
    calculable: Optional[CalculableRef]
    line_item: LineItem
    address: Address
    as_of_date: date
    base_amount: Decimal
    quantity: Decimal
    jurisdiction_ids: tuple[int, ...]
    tax_breakdown: tuple[BreakdownLine, ...]
    total_tax_amount: Decimal
    final_amount: Decimal
    effective_tax_rate: Decimal
    exemptions_applied: tuple[AppliedExemption, ...]
    metadata: EngineMetadata
    status: CalculationStatus
    flags: tuple[CalculationFlag, ...] = ()
    events: list[CalculationEvent] = field(default_factory=list)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    supersedes: Optional[str] = None
    superseded_by: Optional[str] = None
    validated_by: Optional[str] = None
    validated_at: Optional[datetime] = None
    validation_notes: Optional[str] = None

    @property
    def needs_review(self) -> bool:
        return bool(self.flags)

    @property
    def status_history(self) -> list[CalculationEvent]:
        return [e for e in self.events if e.to_status is not None]

    @property
    def breakdown_total(self) -> Decimal:
        return sum((line.tax_amount for line in self.tax_breakdown), _ZERO)

    def has_flag(self, flag: CalculationFlag) -> bool:
        return flag in self.flags

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def can_transition(self, target: CalculationStatus) -> bool:
        return target in _TRANSITIONS[self.status]

    def transition(
        self,
        target: CalculationStatus,
        actor: Optional[str] = None,
        notes: str = "",
        at: Optional[datetime] = None,
    ) -> CalculationEvent:
        """Move to ``target`` and append the event to the log."""
        if not self.can_transition(target):
            raise InvalidStatusTransition(self.calculation_id, self.status.value, target.value)
        if self.status is CalculationStatus.DISPUTED and not (actor and actor.strip()):
            raise ValidationError("Reopening a disputed calculation requires an actor", "actor")

        at = at or datetime.now(timezone.utc)
        event = CalculationEvent(
            kind=EventKind.STATUS_CHANGED,
            at=at,
            to_status=target,
            from_status=self.status,
            actor=actor,
            notes=notes,
        )
        self.events.append(event)
        self.status = target
        if target is CalculationStatus.VALIDATED:
            self.validated_by = actor
            self.validated_at = at
            self.validation_notes = notes or None
        return event

    def mark_superseded(self, successor_id: str, at: Optional[datetime] = None) -> None:
        self.superseded_by = successor_id
        self.events.append(
            CalculationEvent(
                kind=EventKind.SUPERSEDED,
                at=at or datetime.now(timezone.utc),
                reference=successor_id,
            )
        )

    def summary(self) -> dict[str, Any]:
        return {
            "calculation_id": self.calculation_id,
            "status": self.status.value,
            "base_amount": str(self.base_amount),
            "total_tax_amount": str(self.total_tax_amount),
            "final_amount": str(self.final_amount),
            "effective_tax_rate": str(self.effective_tax_rate),
            "resolution": self.metadata.resolution,
            "flags": [f.value for f in self.flags],
            "created_at": self.created_at.isoformat(),
        }

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        return {
            "calculation_id": self.calculation_id,
            "calculable": self.calculable.to_dict() if self.calculable else None,
            "line_item": self.line_item.to_dict(),
            "address": self.address.to_dict(),
            "as_of_date": self.as_of_date.isoformat(),
            "base_amount": str(self.base_amount),
            "quantity": str(self.quantity),
            "jurisdiction_ids": list(self.jurisdiction_ids),
            "tax_breakdown": [line.to_dict() for line in self.tax_breakdown],
            "total_tax_amount": str(self.total_tax_amount),
            "final_amount": str(self.final_amount),
            "effective_tax_rate": str(self.effective_tax_rate),
            "exemptions_applied": [e.to_dict() for e in self.exemptions_applied],
            "metadata": self.metadata.to_dict(),
            "status": self.status.value,
            "flags": [f.value for f in self.flags],
            "events": [e.to_dict() for e in self.events],
            "created_at": self.created_at.isoformat(),
            "supersedes": self.supersedes,
            "superseded_by": self.superseded_by,
            "validated_by": self.validated_by,
            "validated_at": self.validated_at.isoformat() if self.validated_at else None,
            "validation_notes": self.validation_notes,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TaxCalculation":
        return cls(
            calculation_id=data["calculation_id"],
            calculable=CalculableRef.from_dict(data["calculable"]) if data.get("calculable") else None,
            line_item=LineItem.from_dict(data["line_item"]),
            address=Address.from_dict(data["address"]),
            as_of_date=date.fromisoformat(data["as_of_date"]),
            base_amount=Decimal(data["base_amount"]),
            quantity=Decimal(data["quantity"]),
            jurisdiction_ids=tuple(int(j) for j in data.get("jurisdiction_ids", ())),
            tax_breakdown=tuple(BreakdownLine.from_dict(d) for d in data.get("tax_breakdown", ())),
            total_tax_amount=Decimal(data["total_tax_amount"]),
            final_amount=Decimal(data["final_amount"]),
            effective_tax_rate=Decimal(data["effective_tax_rate"]),
            exemptions_applied=tuple(
                AppliedExemption.from_dict(d) for d in data.get("exemptions_applied", ())
            ),
            metadata=EngineMetadata.from_dict(data["metadata"]),
            status=CalculationStatus(data["status"]),
            flags=tuple(CalculationFlag(f) for f in data.get("flags", ())),
            events=[CalculationEvent.from_dict(e) for e in data.get("events", ())],
            created_at=datetime.fromisoformat(data["created_at"]),
            supersedes=data.get("supersedes"),
            superseded_by=data.get("superseded_by"),
            validated_by=data.get("validated_by"),
            validated_at=_parse_datetime(data.get("validated_at")),
            validation_notes=data.get("validation_notes"),
        )
