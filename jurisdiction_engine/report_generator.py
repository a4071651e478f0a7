"""
Calculation report generator.

Produces:
- Single calculation reports with the per-jurisdiction breakdown
- Batch summaries grouped by jurisdiction
- A flat breakdown table (one row per tax line)
- CSV and JSON export
"""

from __future__ import annotations

import csv
import io
import json
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any, Iterable, Optional

from jurisdiction_engine.calculation import TaxCalculation
from jurisdiction_engine.orchestrator import BatchResult

_ZERO = Decimal("0")


class _DecimalEncoder(json.JSONEncoder):
    """JSON encoder that writes Decimals as strings so no cent is lost."""

    def default(self, o: Any) -> Any:
        if isinstance(o, Decimal):
            return str(o)
        if isinstance(o, (date, datetime)):
            return o.isoformat()
        if isinstance(o, Enum):
            return o.value
        return super().default(o)


def _cell(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return value


BREAKDOWN_FIELDS = [
    "calculation_id",
    "status",
    "as_of_date",
    "resolution",
    "jurisdiction_code",
    "jurisdiction_name",
    "jurisdiction_type",
    "tax_name",
    "tax_type",
    "rate_type",
    "rate_applied",
    "taxable_base",
    "gross_tax_amount",
    "exempt_amount",
    "tax_amount",
    "is_compound",
]


class ReportGenerator:
    """
    Turns calculation records into reports with export capabilities.

    Reports are plain dicts; amounts stay Decimal until export, where
    they are written as strings.
    """

    def __init__(self, output_dir: Optional[str] = None) -> None:
        self.output_dir = Path(output_dir) if output_dir else Path("reports")
        self.output_dir.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Reports
    # ------------------------------------------------------------------

    def calculation_report(self, calculation: TaxCalculation) -> dict[str, Any]:
        """Report for a single calculation."""
        return {
            "report_type": "tax_calculation",
            "generated_date": date.today().isoformat(),
            "summary": {
                "calculation_id": calculation.calculation_id,
                "status": calculation.status.value,
                "as_of_date": calculation.as_of_date,
                "base_amount": calculation.base_amount,
                "total_tax_amount": calculation.total_tax_amount,
                "final_amount": calculation.final_amount,
                "effective_tax_rate": calculation.effective_tax_rate,
                "resolution": calculation.metadata.resolution,
                "resolution_source": calculation.metadata.resolution_source,
                "confidence": calculation.metadata.confidence,
                "external_calls": calculation.metadata.external_calls,
            },
            "tax_breakdown": [line.to_dict() for line in calculation.tax_breakdown],
            "exemptions_applied": [e.to_dict() for e in calculation.exemptions_applied],
            "flags": [f.value for f in calculation.flags],
            "warnings": list(calculation.metadata.warnings),
        }

    def batch_report(self, batch: BatchResult, period_label: str = "") -> dict[str, Any]:
        """Summary of a batch, grouped by jurisdiction."""
        by_jurisdiction: dict[str, dict[str, Any]] = {}
        for calc in batch.calculations:
            for line in calc.tax_breakdown:
                entry = by_jurisdiction.setdefault(
                    line.jurisdiction_code,
                    {
                        "jurisdiction_code": line.jurisdiction_code,
                        "jurisdiction_name": line.jurisdiction_name,
                        "jurisdiction_type": line.jurisdiction_type,
                        "line_count": 0,
                        "taxable_base": _ZERO,
                        "exempt_amount": _ZERO,
                        "tax_amount": _ZERO,
                    },
                )
                entry["line_count"] += 1
                entry["taxable_base"] += line.taxable_base
                entry["exempt_amount"] += line.exempt_amount
                entry["tax_amount"] += line.tax_amount

        return {
            "report_type": "tax_batch_summary",
            "period": period_label,
            "generated_date": date.today().isoformat(),
            "summary": {
                "total_calculations": batch.calculation_count,
                "total_base": batch.total_base,
                "total_tax": batch.total_tax,
                "unresolved_calculations": batch.unresolved_count,
                "flagged_calculations": batch.flagged_count,
                "overall_effective_rate": (
                    (batch.total_tax / batch.total_base).quantize(Decimal("0.000001"))
                    if batch.total_base > 0
                    else _ZERO
                ),
            },
            "jurisdiction_breakdown": [
                by_jurisdiction[code] for code in sorted(by_jurisdiction)
            ],
            "errors": batch.errors,
        }

    @staticmethod
    def breakdown_rows(calculations: Iterable[TaxCalculation]) -> list[dict[str, Any]]:
        """One flat row per tax line across all calculations."""
        rows: list[dict[str, Any]] = []
        for calc in calculations:
            for line in calc.tax_breakdown:
                rows.append(
                    {
                        "calculation_id": calc.calculation_id,
                        "status": calc.status.value,
                        "as_of_date": calc.as_of_date,
                        "resolution": calc.metadata.resolution,
                        "jurisdiction_code": line.jurisdiction_code,
                        "jurisdiction_name": line.jurisdiction_name,
                        "jurisdiction_type": line.jurisdiction_type,
                        "tax_name": line.tax_name,
                        "tax_type": line.tax_type,
                        "rate_type": line.rate_type,
                        "rate_applied": line.rate_applied,
                        "taxable_base": line.taxable_base,
                        "gross_tax_amount": line.gross_tax_amount,
                        "exempt_amount": line.exempt_amount,
                        "tax_amount": line.tax_amount,
                        "is_compound": line.is_compound,
                    }
                )
        return rows

    # ------------------------------------------------------------------
    # Export methods
    # ------------------------------------------------------------------

    def to_json(self, report: dict[str, Any], filename: Optional[str] = None) -> str:
        """Export a report to JSON. Returns the JSON string."""
        json_str = json.dumps(report, indent=2, cls=_DecimalEncoder)

        if filename:
            path = self.output_dir / filename
            path.write_text(json_str, encoding="utf-8")

        return json_str

    def to_csv(
        self,
        report: dict[str, Any],
        filename: Optional[str] = None,
        section: str = "jurisdiction_breakdown",
    ) -> str:
        """
        Export a report section to CSV. Returns the CSV string.

        A list section becomes one row per entry; a dict section
        becomes key/value rows.
        """
        data = report.get(section, [])
        if not data:
            return ""

        output = io.StringIO()
        if isinstance(data, list) and isinstance(data[0], dict):
            writer = csv.DictWriter(output, fieldnames=list(data[0].keys()))
            writer.writeheader()
            for row in data:
                writer.writerow({k: _cell(v) for k, v in row.items()})
        elif isinstance(data, dict):
            kv_writer = csv.writer(output)
            kv_writer.writerow(["key", "value"])
            for k, v in data.items():
                kv_writer.writerow([k, _cell(v)])

        csv_str = output.getvalue()
        if filename:
            path = self.output_dir / filename
            path.write_text(csv_str, encoding="utf-8")
        return csv_str

    def export_breakdown(
        self,
        calculations: Iterable[TaxCalculation],
        filename: str = "tax_breakdown.csv",
    ) -> str:
        """Write the flat breakdown table to CSV."""
        output = io.StringIO()
        writer = csv.DictWriter(output, fieldnames=BREAKDOWN_FIELDS)
        writer.writeheader()
        for row in self.breakdown_rows(calculations):
            writer.writerow({k: _cell(v) for k, v in row.items()})

        csv_str = output.getvalue()
        path = self.output_dir / filename
        path.write_text(csv_str, encoding="utf-8")
        return csv_str
