"""
Command-line interface for the Tax Jurisdiction Engine.

Provides subcommands for address resolution, tax calculation and
inspection of the rate catalog and learned patterns, all over a data
directory of CSV reference files.
"""

from __future__ import annotations

import argparse
import csv
import sys
from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import Optional

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from jurisdiction_engine.addresses import Address
from jurisdiction_engine.calculation import CalculableKind, CalculableRef, LineItem, TaxCalculation
from jurisdiction_engine.config import EngineConfig, load_config
from jurisdiction_engine.exceptions import TaxEngineError
from jurisdiction_engine.importer import load_dataset
from jurisdiction_engine.logging_config import configure_logging
from jurisdiction_engine.orchestrator import CalculationRequest, TaxEngine
from jurisdiction_engine.rates import RateType
from jurisdiction_engine.report_generator import ReportGenerator

console = Console()


def _build_engine(args: argparse.Namespace) -> TaxEngine:
    config = load_config(args.config) if args.config else EngineConfig()
    dataset = load_dataset(args.data_dir)
    return TaxEngine.from_dataset(dataset, config=config)


def _as_of(value: Optional[str]) -> Optional[date]:
    return date.fromisoformat(value) if value else None


def _address_from_args(args: argparse.Namespace) -> Address:
    if not args.line1 or not args.state or not args.zip:
        console.print("[red]Provide --line1, --state and --zip[/red]")
        sys.exit(1)
    return Address.parse(args.line1, args.city, args.state, args.zip)


def _load_requests_csv(path: str) -> list[CalculationRequest]:
    """
    Load calculation requests from a CSV file.

    Expected columns: amount, service_type, line1, city, state, zip
    Optional columns: quantity, tax_category, client_id, as_of_date,
                      calculable_kind, calculable_id
    """
    requests: list[CalculationRequest] = []
    csv_path = Path(path)
    if not csv_path.exists():
        console.print(f"[red]File not found: {path}[/red]")
        sys.exit(1)

    with open(csv_path, newline="", encoding="utf-8") as f:
        reader = csv.DictReader(f)
        for i, row in enumerate(reader):
            try:
                calculable = None
                if row.get("calculable_kind") and row.get("calculable_id"):
                    calculable = CalculableRef(
                        CalculableKind(row["calculable_kind"].strip()),
                        row["calculable_id"].strip(),
                    )
                requests.append(
                    CalculationRequest(
                        line_item=LineItem(
                            amount=row["amount"],
                            service_type=row["service_type"].strip(),
                            quantity=row.get("quantity") or "1",
                            tax_category=row.get("tax_category", "").strip() or None,
                            client_id=row.get("client_id", "").strip() or None,
                        ),
                        address=Address.parse(
                            row["line1"],
                            row.get("city", "").strip() or None,
                            row["state"],
                            row["zip"],
                        ),
                        as_of_date=_as_of(row.get("as_of_date", "").strip()),
                        calculable=calculable,
                    )
                )
            except (KeyError, ValueError) as e:
                console.print(f"[yellow]Skipping row {i + 1}: {e}[/yellow]")
    return requests


def _print_calculation(calc: TaxCalculation) -> None:
    table = Table(title="Tax Breakdown", box=box.ROUNDED, show_lines=True)
    table.add_column("Jurisdiction", style="bold")
    table.add_column("Type")
    table.add_column("Tax")
    table.add_column("Rate", justify="right")
    table.add_column("Base", justify="right")
    table.add_column("Exempt", justify="right")
    table.add_column("Amount", justify="right", style="bold")

    for line in calc.tax_breakdown:
        rate = (
            f"{line.rate_applied:.3%}" if line.rate_type == "percentage" else f"${line.rate_applied:,.2f}"
        )
        table.add_row(
            f"{line.jurisdiction_name} ({line.jurisdiction_code})",
            line.jurisdiction_type,
            line.tax_name + (" *" if line.is_compound else ""),
            rate,
            f"${line.taxable_base:,.2f}",
            f"${line.exempt_amount:,.2f}" if line.exempt_amount else "",
            f"${line.tax_amount:,.2f}",
        )
    if calc.tax_breakdown:
        console.print(table)

    console.print(
        Panel(
            f"[bold]Calculation:[/bold] {calc.calculation_id}\n"
            f"[bold]Status:[/bold] {calc.status.value}\n"
            f"[bold]Resolution:[/bold] {calc.metadata.resolution} ({calc.metadata.resolution_source})\n"
            f"[bold]Base Amount:[/bold] ${calc.base_amount:,.2f}\n"
            f"[bold]Total Tax:[/bold] ${calc.total_tax_amount:,.2f}\n"
            f"[bold]Effective Rate:[/bold] {calc.effective_tax_rate:.4%}\n"
            f"[bold]Final Amount:[/bold] ${calc.final_amount:,.2f}\n"
            f"[bold]Flags:[/bold] {', '.join(f.value for f in calc.flags) or 'None'}",
            title="Tax Calculation",
            border_style="yellow" if calc.needs_review else "blue",
        )
    )
    for w in calc.metadata.warnings:
        console.print(f"[yellow]Warning: {w}[/yellow]")


# -----------------------------------------------------------------------
# Subcommand: resolve
# -----------------------------------------------------------------------


def cmd_resolve(args: argparse.Namespace) -> None:
    """Resolve a service address to its taxing jurisdictions."""
    engine = _build_engine(args)
    address = _address_from_args(args)
    resolved = engine.resolver.resolve(address)

    color = "green" if resolved.is_resolved else "red"
    console.print(
        Panel(
            f"[bold]Address:[/bold] {resolved.address.number} {resolved.address.street_name}, "
            f"{resolved.address.city or ''} {resolved.address.state} {resolved.address.zip_code}\n"
            f"[bold]Confidence:[/bold] [{color}]{resolved.confidence.value}[/{color}] "
            f"({resolved.score:.2f})\n"
            f"[bold]Source:[/bold] {resolved.source}",
            title="Jurisdiction Resolution",
            border_style=color,
        )
    )

    if resolved.jurisdiction_ids:
        table = Table(title="Jurisdictions", box=box.SIMPLE)
        table.add_column("Code", style="bold")
        table.add_column("Name")
        table.add_column("Type")
        table.add_column("Parent")
        for jurisdiction_id in resolved.jurisdiction_ids:
            j = engine.directory.get(jurisdiction_id)
            parent = engine.directory.get(j.parent_id).code if j.parent_id is not None else "-"
            table.add_row(j.code, j.name, j.jurisdiction_type.value, parent)
        console.print(table)

    for w in resolved.warnings:
        console.print(f"[yellow]Warning: {w}[/yellow]")


# -----------------------------------------------------------------------
# Subcommand: calculate
# -----------------------------------------------------------------------


def cmd_calculate(args: argparse.Namespace) -> None:
    """Calculate tax for a single line item or a CSV batch."""
    engine = _build_engine(args)

    if args.file:
        requests = _load_requests_csv(args.file)
        batch = engine.calculate_batch(requests)

        table = Table(title="Tax Calculation Results", box=box.ROUNDED, show_lines=True)
        table.add_column("ID", style="dim")
        table.add_column("Resolution")
        table.add_column("Amount", justify="right")
        table.add_column("Tax", justify="right", style="bold")
        table.add_column("Rate", justify="right")
        table.add_column("Review", justify="center")

        for c in batch.calculations:
            table.add_row(
                c.calculation_id[:13],
                c.metadata.resolution,
                f"${c.base_amount:,.2f}",
                f"${c.total_tax_amount:,.2f}",
                f"{c.effective_tax_rate:.3%}",
                "Y" if c.needs_review else "",
            )

        console.print(table)
        console.print()
        console.print(
            Panel(
                f"[bold]Calculations:[/bold] {batch.calculation_count}\n"
                f"[bold]Total Base:[/bold] ${batch.total_base:,.2f}\n"
                f"[bold]Total Tax:[/bold] ${batch.total_tax:,.2f}\n"
                f"[bold]Unresolved:[/bold] {batch.unresolved_count}\n"
                f"[bold]Flagged for Review:[/bold] {batch.flagged_count}",
                title="Batch Summary",
                border_style="green",
            )
        )
        for e in batch.errors:
            console.print(f"[red]{e}[/red]")

        if args.export_json or args.export_csv:
            rg = ReportGenerator(args.output_dir or "reports")
            report = rg.batch_report(batch, period_label=args.period or "")
            if args.export_json:
                rg.to_json(report, args.export_json)
                console.print(f"[green]JSON exported to {args.export_json}[/green]")
            if args.export_csv:
                rg.export_breakdown(batch.calculations, args.export_csv)
                console.print(f"[green]CSV exported to {args.export_csv}[/green]")

    else:
        if not args.amount or not args.service_type:
            console.print("[red]Provide --amount and --service-type, or --file[/red]")
            sys.exit(1)

        line_item = LineItem(
            amount=Decimal(args.amount),
            service_type=args.service_type,
            quantity=Decimal(args.quantity or "1"),
            tax_category=args.category,
            client_id=args.client,
        )
        calc = engine.calculate(line_item, _address_from_args(args), _as_of(args.as_of))
        _print_calculation(calc)

        if args.export_json:
            rg = ReportGenerator(args.output_dir or "reports")
            rg.to_json(rg.calculation_report(calc), args.export_json)
            console.print(f"[green]JSON exported to {args.export_json}[/green]")


# -----------------------------------------------------------------------
# Subcommand: rates
# -----------------------------------------------------------------------


def cmd_rates(args: argparse.Namespace) -> None:
    """Display the rates active in a state, or in one jurisdiction of it."""
    engine = _build_engine(args)
    state = args.state.upper()
    as_of = _as_of(args.as_of) or date.today()

    if args.code:
        jurisdiction = engine.directory.by_code(state, args.code)
        if jurisdiction is None:
            console.print(f"[red]Unknown jurisdiction: {args.code} in {state}[/red]")
            sys.exit(1)
        jurisdictions = [jurisdiction]
    else:
        jurisdictions = [j for j in engine.directory if j.state_code == state]
        if not jurisdictions:
            console.print(f"[red]Unknown state: {args.state}[/red]")
            sys.exit(1)

    table = Table(title=f"Active Rates - {state} as of {as_of.isoformat()}", box=box.ROUNDED)
    table.add_column("Jurisdiction", style="bold")
    table.add_column("Tax")
    table.add_column("Type")
    table.add_column("Rate", justify="right")
    table.add_column("Service / Category")
    table.add_column("Priority", justify="right")
    table.add_column("Effective")
    table.add_column("Compound", justify="center")

    ids = {j.id for j in jurisdictions}
    for rate in sorted(
        (r for r in engine.catalog.all_rates() if r.jurisdiction_id in ids and r.is_active(as_of)),
        key=lambda r: (engine.directory.order_key(r.jurisdiction_id), r.priority, r.id),
    ):
        j = engine.directory.get(rate.jurisdiction_id)
        if rate.rate_type is RateType.PERCENTAGE:
            shown = f"{rate.rate_applied:.3%}"
        elif rate.rate_type is RateType.FIXED:
            shown = f"${rate.rate_applied:,.2f}"
        else:
            shown = f"table {rate.tier_table}"
        table.add_row(
            j.code,
            rate.tax_name,
            rate.rate_type.value,
            shown,
            f"{rate.service_type or '*'} / {rate.tax_category or '*'}",
            str(rate.priority),
            f"{rate.effective_date} - {rate.expiry_date or ''}",
            "Y" if rate.is_compound else "",
        )
    console.print(table)


# -----------------------------------------------------------------------
# Subcommand: patterns
# -----------------------------------------------------------------------


def cmd_patterns(args: argparse.Namespace) -> None:
    """Display learned jurisdiction patterns and their confidence."""
    engine = _build_engine(args)
    learner = engine.learner
    minimum = float(args.min_confidence) if args.min_confidence else 0.0

    patterns = sorted(
        (p for p in learner.all_patterns() if p.confidence >= minimum),
        key=lambda p: (-p.confidence, p.authority_name),
    )
    if not patterns:
        console.print("[yellow]No learned patterns.[/yellow]")
        return

    table = Table(title="Learned Jurisdiction Patterns", box=box.ROUNDED)
    table.add_column("Authority", style="bold")
    table.add_column("ID", style="dim")
    table.add_column("Type")
    table.add_column("Locality")
    table.add_column("Jurisdictions")
    table.add_column("Confidence", justify="right")
    table.add_column("Seen", justify="right")

    for p in patterns:
        retired = learner.is_retired(p)
        locality = " ".join(
            str(p.pattern_data[k]) for k in ("city", "state", "zip") if p.pattern_data.get(k)
        )
        table.add_row(
            p.authority_name,
            p.authority_id,
            p.pattern_type,
            locality,
            ", ".join(p.jurisdiction_codes),
            f"{p.confidence:.2f}" + (" (retired)" if retired else ""),
            str(p.observations),
            style="dim" if retired else "",
        )
    console.print(table)

    stats = learner.statistics()
    console.print(
        Panel(
            f"[bold]Total Patterns:[/bold] {stats['total_patterns']}\n"
            f"[bold]Retired:[/bold] {stats['retired_patterns']}\n"
            f"[bold]Types:[/bold] "
            + (", ".join(f"{k}={v}" for k, v in stats["pattern_types"].items()) or "None"),
            title="Pattern Statistics",
            border_style="cyan",
        )
    )


# -----------------------------------------------------------------------
# Argument parser
# -----------------------------------------------------------------------


def _add_address_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--line1", help="Street line, e.g. '1200 Main St'")
    parser.add_argument("--city", help="City name")
    parser.add_argument("--state", help="Two-letter state code")
    parser.add_argument("--zip", help="ZIP or ZIP+4")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="jurisdiction-engine",
        description="Tax Jurisdiction Engine - Address resolution, rate selection and auditable tax calculation",
    )
    parser.add_argument("--data-dir", "-d", default="data", help="Directory of reference CSV files")
    parser.add_argument("--config", "-c", help="YAML configuration file")
    parser.add_argument("--log-level", default="WARNING", help="Logging level (default: WARNING)")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # resolve
    resolve_p = subparsers.add_parser("resolve", help="Resolve an address to jurisdictions")
    _add_address_args(resolve_p)
    resolve_p.set_defaults(func=cmd_resolve)

    # calculate
    calc_p = subparsers.add_parser("calculate", help="Calculate tax")
    calc_p.add_argument("--amount", help="Line amount")
    calc_p.add_argument("--service-type", help="Service type of the line item")
    calc_p.add_argument("--quantity", help="Quantity (default: 1)")
    calc_p.add_argument("--category", help="Tax category")
    calc_p.add_argument("--client", help="Client id for exemption lookup")
    calc_p.add_argument("--as-of", help="Calculation date (YYYY-MM-DD)")
    _add_address_args(calc_p)
    calc_p.add_argument("--file", "-f", help="CSV file with line items")
    calc_p.add_argument("--period", help="Period label for reports")
    calc_p.add_argument("--export-json", help="Export results to JSON file")
    calc_p.add_argument("--export-csv", help="Export the tax breakdown to CSV file")
    calc_p.add_argument("--output-dir", help="Output directory for exports")
    calc_p.set_defaults(func=cmd_calculate)

    # rates
    rates_p = subparsers.add_parser("rates", help="View the rate catalog")
    rates_p.add_argument("--state", "-s", required=True, help="State code")
    rates_p.add_argument("--code", help="Jurisdiction code within the state")
    rates_p.add_argument("--as-of", help="Date to check activity (YYYY-MM-DD)")
    rates_p.set_defaults(func=cmd_rates)

    # patterns
    patterns_p = subparsers.add_parser("patterns", help="View learned jurisdiction patterns")
    patterns_p.add_argument("--min-confidence", help="Only show patterns at or above this confidence")
    patterns_p.set_defaults(func=cmd_patterns)

    return parser


def main(argv: Optional[list[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(0)

    configure_logging(args.log_level, console=Console(stderr=True))
    try:
        args.func(args)
    except (TaxEngineError, FileNotFoundError) as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)
