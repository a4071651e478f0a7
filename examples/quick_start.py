#!/usr/bin/env python3
"""
Quick Start Example
===================

Builds a tiny jurisdiction directory for Houston, TX in memory,
calculates tax for a $100 telecom line item and prints the breakdown.

Usage:
    python examples/quick_start.py
"""

from datetime import date
from decimal import Decimal

from jurisdiction_engine import (
    Address,
    AddressRange,
    AddressRangeIndex,
    JurisdictionDirectory,
    JurisdictionType,
    LineItem,
    RateCatalog,
    RateType,
    TaxEngine,
    TaxRate,
)


def main() -> None:
    # Jurisdictions: state -> county -> city
    directory = JurisdictionDirectory()
    tx = directory.add("TX", "Texas", JurisdictionType.STATE, "TX")
    harris = directory.add("HARRIS", "Harris County", JurisdictionType.COUNTY, "TX", parent_id=tx.id)
    houston = directory.add("HOUSTON", "City of Houston", JurisdictionType.CITY, "TX", parent_id=harris.id)

    # One address range covering the 1000-1999 block of Main St
    index = AddressRangeIndex(
        [
            AddressRange(
                id=1,
                state="TX",
                county_code="201",
                street_name="MAIN",
                address_from=1000,
                address_to=1999,
                zip5="77002",
                suffix="ST",
                state_jurisdiction_id=tx.id,
                county_jurisdiction_id=harris.id,
                city_jurisdiction_id=houston.id,
            )
        ]
    )

    # A state sales tax and a compounding city fee
    catalog = RateCatalog(
        [
            TaxRate(
                id=1,
                jurisdiction_id=tx.id,
                tax_type="sales",
                tax_name="Texas Sales Tax",
                rate_type=RateType.PERCENTAGE,
                effective_date=date(2020, 1, 1),
                percentage_rate=Decimal("0.0625"),
            ),
            TaxRate(
                id=2,
                jurisdiction_id=houston.id,
                tax_type="franchise",
                tax_name="Houston Franchise Fee",
                rate_type=RateType.PERCENTAGE,
                effective_date=date(2020, 1, 1),
                percentage_rate=Decimal("0.02"),
                is_compound=True,
            ),
        ]
    )

    engine = TaxEngine(directory, index, catalog)

    line_item = LineItem(amount=Decimal("100.00"), service_type="telecom")
    address = Address.parse("1200 Main Street Apt 4", "Houston", "TX", "77002")
    calc = engine.calculate(line_item, address, as_of_date=date(2024, 6, 1))

    print(f"Calculation:    {calc.calculation_id}")
    print(f"Resolution:     {calc.metadata.resolution} ({calc.metadata.resolution_source})")
    for line in calc.tax_breakdown:
        print(f"  {line.jurisdiction_name:<20} {line.tax_name:<24} ${line.tax_amount:>8.2f}")
    print(f"Total Tax:      ${calc.total_tax_amount:.2f}")
    print(f"Effective Rate: {calc.effective_tax_rate:.4%}")
    print(f"Final Amount:   ${calc.final_amount:.2f}")

    # An address outside every known range degrades to an unresolved calculation
    print("\n--- Unresolved Address ---")
    stray = Address.parse("77 Nowhere Rd", "Houston", "TX", "77099")
    unresolved = engine.calculate(line_item, stray, as_of_date=date(2024, 6, 1))
    print(f"Status:         {unresolved.status.value}")
    print(f"Flags:          {', '.join(f.value for f in unresolved.flags)}")
    print(f"Total Tax:      ${unresolved.total_tax_amount:.2f}")


if __name__ == "__main__":
    main()
