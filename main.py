#!/usr/bin/env python3
"""
Tax Jurisdiction Engine - Entry Point

Resolves service addresses to the taxing jurisdictions that apply and
calculates auditable, reproducible tax for billing line items.

Usage:
    python main.py --data-dir data resolve --line1 "1200 Main St" --city Houston --state TX --zip 77002
    python main.py --data-dir data calculate --amount 100 --service-type telecom --line1 "1200 Main St" --state TX --zip 77002
    python main.py --data-dir data calculate --file data/sample_line_items.csv --export-json batch.json
    python main.py --data-dir data rates --state TX
    python main.py --data-dir data patterns --min-confidence 0.6
"""

from jurisdiction_engine.cli import main

if __name__ == "__main__":
    main()
