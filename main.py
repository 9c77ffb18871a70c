#!/usr/bin/env python3
"""
Transaction Posting Engine - Entry Point

Invoicing, double-entry posting and multi-jurisdiction tax for small
businesses. Creates invoices with per-line tax, keeps stock and
customer balances in step, and scores tax readiness.

Usage:
    python main.py load --file data/master.json
    python main.py calculate --amount 100 -j IN --business-location KA --counterpart-location KA
    python main.py rules -j GB
    python main.py invoice --file data/invoice.json
    python main.py pay IV-1A2B3C4D5E6F --amount 136
    python main.py readiness B1 --period 2024-06 --export-json readiness.json
    python main.py summary B1 --period 2024 --export-csv summary.csv
    python main.py sweep
"""

from posting_engine.cli import main

if __name__ == "__main__":
    main()
