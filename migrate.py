#!/usr/bin/env python3
"""
═══════════════════════════════════════════════════════════════
  Relational Data Migration Tool
═══════════════════════════════════════════════════════════════

  Copies every row from a source database into a destination
  whose schema already exists:
    1. Read connection details from migration_config.json
    2. Read the table catalog and compute a foreign-key safe order
    3. Copy each table in batches, skipping rows already present
    4. Validate row counts and print a per-table summary

  Usage:
    pip install -e .
    python migrate.py --init     # Create config file (first time)
    # Edit migration_config.json with your connection details
    python migrate.py --dry-run  # Check connections, preview the plan
    python migrate.py            # Run migration

═══════════════════════════════════════════════════════════════
"""

from relmigrate.cli import entrypoint

if __name__ == "__main__":
    entrypoint()
