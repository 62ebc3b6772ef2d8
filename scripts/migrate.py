#!/usr/bin/env python3
"""Apply sql/schema.sql to the configured Postgres database.

Usage:
    DATABASE_URL=postgresql://localhost:5432/sessiongate python scripts/migrate.py

    # Or with command line args:
    python scripts/migrate.py --dsn postgresql://localhost:5432/sessiongate --dry-run

Environment Variables:
    DATABASE_URL: PostgreSQL connection string (falls back to the settings default)
"""
from __future__ import annotations

import argparse
import sys
from pathlib import Path

import psycopg

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

SCHEMA_PATH = ROOT / "sql" / "schema.sql"


def apply_schema(dsn: str, *, dry_run: bool = False) -> None:
    sql = SCHEMA_PATH.read_text()
    if dry_run:
        print(sql)
        return
    with psycopg.connect(dsn) as conn:
        conn.execute(sql)
    print(f"Applied {SCHEMA_PATH.name}")


def main() -> int:
    from sessiongate.config import get_settings

    parser = argparse.ArgumentParser(description="Install the sessiongate schema")
    parser.add_argument("--dsn", help="Postgres DSN (default: DATABASE_URL)")
    parser.add_argument(
        "--dry-run", action="store_true", help="Print the schema instead of applying it"
    )
    args = parser.parse_args()

    dsn = args.dsn or get_settings().database_url
    try:
        apply_schema(dsn, dry_run=args.dry_run)
    except psycopg.Error as exc:
        print(f"Error: migration failed: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
