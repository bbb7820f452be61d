#!/usr/bin/env python3
import argparse
import json
import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from finance_dashboard.db import connect_db, parse_database_config
from finance_dashboard.db_migrations import apply_migrations, get_db_health
from finance_dashboard.diagnostics import file_breakdown


def main():
    parser = argparse.ArgumentParser(description="Print schema health and per-file transaction counts")
    parser.add_argument(
        "db_path",
        nargs="?",
        default="instance/finance_dashboard.sqlite",
        help="Path to SQLite DB (ignored when DATABASE_URL is postgres)",
    )
    parser.add_argument("--migrate", action="store_true", help="Apply migrations before checking")
    parser.add_argument("--files", action="store_true", help="Include the per-file breakdown across all users")
    args = parser.parse_args()

    config = parse_database_config(args.db_path)
    if args.migrate:
        apply_migrations(config)

    report = {"health": get_db_health(config)}
    if args.files and report["health"]["ok"]:
        conn = connect_db(config)
        try:
            report["files"] = file_breakdown(conn)
        finally:
            conn.close()

    print(json.dumps(report, indent=2, sort_keys=True))


if __name__ == "__main__":
    main()
