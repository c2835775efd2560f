#!/usr/bin/env python3
"""Run the dashboard schema bootstrap and print a quick table summary."""

from __future__ import annotations

import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from emsdash import config
from emsdash.db import db_connect, ensure_bootstrap

COUNTED_TABLES = (
    "organizations",
    "users",
    "memberships",
    "departments",
    "metric_definitions",
    "metric_entries",
    "campaigns",
    "evaluation_categories",
    "training_phases",
    "sessions",
)


def main() -> int:
    config.configure_logging()
    ensure_bootstrap()
    conn = db_connect()
    try:
        counts = {}
        for table in COUNTED_TABLES:
            counts[table] = int(conn.execute(f"SELECT COUNT(*) AS c FROM {table}").fetchone()["c"])
    finally:
        conn.close()

    print("BOOTSTRAP_OK")
    print("backend:", config.DB_BACKEND)
    if config.DB_BACKEND == "postgres":
        print("database_url_set:", bool(config.DATABASE_URL))
    else:
        print("db_path:", config.DB_PATH)
    print("counts:", counts)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
