#!/usr/bin/env python3
"""
Seed a main/archive database pair with backtest rows for manual testing.

Inserts into the main database:
- recent rows, 3-6 days old (stay in main)
- backup rows, 8-13 days old (moved to the archive by a run)

and into the archive database:
- obsolete rows, 20-25 days old (purged by a run)

Every metadata row gets one signal and one fill with the same `created`.

Usage:
    python scripts/seed_test_data.py
    python scripts/seed_test_data.py --recent 1000 --backup 500 --obsolete 250
    python scripts/seed_test_data.py --init --reset
"""

import argparse
import os
import random
import sys
from datetime import timedelta

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dotenv import load_dotenv

load_dotenv()

from sqlalchemy import delete, insert

from pgcleanup.config import get_settings
from pgcleanup.database import engines_from_settings, init_db
from pgcleanup.models import PURGE_ORDER, TABLES
from pgcleanup.utils.timeutil import utcnow

# (label, min_age_days, max_age_days, target)
TIERS = [
    ("recent", 3, 6, "main"),
    ("backup", 8, 13, "main"),
    ("obsolete", 20, 25, "archive"),
]


def build_rows(label: str, count: int, min_days: float, max_days: float, now, rng: random.Random):
    """Return (metadata, signals, fills) row dicts for one tier."""
    metadata, signals, fills = [], [], []
    for i in range(1, count + 1):
        created = now - timedelta(days=rng.uniform(min_days, max_days))
        key = f"{label}_{i}_hash"
        metadata.append({"hash": key, "created": created, "data": {"type": label}})
        signals.append({"hash": key, "signal_type": "test_signal", "value": rng.random() * 100, "created": created})
        fills.append({"hash": key, "quantity": rng.randint(0, 1000), "price": rng.random() * 50, "created": created})
    return metadata, signals, fills


def main():
    parser = argparse.ArgumentParser(description="Seed backtest rows for cleanup testing")
    parser.add_argument("--recent", type=int, default=100, help="Recent rows in main (default: 100)")
    parser.add_argument("--backup", type=int, default=50, help="Backup-window rows in main (default: 50)")
    parser.add_argument("--obsolete", type=int, default=25, help="Obsolete rows in archive (default: 25)")
    parser.add_argument("--seed", type=int, default=42, help="Random seed (default: 42)")
    parser.add_argument("--init", action="store_true", help="Create schema and tables first")
    parser.add_argument("--reset", action="store_true", help="Delete existing rows first")
    args = parser.parse_args()

    settings = get_settings()
    engines = dict(zip(("main", "archive"), engines_from_settings(settings)))
    counts = {"recent": args.recent, "backup": args.backup, "obsolete": args.obsolete}
    rng = random.Random(args.seed)
    now = utcnow()

    for name, engine in engines.items():
        if args.init:
            init_db(engine, schema=settings.SCHEMA)
            print(f"Initialized {name} database")
        if args.reset:
            with engine.begin() as conn:
                for table in PURGE_ORDER:
                    conn.execute(delete(TABLES[table]))
            print(f"Cleared {name} database")

    for label, min_days, max_days, target in TIERS:
        metadata, signals, fills = build_rows(label, counts[label], min_days, max_days, now, rng)
        if not metadata:
            continue
        with engines[target].begin() as conn:
            conn.execute(insert(TABLES["metadata"]), metadata)
            conn.execute(insert(TABLES["signals"]), signals)
            conn.execute(insert(TABLES["fills"]), fills)
        print(f"Inserted {len(metadata)} {label} rows (+ signals and fills) into {target}")

    print("\nDone.")


if __name__ == "__main__":
    main()
