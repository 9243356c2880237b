"""
Seed a few members into the entrance SQLite DB and print a card payload for each.

Why this exists:
- Fresh installs have an empty members table, so every scan answers
  "Invalid QR Code" until the admin tooling syncs real members.
- Safe to re-run: INSERT OR REPLACE keeps IDs stable.

Usage:
  (.venv) python -m entrance.tools.seed_members [--db data/entrance.sqlite]
"""
from __future__ import annotations
import argparse
import contextlib
import sqlite3
import time
from datetime import date, timedelta
from pathlib import Path
from typing import Iterable, Optional, Sequence, Tuple

from entrance.config_loader import get_db_path, load_config
from entrance.db_schema import ensure_schema
from entrance.payload import make_identity_payload

Row = Tuple[int, str, str, Optional[str], str, Optional[str], Optional[str]]


def demo_rows(today: Optional[date] = None) -> list[Row]:
    today = today or date.today()
    return [
        # id, name, phone, email, status, expiry, package
        (1, "Maria Papadopoulou", "6912345678", None, "active", str(today + timedelta(days=120)), "Annual"),
        (2, "Nikos Georgiou", "6987654321", None, "expiring_soon", str(today + timedelta(days=5)), "Monthly"),
        (3, "Eleni Ioannou", "6900000003", "eleni@example.com", "expired", str(today - timedelta(days=10)), "Monthly"),
        (4, "Kostas Dimitriou", "6900000004", None, "suspended", None, "Quarterly"),
    ]


def seed(db_path: str | Path, rows: Iterable[Sequence]) -> int:
    """Upsert member rows (schema order of demo_rows). Returns rows written."""
    ensure_schema(db_path)
    now = int(time.time())
    data = [tuple(r) + (now,) for r in rows]
    with contextlib.closing(sqlite3.connect(db_path)) as conn:
        conn.executemany(
            """INSERT OR REPLACE INTO members
               (id, name, phone, email, status, expiry, package, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            data,
        )
        conn.commit()
    return len(data)


def main(argv: Optional[list[str]] = None) -> None:
    ap = argparse.ArgumentParser(description="Seed demo members")
    ap.add_argument("--db", help="SQLite path (default: app.storage.sqlite_path)")
    args = ap.parse_args(argv)

    db = Path(args.db) if args.db else get_db_path(load_config())
    rows = demo_rows()
    n = seed(db, rows)
    print(f"Seeded {n} members into {db}")
    for r in rows:
        print(f"  #{r[0]} {r[4]:<14} {make_identity_payload(r[0], r[1], r[2])}")


if __name__ == "__main__":
    main()
