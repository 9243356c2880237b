from __future__ import annotations
import sqlite3
from pathlib import Path


"""
entrance/db_schema.py
---------------------
Centralized, idempotent SQLite schema management for the check-in service.

Design goals
- members: read-only snapshot source for authorization (owned by the member
  admin tooling; this service never writes it outside of seeding tools).
- entrance_logs: append-only audit trail, one row per check-in attempt.
  UPDATE and DELETE are rejected by triggers so the trail cannot be rewritten
  through this database.
- Safe to call at every boot (IF NOT EXISTS everywhere).
- Allow destructive rebuilds (recreate=True) when starting fresh.
"""

# Bump when DDL changes in a way worth tracking (for future migrations).
LOCKED_USER_VERSION = 2

# ------------------------
# DDL: Members (read side)
# ------------------------
MEMBERS_DDL = """
CREATE TABLE IF NOT EXISTS members (
    id          INTEGER PRIMARY KEY,
    name        TEXT NOT NULL DEFAULT '',
    phone       TEXT NOT NULL DEFAULT '',
    email       TEXT,
    status      TEXT NOT NULL DEFAULT 'active',   -- 'active' | 'expiring_soon' | 'expired'
    expiry      TEXT,                             -- date string as entered (YYYY-MM-DD)
    package     TEXT,                             -- plan label
    updated_at  INTEGER                           -- epoch seconds (updated by admin tools)
);
"""

# ------------------------
# DDL: Entrance audit trail
# ------------------------
ENTRANCE_LOGS_DDL = """
CREATE TABLE IF NOT EXISTS entrance_logs (
    id                 INTEGER PRIMARY KEY AUTOINCREMENT,
    member_id          INTEGER,                  -- NULL when the code was unrecognizable
    member_name        TEXT NOT NULL DEFAULT '',
    member_phone       TEXT NOT NULL DEFAULT '',
    member_status      TEXT,                     -- snapshot at scan time
    validation_status  TEXT NOT NULL
        CHECK (validation_status IN ('valid', 'invalid', 'expiring_soon')),
    validation_message TEXT NOT NULL,
    entrance_type      TEXT NOT NULL
        CHECK (entrance_type IN ('qr_scan', 'manual')),
    outcome            TEXT,                     -- fine-grained: active, not_found, unparsable, ...
    notes              TEXT,                     -- ValidationResult.reason
    raw_token          TEXT,                     -- scanned text for forensics (truncated)
    ts_ms              INTEGER NOT NULL          -- host epoch ms at creation; never updated
);
CREATE INDEX IF NOT EXISTS idx_entrance_logs_ts     ON entrance_logs(ts_ms);
CREATE INDEX IF NOT EXISTS idx_entrance_logs_member ON entrance_logs(member_id, ts_ms);
CREATE INDEX IF NOT EXISTS idx_entrance_logs_status ON entrance_logs(validation_status, ts_ms);
CREATE INDEX IF NOT EXISTS idx_entrance_logs_type   ON entrance_logs(entrance_type, ts_ms);

CREATE TRIGGER IF NOT EXISTS trg_entrance_logs_no_update
BEFORE UPDATE ON entrance_logs
BEGIN
    SELECT RAISE(ABORT, 'entrance_logs is append-only');
END;

CREATE TRIGGER IF NOT EXISTS trg_entrance_logs_no_delete
BEFORE DELETE ON entrance_logs
BEGIN
    SELECT RAISE(ABORT, 'entrance_logs is append-only');
END;
"""

# ------------------------
# Helpers
# ------------------------
def _exec_script(conn: sqlite3.Connection, script: str) -> None:
    cur = conn.cursor()
    cur.executescript(script)
    conn.commit()

def _drop_everything(conn: sqlite3.Connection) -> None:
    cur = conn.cursor()
    cur.execute("DROP TRIGGER IF EXISTS trg_entrance_logs_no_update")
    cur.execute("DROP TRIGGER IF EXISTS trg_entrance_logs_no_delete")
    cur.execute("DROP TABLE IF EXISTS entrance_logs")
    cur.execute("DROP TABLE IF EXISTS members")
    conn.commit()

def ensure_schema(db_path: str | Path, recreate: bool = False) -> None:
    """
    Create the database (and parent folder) if needed, and enforce our schema.
    Safe to call at every boot.
      - recreate=True : destructive drop & rebuild (fresh start).
    """
    p = Path(db_path)
    p.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(p)
    try:
        if recreate:
            _drop_everything(conn)

        _exec_script(conn, MEMBERS_DDL)
        _exec_script(conn, ENTRANCE_LOGS_DDL)

        # Record user_version for lightweight migrations.
        cur = conn.cursor()
        cur.execute(f"PRAGMA user_version = {LOCKED_USER_VERSION}")
        conn.commit()
    finally:
        conn.close()
