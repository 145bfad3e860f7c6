"""SQLite schema for the local record cache and sync queue."""

import sqlite3

SCHEMA_VERSION = 2

# sync_queue.synced values
SYNC_PENDING = 0
SYNC_COMPLETED = 1
SYNC_DEAD_LETTER = 2

# sync_queue.operation values
OP_UPSERT = "upsert"  # blind write, reconciled last-write-wins
OP_UPDATE = "update"  # compare-and-set, based on records.cloud_version

SCHEMA = """
-- One row per (table, key); payload is the JSON document
CREATE TABLE IF NOT EXISTS records (
    table_name TEXT NOT NULL,
    key TEXT NOT NULL,
    payload TEXT NOT NULL,
    version INTEGER NOT NULL DEFAULT 1,
    updated_at TEXT NOT NULL,
    cloud_synced_at TEXT,
    cloud_version INTEGER,  -- remote version the local row is based on
    PRIMARY KEY (table_name, key)
);

-- Local changes waiting to be pushed
CREATE TABLE IF NOT EXISTS sync_queue (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    table_name TEXT NOT NULL,
    record_id TEXT NOT NULL,
    operation TEXT NOT NULL,
    local_updated_at TEXT NOT NULL,
    synced INTEGER DEFAULT 0,  -- 0 = pending, 1 = synced, 2 = dead letter
    retry_count INTEGER DEFAULT 0,
    last_error TEXT,
    last_attempt_at TEXT,
    queued_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_sync_queue_synced ON sync_queue(synced);
-- Unique partial index for atomic UPSERT on unsynced entries
CREATE UNIQUE INDEX IF NOT EXISTS idx_sync_queue_unsynced_unique
    ON sync_queue(table_name, record_id) WHERE synced = 0;

CREATE TABLE IF NOT EXISTS sync_meta (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS sync_conflicts (
    id TEXT PRIMARY KEY,
    table_name TEXT NOT NULL,
    record_id TEXT NOT NULL,
    resolution TEXT NOT NULL,
    local_updated_at TEXT,
    cloud_updated_at TEXT,
    local_payload TEXT,
    cloud_payload TEXT,
    resolved_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_sync_conflicts_resolved ON sync_conflicts(resolved_at);
"""


def init_schema(conn: sqlite3.Connection) -> None:
    """Create tables if missing, migrate older databases and stamp the schema version."""
    conn.executescript(SCHEMA)
    columns = {row[1] for row in conn.execute("PRAGMA table_info(records)").fetchall()}
    if "cloud_version" not in columns:
        # v1 databases: rows without a base are treated as never pushed
        conn.execute("ALTER TABLE records ADD COLUMN cloud_version INTEGER")
    conn.execute(
        "INSERT OR REPLACE INTO sync_meta (key, value) VALUES ('schema_version', ?)",
        (str(SCHEMA_VERSION),),
    )
