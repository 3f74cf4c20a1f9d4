"""Database schema creation and versioning.

All CREATE TABLE statements for the SQLite store.
Uses IF NOT EXISTS for idempotent runs.
"""
from __future__ import annotations

import logging

import aiosqlite

logger = logging.getLogger("convsync.db")

SCHEMA_VERSION = 2

_TABLES = """
-- ── Schema version tracking ────────────────────────────────────────
CREATE TABLE IF NOT EXISTS schema_version (
    version   INTEGER NOT NULL,
    applied   TEXT NOT NULL DEFAULT (datetime('now'))
);

-- ── 1. Agents ──────────────────────────────────────────────────────
CREATE TABLE IF NOT EXISTS agents (
    agent_id        TEXT PRIMARY KEY,
    name            TEXT NOT NULL,
    region          TEXT DEFAULT '',
    created_at      TEXT,
    updated_at      TEXT,
    metadata_json   TEXT DEFAULT '{}',
    last_synced_at  TEXT
);

CREATE INDEX IF NOT EXISTS idx_agents_name ON agents(name);

-- ── 2. Sessions ────────────────────────────────────────────────────
CREATE TABLE IF NOT EXISTS sessions (
    session_id          TEXT PRIMARY KEY,
    agent_id            TEXT NOT NULL,
    agent_name          TEXT NOT NULL,
    started_at          TEXT,
    ended_at            TEXT,
    status              TEXT DEFAULT 'unknown',
    duration_seconds    INTEGER DEFAULT 0,
    bot_start_seconds   REAL DEFAULT 0,
    cold_start          INTEGER DEFAULT 0,
    conversation_count  INTEGER DEFAULT 0,
    metadata_json       TEXT DEFAULT '{}',
    last_synced_at      TEXT
);

CREATE INDEX IF NOT EXISTS idx_sessions_agent ON sessions(agent_id, started_at DESC);

-- ── 3. Conversations (one per session) ─────────────────────────────
CREATE TABLE IF NOT EXISTS conversations (
    session_id        TEXT PRIMARY KEY REFERENCES sessions(session_id) ON DELETE CASCADE,
    agent_id          TEXT DEFAULT '',
    agent_name        TEXT DEFAULT '',
    turns_json        TEXT NOT NULL DEFAULT '[]',
    total_turns       INTEGER DEFAULT 0,
    first_message_at  TEXT,
    last_message_at   TEXT,
    last_synced_at    TEXT
);

CREATE INDEX IF NOT EXISTS idx_conversations_agent ON conversations(agent_id, last_message_at DESC);
"""

_SESSION_LOGS = """
-- ── 4. Filtered per-session log lines ──────────────────────────────
CREATE TABLE IF NOT EXISTS session_logs (
    log_id      TEXT PRIMARY KEY,
    session_id  TEXT NOT NULL,
    agent_id    TEXT NOT NULL,
    agent_name  TEXT NOT NULL,
    timestamp   TEXT NOT NULL,
    level       TEXT DEFAULT 'INFO',
    kind        TEXT NOT NULL,
    message     TEXT DEFAULT '',
    created_at  TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_session_logs_session ON session_logs(session_id, timestamp);
CREATE INDEX IF NOT EXISTS idx_session_logs_agent ON session_logs(agent_id, timestamp);
"""


async def _ensure_column(db: aiosqlite.Connection, table: str, column: str, definition: str) -> None:
    async with db.execute(f"PRAGMA table_info({table})") as cur:
        columns = {row[1] for row in await cur.fetchall()}
    if column not in columns:
        await db.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")


async def run_migrations(db: aiosqlite.Connection) -> None:
    """Create all tables. Idempotent."""
    try:
        async with db.execute("SELECT MAX(version) FROM schema_version") as cur:
            row = await cur.fetchone()
            current_version = row[0] if row and row[0] else 0
    except aiosqlite.OperationalError:
        current_version = 0

    if current_version >= SCHEMA_VERSION:
        logger.info(f"Schema is up to date (version {current_version})")
        return

    logger.info(f"Running migrations: {current_version} → {SCHEMA_VERSION}")

    await db.executescript(_TABLES)
    # v2: session log store for the log-only sync.
    await db.executescript(_SESSION_LOGS)
    await _ensure_column(db, "sessions", "conversation_count", "INTEGER DEFAULT 0")

    await db.execute(
        "INSERT INTO schema_version (version) VALUES (?)",
        (SCHEMA_VERSION,),
    )
    await db.commit()
    logger.info(f"Migrations complete, schema version {SCHEMA_VERSION}")
