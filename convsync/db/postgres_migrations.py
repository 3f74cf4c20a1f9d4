"""PostgreSQL schema creation and versioning."""
from __future__ import annotations

import logging

import asyncpg

logger = logging.getLogger("convsync.db")

SCHEMA_VERSION = 2

_TABLES = """
CREATE TABLE IF NOT EXISTS schema_version (
    version   INTEGER NOT NULL,
    applied   TIMESTAMPTZ NOT NULL DEFAULT now()
);

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

CREATE TABLE IF NOT EXISTS sessions (
    session_id          TEXT PRIMARY KEY,
    agent_id            TEXT NOT NULL,
    agent_name          TEXT NOT NULL,
    started_at          TEXT,
    ended_at            TEXT,
    status              TEXT DEFAULT 'unknown',
    duration_seconds    INTEGER DEFAULT 0,
    bot_start_seconds   DOUBLE PRECISION DEFAULT 0,
    cold_start          BOOLEAN DEFAULT FALSE,
    conversation_count  INTEGER DEFAULT 0,
    metadata_json       TEXT DEFAULT '{}',
    last_synced_at      TEXT
);

CREATE INDEX IF NOT EXISTS idx_sessions_agent ON sessions(agent_id, started_at DESC);

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


async def run_migrations(pool: asyncpg.Pool) -> None:
    """Create all tables. Idempotent."""
    async with pool.acquire() as conn:
        exists = await conn.fetchval("SELECT to_regclass('schema_version')")
        current_version = 0
        if exists:
            current_version = await conn.fetchval("SELECT COALESCE(MAX(version), 0) FROM schema_version") or 0

        if current_version >= SCHEMA_VERSION:
            logger.info(f"Schema is up to date (version {current_version})")
            return

        logger.info(f"Running Postgres migrations: {current_version} → {SCHEMA_VERSION}")
        async with conn.transaction():
            await conn.execute(_TABLES)
            await conn.execute("INSERT INTO schema_version (version) VALUES ($1)", SCHEMA_VERSION)
        logger.info(f"Migrations complete, schema version {SCHEMA_VERSION}")
