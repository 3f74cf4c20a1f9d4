"""Repository factory to abstract DB backend (SQLite vs Postgres)."""
from __future__ import annotations

from typing import Any

import aiosqlite

from convsync.db.repositories.agents import SqliteAgentRepository
from convsync.db.repositories.conversations import SqliteConversationRepository
from convsync.db.repositories.logs import SqliteSessionLogRepository
from convsync.db.repositories.sessions import SqliteSessionRepository


def get_agent_repository(db: Any):
    if isinstance(db, aiosqlite.Connection):
        return SqliteAgentRepository(db)
    from convsync.db.repositories.postgres.agents import PostgresAgentRepository
    return PostgresAgentRepository(db)


def get_session_repository(db: Any):
    if isinstance(db, aiosqlite.Connection):
        return SqliteSessionRepository(db)
    from convsync.db.repositories.postgres.sessions import PostgresSessionRepository
    return PostgresSessionRepository(db)


def get_conversation_repository(db: Any):
    if isinstance(db, aiosqlite.Connection):
        return SqliteConversationRepository(db)
    from convsync.db.repositories.postgres.conversations import PostgresConversationRepository
    return PostgresConversationRepository(db)


def get_session_log_repository(db: Any):
    if isinstance(db, aiosqlite.Connection):
        return SqliteSessionLogRepository(db)
    from convsync.db.repositories.postgres.logs import PostgresSessionLogRepository
    return PostgresSessionLogRepository(db)
