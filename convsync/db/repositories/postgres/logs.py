"""PostgreSQL implementation of the filtered session log store."""
from __future__ import annotations

from datetime import datetime

import asyncpg

from convsync.date_utils import parse_timestamp, to_iso, utc_now
from convsync.models import SessionLog


class PostgresSessionLogRepository:
    """Insert-only store of question/response log lines keyed by log id."""

    def __init__(self, db: asyncpg.Pool):
        self.db = db

    async def insert_many(self, logs: list[SessionLog]) -> int:
        if not logs:
            return 0
        now = to_iso(utc_now())
        inserted = 0
        async with self.db.acquire() as conn:
            async with conn.transaction():
                for log in logs:
                    status = await conn.execute(
                        """INSERT INTO session_logs
                            (log_id, session_id, agent_id, agent_name, timestamp, level, kind, message, created_at)
                           VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                           ON CONFLICT(log_id) DO NOTHING""",
                        log.log_id, log.session_id, log.agent_id, log.agent_name,
                        to_iso(log.timestamp), log.level, log.kind, log.message, now,
                    )
                    # asyncpg returns the command tag, e.g. "INSERT 0 1"
                    if status.endswith(" 1"):
                        inserted += 1
        return inserted

    async def latest_timestamp(self, session_id: str) -> datetime | None:
        value = await self.db.fetchval(
            "SELECT MAX(timestamp) FROM session_logs WHERE session_id = $1", session_id,
        )
        return parse_timestamp(value) if value else None

    async def list_for_session(self, session_id: str) -> list[SessionLog]:
        rows = await self.db.fetch(
            "SELECT * FROM session_logs WHERE session_id = $1 ORDER BY timestamp", session_id,
        )
        return [
            SessionLog(
                log_id=r["log_id"],
                session_id=r["session_id"],
                agent_id=r["agent_id"],
                agent_name=r["agent_name"],
                timestamp=parse_timestamp(r["timestamp"]),
                level=r["level"] or "INFO",
                kind=r["kind"],
                message=r["message"] or "",
            )
            for r in rows
        ]
