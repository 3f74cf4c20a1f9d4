"""SQLite implementation of the filtered session log store."""
from __future__ import annotations

from datetime import datetime

import aiosqlite

from convsync.date_utils import parse_timestamp, to_iso, utc_now
from convsync.models import SessionLog


class SqliteSessionLogRepository:
    """Insert-only store of question/response log lines keyed by log id."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def insert_many(self, logs: list[SessionLog]) -> int:
        """Insert logs, ignoring ids already stored. Returns rows inserted."""
        if not logs:
            return 0
        now = to_iso(utc_now())
        inserted = 0
        for log in logs:
            cur = await self.db.execute(
                """INSERT OR IGNORE INTO session_logs
                    (log_id, session_id, agent_id, agent_name, timestamp, level, kind, message, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    log.log_id, log.session_id, log.agent_id, log.agent_name,
                    to_iso(log.timestamp), log.level, log.kind, log.message, now,
                ),
            )
            inserted += max(0, cur.rowcount)
            await cur.close()
        await self.db.commit()
        return inserted

    async def latest_timestamp(self, session_id: str) -> datetime | None:
        async with self.db.execute(
            "SELECT MAX(timestamp) FROM session_logs WHERE session_id = ?", (session_id,)
        ) as cur:
            row = await cur.fetchone()
        return parse_timestamp(row[0]) if row and row[0] else None

    async def list_for_session(self, session_id: str) -> list[SessionLog]:
        async with self.db.execute(
            "SELECT * FROM session_logs WHERE session_id = ? ORDER BY timestamp",
            (session_id,),
        ) as cur:
            rows = await cur.fetchall()
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
