"""SQLite implementation of SessionRepository."""
from __future__ import annotations

import json
import logging

import aiosqlite

from convsync.date_utils import parse_timestamp, to_iso
from convsync.models import Session

logger = logging.getLogger("convsync.db")

# conversation_count is owned by the conversation sync and is left untouched
# when upstream session metadata is refreshed.
_UPSERT = """INSERT INTO sessions (
        session_id, agent_id, agent_name, started_at, ended_at, status,
        duration_seconds, bot_start_seconds, cold_start, conversation_count,
        metadata_json, last_synced_at
    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    ON CONFLICT(session_id) DO UPDATE SET
        agent_id=excluded.agent_id, agent_name=excluded.agent_name,
        started_at=excluded.started_at, ended_at=excluded.ended_at,
        status=excluded.status, duration_seconds=excluded.duration_seconds,
        bot_start_seconds=excluded.bot_start_seconds, cold_start=excluded.cold_start,
        metadata_json=excluded.metadata_json, last_synced_at=excluded.last_synced_at
"""

_UPDATE = """UPDATE sessions SET
        agent_id=?, agent_name=?, started_at=?, ended_at=?, status=?,
        duration_seconds=?, bot_start_seconds=?, cold_start=?,
        metadata_json=?, last_synced_at=?
    WHERE session_id=?
"""


class SqliteSessionRepository:
    """SQLite-backed session storage."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def upsert(self, session: Session) -> None:
        values = (
            session.agent_id,
            session.agent_name,
            to_iso(session.started_at),
            to_iso(session.ended_at),
            session.status,
            session.duration_seconds,
            session.bot_start_seconds,
            int(session.cold_start),
        )
        tail = (json.dumps(session.metadata, default=str), to_iso(session.last_synced_at))
        try:
            await self.db.execute(
                _UPSERT,
                (session.session_id, *values, session.conversation_count, *tail),
            )
        except aiosqlite.IntegrityError:
            logger.warning(f"Duplicate session detected: {session.session_id}, retrying as update")
            await self.db.execute(_UPDATE, (*values, *tail, session.session_id))
        await self.db.commit()

    async def get_by_id(self, session_id: str) -> Session | None:
        async with self.db.execute(
            "SELECT * FROM sessions WHERE session_id = ?", (session_id,)
        ) as cur:
            row = await cur.fetchone()
            return self._row_to_session(row) if row else None

    async def list_all(self, agent_id: str | None = None) -> list[Session]:
        if agent_id:
            query = "SELECT * FROM sessions WHERE agent_id = ? ORDER BY started_at DESC"
            params: tuple = (agent_id,)
        else:
            query = "SELECT * FROM sessions ORDER BY started_at DESC"
            params = ()
        async with self.db.execute(query, params) as cur:
            return [self._row_to_session(r) for r in await cur.fetchall()]

    async def count(self, agent_id: str | None = None) -> int:
        if agent_id:
            async with self.db.execute(
                "SELECT COUNT(*) FROM sessions WHERE agent_id = ?", (agent_id,)
            ) as cur:
                row = await cur.fetchone()
        else:
            async with self.db.execute("SELECT COUNT(*) FROM sessions") as cur:
                row = await cur.fetchone()
        return row[0] if row else 0

    async def set_conversation_count(self, session_id: str, count: int) -> None:
        await self.db.execute(
            "UPDATE sessions SET conversation_count = ? WHERE session_id = ?",
            (count, session_id),
        )
        await self.db.commit()

    def _row_to_session(self, row) -> Session:
        data = dict(row)
        return Session(
            session_id=data["session_id"],
            agent_id=data["agent_id"],
            agent_name=data["agent_name"],
            started_at=parse_timestamp(data.get("started_at")),
            ended_at=parse_timestamp(data.get("ended_at")),
            status=data.get("status") or "unknown",
            duration_seconds=data.get("duration_seconds") or 0,
            bot_start_seconds=data.get("bot_start_seconds") or 0.0,
            cold_start=bool(data.get("cold_start")),
            conversation_count=data.get("conversation_count") or 0,
            metadata=json.loads(data.get("metadata_json") or "{}"),
            last_synced_at=parse_timestamp(data.get("last_synced_at")),
        )
