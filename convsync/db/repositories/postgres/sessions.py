"""PostgreSQL implementation of SessionRepository."""
from __future__ import annotations

import json
import logging

import asyncpg

from convsync.date_utils import parse_timestamp, to_iso
from convsync.models import Session

logger = logging.getLogger("convsync.db")


class PostgresSessionRepository:
    """PostgreSQL-backed session storage."""

    def __init__(self, db: asyncpg.Pool):
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
            session.cold_start,
        )
        tail = (json.dumps(session.metadata, default=str), to_iso(session.last_synced_at))
        query = """
            INSERT INTO sessions (
                session_id, agent_id, agent_name, started_at, ended_at, status,
                duration_seconds, bot_start_seconds, cold_start, conversation_count,
                metadata_json, last_synced_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)
            ON CONFLICT(session_id) DO UPDATE SET
                agent_id=EXCLUDED.agent_id, agent_name=EXCLUDED.agent_name,
                started_at=EXCLUDED.started_at, ended_at=EXCLUDED.ended_at,
                status=EXCLUDED.status, duration_seconds=EXCLUDED.duration_seconds,
                bot_start_seconds=EXCLUDED.bot_start_seconds, cold_start=EXCLUDED.cold_start,
                metadata_json=EXCLUDED.metadata_json, last_synced_at=EXCLUDED.last_synced_at
        """
        try:
            await self.db.execute(
                query, session.session_id, *values, session.conversation_count, *tail,
            )
        except asyncpg.UniqueViolationError:
            logger.warning(f"Duplicate session detected: {session.session_id}, retrying as update")
            await self.db.execute(
                """UPDATE sessions SET
                       agent_id=$1, agent_name=$2, started_at=$3, ended_at=$4, status=$5,
                       duration_seconds=$6, bot_start_seconds=$7, cold_start=$8,
                       metadata_json=$9, last_synced_at=$10
                   WHERE session_id=$11""",
                *values, *tail, session.session_id,
            )

    async def get_by_id(self, session_id: str) -> Session | None:
        row = await self.db.fetchrow("SELECT * FROM sessions WHERE session_id = $1", session_id)
        return self._row_to_session(row) if row else None

    async def list_all(self, agent_id: str | None = None) -> list[Session]:
        if agent_id:
            rows = await self.db.fetch(
                "SELECT * FROM sessions WHERE agent_id = $1 ORDER BY started_at DESC", agent_id,
            )
        else:
            rows = await self.db.fetch("SELECT * FROM sessions ORDER BY started_at DESC")
        return [self._row_to_session(r) for r in rows]

    async def count(self, agent_id: str | None = None) -> int:
        if agent_id:
            return await self.db.fetchval(
                "SELECT COUNT(*) FROM sessions WHERE agent_id = $1", agent_id,
            ) or 0
        return await self.db.fetchval("SELECT COUNT(*) FROM sessions") or 0

    async def set_conversation_count(self, session_id: str, count: int) -> None:
        await self.db.execute(
            "UPDATE sessions SET conversation_count = $1 WHERE session_id = $2",
            count, session_id,
        )

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
