"""PostgreSQL implementation of ConversationRepository."""
from __future__ import annotations

import logging

import asyncpg

from convsync.date_utils import parse_timestamp, to_iso
from convsync.db.repositories.conversations import turns_from_json, turns_to_json
from convsync.models import Conversation

logger = logging.getLogger("convsync.db")


class PostgresConversationRepository:
    """PostgreSQL-backed conversation storage."""

    def __init__(self, db: asyncpg.Pool):
        self.db = db

    async def upsert(self, conversation: Conversation) -> None:
        values = (
            conversation.agent_id,
            conversation.agent_name,
            turns_to_json(conversation.turns),
            conversation.total_turns,
            to_iso(conversation.first_message_at),
            to_iso(conversation.last_message_at),
            to_iso(conversation.last_synced_at),
        )
        query = """
            INSERT INTO conversations (
                session_id, agent_id, agent_name, turns_json, total_turns,
                first_message_at, last_message_at, last_synced_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
            ON CONFLICT(session_id) DO UPDATE SET
                agent_id=EXCLUDED.agent_id, agent_name=EXCLUDED.agent_name,
                turns_json=EXCLUDED.turns_json, total_turns=EXCLUDED.total_turns,
                first_message_at=EXCLUDED.first_message_at,
                last_message_at=EXCLUDED.last_message_at,
                last_synced_at=EXCLUDED.last_synced_at
        """
        try:
            await self.db.execute(query, conversation.session_id, *values)
        except asyncpg.UniqueViolationError:
            logger.warning(
                f"Duplicate conversation detected: {conversation.session_id}, retrying as update"
            )
            await self.db.execute(
                """UPDATE conversations SET
                       agent_id=$1, agent_name=$2, turns_json=$3, total_turns=$4,
                       first_message_at=$5, last_message_at=$6, last_synced_at=$7
                   WHERE session_id=$8""",
                *values, conversation.session_id,
            )

    async def get_by_session(self, session_id: str) -> Conversation | None:
        row = await self.db.fetchrow(
            "SELECT * FROM conversations WHERE session_id = $1", session_id,
        )
        return self._row_to_conversation(row) if row else None

    async def list_paginated(
        self, offset: int, limit: int, agent_id: str | None = None,
    ) -> list[Conversation]:
        if agent_id:
            rows = await self.db.fetch(
                "SELECT * FROM conversations WHERE agent_id = $1 "
                "ORDER BY last_message_at DESC LIMIT $2 OFFSET $3",
                agent_id, limit, offset,
            )
        else:
            rows = await self.db.fetch(
                "SELECT * FROM conversations ORDER BY last_message_at DESC LIMIT $1 OFFSET $2",
                limit, offset,
            )
        return [self._row_to_conversation(r) for r in rows]

    async def count(self, agent_id: str | None = None) -> int:
        if agent_id:
            return await self.db.fetchval(
                "SELECT COUNT(*) FROM conversations WHERE agent_id = $1", agent_id,
            ) or 0
        return await self.db.fetchval("SELECT COUNT(*) FROM conversations") or 0

    def _row_to_conversation(self, row) -> Conversation:
        data = dict(row)
        return Conversation(
            session_id=data["session_id"],
            agent_id=data.get("agent_id") or "",
            agent_name=data.get("agent_name") or "",
            turns=turns_from_json(data.get("turns_json")),
            total_turns=data.get("total_turns") or 0,
            first_message_at=parse_timestamp(data.get("first_message_at")),
            last_message_at=parse_timestamp(data.get("last_message_at")),
            last_synced_at=parse_timestamp(data.get("last_synced_at")),
        )
