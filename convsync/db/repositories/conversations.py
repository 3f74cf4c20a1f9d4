"""SQLite implementation of ConversationRepository."""
from __future__ import annotations

import json
import logging

import aiosqlite

from convsync.date_utils import parse_timestamp, to_iso
from convsync.models import Conversation, Turn

logger = logging.getLogger("convsync.db")

_UPSERT = """INSERT INTO conversations (
        session_id, agent_id, agent_name, turns_json, total_turns,
        first_message_at, last_message_at, last_synced_at
    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
    ON CONFLICT(session_id) DO UPDATE SET
        agent_id=excluded.agent_id, agent_name=excluded.agent_name,
        turns_json=excluded.turns_json, total_turns=excluded.total_turns,
        first_message_at=excluded.first_message_at,
        last_message_at=excluded.last_message_at,
        last_synced_at=excluded.last_synced_at
"""

_UPDATE = """UPDATE conversations SET
        agent_id=?, agent_name=?, turns_json=?, total_turns=?,
        first_message_at=?, last_message_at=?, last_synced_at=?
    WHERE session_id=?
"""


def turns_to_json(turns: list[Turn]) -> str:
    return json.dumps([turn.model_dump(mode="json") for turn in turns])


def turns_from_json(raw: str | None) -> list[Turn]:
    return [Turn.model_validate(item) for item in json.loads(raw or "[]")]


class SqliteConversationRepository:
    """SQLite-backed conversation storage, one row per session."""

    def __init__(self, db: aiosqlite.Connection):
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
        try:
            await self.db.execute(_UPSERT, (conversation.session_id, *values))
        except aiosqlite.IntegrityError:
            logger.warning(
                f"Duplicate conversation detected: {conversation.session_id}, retrying as update"
            )
            await self.db.execute(_UPDATE, (*values, conversation.session_id))
        await self.db.commit()

    async def get_by_session(self, session_id: str) -> Conversation | None:
        async with self.db.execute(
            "SELECT * FROM conversations WHERE session_id = ?", (session_id,)
        ) as cur:
            row = await cur.fetchone()
            return self._row_to_conversation(row) if row else None

    async def list_paginated(
        self, offset: int, limit: int, agent_id: str | None = None,
    ) -> list[Conversation]:
        if agent_id:
            query = (
                "SELECT * FROM conversations WHERE agent_id = ? "
                "ORDER BY last_message_at DESC LIMIT ? OFFSET ?"
            )
            params: tuple = (agent_id, limit, offset)
        else:
            query = "SELECT * FROM conversations ORDER BY last_message_at DESC LIMIT ? OFFSET ?"
            params = (limit, offset)
        async with self.db.execute(query, params) as cur:
            return [self._row_to_conversation(r) for r in await cur.fetchall()]

    async def count(self, agent_id: str | None = None) -> int:
        if agent_id:
            async with self.db.execute(
                "SELECT COUNT(*) FROM conversations WHERE agent_id = ?", (agent_id,)
            ) as cur:
                row = await cur.fetchone()
        else:
            async with self.db.execute("SELECT COUNT(*) FROM conversations") as cur:
                row = await cur.fetchone()
        return row[0] if row else 0

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
