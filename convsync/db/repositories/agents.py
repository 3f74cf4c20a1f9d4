"""SQLite implementation of AgentRepository."""
from __future__ import annotations

import json
import logging

import aiosqlite

from convsync.date_utils import parse_timestamp, to_iso
from convsync.models import Agent

logger = logging.getLogger("convsync.db")

_UPSERT = """INSERT INTO agents (
        agent_id, name, region, created_at, updated_at, metadata_json, last_synced_at
    ) VALUES (?, ?, ?, ?, ?, ?, ?)
    ON CONFLICT(agent_id) DO UPDATE SET
        name=excluded.name, region=excluded.region,
        created_at=excluded.created_at, updated_at=excluded.updated_at,
        metadata_json=excluded.metadata_json, last_synced_at=excluded.last_synced_at
"""

_UPDATE = """UPDATE agents SET
        name=?, region=?, created_at=?, updated_at=?, metadata_json=?, last_synced_at=?
    WHERE agent_id=?
"""


class SqliteAgentRepository:
    """SQLite-backed agent storage keyed by upstream agent id."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def upsert(self, agent: Agent) -> None:
        values = (
            agent.name,
            agent.region,
            to_iso(agent.created_at),
            to_iso(agent.updated_at),
            json.dumps(agent.metadata),
            to_iso(agent.last_synced_at),
        )
        try:
            await self.db.execute(_UPSERT, (agent.agent_id, *values))
        except aiosqlite.IntegrityError:
            logger.warning(f"Duplicate agent detected: {agent.name}, retrying as update")
            await self.db.execute(_UPDATE, (*values, agent.agent_id))
        await self.db.commit()

    async def get_by_id(self, agent_id: str) -> Agent | None:
        async with self.db.execute(
            "SELECT * FROM agents WHERE agent_id = ?", (agent_id,)
        ) as cur:
            row = await cur.fetchone()
            return self._row_to_agent(row) if row else None

    async def list_all(self) -> list[Agent]:
        async with self.db.execute("SELECT * FROM agents ORDER BY name") as cur:
            return [self._row_to_agent(r) for r in await cur.fetchall()]

    def _row_to_agent(self, row) -> Agent:
        data = dict(row)
        return Agent(
            agent_id=data["agent_id"],
            name=data["name"],
            region=data.get("region") or "",
            created_at=parse_timestamp(data.get("created_at")),
            updated_at=parse_timestamp(data.get("updated_at")),
            metadata=json.loads(data.get("metadata_json") or "{}"),
            last_synced_at=parse_timestamp(data.get("last_synced_at")),
        )
