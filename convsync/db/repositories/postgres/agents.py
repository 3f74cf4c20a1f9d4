"""PostgreSQL implementation of AgentRepository."""
from __future__ import annotations

import json
import logging

import asyncpg

from convsync.date_utils import parse_timestamp, to_iso
from convsync.models import Agent

logger = logging.getLogger("convsync.db")


class PostgresAgentRepository:
    """PostgreSQL-backed agent storage."""

    def __init__(self, db: asyncpg.Pool):
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
        query = """
            INSERT INTO agents (
                agent_id, name, region, created_at, updated_at, metadata_json, last_synced_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7)
            ON CONFLICT(agent_id) DO UPDATE SET
                name=EXCLUDED.name, region=EXCLUDED.region,
                created_at=EXCLUDED.created_at, updated_at=EXCLUDED.updated_at,
                metadata_json=EXCLUDED.metadata_json, last_synced_at=EXCLUDED.last_synced_at
        """
        try:
            await self.db.execute(query, agent.agent_id, *values)
        except asyncpg.UniqueViolationError:
            logger.warning(f"Duplicate agent detected: {agent.name}, retrying as update")
            await self.db.execute(
                """UPDATE agents SET name=$1, region=$2, created_at=$3, updated_at=$4,
                       metadata_json=$5, last_synced_at=$6
                   WHERE agent_id=$7""",
                *values, agent.agent_id,
            )

    async def get_by_id(self, agent_id: str) -> Agent | None:
        row = await self.db.fetchrow("SELECT * FROM agents WHERE agent_id = $1", agent_id)
        return self._row_to_agent(row) if row else None

    async def list_all(self) -> list[Agent]:
        rows = await self.db.fetch("SELECT * FROM agents ORDER BY name")
        return [self._row_to_agent(r) for r in rows]

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
