import unittest
from datetime import datetime, timezone

import aiosqlite

from convsync.db.repositories.agents import SqliteAgentRepository
from convsync.db.repositories.conversations import SqliteConversationRepository
from convsync.db.repositories.logs import SqliteSessionLogRepository
from convsync.db.repositories.sessions import SqliteSessionRepository
from convsync.db.sqlite_migrations import run_migrations
from convsync.models import Agent, Conversation, Session, SessionLog, Turn

SESSION_ID = "3f1c2b4a-1234-4abc-9def-0123456789ab"
TS = datetime(2026, 3, 1, 10, 0, 0, 123456, tzinfo=timezone.utc)


class RepositoryTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db = await aiosqlite.connect(":memory:")
        self.db.row_factory = aiosqlite.Row
        await run_migrations(self.db)
        self.agents = SqliteAgentRepository(self.db)
        self.sessions = SqliteSessionRepository(self.db)
        self.conversations = SqliteConversationRepository(self.db)
        self.logs = SqliteSessionLogRepository(self.db)

    async def asyncTearDown(self) -> None:
        await self.db.close()

    async def test_migrations_are_idempotent(self) -> None:
        await run_migrations(self.db)
        async with self.db.execute("SELECT COUNT(*) FROM schema_version") as cur:
            row = await cur.fetchone()
        self.assertEqual(row[0], 1)

    async def test_agent_upsert_refreshes_existing_row(self) -> None:
        await self.agents.upsert(Agent(agent_id="a1", name="support-bot", region="us-west"))
        await self.agents.upsert(Agent(agent_id="a1", name="support-bot", region="eu-central", metadata={"k": 1}))

        stored = await self.agents.get_by_id("a1")
        self.assertEqual(stored.region, "eu-central")
        self.assertEqual(stored.metadata, {"k": 1})
        self.assertEqual(len(await self.agents.list_all()), 1)

    async def test_session_refresh_keeps_conversation_count(self) -> None:
        session = Session(session_id=SESSION_ID, agent_id="a1", agent_name="support-bot", started_at=TS)
        await self.sessions.upsert(session)
        await self.sessions.set_conversation_count(SESSION_ID, 4)
        await self.sessions.upsert(session.model_copy(update={"status": "HTTP_COMPLETION"}))

        stored = await self.sessions.get_by_id(SESSION_ID)
        self.assertEqual(stored.status, "HTTP_COMPLETION")
        self.assertEqual(stored.conversation_count, 4)
        self.assertEqual(stored.started_at, TS)
        self.assertEqual(await self.sessions.count("a1"), 1)

    async def test_conversation_round_trip(self) -> None:
        await self.sessions.upsert(Session(session_id=SESSION_ID, agent_id="a1", agent_name="support-bot"))
        turns = [
            Turn(turn_id=1, user_message="Hi", assistant_message="Hello", timestamp=TS),
            Turn(turn_id=2, user_message="Bye", assistant_message=None, timestamp=TS),
        ]
        await self.conversations.upsert(
            Conversation(
                session_id=SESSION_ID,
                agent_id="a1",
                agent_name="support-bot",
                turns=turns,
                total_turns=2,
                first_message_at=TS,
                last_message_at=TS,
            )
        )

        stored = await self.conversations.get_by_session(SESSION_ID)
        self.assertEqual(stored.turns, turns)
        self.assertEqual(stored.last_message_at, TS)
        self.assertEqual(await self.conversations.count(), 1)
        listed = await self.conversations.list_paginated(0, 10, agent_id="a1")
        self.assertEqual([c.session_id for c in listed], [SESSION_ID])

    async def test_log_insert_ignores_duplicates(self) -> None:
        log = SessionLog(
            log_id="log_1",
            session_id=SESSION_ID,
            agent_id="a1",
            agent_name="support-bot",
            timestamp=TS,
            kind="question",
            message="Hi",
        )
        later = log.model_copy(update={"log_id": "log_2", "kind": "response", "timestamp": TS.replace(second=5)})

        self.assertEqual(await self.logs.insert_many([log]), 1)
        self.assertEqual(await self.logs.insert_many([log, later]), 1)
        self.assertEqual(await self.logs.latest_timestamp(SESSION_ID), TS.replace(second=5))
        self.assertIsNone(await self.logs.latest_timestamp("missing"))
        self.assertEqual([l.log_id for l in await self.logs.list_for_session(SESSION_ID)], ["log_1", "log_2"])


if __name__ == "__main__":
    unittest.main()
