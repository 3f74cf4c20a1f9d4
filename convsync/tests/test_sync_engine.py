import asyncio
import unittest
from datetime import datetime, timezone

import aiosqlite

from convsync.db.sqlite_migrations import run_migrations
from convsync.db.sync_engine import SyncEngine, agent_from_payload, session_from_payload
from convsync.models import Agent, Conversation, RawContextSnapshot, Session, Turn
from convsync.upstream import UpstreamPage

HORIZON = datetime(2026, 2, 1, tzinfo=timezone.utc)
SESSION_ID = "3f1c2b4a-1234-4abc-9def-0123456789ab"
OLD_SESSION_ID = "11111111-2222-4333-8444-555555555555"
SECOND_SESSION_ID = "7a6b5c4d-aaaa-4bbb-8ccc-dddddddddddd"
BILLING_SESSION_ID = "9e8d7c6b-1111-4222-9333-444444444444"
AGENT = Agent(agent_id="a1", name="support-bot")


def _context_line(session_id: str, timestamp: str, turns: int = 2) -> str:
    messages = []
    for n in range(1, turns + 1):
        messages.append(f"{{'role': 'user', 'content': 'question {n}'}}")
        messages.append(f"{{'role': 'assistant', 'content': 'answer {n}'}}")
    return (
        f"{timestamp} | DEBUG | pipecat.services.openai:_stream:120 | {session_id} "
        f"Generating chat from universal context [{', '.join(messages)}]"
    )


class _FakeClient:
    def __init__(self, agents=None, sessions=None, logs=None) -> None:
        self.agents = agents or []
        self.sessions = sessions or {}
        self.logs = logs or {}

    async def list_all_agents(self):
        return list(self.agents)

    async def list_all_sessions(self, agent_name):
        return list(self.sessions.get(agent_name, []))

    async def list_logs(self, agent_name, session_id=None, page=1, limit=100, query=None):
        entries = [
            e for e in self.logs.get(agent_name, [])
            if (session_id is None or session_id in e["log"]) and (not query or query in e["log"])
        ]
        items = entries[(page - 1) * limit : page * limit]
        return UpstreamPage(items=items, page=page, limit=limit, total=len(entries), has_more=len(items) == limit)

    async def iter_pages(self, fetch, *args, limit=100, **kwargs):
        page = 1
        while True:
            result = await fetch(*args, page=page, limit=limit, **kwargs)
            if not result.items:
                return
            yield result
            if not result.has_more:
                return
            page += 1


class SyncEngineTestBase(unittest.IsolatedAsyncioTestCase):
    client = None

    async def asyncSetUp(self) -> None:
        self.db = await aiosqlite.connect(":memory:")
        self.db.row_factory = aiosqlite.Row
        await run_migrations(self.db)
        self.engine = SyncEngine(self.db, self.client or _FakeClient(), horizon=HORIZON)
        self.writes: list[str] = []
        original = self.engine.conversation_repo.upsert

        async def counting_upsert(conversation):
            self.writes.append(conversation.session_id)
            await original(conversation)

        self.engine.conversation_repo.upsert = counting_upsert

    async def asyncTearDown(self) -> None:
        await self.db.close()


class ConvergenceTests(SyncEngineTestBase):
    def _snapshot(self, turns: int = 2, ts: datetime | None = None) -> RawContextSnapshot:
        ts = ts or datetime(2026, 3, 1, 10, 0, 0, 250000, tzinfo=timezone.utc)
        return RawContextSnapshot(
            session_id=SESSION_ID,
            log_text=_context_line(SESSION_ID, ts.isoformat(), turns),
            timestamp=ts,
            is_universal=True,
        )

    async def _store_session(self) -> None:
        await self.engine.session_repo.upsert(
            Session(session_id=SESSION_ID, agent_id=AGENT.agent_id, agent_name=AGENT.name)
        )

    async def test_second_run_with_same_snapshot_writes_nothing(self) -> None:
        await self._store_session()
        snapshot = self._snapshot()

        self.assertEqual(await self.engine.converge_conversation(AGENT, snapshot), "written")
        first = await self.engine.conversation_repo.get_by_session(SESSION_ID)
        self.assertEqual(await self.engine.converge_conversation(AGENT, snapshot), "unchanged")
        second = await self.engine.conversation_repo.get_by_session(SESSION_ID)

        self.assertEqual(self.writes, [SESSION_ID])
        self.assertEqual(first.total_turns, second.total_turns)
        self.assertEqual(first.last_message_at, second.last_message_at)
        self.assertEqual(second.last_message_at, snapshot.timestamp)
        session = await self.engine.session_repo.get_by_id(SESSION_ID)
        self.assertEqual(session.conversation_count, 2)

    async def test_grown_snapshot_is_written(self) -> None:
        await self._store_session()
        await self.engine.converge_conversation(AGENT, self._snapshot(turns=1))

        later = self._snapshot(turns=3, ts=datetime(2026, 3, 1, 10, 5, tzinfo=timezone.utc))
        self.assertEqual(await self.engine.converge_conversation(AGENT, later), "written")

        stored = await self.engine.conversation_repo.get_by_session(SESSION_ID)
        self.assertEqual([t.turn_id for t in stored.turns], [1, 2, 3])
        self.assertEqual(stored.turns[2].user_message, "question 3")

    async def test_missing_parent_session_drops_conversation(self) -> None:
        self.assertEqual(await self.engine.converge_conversation(AGENT, self._snapshot()), "orphaned")
        self.assertIsNone(await self.engine.conversation_repo.get_by_session(SESSION_ID))
        self.assertEqual(self.writes, [])

    async def test_snapshot_without_turns_is_empty(self) -> None:
        await self._store_session()
        snapshot = self._snapshot().model_copy(update={"log_text": f"{SESSION_ID} context []"})
        self.assertEqual(await self.engine.converge_conversation(AGENT, snapshot), "empty")

    async def test_overlapping_run_is_skipped(self) -> None:
        async with self.engine._run_lock:
            result = await self.engine.run_full_sync(trigger="test")
        self.assertEqual(result["status"], "skipped")


class FullSyncTests(SyncEngineTestBase):
    client = _FakeClient(
        agents=[{"id": "a1", "name": "support-bot", "region": "us-west"}, {"region": "nameless"}],
        sessions={
            "support-bot": [
                {
                    "sessionId": SESSION_ID,
                    "createdAt": "2026-03-01T09:59:00Z",
                    "endedAt": "2026-03-01T10:09:00Z",
                    "completionStatus": "HTTP_COMPLETION",
                    "botStartSeconds": 1.5,
                },
                {"sessionId": OLD_SESSION_ID, "createdAt": "2026-01-20T09:00:00Z"},
            ]
        },
        logs={
            "support-bot": [
                {"timestamp": "2026-03-01T10:05:00Z", "log": _context_line(SESSION_ID, "2026-03-01T10:05:00Z", 2)},
                {"timestamp": "2026-03-01T10:01:00Z", "log": _context_line(SESSION_ID, "2026-03-01T10:01:00Z", 1)},
                {"timestamp": "2026-03-01T08:00:00Z", "log": _context_line(OLD_SESSION_ID, "2026-03-01T08:00:00Z", 1)},
                {
                    "timestamp": "2026-03-01T10:05:01Z",
                    "log": f"2026-03-01 10:05:01 | DEBUG | pipecat.services.tts:run_tts:88 | {SESSION_ID} Generating TTS: [answer 2]",
                },
            ]
        },
    )

    async def test_full_run_then_rerun_is_idempotent(self) -> None:
        first = await self.engine.run_full_sync(trigger="test", include_logs=False)

        self.assertEqual(first["status"], "completed")
        self.assertEqual(first["agents"], 1)
        self.assertEqual(first["sessions"], 1)
        self.assertEqual(first["conversations"], 1)
        self.assertEqual(first["conversations_orphaned"], 1)

        stored = await self.engine.conversation_repo.get_by_session(SESSION_ID)
        self.assertEqual(stored.total_turns, 2)
        session = await self.engine.session_repo.get_by_id(SESSION_ID)
        self.assertEqual(session.status, "HTTP_COMPLETION")
        self.assertEqual(session.duration_seconds, 600)
        self.assertIsNone(await self.engine.session_repo.get_by_id(OLD_SESSION_ID))

        second = await self.engine.run_full_sync(trigger="test", include_logs=False)
        self.assertEqual(second["conversations"], 0)
        self.assertEqual(second["conversations_unchanged"], 1)
        self.assertEqual(self.writes, [SESSION_ID])

        operation = await self.engine.get_operation(first["operation_id"])
        self.assertEqual(operation["status"], "completed")
        self.assertEqual(len(await self.engine.list_operations()), 2)

    async def test_log_sync_is_incremental(self) -> None:
        await self.engine.sync_sessions(AGENT)

        first = await self.engine.sync_logs(batch_pause_ms=0)
        second = await self.engine.sync_logs(batch_pause_ms=0)

        self.assertEqual(first["inserted"], 3)
        self.assertEqual(second["inserted"], 0)
        logs = await self.engine.log_repo.list_for_session(SESSION_ID)
        self.assertEqual([l.kind for l in logs], ["question", "question", "response"])
        self.assertEqual(logs[-1].message, "answer 2")


class _FlakyClient(_FakeClient):
    def __init__(self, *args, failing_agents=(), **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.failing_agents = set(failing_agents)

    async def list_all_sessions(self, agent_name):
        if agent_name in self.failing_agents:
            raise RuntimeError("upstream unavailable")
        return await super().list_all_sessions(agent_name)


def _two_agent_client(failing_agents=()) -> _FlakyClient:
    return _FlakyClient(
        agents=[{"id": "a2", "name": "billing-bot"}, {"id": "a1", "name": "support-bot"}],
        sessions={
            "billing-bot": [{"sessionId": BILLING_SESSION_ID, "createdAt": "2026-03-01T08:00:00Z"}],
            "support-bot": [
                {"sessionId": SESSION_ID, "createdAt": "2026-03-01T09:00:00Z"},
                {"sessionId": SECOND_SESSION_ID, "createdAt": "2026-03-01T09:30:00Z"},
            ],
        },
        logs={
            "billing-bot": [
                {"timestamp": "2026-03-01T08:05:00Z", "log": _context_line(BILLING_SESSION_ID, "2026-03-01T08:05:00Z")},
            ],
            "support-bot": [
                {"timestamp": "2026-03-01T09:35:00Z", "log": _context_line(SECOND_SESSION_ID, "2026-03-01T09:35:00Z")},
                {"timestamp": "2026-03-01T09:05:00Z", "log": _context_line(SESSION_ID, "2026-03-01T09:05:00Z")},
            ],
        },
        failing_agents=failing_agents,
    )


class ErrorIsolationTests(SyncEngineTestBase):
    async def test_failing_agent_does_not_stop_the_next(self) -> None:
        self.engine.client = _two_agent_client(failing_agents={"billing-bot"})

        stats = await self.engine.run_full_sync(trigger="test", include_logs=False)

        self.assertEqual(stats["status"], "completed")
        self.assertEqual(stats["agents"], 2)
        self.assertEqual(stats["agents_failed"], 1)
        self.assertEqual(stats["conversations"], 2)
        self.assertEqual(sorted(self.writes), sorted([SESSION_ID, SECOND_SESSION_ID]))

    async def test_failing_snapshot_does_not_stop_the_agent(self) -> None:
        self.engine.client = _two_agent_client()
        original = self.engine.converge_conversation

        async def converge(agent, snapshot):
            if snapshot.session_id == SESSION_ID:
                raise ValueError("malformed context")
            return await original(agent, snapshot)

        self.engine.converge_conversation = converge
        stats = await self.engine.run_full_sync(trigger="test", include_logs=False)

        self.assertEqual(stats["agents_failed"], 0)
        self.assertEqual(stats["conversations_failed"], 1)
        self.assertEqual(stats["conversations"], 2)
        self.assertIsNone(await self.engine.conversation_repo.get_by_session(SESSION_ID))
        self.assertIsNotNone(await self.engine.conversation_repo.get_by_session(SECOND_SESSION_ID))

    async def test_failing_session_does_not_stop_the_agent(self) -> None:
        self.engine.client = _two_agent_client()
        original = self.engine.session_repo.upsert

        async def upsert(session):
            if session.session_id == SESSION_ID:
                raise aiosqlite.OperationalError("database is locked")
            await original(session)

        self.engine.session_repo.upsert = upsert
        stats = await self.engine.run_full_sync(trigger="test", include_logs=False)

        self.assertEqual(stats["agents_failed"], 0)
        self.assertEqual(stats["sessions"], 2)
        self.assertEqual(stats["sessions_failed"], 1)
        self.assertIsNotNone(await self.engine.session_repo.get_by_id(SECOND_SESSION_ID))
        self.assertIsNotNone(await self.engine.conversation_repo.get_by_session(SECOND_SESSION_ID))
        self.assertEqual(stats["conversations_orphaned"], 1)

    async def test_duplicate_key_falls_back_to_update(self) -> None:
        await self.engine.session_repo.upsert(
            Session(session_id=SESSION_ID, agent_id=AGENT.agent_id, agent_name=AGENT.name)
        )
        repo = self.engine.conversation_repo
        await repo.upsert(
            Conversation(
                session_id=SESSION_ID,
                agent_id=AGENT.agent_id,
                agent_name=AGENT.name,
                turns=[Turn(turn_id=1, user_message="Hi", assistant_message="Hello")],
                total_turns=1,
            )
        )

        statements: list[str] = []
        execute = self.db.execute

        async def racing_execute(sql, parameters=None):
            statements.append(sql)
            if len(statements) == 1:
                raise aiosqlite.IntegrityError("UNIQUE constraint failed: conversations.session_id")
            return await execute(sql, parameters)

        self.db.execute = racing_execute
        try:
            await repo.upsert(
                Conversation(
                    session_id=SESSION_ID,
                    agent_id=AGENT.agent_id,
                    agent_name=AGENT.name,
                    turns=[
                        Turn(turn_id=1, user_message="Hi", assistant_message="Hello"),
                        Turn(turn_id=2, user_message="Bye", assistant_message="Goodbye"),
                    ],
                    total_turns=2,
                )
            )
        finally:
            del self.db.execute

        self.assertEqual(len(statements), 2)
        self.assertTrue(statements[1].lstrip().startswith("UPDATE conversations"))
        stored = await repo.get_by_session(SESSION_ID)
        self.assertEqual(stored.total_turns, 2)
        self.assertEqual(stored.turns[1].assistant_message, "Goodbye")


class CancellationTests(SyncEngineTestBase):
    async def test_cancelled_run_is_not_left_running(self) -> None:
        reached = asyncio.Event()

        class _StalledClient(_FakeClient):
            async def list_all_sessions(self, agent_name):
                reached.set()
                await asyncio.Event().wait()

        self.engine.client = _StalledClient(agents=[{"id": "a1", "name": "support-bot"}])
        operation_id = await self.engine.start_operation("full_sync", trigger="test")
        task = asyncio.create_task(self.engine.run_full_sync("test", False, operation_id))
        await reached.wait()
        task.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await task

        operation = await self.engine.get_operation(operation_id)
        self.assertEqual(operation["status"], "cancelled")
        self.assertNotEqual(operation["finishedAt"], "")
        snapshot = await self.engine.get_observability_snapshot()
        self.assertEqual(snapshot["activeOperations"], [])
        self.assertFalse(self.engine.is_running)


class PayloadMappingTests(unittest.TestCase):
    def test_agent_without_name_is_rejected(self) -> None:
        now = datetime(2026, 3, 1, tzinfo=timezone.utc)
        self.assertIsNone(agent_from_payload({"id": "a1"}, now))
        self.assertEqual(agent_from_payload({"agentId": "a1", "serviceName": "bot"}, now).name, "bot")

    def test_session_defaults(self) -> None:
        now = datetime(2026, 3, 1, tzinfo=timezone.utc)
        session = session_from_payload({"id": "s1"}, AGENT, now)
        self.assertEqual(session.status, "unknown")
        self.assertEqual(session.duration_seconds, 0)
        self.assertIsNone(session_from_payload({"foo": "bar"}, AGENT, now))


if __name__ == "__main__":
    unittest.main()
