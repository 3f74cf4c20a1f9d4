"""Incremental upstream → DB sync engine.

Pulls agents, sessions and context logs from the upstream platform,
reconstructs one conversation per session from the best context snapshot,
and upserts the results into the SQLite/Postgres store via repositories.
"""
from __future__ import annotations

import asyncio
import copy
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any

from convsync import config
from convsync.date_utils import parse_timestamp, utc_now
from convsync.db.factory import (
    get_agent_repository,
    get_conversation_repository,
    get_session_log_repository,
    get_session_repository,
)
from convsync.fetcher import collect_context_snapshots
from convsync.models import Agent, Conversation, RawContextSnapshot, Session, SessionLog
from convsync.observability import record_ingestion, record_parser_failure, start_span
from convsync.parsers.context_log import parse_context_messages
from convsync.parsers.pipecat_log import build_log_id, classify_log_line, parse_pipecat_line
from convsync.parsers.turns import assemble_turns
from convsync.upstream import (
    AGENT_ID_FIELDS,
    AGENT_NAME_FIELDS,
    SESSION_ID_FIELDS,
    UpstreamClient,
    first_present,
)

logger = logging.getLogger("convsync.sync")

CONVERGE_WRITTEN = "written"
CONVERGE_UNCHANGED = "unchanged"
CONVERGE_ORPHANED = "orphaned"
CONVERGE_EMPTY = "empty"


def _coerce_float(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def agent_from_payload(payload: dict[str, Any], now: datetime) -> Agent | None:
    """Map an upstream agent payload; ``None`` when id or name is missing."""
    agent_id = first_present(payload, AGENT_ID_FIELDS)
    name = first_present(payload, AGENT_NAME_FIELDS)
    if not agent_id or not name:
        return None
    return Agent(
        agent_id=agent_id,
        name=name,
        region=str(payload.get("region") or ""),
        created_at=parse_timestamp(payload.get("createdAt")),
        updated_at=parse_timestamp(payload.get("updatedAt")),
        metadata=payload,
        last_synced_at=now,
    )


def session_from_payload(payload: dict[str, Any], agent: Agent, now: datetime) -> Session | None:
    """Map an upstream session payload; ``None`` when no id field is present."""
    session_id = first_present(payload, SESSION_ID_FIELDS)
    if not session_id:
        return None
    started_at = parse_timestamp(payload.get("createdAt") or payload.get("startedAt"))
    ended_at = parse_timestamp(payload.get("endedAt"))
    duration = 0
    if started_at and ended_at and ended_at > started_at:
        duration = int((ended_at - started_at).total_seconds())
    return Session(
        session_id=session_id,
        agent_id=agent.agent_id,
        agent_name=agent.name,
        started_at=started_at,
        ended_at=ended_at,
        status=str(payload.get("completionStatus") or "unknown"),
        duration_seconds=duration,
        bot_start_seconds=_coerce_float(payload.get("botStartSeconds")),
        cold_start=bool(payload.get("coldStart")),
        metadata=payload,
        last_synced_at=now,
    )


class SyncEngine:
    """Upstream → DB synchronization.

    Owns repositories for the given connection and an upstream client.
    Full runs are guarded so that at most one is in flight at a time;
    every run is tracked as an observable operation.
    """

    def __init__(self, db: Any, client: UpstreamClient, horizon: datetime | None = None):
        self.db = db
        self.client = client
        self.horizon = horizon or parse_timestamp(config.SYNC_START_DATE) or datetime(
            2026, 1, 1, tzinfo=timezone.utc
        )
        self.agent_repo = get_agent_repository(db)
        self.session_repo = get_session_repository(db)
        self.conversation_repo = get_conversation_repository(db)
        self.log_repo = get_session_log_repository(db)
        self._run_lock = asyncio.Lock()
        self._ops_lock = asyncio.Lock()
        self._operations: dict[str, dict[str, Any]] = {}
        self._max_operation_history = 40

    @property
    def is_running(self) -> bool:
        return self._run_lock.locked()

    # ── Run tracking ───────────────────────────────────────────────

    async def start_operation(
        self,
        kind: str,
        trigger: str = "api",
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """Register a run as ``running`` and return its ID."""
        op_id = f"OP-{uuid.uuid4()}"
        record = {
            "id": op_id,
            "kind": kind,
            "trigger": trigger,
            "status": "running",
            "phase": "queued",
            "startedAt": utc_now().isoformat(),
            "finishedAt": "",
            "durationMs": 0,
            "stats": {},
            "metadata": dict(metadata or {}),
            "error": "",
        }
        async with self._ops_lock:
            self._operations[op_id] = record
            while len(self._operations) > self._max_operation_history:
                self._operations.pop(next(iter(self._operations)))
        logger.info("Operation started [%s] %s (trigger=%s)", op_id, kind, trigger)
        return op_id

    async def list_operations(self, limit: int = 20) -> list[dict[str, Any]]:
        """Newest first."""
        async with self._ops_lock:
            newest = list(reversed(self._operations.values()))[: max(1, limit)]
            return copy.deepcopy(newest)

    async def get_operation(self, operation_id: str) -> dict[str, Any] | None:
        async with self._ops_lock:
            op = self._operations.get(operation_id)
            return copy.deepcopy(op) if op else None

    async def get_observability_snapshot(self) -> dict[str, Any]:
        recent = await self.list_operations(limit=self._max_operation_history)
        return {
            "running": self.is_running,
            "activeOperations": [op for op in recent if op["status"] == "running"],
            "recentOperations": recent[:5],
            "trackedOperationCount": len(recent),
        }

    async def _set_phase(self, operation_id: str | None, phase: str) -> None:
        async with self._ops_lock:
            op = self._operations.get(operation_id or "")
            if op:
                op["phase"] = phase
        logger.debug("Operation [%s] phase=%s", operation_id, phase)

    async def _finish_operation(
        self,
        operation_id: str | None,
        *,
        status: str,
        stats: dict[str, Any] | None = None,
        error: str = "",
    ) -> None:
        finished = utc_now()
        async with self._ops_lock:
            op = self._operations.get(operation_id or "")
            if not op:
                return
            started = datetime.fromisoformat(op["startedAt"])
            op.update(
                status=status,
                finishedAt=finished.isoformat(),
                durationMs=max(0, int((finished - started).total_seconds() * 1000)),
                stats=dict(stats or {}),
                error=error,
            )
        if status == "failed":
            logger.error("Operation failed [%s]: %s", operation_id, error)
        else:
            logger.info("Operation finished [%s] status=%s", operation_id, status)

    # ── Full run ───────────────────────────────────────────────────

    async def run_full_sync(
        self,
        trigger: str = "api",
        include_logs: bool | None = None,
        operation_id: str | None = None,
    ) -> dict[str, Any]:
        """Agents → sessions → conversations (→ logs) for every agent.

        Returns a stats dict. When another run is already in progress the
        call returns immediately with ``status == "skipped"``.
        """
        if include_logs is None:
            include_logs = config.SYNC_INCLUDE_LOGS
        if self._run_lock.locked():
            logger.warning("Sync already in progress, skipping (trigger=%s)", trigger)
            await self._finish_operation(
                operation_id, status="skipped", error="sync already in progress",
            )
            return {"status": "skipped", "reason": "sync already in progress", "operation_id": operation_id or ""}

        async with self._run_lock:
            if not operation_id:
                operation_id = await self.start_operation(
                    "full_sync", trigger, {"includeLogs": include_logs}
                )
            stats: dict[str, Any] = {
                "status": "completed",
                "agents": 0,
                "agents_failed": 0,
                "sessions": 0,
                "sessions_failed": 0,
                "conversations": 0,
                "conversations_unchanged": 0,
                "conversations_orphaned": 0,
                "conversations_failed": 0,
                "logs": 0,
                "duration_ms": 0,
                "operation_id": operation_id,
            }
            t0 = time.monotonic()
            try:
                with start_span("convsync.full_sync", {"trigger": trigger}):
                    await self._set_phase(operation_id, "agents")
                    agents = await self.sync_agents()
                    stats["agents"] = len(agents)

                    for index, agent in enumerate(agents, start=1):
                        await self._set_phase(operation_id, f"agent {agent.name} ({index}/{len(agents)})")
                        try:
                            session_counts = await self.sync_sessions(agent)
                            counts = await self.sync_conversations(agent)
                        except Exception as exc:
                            stats["agents_failed"] += 1
                            logger.error("Sync failed for agent %s: %s", agent.name, exc)
                            record_ingestion("agent", "failed", agent=agent.name)
                            continue
                        stats["sessions"] += session_counts["synced"]
                        stats["sessions_failed"] += session_counts["failed"]
                        stats["conversations"] += counts[CONVERGE_WRITTEN]
                        stats["conversations_unchanged"] += counts[CONVERGE_UNCHANGED]
                        stats["conversations_orphaned"] += counts[CONVERGE_ORPHANED]
                        stats["conversations_failed"] += counts["failed"]

                    if include_logs:
                        await self._set_phase(operation_id, "logs")
                        log_stats = await self.sync_logs()
                        stats["logs"] = log_stats["inserted"]
            except asyncio.CancelledError:
                stats["status"] = "cancelled"
                stats["duration_ms"] = int((time.monotonic() - t0) * 1000)
                await self._finish_operation(operation_id, status="cancelled", stats=stats)
                raise
            except Exception as exc:
                stats["status"] = "failed"
                stats["duration_ms"] = int((time.monotonic() - t0) * 1000)
                await self._finish_operation(operation_id, status="failed", stats=stats, error=str(exc))
                raise

            stats["duration_ms"] = int((time.monotonic() - t0) * 1000)
            await self._finish_operation(operation_id, status="completed", stats=stats)
            record_ingestion("full_sync", "completed", stats["duration_ms"])
            logger.info(
                f"Sync complete: {stats['agents']} agents, "
                f"{stats['sessions']} sessions, "
                f"{stats['conversations']} conversations written "
                f"({stats['conversations_unchanged']} unchanged), "
                f"{stats['logs']} logs "
                f"in {stats['duration_ms']}ms"
            )
            return stats

    # ── Agents and sessions ────────────────────────────────────────

    async def sync_agents(self) -> list[Agent]:
        """Upsert every upstream agent and return the ones stored."""
        now = utc_now()
        synced: list[Agent] = []
        failed = 0
        for payload in await self.client.list_all_agents():
            agent = agent_from_payload(payload, now)
            if agent is None:
                failed += 1
                logger.warning("Skipping agent payload without id or name: keys=%s", sorted(payload))
                continue
            await self.agent_repo.upsert(agent)
            synced.append(agent)
        record_ingestion("agent", "synced")
        logger.info("Agent sync: %s synced, %s failed", len(synced), failed)
        return synced

    async def sync_sessions(self, agent: Agent) -> dict[str, int]:
        """Upsert the agent's sessions that started on or after the horizon.

        A session that fails to map or store is counted and logged; the
        remaining sessions of the agent still sync.
        """
        now = utc_now()
        counts = {"synced": 0, "skipped": 0, "failed": 0}
        for payload in await self.client.list_all_sessions(agent.name):
            try:
                session = session_from_payload(payload, agent, now)
                if session is None or (session.started_at and session.started_at < self.horizon):
                    counts["skipped"] += 1
                    continue
                await self.session_repo.upsert(session)
            except Exception as exc:
                counts["failed"] += 1
                record_ingestion("session", "failed", agent=agent.name)
                logger.warning(
                    "Failed to sync session %s: %s", first_present(payload, SESSION_ID_FIELDS), exc
                )
                continue
            counts["synced"] += 1
        record_ingestion("session", "synced", agent=agent.name)
        logger.info(
            "Session sync for %s: %s synced, %s skipped, %s failed",
            agent.name,
            counts["synced"],
            counts["skipped"],
            counts["failed"],
        )
        return counts

    # ── Conversations ──────────────────────────────────────────────

    async def sync_conversations(self, agent: Agent) -> dict[str, int]:
        """Select one snapshot per session for ``agent`` and converge each."""
        counts = {
            CONVERGE_WRITTEN: 0,
            CONVERGE_UNCHANGED: 0,
            CONVERGE_ORPHANED: 0,
            CONVERGE_EMPTY: 0,
            "failed": 0,
        }
        t0 = time.monotonic()
        fetched = await collect_context_snapshots(self.client, agent.name, self.horizon)
        for snapshot in fetched.selector.snapshots():
            try:
                outcome = await self.converge_conversation(agent, snapshot)
            except Exception as exc:
                counts["failed"] += 1
                record_parser_failure("context_log", agent=agent.name)
                logger.warning("Failed to process session %s: %s", snapshot.session_id, exc)
                continue
            counts[outcome] += 1
        record_ingestion(
            "conversation", "synced", (time.monotonic() - t0) * 1000, agent=agent.name
        )
        logger.info(
            "Conversation sync for %s: %s written, %s unchanged, %s orphaned, %s empty, %s failed",
            agent.name,
            counts[CONVERGE_WRITTEN],
            counts[CONVERGE_UNCHANGED],
            counts[CONVERGE_ORPHANED],
            counts[CONVERGE_EMPTY],
            counts["failed"],
        )
        return counts

    async def converge_conversation(self, agent: Agent, snapshot: RawContextSnapshot) -> str:
        """Write the snapshot's conversation only when it differs from what is stored."""
        turns = assemble_turns(parse_context_messages(snapshot.log_text), snapshot.timestamp)
        if not turns:
            return CONVERGE_EMPTY

        existing = await self.conversation_repo.get_by_session(snapshot.session_id)
        if (
            existing is not None
            and existing.total_turns == len(turns)
            and existing.last_message_at is not None
            and existing.last_message_at >= snapshot.timestamp
        ):
            return CONVERGE_UNCHANGED

        # Sessions older than the horizon can still have recent logs; those
        # conversations are dropped rather than stored without a parent.
        session = await self.session_repo.get_by_id(snapshot.session_id)
        if session is None:
            logger.debug("No session %s for conversation, skipping", snapshot.session_id)
            return CONVERGE_ORPHANED

        await self.conversation_repo.upsert(
            Conversation(
                session_id=snapshot.session_id,
                agent_id=agent.agent_id,
                agent_name=agent.name,
                turns=turns,
                total_turns=len(turns),
                first_message_at=turns[0].timestamp or snapshot.timestamp,
                last_message_at=snapshot.timestamp,
                last_synced_at=utc_now(),
            )
        )
        await self.session_repo.set_conversation_count(snapshot.session_id, len(turns))
        return CONVERGE_WRITTEN

    # ── Session logs ───────────────────────────────────────────────

    async def sync_logs(
        self,
        agent_id: str | None = None,
        *,
        batch_size: int | None = None,
        batch_pause_ms: int | None = None,
    ) -> dict[str, int]:
        """Incrementally store question/response lines for every stored session.

        Sessions are processed ``batch_size`` at a time with a pause between
        batches. A failing session is counted and does not stop the run.
        """
        batch_size = max(1, batch_size or config.LOG_SYNC_BATCH_SIZE)
        pause_ms = config.LOG_SYNC_BATCH_PAUSE_MS if batch_pause_ms is None else batch_pause_ms
        sessions = await self.session_repo.list_all(agent_id)
        totals = {"sessions": len(sessions), "inserted": 0, "skipped": 0, "failed": 0}
        logger.info("Found %s sessions to sync logs for", len(sessions))

        for start in range(0, len(sessions), batch_size):
            batch = sessions[start : start + batch_size]
            results = await asyncio.gather(
                *(self.sync_session_logs(session) for session in batch),
                return_exceptions=True,
            )
            for session, result in zip(batch, results):
                if isinstance(result, Exception):
                    totals["failed"] += 1
                    logger.error("Failed to sync logs for session %s: %s", session.session_id, result)
                    continue
                totals["inserted"] += result["inserted"]
                totals["skipped"] += result["skipped"]
            done = min(start + batch_size, len(sessions))
            logger.info("Log sync progress: %s/%s sessions", done, len(sessions))
            if done < len(sessions) and pause_ms > 0:
                await asyncio.sleep(pause_ms / 1000.0)

        record_ingestion("session_log", "synced")
        logger.info(
            "Log sync completed: %s inserted, %s skipped, %s sessions failed",
            totals["inserted"],
            totals["skipped"],
            totals["failed"],
        )
        return totals

    async def sync_session_logs(self, session: Session) -> dict[str, int]:
        """Store new question/response lines for one session."""
        latest = await self.log_repo.latest_timestamp(session.session_id)
        pending: list[SessionLog] = []
        fetched = 0
        async for page in self.client.iter_pages(
            self.client.list_logs, session.agent_name, session_id=session.session_id,
        ):
            for entry in page.items:
                fetched += 1
                timestamp = parse_timestamp(entry.get("timestamp"))
                if timestamp is None or (latest is not None and timestamp <= latest):
                    continue
                line = str(entry.get("log") or "")
                classified = classify_log_line(line)
                if classified is None:
                    continue
                log_id = build_log_id(entry, session.session_id)
                if log_id is None:
                    continue
                pending.append(
                    SessionLog(
                        log_id=log_id,
                        session_id=session.session_id,
                        agent_id=session.agent_id,
                        agent_name=session.agent_name,
                        timestamp=timestamp,
                        level=parse_pipecat_line(line)["level"],
                        kind=classified["kind"],
                        message=classified["message"],
                    )
                )
        inserted = await self.log_repo.insert_many(pending)
        logger.debug(
            "Log sync for session %s: %s fetched, %s inserted", session.session_id, fetched, inserted
        )
        return {"fetched": fetched, "inserted": inserted, "skipped": fetched - inserted}
