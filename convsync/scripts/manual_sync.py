#!/usr/bin/env python3
"""Run a single sync cycle from the command line.

Usage:
  python -m convsync.scripts.manual_sync
  python -m convsync.scripts.manual_sync --mode conversations
  python -m convsync.scripts.manual_sync --mode logs --debug
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import signal

from convsync import config
from convsync.db import connection, migrations, sync_engine
from convsync.upstream import UpstreamClient

logger = logging.getLogger("convsync.manual_sync")


async def _run_mode(engine: sync_engine.SyncEngine, mode: str) -> dict:
    if mode == "full":
        return await engine.run_full_sync(trigger="manual")
    if mode == "logs":
        return await engine.sync_logs()

    stats = {"agents": 0, "sessions": 0, "conversations": 0, "unchanged": 0, "orphaned": 0}
    agents = await engine.sync_agents()
    stats["agents"] = len(agents)
    for agent in agents:
        try:
            stats["sessions"] += (await engine.sync_sessions(agent))["synced"]
            counts = await engine.sync_conversations(agent)
        except Exception as exc:
            logger.error(f"Sync failed for agent {agent.name}: {exc}")
            continue
        stats["conversations"] += counts["written"]
        stats["unchanged"] += counts["unchanged"]
        stats["orphaned"] += counts["orphaned"]
    return stats


async def _run(mode: str) -> int:
    db = await connection.get_connection()
    await migrations.run_migrations(db)
    client = UpstreamClient()

    loop = asyncio.get_running_loop()
    task = asyncio.current_task()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, task.cancel)
        except NotImplementedError:
            # Windows event loops have no signal handler support.
            pass

    try:
        probe = await client.test_connection()
        if not probe.get("success"):
            print(f"Upstream connection failed: {probe.get('error')}")
            return 1
        stats = await _run_mode(sync_engine.SyncEngine(db, client), mode)
    except asyncio.CancelledError:
        print("Interrupted, shutting down.")
        return 130
    finally:
        await client.close()
        await connection.close_connection()

    for key, value in stats.items():
        print(f"{key}: {value}")
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Run one convsync sync cycle")
    parser.add_argument(
        "--mode",
        choices=("full", "conversations", "logs"),
        default="full",
        help="full: agents, sessions and conversations; logs: session log store only",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    args = parser.parse_args()
    logging.basicConfig(level=logging.DEBUG if args.debug else config.LOG_LEVEL)
    return asyncio.run(_run(args.mode))


if __name__ == "__main__":
    raise SystemExit(main())
