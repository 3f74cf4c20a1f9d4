"""Continuous sync loop.

Runs a full sync every poll interval in a background task. Runs never
overlap: a tick that finds a run in progress is skipped by the engine.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

from convsync import config
from convsync.date_utils import to_iso, utc_now

logger = logging.getLogger("convsync.scheduler")


class SyncScheduler:
    """Background poller that triggers ``SyncEngine.run_full_sync``."""

    def __init__(
        self,
        sync_engine,
        interval_seconds: Optional[int] = None,
        *,
        run_on_startup: Optional[bool] = None,
        startup_delay_seconds: Optional[int] = None,
    ):
        self.sync_engine = sync_engine
        self.interval_seconds = max(1, interval_seconds or config.POLL_INTERVAL_SECONDS)
        self.run_on_startup = config.RUN_ON_STARTUP if run_on_startup is None else run_on_startup
        self.startup_delay_seconds = max(
            0,
            config.STARTUP_SYNC_DELAY_SECONDS if startup_delay_seconds is None else startup_delay_seconds,
        )
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self.last_run: Optional[str] = None
        self.last_result: Optional[dict[str, Any]] = None
        self.run_count = 0

    async def start(self) -> None:
        """Start the poll loop in a background task."""
        if self._running:
            logger.warning("Sync scheduler already running")
            return
        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info(f"Sync scheduler started (interval={self.interval_seconds}s)")

    async def stop(self) -> None:
        """Stop the poll loop, cancelling any run in flight."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Sync scheduler stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    def status(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "syncInProgress": self.sync_engine.is_running,
            "intervalSeconds": self.interval_seconds,
            "lastRun": self.last_run,
            "lastResult": self.last_result,
            "runCount": self.run_count,
        }

    async def trigger(self, trigger: str = "scheduler") -> dict[str, Any]:
        """Run one full sync now and record its outcome."""
        self.last_run = to_iso(utc_now())
        try:
            result = await self.sync_engine.run_full_sync(trigger=trigger)
        except Exception as exc:
            logger.error(f"Scheduled sync failed: {exc}")
            self.last_result = {"status": "failed", "error": str(exc)}
            return self.last_result
        if result.get("status") != "skipped":
            self.run_count += 1
        self.last_result = result
        return result

    async def _loop(self) -> None:
        try:
            if self.run_on_startup:
                if self.startup_delay_seconds:
                    await asyncio.sleep(self.startup_delay_seconds)
                await self.trigger("startup")
            while self._running:
                await asyncio.sleep(self.interval_seconds)
                if not self._running:
                    break
                await self.trigger("scheduler")
        except asyncio.CancelledError:
            logger.info("Sync scheduler task cancelled")
            raise
        finally:
            self._running = False
