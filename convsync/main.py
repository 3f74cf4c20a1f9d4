"""convsync FastAPI service: continuous sync loop plus status API."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from convsync import config
from convsync.db import connection, migrations, sync_engine
from convsync.observability import initialize as initialize_observability, shutdown as shutdown_observability
from convsync.routers.sync import conversations_router, sync_router
from convsync.scheduler import SyncScheduler
from convsync.upstream import UpstreamClient

logging.basicConfig(level=config.LOG_LEVEL)
logger = logging.getLogger("convsync")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    logger.info("convsync starting up")
    initialize_observability(app)

    # 1. DB connection; failure here aborts startup
    db = await connection.get_connection()

    try:
        # 2. Migrations
        await migrations.run_migrations(db)

        # 3. Upstream client + sync engine
        client = UpstreamClient()
    except Exception:
        logger.exception("convsync startup failed")
        shutdown_observability(app)
        await connection.close_connection()
        raise
    sync = sync_engine.SyncEngine(db, client)
    app.state.sync_engine = sync

    # 4. Poll loop (first run at startup unless disabled)
    scheduler = SyncScheduler(sync)
    app.state.scheduler = scheduler
    await scheduler.start()

    yield

    logger.info("convsync shutting down")
    await scheduler.stop()
    await client.close()
    shutdown_observability(app)
    await connection.close_connection()


app = FastAPI(
    title="convsync API",
    description="Conversation transcript sync service for Pipecat Cloud agents",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(sync_router)
app.include_router(conversations_router)


@app.get("/api/health")
def health():
    """Health check endpoint."""
    scheduler = getattr(app.state, "scheduler", None)
    return {
        "status": "ok",
        "db": "connected" if connection.is_connected() else "disconnected",
        "scheduler": "running" if scheduler and scheduler.is_running else "stopped",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("convsync.main:app", host=config.HOST, port=config.PORT)
