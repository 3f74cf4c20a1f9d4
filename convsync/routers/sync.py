"""Sync status + conversation lookup API."""
from __future__ import annotations

import logging

from fastapi import APIRouter, BackgroundTasks, HTTPException, Query, Request
from pydantic import BaseModel

from convsync.db import connection
from convsync.db.factory import get_conversation_repository

logger = logging.getLogger("convsync.api")

sync_router = APIRouter(prefix="/api/sync", tags=["sync"])
conversations_router = APIRouter(prefix="/api/conversations", tags=["conversations"])


class SyncRequest(BaseModel):
    background: bool = True
    includeLogs: bool = False
    trigger: str = "api"


def _get_sync_engine(request: Request):
    sync_engine = getattr(request.app.state, "sync_engine", None)
    if not sync_engine:
        raise HTTPException(status_code=503, detail="Sync engine not initialized")
    return sync_engine


@sync_router.get("/status")
async def get_sync_status(request: Request):
    """Return sync engine + scheduler status, including live operations."""
    sync_engine = _get_sync_engine(request)
    scheduler = getattr(request.app.state, "scheduler", None)
    observability = await sync_engine.get_observability_snapshot()
    return {
        "status": "active",
        "syncInProgress": sync_engine.is_running,
        "horizon": sync_engine.horizon.isoformat(),
        "scheduler": scheduler.status() if scheduler else None,
        "operations": observability,
    }


@sync_router.get("/operations")
async def list_sync_operations(request: Request, limit: int = Query(20, ge=1, le=200)):
    """List recent sync operations."""
    sync_engine = _get_sync_engine(request)
    operations = await sync_engine.list_operations(limit=limit)
    return {"status": "ok", "count": len(operations), "items": operations}


@sync_router.get("/operations/{operation_id}")
async def get_sync_operation(request: Request, operation_id: str):
    sync_engine = _get_sync_engine(request)
    operation = await sync_engine.get_operation(operation_id)
    if not operation:
        raise HTTPException(status_code=404, detail=f"Operation {operation_id} not found")
    return operation


@sync_router.post("")
async def trigger_sync(request: Request, background_tasks: BackgroundTasks, body: SyncRequest):
    """Trigger a full sync with operation tracking."""
    sync_engine = _get_sync_engine(request)
    if sync_engine.is_running:
        raise HTTPException(status_code=409, detail="Sync already in progress")

    if body.background:
        operation_id = await sync_engine.start_operation(
            "full_sync",
            trigger=body.trigger,
            metadata={"includeLogs": body.includeLogs},
        )
        background_tasks.add_task(
            sync_engine.run_full_sync,
            body.trigger,
            body.includeLogs,
            operation_id,
        )
        return {
            "status": "ok",
            "mode": "background",
            "message": "Sync triggered in background",
            "operationId": operation_id,
        }

    stats = await sync_engine.run_full_sync(body.trigger, body.includeLogs)
    if stats.get("status") == "skipped":
        raise HTTPException(status_code=409, detail="Sync already in progress")
    operation_id = str(stats.get("operation_id") or "")
    operation = await sync_engine.get_operation(operation_id) if operation_id else None
    return {
        "status": "ok",
        "mode": "foreground",
        "operationId": operation_id,
        "stats": stats,
        "operation": operation,
    }


@conversations_router.get("")
async def list_conversations(
    offset: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=500),
    agentId: str | None = Query(None),
):
    """Paginated conversation listing, newest activity first."""
    db = await connection.get_connection()
    repo = get_conversation_repository(db)
    items = await repo.list_paginated(offset, limit, agent_id=agentId)
    total = await repo.count(agent_id=agentId)
    return {
        "items": [c.model_dump(mode="json") for c in items],
        "total": total,
        "offset": offset,
        "limit": limit,
    }


@conversations_router.get("/{session_id}")
async def get_conversation(session_id: str):
    db = await connection.get_connection()
    repo = get_conversation_repository(db)
    conversation = await repo.get_by_session(session_id)
    if not conversation:
        raise HTTPException(status_code=404, detail=f"Conversation {session_id} not found")
    return conversation.model_dump(mode="json")
