"""Pydantic models for agents, sessions and reconstructed conversations."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field


# ── Upstream entities ───────────────────────────────────────────────

class Agent(BaseModel):
    agent_id: str
    name: str
    region: str = ""
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    last_synced_at: Optional[datetime] = None


class Session(BaseModel):
    session_id: str
    agent_id: str
    agent_name: str
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    status: str = "unknown"
    duration_seconds: int = 0
    bot_start_seconds: float = 0.0
    cold_start: bool = False
    conversation_count: int = 0
    metadata: dict[str, Any] = Field(default_factory=dict)
    last_synced_at: Optional[datetime] = None


# ── Transient parse results ─────────────────────────────────────────

class Message(BaseModel):
    role: Literal["user", "assistant"]
    content: str


class RawContextSnapshot(BaseModel):
    """One candidate context log line for a session."""

    session_id: str
    log_text: str
    timestamp: datetime
    is_universal: bool = False


# ── Conversations ──────────────────────────────────────────────────

class Turn(BaseModel):
    turn_id: int
    user_message: str
    assistant_message: Optional[str] = None
    timestamp: Optional[datetime] = None


class Conversation(BaseModel):
    session_id: str
    agent_id: str = ""
    agent_name: str = ""
    turns: list[Turn] = Field(default_factory=list)
    total_turns: int = 0
    first_message_at: Optional[datetime] = None
    last_message_at: Optional[datetime] = None
    last_synced_at: Optional[datetime] = None


class SessionLog(BaseModel):
    log_id: str
    session_id: str
    agent_id: str
    agent_name: str
    timestamp: datetime
    level: str = "INFO"
    kind: Literal["question", "response"]
    message: str = ""
