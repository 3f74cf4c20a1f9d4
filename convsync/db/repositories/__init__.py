"""Repository package for database access."""

from .agents import SqliteAgentRepository
from .sessions import SqliteSessionRepository
from .conversations import SqliteConversationRepository
from .logs import SqliteSessionLogRepository

__all__ = [
    "SqliteAgentRepository",
    "SqliteSessionRepository",
    "SqliteConversationRepository",
    "SqliteSessionLogRepository",
]
