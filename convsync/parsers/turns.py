"""Pair parsed context messages into numbered conversation turns."""
from __future__ import annotations

from datetime import datetime
from typing import Optional, Sequence

from convsync.models import Message, Turn
from convsync.parsers.sanitizer import clean_user_message


def assemble_turns(
    messages: Sequence[Message],
    timestamp: Optional[datetime] = None,
) -> list[Turn]:
    """Build turns from an ordered message list.

    Each user message opens a turn; an assistant message directly after it
    becomes the reply. Assistant messages with no preceding user message are
    ignored. Turns whose user text is empty once the knowledge-base block is
    stripped are dropped, and the remaining turns are numbered 1..n.
    """
    turns: list[Turn] = []
    idx = 0
    while idx < len(messages):
        message = messages[idx]
        idx += 1
        if message.role != "user":
            continue

        user_text = clean_user_message(message.content) or ""
        reply: Optional[str] = None
        if idx < len(messages) and messages[idx].role == "assistant":
            reply = messages[idx].content
            idx += 1

        if not user_text.strip():
            continue
        turns.append(
            Turn(
                turn_id=len(turns) + 1,
                user_message=user_text,
                assistant_message=reply,
                timestamp=timestamp,
            )
        )
    return turns
