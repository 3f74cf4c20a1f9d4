"""Classify raw Pipecat log lines for the per-session log store."""
from __future__ import annotations

import hashlib
import re
from typing import Any, Optional

from convsync.date_utils import compact_timestamp
from convsync.parsers.context_log import is_context_log, parse_context_messages
from convsync.parsers.sanitizer import clean_user_message

_TTS_PATTERN = re.compile(r"Generating TTS:?\s*\[(.+)\]", re.DOTALL)
_FIELD_SEPARATOR = " | "


def parse_pipecat_line(line: str) -> dict[str, str]:
    """Split ``"<ts> | LEVEL | module:func:line | message"`` into parts."""
    parts = (line or "").split(_FIELD_SEPARATOR)
    if len(parts) >= 4:
        return {
            "level": parts[1].strip().upper() or "INFO",
            "source": parts[2].strip(),
            "message": _FIELD_SEPARATOR.join(parts[3:]),
        }
    return {"level": "INFO", "source": "unknown", "message": line or ""}


def classify_log_line(line: str) -> Optional[dict[str, str]]:
    """Return ``{kind, message}`` for question/response lines, else ``None``.

    Questions are the first user message of a context snapshot, responses
    are the text handed to TTS.
    """
    text = line or ""
    if "Generating chat from" in text and is_context_log(text):
        for message in parse_context_messages(text):
            if message.role == "user":
                question = clean_user_message(message.content).strip()
                if question:
                    return {"kind": "question", "message": question}
                return None
        return None

    if "Generating TTS" in text:
        match = _TTS_PATTERN.search(text)
        if match and match.group(1).strip():
            return {"kind": "response", "message": match.group(1).strip()}
    return None


def build_log_id(entry: dict[str, Any], session_id: str) -> Optional[str]:
    """Deterministic id for an upstream log entry; ``None`` if underivable."""
    raw_ts = str(entry.get("timestamp") or "")
    text = str(entry.get("log") or "")
    if not raw_ts or not text:
        return None
    digest = hashlib.md5(text.encode("utf-8")).hexdigest()[:8]
    return f"log_{session_id}_{compact_timestamp(raw_ts)}_{digest}"
