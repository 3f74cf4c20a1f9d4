"""Strip injected knowledge-base context from user messages."""
from __future__ import annotations

import re

KNOWLEDGE_BASE_MARKER = "[KNOWLEDGE BASE CONTEXT]"

_FENCED_BLOCK_PATTERN = re.compile(
    r"\[KNOWLEDGE BASE CONTEXT\][\s\S]*?```json[\s\S]*?```\s*"
)
# Same block after the log renderer escaped the backticks.
_ESCAPED_FENCED_BLOCK_PATTERN = re.compile(
    r"\[KNOWLEDGE BASE CONTEXT\][\s\S]*?\\`\\`\\`json[\s\S]*?\\`\\`\\`\s*"
)
_NOISE_TOKENS = ("```", "---")


def _last_question_line(content: str) -> str | None:
    for line in reversed(content.split("\n")):
        candidate = line.strip()
        if candidate and not any(token in candidate for token in _NOISE_TOKENS):
            return candidate
    return None


def clean_user_message(content: str) -> str:
    """Return the user's actual question from a possibly augmented message.

    The retrieval layer prepends a ``[KNOWLEDGE BASE CONTEXT]`` block with a
    fenced JSON payload. Removal is attempted on the plain fence, then on the
    escaped fence; if the marker survives both, the last meaningful line is
    taken as the question.
    """
    if not content or KNOWLEDGE_BASE_MARKER not in content:
        return content

    cleaned = _FENCED_BLOCK_PATTERN.sub("", content, count=1)
    if KNOWLEDGE_BASE_MARKER in cleaned:
        cleaned = _ESCAPED_FENCED_BLOCK_PATTERN.sub("", cleaned, count=1)
    if KNOWLEDGE_BASE_MARKER in cleaned:
        fallback = _last_question_line(cleaned)
        if fallback is not None:
            return fallback
    return cleaned.strip()
