"""Parse conversation snapshots embedded in Pipecat context log lines.

A context log line ends with the LLM context rendered as a Python list
repr, e.g.::

    ... Generating chat from universal context [{'role': 'system', 'content': '...'},
    {'role': 'user', 'content': "What's new?"}, {'role': 'assistant', 'content': 'It\\'s ...'}]

The rendering is not JSON: keys and values use single or double quotes
depending on the content, apostrophes appear unescaped inside double-quoted
values and escaped inside single-quoted ones. Messages are recovered with a
cursor scan rather than a structured decoder.
"""
from __future__ import annotations

import re

from convsync.models import Message

_CONTEXT_ARRAY_PATTERN = re.compile(r"context \[(.+)\]\s*$", re.DOTALL)
_SESSION_ID_PATTERN = re.compile(
    r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}",
    re.IGNORECASE,
)

CONTEXT_MARKER = "context ["
UNIVERSAL_MARKER = "universal context"

_ROLE_MARKERS: tuple[tuple[str, str], ...] = (
    ("user", "'role': 'user'"),
    ("assistant", "'role': 'assistant'"),
    ("system", "'role': 'system'"),
)
_KEPT_ROLES = {"user", "assistant"}
_SINGLE_CONTENT_MARKER = "'content': '"
_DOUBLE_CONTENT_MARKER = "'content': \""

# What may follow a closing quote. Anything else means the quote is content.
_TERMINATORS = ("}", ", ", "}\n", "},")

_UNESCAPES = (
    ("\\'", "'"),
    ('\\"', '"'),
    ("\\n", "\n"),
)


def is_context_log(text: str) -> bool:
    return CONTEXT_MARKER in (text or "")


def is_universal_context(text: str) -> bool:
    return UNIVERSAL_MARKER in (text or "")


def extract_session_id(text: str) -> str | None:
    """Return the first canonical 36-char session id found in ``text``."""
    match = _SESSION_ID_PATTERN.search(text or "")
    return match.group(0) if match else None


def extract_context_array(text: str) -> str | None:
    """Return the body of the trailing ``context [...]`` region, if any."""
    match = _CONTEXT_ARRAY_PATTERN.search(text or "")
    return match.group(1) if match else None


def _next_role(body: str, pos: int) -> tuple[str, int] | None:
    best: tuple[str, int] | None = None
    for role, marker in _ROLE_MARKERS:
        idx = body.find(marker, pos)
        if idx != -1 and (best is None or idx < best[1]):
            best = (role, idx)
    return best


def _content_start(body: str, pos: int) -> tuple[int, str] | None:
    """Locate the content value after ``pos``; returns (value_start, quote)."""
    single = body.find(_SINGLE_CONTENT_MARKER, pos)
    double = body.find(_DOUBLE_CONTENT_MARKER, pos)
    if single == -1 and double == -1:
        return None
    if single == -1 or (double != -1 and double < single):
        return double + len(_DOUBLE_CONTENT_MARKER), '"'
    return single + len(_SINGLE_CONTENT_MARKER), "'"


def _scan_content(body: str, start: int, quote: str) -> int:
    """Return the index of the closing quote (or ``len(body)``)."""
    escaped = False
    idx = start
    while idx < len(body):
        char = body[idx]
        if escaped:
            escaped = False
        elif char == "\\":
            escaped = True
        elif char == quote:
            lookahead = body[idx + 1 : idx + 3]
            if lookahead.startswith(_TERMINATORS):
                break
        idx += 1
    return idx


def unescape_content(raw: str) -> str:
    value = raw
    for escaped, literal in _UNESCAPES:
        value = value.replace(escaped, literal)
    return value


def parse_context_messages(log_text: str) -> list[Message]:
    """Extract ordered user/assistant messages from one context log line.

    System messages are consumed but not returned. Lines without a trailing
    ``context [...]`` region yield an empty list.
    """
    body = extract_context_array(log_text)
    if body is None:
        return []

    messages: list[Message] = []
    pos = 0
    while pos < len(body):
        found = _next_role(body, pos)
        if found is None:
            break
        role, role_idx = found

        located = _content_start(body, role_idx)
        if located is None:
            break
        value_start, quote = located

        value_end = _scan_content(body, value_start, quote)
        if role in _KEPT_ROLES:
            content = unescape_content(body[value_start:value_end])
            messages.append(Message(role=role, content=content))
        pos = value_end + 1

    return messages
