"""Per-session selection of the best conversation snapshot."""
from __future__ import annotations

from datetime import datetime
from typing import Iterator, Optional

from convsync.models import RawContextSnapshot
from convsync.parsers.context_log import extract_session_id, is_universal_context


def should_replace(existing: Optional[RawContextSnapshot], candidate: RawContextSnapshot) -> bool:
    """Universal beats model-specific regardless of time; equal kinds keep the later one."""
    if existing is None:
        return True
    if candidate.is_universal != existing.is_universal:
        return candidate.is_universal
    return candidate.timestamp > existing.timestamp


class SessionContextSelector:
    """Keeps the single best snapshot per session for one fetch cycle.

    Instances are created by the fetcher for a single agent scan and thrown
    away afterwards; nothing here is shared between agents or runs.
    """

    def __init__(self) -> None:
        self._best: dict[str, RawContextSnapshot] = {}
        self.discarded = 0

    def offer(self, snapshot: RawContextSnapshot) -> bool:
        """Consider ``snapshot``; returns True when it became the session's best."""
        if should_replace(self._best.get(snapshot.session_id), snapshot):
            self._best[snapshot.session_id] = snapshot
            return True
        return False

    def offer_log(self, log_text: str, timestamp: datetime) -> bool:
        """Build a snapshot from a raw log line and offer it.

        Lines without a recognizable session id cannot be attributed and are
        discarded.
        """
        session_id = extract_session_id(log_text)
        if not session_id:
            self.discarded += 1
            return False
        return self.offer(
            RawContextSnapshot(
                session_id=session_id,
                log_text=log_text,
                timestamp=timestamp,
                is_universal=is_universal_context(log_text),
            )
        )

    def get(self, session_id: str) -> Optional[RawContextSnapshot]:
        return self._best.get(session_id)

    def snapshots(self) -> Iterator[RawContextSnapshot]:
        return iter(list(self._best.values()))

    def __len__(self) -> int:
        return len(self._best)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._best
