"""Incremental per-agent scan of context snapshot log lines.

Pages through the upstream log listing newest-first and feeds every context
log line into a fresh :class:`SessionContextSelector`. The scan stops at the
first entry older than the sync horizon, so pages beyond it are never
requested. That relies on the upstream returning logs in descending time
order.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from convsync import config
from convsync.date_utils import parse_timestamp
from convsync.parsers.context_log import is_context_log
from convsync.selector import SessionContextSelector
from convsync.upstream import UpstreamClient

logger = logging.getLogger("convsync.sync")


@dataclass
class FetchResult:
    selector: SessionContextSelector = field(default_factory=SessionContextSelector)
    pages: int = 0
    entries: int = 0
    stopped_early: bool = False


async def collect_context_snapshots(
    client: UpstreamClient,
    agent_name: str,
    horizon: datetime,
    *,
    page_size: Optional[int] = None,
    query: Optional[str] = None,
) -> FetchResult:
    """Scan ``agent_name``'s logs back to ``horizon`` and select one snapshot per session."""
    result = FetchResult()
    limit = page_size or config.PAGE_SIZE
    pages = client.iter_pages(
        client.list_logs,
        agent_name,
        session_id=None,
        query=query or config.CONTEXT_LOG_QUERY,
        limit=limit,
    )
    try:
        async for page in pages:
            result.pages += 1
            for entry in page.items:
                result.entries += 1
                timestamp = parse_timestamp(entry.get("timestamp"))
                if timestamp is None:
                    continue
                if timestamp < horizon:
                    result.stopped_early = True
                    break
                text = str(entry.get("log") or "")
                if not is_context_log(text):
                    continue
                result.selector.offer_log(text, timestamp)
            if result.stopped_early:
                break
    finally:
        await pages.aclose()

    logger.info(
        "Scanned %s log entries over %s pages for %s: %s sessions selected%s",
        result.entries,
        result.pages,
        agent_name,
        len(result.selector),
        " (reached sync horizon)" if result.stopped_early else "",
    )
    if result.selector.discarded:
        logger.debug(
            "Discarded %s context lines without a session id for %s",
            result.selector.discarded,
            agent_name,
        )
    return result
