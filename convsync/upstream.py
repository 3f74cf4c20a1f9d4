"""Async client for the Pipecat Cloud agents/sessions/logs API.

Every request goes through :func:`convsync.retry.retry_with_backoff`.
Listings are exposed both as single pages and as lazy page sequences
(:meth:`UpstreamClient.iter_pages`) that consumers can abandon early.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, Sequence
from urllib.parse import quote

import httpx

from convsync import config
from convsync.observability import record_upstream_request
from convsync.retry import RetryConfig, retry_with_backoff, status_code_of

logger = logging.getLogger("convsync.upstream")

# Identifier fields in priority order. Upstream payloads are not consistent
# about naming, so these lists are part of the upstream contract.
SESSION_ID_FIELDS: tuple[str, ...] = (
    "sessionId",
    "id",
    "session_id",
    "sessionID",
    "_id",
    "uid",
    "conversationId",
    "conversation_id",
    "callId",
    "call_id",
)
AGENT_ID_FIELDS: tuple[str, ...] = ("id", "agentId", "agent_id", "serviceId", "_id")
AGENT_NAME_FIELDS: tuple[str, ...] = ("name", "agentName", "agent_name", "serviceName")


def first_present(payload: dict[str, Any], fields: Sequence[str]) -> Optional[str]:
    """Return the first present, non-empty value among ``fields``."""
    for name in fields:
        value = payload.get(name)
        if value is None:
            continue
        token = str(value).strip()
        if token:
            return token
    return None


@dataclass
class UpstreamPage:
    items: list[dict[str, Any]] = field(default_factory=list)
    page: int = 1
    limit: int = config.PAGE_SIZE
    total: int = 0
    has_more: bool = False


def _items_from(body: Any, key: str) -> list[dict[str, Any]]:
    if isinstance(body, dict):
        items = body.get(key)
        if isinstance(items, list):
            return [item for item in items if isinstance(item, dict)]
        return []
    if isinstance(body, list):
        return [item for item in body if isinstance(item, dict)]
    return []


def _total_from(body: Any, default: int) -> int:
    total = body.get("total") if isinstance(body, dict) else None
    if isinstance(total, dict):
        total = total.get("value")
    try:
        return int(total) if total is not None else default
    except (TypeError, ValueError):
        return default


def _page_from(body: Any, key: str, page: int, limit: int) -> UpstreamPage:
    items = _items_from(body, key)
    return UpstreamPage(
        items=items,
        page=page,
        limit=limit,
        total=_total_from(body, len(items)),
        has_more=len(items) == limit,
    )


class UpstreamClient:
    """Thin wrapper over ``httpx.AsyncClient`` for the upstream platform."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        *,
        timeout: Optional[float] = None,
        page_delay_ms: Optional[int] = None,
        retry_config: Optional[RetryConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        api_key = api_key if api_key is not None else config.PIPECAT_API_KEY
        if not api_key:
            raise ValueError("PIPECAT_API_KEY environment variable is required")
        self.base_url = base_url or config.PIPECAT_BASE_URL
        self.page_delay_ms = config.PAGE_DELAY_MS if page_delay_ms is None else page_delay_ms
        self.retry_config = retry_config or RetryConfig()
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout or config.PIPECAT_TIMEOUT_SECONDS,
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
                "User-Agent": config.USER_AGENT,
            },
            transport=transport,
        )

    async def __aenter__(self) -> "UpstreamClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    async def delay(self) -> None:
        if self.page_delay_ms > 0:
            await asyncio.sleep(self.page_delay_ms / 1000.0)

    async def _request_json(self, path: str, params: dict[str, Any]) -> Any:
        try:
            response = await self._client.get(path, params=params)
            record_upstream_request(path, response.status_code)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "Upstream API error: %s status=%s",
                exc.request.url,
                exc.response.status_code,
            )
            raise
        except httpx.TransportError as exc:
            record_upstream_request(path, 0)
            logger.error("Upstream transport error: %s %s", path, exc)
            raise
        logger.debug("Upstream response: %s status=%s", path, response.status_code)
        return response.json()

    async def _get(self, path: str, params: dict[str, Any], operation: str) -> Any:
        return await retry_with_backoff(
            self._request_json,
            path,
            params,
            operation=operation,
            retry_config=self.retry_config,
        )

    # ── Listings ────────────────────────────────────────────────────

    async def list_agents(self, page: int = 1, limit: int = config.PAGE_SIZE) -> UpstreamPage:
        body = await self._get(
            "/agents",
            {"page": page, "limit": limit},
            operation=f"Fetch agents page {page}",
        )
        return _page_from(body, "services", page, limit)

    async def list_sessions(
        self,
        agent_name: str,
        page: int = 1,
        limit: int = config.PAGE_SIZE,
    ) -> UpstreamPage:
        body = await self._get(
            f"/agents/{quote(agent_name, safe='')}/sessions",
            {"page": page, "limit": limit, "offset": (page - 1) * limit},
            operation=f"Fetch sessions for agent {agent_name} page {page}",
        )
        return _page_from(body, "sessions", page, limit)

    async def list_logs(
        self,
        agent_name: str,
        session_id: Optional[str] = None,
        page: int = 1,
        limit: int = config.PAGE_SIZE,
        query: Optional[str] = None,
    ) -> UpstreamPage:
        params: dict[str, Any] = {"limit": limit}
        if page > 1:
            params["offset"] = (page - 1) * limit
        if session_id:
            params["session_id"] = session_id
        if query:
            params["query"] = query
        body = await self._get(
            f"/agents/{quote(agent_name, safe='')}/logs",
            params,
            operation=f"Fetch logs for agent {agent_name} session {session_id or '*'} page {page}",
        )
        return _page_from(body, "logs", page, limit)

    async def iter_pages(
        self,
        fetch: Callable[..., Awaitable[UpstreamPage]],
        *args: Any,
        limit: int = config.PAGE_SIZE,
        **kwargs: Any,
    ) -> AsyncIterator[UpstreamPage]:
        """Yield pages from ``fetch`` until exhausted.

        The next page is only requested when the consumer asks for it, so
        breaking out of the loop stops pagination. Iteration ends on an
        empty page, a short page, or ``has_more`` being false.
        """
        page = 1
        while True:
            result = await fetch(*args, page=page, limit=limit, **kwargs)
            if not result.items:
                return
            yield result
            if not result.has_more or len(result.items) < limit:
                return
            page += 1
            await self.delay()

    async def list_all_agents(self) -> list[dict[str, Any]]:
        agents: list[dict[str, Any]] = []
        async for page in self.iter_pages(self.list_agents):
            agents.extend(page.items)
        logger.info("Fetched %s agents from upstream", len(agents))
        return agents

    async def list_all_sessions(self, agent_name: str) -> list[dict[str, Any]]:
        sessions: list[dict[str, Any]] = []
        async for page in self.iter_pages(self.list_sessions, agent_name):
            sessions.extend(page.items)
        logger.info("Fetched %s sessions for agent %s", len(sessions), agent_name)
        return sessions

    async def test_connection(self) -> dict[str, Any]:
        try:
            response = await self._client.get("/agents", params={"limit": 1})
            response.raise_for_status()
            agents = _items_from(response.json(), "services")
            return {"success": True, "status": response.status_code, "agent_count": len(agents)}
        except httpx.HTTPError as exc:
            return {"success": False, "error": str(exc), "status": status_code_of(exc)}
