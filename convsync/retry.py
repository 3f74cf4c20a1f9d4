"""Bounded retry with exponential backoff for upstream calls.

Client errors (4xx) are not retried, except 429 which the upstream uses for
rate limiting. Everything else (5xx, timeouts, transport failures) is
retried until the attempt budget is spent, then re-raised.
"""
from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TypeVar

import httpx

from convsync import config

logger = logging.getLogger("convsync.upstream")

T = TypeVar("T")

RATE_LIMITED = 429


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""
    max_attempts: int = config.RETRY_MAX_ATTEMPTS
    base_delay_ms: float = float(config.RETRY_BASE_DELAY_MS)
    backoff_multiplier: float = 2.0
    jitter_ms: float = float(config.RETRY_JITTER_MS)


def status_code_of(error: BaseException) -> Optional[int]:
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    status = getattr(error, "status_code", None)
    return status if isinstance(status, int) else None


def is_retryable(error: BaseException) -> bool:
    status = status_code_of(error)
    if status is not None and 400 <= status < 500 and status != RATE_LIMITED:
        return False
    return True


def calculate_backoff(attempt: int, retry_config: RetryConfig) -> float:
    """Delay in ms before retry number ``attempt`` (1-based)."""
    delay = retry_config.base_delay_ms * (retry_config.backoff_multiplier ** (attempt - 1))
    return max(0.0, delay + random.uniform(0, retry_config.jitter_ms))


async def retry_with_backoff(
    func: Callable[..., Awaitable[T]],
    *args: Any,
    operation: str = "upstream call",
    retry_config: Optional[RetryConfig] = None,
    **kwargs: Any,
) -> T:
    """Await ``func(*args, **kwargs)``, retrying transient failures."""
    retry_config = retry_config or RetryConfig()
    attempts = max(1, retry_config.max_attempts)

    for attempt in range(1, attempts + 1):
        try:
            return await func(*args, **kwargs)
        except Exception as exc:
            if not is_retryable(exc):
                raise
            if attempt >= attempts:
                logger.error("%s failed after %s attempts: %s", operation, attempts, exc)
                raise
            delay_ms = calculate_backoff(attempt, retry_config)
            logger.warning(
                "%s failed (attempt %s/%s). Retrying in %.1fs: %s",
                operation,
                attempt,
                attempts,
                delay_ms / 1000.0,
                exc,
            )
            await asyncio.sleep(delay_ms / 1000.0)

    raise RuntimeError("unreachable")  # pragma: no cover
