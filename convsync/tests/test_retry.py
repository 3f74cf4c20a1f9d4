import unittest
from unittest.mock import patch

import httpx

from convsync.retry import RetryConfig, calculate_backoff, is_retryable, retry_with_backoff

NO_DELAY = RetryConfig(max_attempts=3, base_delay_ms=0, jitter_ms=0)


def _status_error(status: int) -> httpx.HTTPStatusError:
    request = httpx.Request("GET", "https://api.test/v1/agents")
    response = httpx.Response(status, request=request)
    return httpx.HTTPStatusError(f"status {status}", request=request, response=response)


class _Flaky:
    def __init__(self, errors: list[BaseException], result: str = "ok") -> None:
        self.errors = list(errors)
        self.result = result
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.result


class RetryTests(unittest.IsolatedAsyncioTestCase):
    async def test_client_error_is_not_retried(self) -> None:
        func = _Flaky([_status_error(404)])
        with self.assertRaises(httpx.HTTPStatusError):
            await retry_with_backoff(func, retry_config=NO_DELAY)
        self.assertEqual(func.calls, 1)

    async def test_rate_limit_is_retried(self) -> None:
        func = _Flaky([_status_error(429), _status_error(429)])
        self.assertEqual(await retry_with_backoff(func, retry_config=NO_DELAY), "ok")
        self.assertEqual(func.calls, 3)

    async def test_transport_errors_are_retried_until_exhausted(self) -> None:
        errors = [httpx.ConnectError("boom") for _ in range(3)]
        func = _Flaky(errors)
        with self.assertRaises(httpx.ConnectError):
            await retry_with_backoff(func, retry_config=NO_DELAY)
        self.assertEqual(func.calls, 3)

    async def test_server_error_then_success(self) -> None:
        func = _Flaky([_status_error(503)])
        self.assertEqual(await retry_with_backoff(func, retry_config=NO_DELAY), "ok")
        self.assertEqual(func.calls, 2)


class BackoffTests(unittest.TestCase):
    def test_exponential_backoff_with_jitter(self) -> None:
        cfg = RetryConfig(max_attempts=3, base_delay_ms=1000, jitter_ms=1000)
        with patch("convsync.retry.random.uniform", return_value=250.0):
            self.assertEqual(calculate_backoff(1, cfg), 1250.0)
            self.assertEqual(calculate_backoff(3, cfg), 4250.0)

    def test_is_retryable(self) -> None:
        self.assertFalse(is_retryable(_status_error(401)))
        self.assertTrue(is_retryable(_status_error(429)))
        self.assertTrue(is_retryable(_status_error(500)))
        self.assertTrue(is_retryable(httpx.ReadTimeout("slow")))


if __name__ == "__main__":
    unittest.main()
