"""
Shared HTTP client for the REST-based gateways.

Wraps an ``httpx.AsyncClient`` with a minimum interval between requests,
translation of HTTP failures into gateway errors and tenacity retries on
transient failures.
"""

import asyncio
import time
from typing import Any

import httpx
import structlog
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential
from tenacity.wait import wait_base

from vault_keeper.core.constants import MAX_REMOTE_ATTEMPTS, REMOTE_CALL_TIMEOUT_SECONDS
from vault_keeper.core.errors import TransientError
from vault_keeper.gateways import (
    AuthenticationError,
    GatewayConnectionError,
    GatewayError,
    RateLimitError,
)

logger = structlog.get_logger(__name__)


class HttpApiClient:
    """Rate-limited JSON API client."""

    def __init__(
        self,
        name: str,
        base_url: str,
        headers: dict[str, str] | None = None,
        timeout: float = REMOTE_CALL_TIMEOUT_SECONDS,
        min_request_interval: float = 0.0,
        max_attempts: int = MAX_REMOTE_ATTEMPTS,
        retry_wait: wait_base | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Initialize the client.

        Args:
            name: Provider name used in logs and error messages
            base_url: API root
            headers: Headers sent with every request
            timeout: Per-request timeout in seconds
            min_request_interval: Minimum seconds between two requests
            max_attempts: Attempts per request on transient errors
            retry_wait: tenacity wait strategy between attempts
            transport: Custom httpx transport (tests)
        """
        self.name = name
        self.http = httpx.AsyncClient(
            base_url=base_url,
            headers=headers or {},
            timeout=timeout,
            transport=transport,
        )
        self.min_request_interval = min_request_interval
        self.max_attempts = max_attempts
        self.retry_wait = retry_wait or wait_exponential(multiplier=1, min=1, max=10)
        self._rate_lock = asyncio.Lock()
        self._last_request = 0.0

    async def close(self) -> None:
        await self.http.aclose()

    async def _throttle(self) -> None:
        async with self._rate_lock:
            wait = self._last_request + self.min_request_interval - time.monotonic()
            if wait > 0:
                await asyncio.sleep(wait)
            self._last_request = time.monotonic()

    def _raise_for_status(self, response: httpx.Response, operation: str) -> None:
        status = response.status_code
        if status < 400:
            return
        message = f"{self.name} returned {status} for {operation}: {response.text[:200]}"
        if status == 429:
            raise RateLimitError(message, operation=operation)
        if status in (401, 403):
            raise AuthenticationError(message, operation=operation)
        if status >= 500:
            raise GatewayConnectionError(message, operation=operation)
        raise GatewayError(message, operation=operation)

    async def _request_once(self, method: str, path: str, operation: str, **kwargs: Any) -> Any:
        await self._throttle()
        try:
            response = await self.http.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise GatewayConnectionError(f"{self.name} timed out", operation=operation) from e
        except httpx.HTTPError as e:
            raise GatewayConnectionError(
                f"{self.name} connection failed: {e}", operation=operation
            ) from e

        self._raise_for_status(response, operation)
        try:
            return response.json()
        except ValueError as e:
            raise GatewayError(f"{self.name} returned invalid JSON", operation=operation) from e

    async def request(self, method: str, path: str, operation: str, **kwargs: Any) -> Any:
        """
        Send a request and return the decoded JSON body.

        Raises:
            GatewayError: If the request fails after retries
        """
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(TransientError),
            stop=stop_after_attempt(self.max_attempts),
            wait=self.retry_wait,
            reraise=True,
        ):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.debug(
                        "Retrying request",
                        api=self.name,
                        operation=operation,
                        attempt=attempt.retry_state.attempt_number,
                    )
                body = await self._request_once(method, path, operation, **kwargs)
        return body

    async def get(self, path: str, operation: str, **kwargs: Any) -> Any:
        return await self.request("GET", path, operation, **kwargs)

    async def post(self, path: str, operation: str, **kwargs: Any) -> Any:
        return await self.request("POST", path, operation, **kwargs)
