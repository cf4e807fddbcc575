"""
Async client for the backend trading API.

Covers the market data calls the engine depends on:
- Market session status per symbol
- Subscribe-by-symbol
- Single quote snapshot
- Persistent push feed (NDJSON or SSE framed)

Handles retries with backoff for transient errors and tracks latency.
"""

import asyncio
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from logging import Logger
from typing import Any
from urllib.parse import quote

import httpx

from tradefe_engine.config import Settings

# Backend API paths
STATUS_PATH = "/market-data/{symbol}/status"
SUBSCRIBE_PATH = "/market-data/{symbol}/subscribe"
QUOTE_PATH = "/market-data/{symbol}/quote"
STREAM_PATH = "/market-data/stream"


class BackendAPIError(Exception):
    """Raised for backend API errors and exhausted retries."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


def _symbol_path(template: str, symbol: str) -> str:
    return template.format(symbol=quote(symbol, safe=""))


class AsyncBackendClient:
    """
    Async client for the backend trading API.

    Handles:
    - Retry/backoff for 429, 5xx, timeouts and transport errors
    - A separate streaming request for the push feed (no read timeout)
    - Latency tracking
    """

    def __init__(self, settings: Settings, logger: Logger) -> None:
        """
        Initialize backend client.

        Args:
            settings: Application settings
            logger: Logger instance
        """
        self._settings = settings
        self._logger = logger
        self._base_url = settings.backend_base_url
        self._timeout = settings.backend_request_timeout_s
        self._max_retries = settings.backend_max_retries
        self._backoff_s = settings.backend_retry_backoff_s
        self._stream_connect_timeout = settings.stream_connect_timeout_s

        self._client: httpx.AsyncClient | None = None

        # Latency tracking
        self._last_latency_ms: int = 0
        self._latency_history: list[int] = []
        self._max_history = 100

    @property
    def metrics(self) -> dict[str, Any]:
        """Get backend connection metrics."""
        avg_latency = (
            sum(self._latency_history) / len(self._latency_history)
            if self._latency_history
            else 0
        )
        return {
            "last_request_latency_ms": self._last_latency_ms,
            "average_latency_ms": round(avg_latency, 1),
        }

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self._timeout,
                headers={"Accept": "application/json"},
            )
        return self._client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def _backoff(self, attempt: int) -> None:
        delay = self._backoff_s * (2**attempt)
        if delay > 0:
            await asyncio.sleep(delay)

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json_body: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> httpx.Response:
        """
        Make an HTTP request to the backend with retries.

        Args:
            method: HTTP method
            path: API path (without base URL)
            json_body: JSON request body
            params: Query parameters

        Returns:
            HTTP response (status < 500 and != 429)

        Raises:
            BackendAPIError: Retries exhausted
        """
        url = f"{self._base_url}{path}"
        self._logger.debug("Backend request: %s %s", method, url)

        last_error: Exception | None = None
        last_status: int | None = None
        for attempt in range(self._max_retries + 1):
            try:
                client = await self._get_client()
                start_time = time.perf_counter()
                response = await client.request(method, url, json=json_body, params=params)
                latency_ms = int((time.perf_counter() - start_time) * 1000)
                self._last_latency_ms = latency_ms
                self._latency_history.append(latency_ms)
                if len(self._latency_history) > self._max_history:
                    self._latency_history.pop(0)

                self._logger.debug(
                    "Backend response: %s %s status=%d (%dms)",
                    method,
                    path,
                    response.status_code,
                    latency_ms,
                )

                if response.status_code == 429 or response.status_code >= 500:
                    last_status = response.status_code
                    last_error = None
                    self._logger.warning(
                        "Backend returned %d for %s %s (attempt %d/%d)",
                        response.status_code,
                        method,
                        path,
                        attempt + 1,
                        self._max_retries + 1,
                    )
                    if attempt < self._max_retries:
                        await self._backoff(attempt)
                    continue

                return response

            except httpx.TimeoutException as e:
                last_error = e
                self._logger.warning(
                    "Backend timeout for %s %s (attempt %d/%d)",
                    method,
                    path,
                    attempt + 1,
                    self._max_retries + 1,
                )
            except httpx.RequestError as e:
                last_error = e
                self._logger.warning(
                    "Backend request error for %s %s: %s (attempt %d/%d)",
                    method,
                    path,
                    e,
                    attempt + 1,
                    self._max_retries + 1,
                )

            if attempt < self._max_retries:
                await self._backoff(attempt)

        attempts = self._max_retries + 1
        if last_error is not None:
            raise BackendAPIError(f"{method} {path} failed after {attempts} attempts: {last_error}")
        raise BackendAPIError(
            f"{method} {path} failed after {attempts} attempts: status {last_status}",
            status_code=last_status,
        )

    @staticmethod
    def _json_object(response: httpx.Response, what: str) -> dict[str, Any]:
        try:
            data = response.json()
        except ValueError as e:
            raise BackendAPIError(f"{what}: response is not JSON", response.status_code) from e
        if not isinstance(data, dict):
            raise BackendAPIError(f"{what}: expected a JSON object", response.status_code)
        return data

    async def get_market_status(self, symbol: str) -> dict[str, Any]:
        """
        Get the market session status for a symbol's venue.

        Returns:
            Raw status payload ({exchange, isOpen, session, holiday, timezone})
        """
        response = await self._request("GET", _symbol_path(STATUS_PATH, symbol))
        if response.status_code != 200:
            raise BackendAPIError(
                f"Market status failed for {symbol}: status {response.status_code}",
                status_code=response.status_code,
            )
        return self._json_object(response, f"Market status for {symbol}")

    async def subscribe(self, symbol: str) -> None:
        """
        Ask the backend to publish a symbol on the push feed.

        Idempotent on the backend side.
        """
        response = await self._request("POST", _symbol_path(SUBSCRIBE_PATH, symbol))
        if not response.is_success:
            raise BackendAPIError(
                f"Subscribe failed for {symbol}: status {response.status_code}",
                status_code=response.status_code,
            )
        self._logger.info("Backend acknowledged subscription for %s", symbol)

    async def get_quote(self, symbol: str) -> dict[str, Any]:
        """
        Get a single quote snapshot.

        Returns:
            Raw quote payload (vendor field names, see market_data.polling)
        """
        response = await self._request("GET", _symbol_path(QUOTE_PATH, symbol))
        if response.status_code != 200:
            raise BackendAPIError(
                f"Quote failed for {symbol}: status {response.status_code}",
                status_code=response.status_code,
            )
        return self._json_object(response, f"Quote for {symbol}")

    @asynccontextmanager
    async def stream_events(self) -> AsyncIterator[AsyncIterator[str]]:
        """
        Open the push feed and yield its lines.

        The feed carries events for every subscribed symbol; callers filter.
        Not retried: reconnection is the caller's decision.

        Raises:
            BackendAPIError: Non-200 response when opening the feed
            httpx.HTTPError: Transport failure while connecting or reading
        """
        client = await self._get_client()
        url = f"{self._base_url}{STREAM_PATH}"
        timeout = httpx.Timeout(self._timeout, connect=self._stream_connect_timeout, read=None)

        self._logger.debug("Opening push feed: %s", url)
        async with client.stream(
            "GET",
            url,
            timeout=timeout,
            headers={"Accept": "application/x-ndjson, text/event-stream"},
        ) as response:
            if response.status_code != 200:
                raise BackendAPIError(
                    f"Push feed rejected: status {response.status_code}",
                    status_code=response.status_code,
                )
            yield response.aiter_lines()
