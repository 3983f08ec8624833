"""
HTTP client wrapper shared by all provider adapters.

Issues GET requests against a provider REST API with the API key attached,
classifies responses for the rate governor, and applies the retry rules:

- 429: back off for the governor's current delay plus jitter, then retry,
  bounded by an attempt count and an elapsed-time budget
- connection errors and timeouts: retried once after a short pause
- 401/403: AuthenticationError, never retried
- anything else: DataFetchError immediately
"""

from __future__ import annotations

import asyncio
import random
import time
from dataclasses import dataclass
from typing import Any

import httpx
import orjson
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_fixed

from screener.data.governor import RateGovernor
from screener.exceptions import (
    AuthenticationError,
    CircuitOpenError,
    DataFetchError,
    NotFoundError,
    RateLimitExhaustedError,
)
from screener.logging import get_logger

logger = get_logger(__name__)

_NETWORK_ERRORS = (httpx.TransportError,)


@dataclass
class RetryPolicy:
    """Retry budget for a single logical request."""

    max_rate_limit_retries: int = 10
    max_retry_seconds: float = 300.0
    network_retries: int = 1
    network_retry_pause: float = 0.5
    jitter_max: float = 0.1


class ProviderHttpClient:
    """Rate-governed JSON GET client for one provider.

    Args:
        source: Provider name used in logs and error context.
        base_url: Base URL that relative endpoints are joined to.
        governor: Shared rate governor for this pipeline.
        api_key: Key attached to every request, if set.
        api_key_param: Query parameter name for the key.
        timeout: Per-request timeout in seconds.
        retry_policy: Retry budget; defaults to RetryPolicy().
        transport: Optional httpx transport (used by tests).
    """

    def __init__(
        self,
        source: str,
        base_url: str,
        governor: RateGovernor,
        api_key: str | None = None,
        api_key_param: str = "apiKey",
        timeout: float = 15.0,
        retry_policy: RetryPolicy | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.source = source
        self.base_url = base_url.rstrip("/")
        self.governor = governor
        self.api_key = api_key
        self.api_key_param = api_key_param
        self.timeout = timeout
        self.retry_policy = retry_policy or RetryPolicy()
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                follow_redirects=True,
                headers={"Accept": "application/json"},
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    def _url_for(self, endpoint: str, params: dict[str, Any] | None) -> httpx.URL:
        """Resolve the endpoint and merge params into any query it already carries."""
        if endpoint.startswith(("http://", "https://")):
            url = httpx.URL(endpoint)
        else:
            url = httpx.URL(f"{self.base_url}/{endpoint.lstrip('/')}")
        request_params = dict(params or {})
        if self.api_key:
            request_params[self.api_key_param] = self.api_key
        return url.copy_merge_params(request_params)

    async def _send(self, url: httpx.URL, endpoint: str) -> httpx.Response:
        """Send once, retrying network-class failures per the policy."""
        client = await self._get_client()
        policy = self.retry_policy
        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type(_NETWORK_ERRORS),
                stop=stop_after_attempt(policy.network_retries + 1),
                wait=wait_fixed(policy.network_retry_pause),
                reraise=True,
            ):
                with attempt:
                    await self.governor.pace()
                    try:
                        return await client.get(url)
                    except _NETWORK_ERRORS as e:
                        self.governor.record_failure()
                        logger.warning(
                            "Connection issue, retrying after pause",
                            source=self.source,
                            endpoint=endpoint,
                            error=type(e).__name__,
                        )
                        raise
        except _NETWORK_ERRORS as e:
            raise DataFetchError(
                f"{self.source} request failed: {type(e).__name__}",
                context={"source": self.source, "endpoint": endpoint, "error": str(e)},
            ) from e
        raise AssertionError("unreachable")  # pragma: no cover

    async def request(self, endpoint: str, params: dict[str, Any] | None = None) -> Any:
        """GET an endpoint and return the decoded JSON body.

        Args:
            endpoint: Path relative to the base URL, or an absolute URL.
            params: Query parameters; the API key is added automatically.

        Raises:
            AuthenticationError: On HTTP 401/403.
            NotFoundError: On HTTP 404.
            RateLimitExhaustedError: When the 429 retry budget is spent.
            CircuitOpenError: When the fail-fast circuit has tripped.
            DataFetchError: On any other failure.
        """
        url = self._url_for(endpoint, params)
        policy = self.retry_policy
        started = time.monotonic()
        rate_limited_attempts = 0

        while True:
            if self.governor.circuit_open:
                raise CircuitOpenError(
                    f"{self.source} circuit open after sustained rate limiting",
                    context={
                        "source": self.source,
                        "endpoint": endpoint,
                        "streak": self.governor.state.rate_limit_streak,
                        "threshold": self.governor.config.circuit_threshold,
                    },
                )

            response = await self._send(url, endpoint)
            status = response.status_code

            if status == 429:
                self.governor.record_rate_limit()
                rate_limited_attempts += 1
                elapsed = time.monotonic() - started
                if (
                    rate_limited_attempts > policy.max_rate_limit_retries
                    or elapsed >= policy.max_retry_seconds
                ):
                    raise RateLimitExhaustedError(
                        f"{self.source} rate limit retries exhausted",
                        context={
                            "source": self.source,
                            "endpoint": endpoint,
                            "status_code": 429,
                            "attempts": rate_limited_attempts,
                            "elapsed_seconds": round(elapsed, 3),
                        },
                    )
                delay = self.governor.backoff + random.uniform(0, policy.jitter_max)
                logger.debug(
                    "Rate limited, backing off",
                    source=self.source,
                    endpoint=endpoint,
                    attempt=rate_limited_attempts,
                    delay=round(delay, 3),
                )
                await asyncio.sleep(delay)
                continue

            if status >= 400:
                self.governor.record_failure()
                self._raise_for_status(endpoint, response)

            self.governor.record_success()
            return self._decode(endpoint, response)

    def _raise_for_status(self, endpoint: str, response: httpx.Response) -> None:
        status = response.status_code
        context = {
            "source": self.source,
            "endpoint": endpoint,
            "status_code": status,
            "response": response.text[:500] if response.text else None,
        }
        if status in (401, 403):
            raise AuthenticationError(f"{self.source} rejected credentials: {status}", context=context)
        if status == 404:
            raise NotFoundError(f"{self.source} resource not found", context=context)
        raise DataFetchError(f"{self.source} API error: {status}", context=context)

    def _decode(self, endpoint: str, response: httpx.Response) -> Any:
        try:
            return orjson.loads(response.content)
        except orjson.JSONDecodeError as e:
            raise DataFetchError(
                f"Failed to parse {self.source} response",
                context={"source": self.source, "endpoint": endpoint, "error": str(e)},
            ) from e
