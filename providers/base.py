"""
Base Provider Adapter

Common plumbing for the Google Calendar and Gmail adapters:
- Bearer-token httpx client (injectable, so tests can use MockTransport)
- Per-user rate limiting
- tenacity retries with exponential backoff on transient errors, honouring
  Retry-After
- Translation of every failure into the ProviderError taxonomy
- A hard cap on how many items one fetch may return

Subclasses implement fetch(window) and return normalized records.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from providers.errors import (
    ProviderError,
    ProviderMalformedResponseError,
    classify_http_error,
    is_retryable_error,
)
from resolution.records import CommunicationRecord
from utils.rate_limiter import AsyncRateLimiter, get_rate_limiter

logger = logging.getLogger(__name__)


@dataclass
class RetryConfig:
    """Retry behaviour for provider requests."""
    max_attempts: int = 3
    backoff_min: float = 1.0
    backoff_max: float = 30.0


@dataclass(frozen=True)
class FetchWindow:
    """What to fetch. Calendar uses the time bounds, Gmail the query."""
    max_results: int
    time_min: Optional[datetime] = None
    time_max: Optional[datetime] = None
    query: Optional[str] = None


def get_retry_after_seconds(error: Optional[BaseException]) -> Optional[float]:
    if not isinstance(error, httpx.HTTPStatusError):
        return None
    retry_after = error.response.headers.get("Retry-After")
    if retry_after is None:
        return None
    try:
        return float(retry_after)
    except ValueError:
        # HTTP-date form; fall back to exponential backoff
        return None


class BaseProviderAdapter(ABC):
    """
    Base class for communication provider adapters.

    Usage:
        async with GoogleCalendarAdapter(access_token=token) as adapter:
            records = await adapter.fetch(FetchWindow(max_results=250, time_min=..., time_max=...))
    """

    API_NAME = "unknown"
    BASE_URL = ""
    MAX_RESULTS_CAP = 100

    def __init__(
        self,
        access_token: str,
        client: Optional[httpx.AsyncClient] = None,
        retry_config: Optional[RetryConfig] = None,
        user_key: str = "",
        timeout: float = 30.0,
    ):
        """
        Args:
            access_token: OAuth bearer token (read-only here, never refreshed)
            client: Optional pre-built client; the adapter will not close it
            retry_config: Retry behaviour (default: RetryConfig())
            user_key: Rate limiter partition, usually the user id
            timeout: Per-request timeout in seconds
        """
        self.access_token = access_token
        self.retry_config = retry_config or RetryConfig()
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None
        self._rate_limiter = get_rate_limiter(self.API_NAME, user_key)
        self.requests_made = 0

    async def __aenter__(self):
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
            self._owns_client = True
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    @property
    def rate_limiter(self) -> AsyncRateLimiter:
        return self._rate_limiter

    @property
    def headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.access_token}"}

    def cap(self, requested: int) -> int:
        """Never fetch more than MAX_RESULTS_CAP, whatever the caller asks for."""
        capped = max(0, min(requested, self.MAX_RESULTS_CAP))
        if requested > self.MAX_RESULTS_CAP:
            logger.warning(
                f"{self.API_NAME}: requested {requested} items, capped at {self.MAX_RESULTS_CAP}"
            )
        return capped

    @abstractmethod
    async def fetch(self, window: FetchWindow) -> List[CommunicationRecord]:
        """Fetch and normalize records for the window."""

    # =========================================================================
    # HTTP
    # =========================================================================

    def _wait(self, retry_state: RetryCallState) -> float:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        retry_after = get_retry_after_seconds(error)
        if retry_after is not None:
            return min(retry_after, self.retry_config.backoff_max)
        backoff = wait_exponential(
            multiplier=1,
            min=self.retry_config.backoff_min,
            max=self.retry_config.backoff_max,
        )
        return backoff(retry_state)

    def _log_retry(self, retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            f"{self.API_NAME}: attempt {retry_state.attempt_number}/"
            f"{self.retry_config.max_attempts} failed: {error}. Retrying..."
        )

    async def _get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        GET a JSON object with rate limiting and retries.

        Raises:
            ProviderAuthError, ProviderUnavailableError,
            ProviderMalformedResponseError or ProviderError
        """
        if self._client is None:
            raise RuntimeError(f"{type(self).__name__} used outside 'async with'")

        url = f"{self.BASE_URL}{path}"

        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.retry_config.max_attempts),
                wait=self._wait,
                retry=retry_if_exception(is_retryable_error),
                before_sleep=self._log_retry,
                reraise=True,
            ):
                with attempt:
                    await self._rate_limiter.acquire()
                    self.requests_made += 1
                    response = await self._client.get(url, headers=self.headers, params=params)
                    response.raise_for_status()
        except ProviderError:
            raise
        except Exception as e:
            if isinstance(e, httpx.HTTPError) or is_retryable_error(e):
                raise classify_http_error(e, self.API_NAME) from e
            raise

        try:
            data = response.json()
        except ValueError as e:
            raise ProviderMalformedResponseError(
                f"{self.API_NAME} returned non-JSON body for {path}"
            ) from e

        if not isinstance(data, dict):
            raise ProviderMalformedResponseError(
                f"{self.API_NAME} returned {type(data).__name__} instead of an object for {path}"
            )
        return data
