"""
Typed provider adapter errors.

Any non-success outcome from a provider surfaces as one of these, so the
sync coordinator can decide between "reconnect your account" and "try
again later" without looking at HTTP details.
"""

from __future__ import annotations

import asyncio
from typing import Optional

import httpx


class ProviderError(Exception):
    """Base class for adapter failures."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ProviderAuthError(ProviderError):
    """The provider rejected the access token (401/403). Not retried."""


class ProviderUnavailableError(ProviderError):
    """Network failure, timeout, rate limiting or 5xx after retries."""


class ProviderMalformedResponseError(ProviderError):
    """The provider answered 2xx but the body is not what the API promises."""


def is_retryable_error(error: BaseException) -> bool:
    """
    Transient failures worth another attempt.

    Retryable: connection errors, timeouts, HTTP 429 and 5xx.
    Everything else (auth, other 4xx, malformed bodies) is final.
    """
    if isinstance(error, (httpx.TransportError, ConnectionError, TimeoutError, asyncio.TimeoutError)):
        return True

    if isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
        return status == 429 or 500 <= status < 600

    return False


def classify_http_error(error: Exception, api_name: str) -> ProviderError:
    """Map a raw httpx failure onto the adapter error taxonomy."""
    if isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
        if status in (401, 403):
            return ProviderAuthError(
                f"{api_name} rejected the access token ({status})",
                status_code=status,
            )
        if status == 429 or status >= 500:
            return ProviderUnavailableError(
                f"{api_name} unavailable ({status})",
                status_code=status,
            )
        return ProviderError(
            f"{api_name} refused the request ({status}): {error.response.text[:200]}",
            status_code=status,
        )

    if isinstance(error, (httpx.TransportError, ConnectionError, TimeoutError, asyncio.TimeoutError)):
        return ProviderUnavailableError(f"{api_name} unreachable: {error}")

    return ProviderMalformedResponseError(f"{api_name} returned an unusable response: {error}")
