"""
Provider adapters for Google Calendar and Gmail.

Each adapter owns its HTTP client, rate limiter and retry policy and hands
back normalized records from resolution.records. Failures surface as the
typed errors in providers.errors.
"""

from providers.base import BaseProviderAdapter, FetchWindow, RetryConfig
from providers.errors import (
    ProviderAuthError,
    ProviderError,
    ProviderMalformedResponseError,
    ProviderUnavailableError,
)
from providers.gmail import MAX_EMAIL_MESSAGES, GmailAdapter
from providers.google_calendar import MAX_CALENDAR_EVENTS, GoogleCalendarAdapter

__all__ = [
    "BaseProviderAdapter",
    "FetchWindow",
    "RetryConfig",
    "ProviderError",
    "ProviderAuthError",
    "ProviderUnavailableError",
    "ProviderMalformedResponseError",
    "GmailAdapter",
    "GoogleCalendarAdapter",
    "MAX_CALENDAR_EVENTS",
    "MAX_EMAIL_MESSAGES",
]
