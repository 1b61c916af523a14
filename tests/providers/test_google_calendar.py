"""
Tests for GoogleCalendarAdapter against a mocked Calendar API.
"""

from datetime import datetime, timezone

import httpx
import pytest

from providers.base import FetchWindow, RetryConfig
from providers.errors import (
    ProviderAuthError,
    ProviderError,
    ProviderMalformedResponseError,
    ProviderUnavailableError,
)
from providers.google_calendar import (
    MAX_CALENDAR_EVENTS,
    GoogleCalendarAdapter,
    normalize_event,
    parse_event_time,
)

TIME_MIN = datetime(2024, 1, 1, tzinfo=timezone.utc)
TIME_MAX = datetime(2024, 4, 1, tzinfo=timezone.utc)
FAST_RETRY = RetryConfig(max_attempts=2, backoff_min=0, backoff_max=0)


def timed_event(event_id, summary="Intro call", attendees=None):
    return {
        "id": event_id,
        "summary": summary,
        "start": {"dateTime": "2024-03-01T10:00:00-05:00"},
        "end": {"dateTime": "2024-03-01T10:30:00-05:00"},
        "attendees": attendees or [],
        "htmlLink": f"https://calendar.google.com/event?eid={event_id}",
    }


def make_adapter(handler, retry_config=FAST_RETRY):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return GoogleCalendarAdapter(access_token="tok", client=client, retry_config=retry_config, user_key="u1")


class TestNormalization:
    """Tests for normalize_event / parse_event_time."""

    def test_timed_event(self):
        record = normalize_event(timed_event(
            "e1",
            attendees=[{"email": "Jane@Acme.com", "displayName": "Jane Doe"}, {"email": "me@fund.vc"}],
        ))

        assert record.external_id == "e1"
        assert record.title == "Intro call"
        assert record.start_time == datetime(2024, 3, 1, 15, 0, tzinfo=timezone.utc)
        assert record.is_all_day is False
        assert [p.normalized_email for p in record.participants] == ["jane@acme.com", "me@fund.vc"]
        assert record.participants[0].display_name == "Jane Doe"
        assert record.payload.decode()["id"] == "e1"
        assert record.is_structurally_valid()

    def test_all_day_event(self):
        record = normalize_event({
            "id": "e2",
            "summary": "Offsite",
            "start": {"date": "2024-03-04"},
            "end": {"date": "2024-03-05"},
        })

        assert record.is_all_day is True
        assert record.start_time == datetime(2024, 3, 4, tzinfo=timezone.utc)
        assert record.end_time == datetime(2024, 3, 5, tzinfo=timezone.utc)

    def test_missing_end_falls_back_to_start(self):
        record = normalize_event({"id": "e3", "start": {"dateTime": "2024-03-01T10:00:00Z"}})

        assert record.end_time == record.start_time
        assert record.is_structurally_valid()

    def test_event_without_start_is_invalid(self):
        record = normalize_event({"id": "e4", "summary": "Broken", "start": {}, "end": {}})

        assert record.start_time is None
        assert not record.is_structurally_valid()

    def test_unparseable_time(self):
        assert parse_event_time({"dateTime": "not a time"}) == (None, False)
        assert parse_event_time(None) == (None, False)


class TestListEvents:
    """Tests for GoogleCalendarAdapter.list_events."""

    async def test_sends_window_and_auth(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"items": [timed_event("e1")]})

        async with make_adapter(handler) as adapter:
            events = await adapter.list_events(TIME_MIN, TIME_MAX, max_results=250)

        assert [e.external_id for e in events] == ["e1"]
        request = seen[0]
        assert request.url.path == "/calendar/v3/calendars/primary/events"
        assert request.headers["Authorization"] == "Bearer tok"
        assert request.url.params["singleEvents"] == "true"
        assert request.url.params["orderBy"] == "startTime"
        assert request.url.params["timeMin"] == TIME_MIN.isoformat()
        assert request.url.params["timeMax"] == TIME_MAX.isoformat()

    async def test_follows_page_tokens(self):
        pages = {
            None: {"items": [timed_event("e1"), timed_event("e2")], "nextPageToken": "p2"},
            "p2": {"items": [timed_event("e3")]},
        }

        def handler(request):
            return httpx.Response(200, json=pages[request.url.params.get("pageToken")])

        async with make_adapter(handler) as adapter:
            events = await adapter.list_events(TIME_MIN, TIME_MAX)

        assert [e.external_id for e in events] == ["e1", "e2", "e3"]
        assert adapter.requests_made == 2

    async def test_stops_at_max_results(self):
        def handler(request):
            items = [timed_event(f"e{i}") for i in range(5)]
            return httpx.Response(200, json={"items": items, "nextPageToken": "more"})

        async with make_adapter(handler) as adapter:
            events = await adapter.list_events(TIME_MIN, TIME_MAX, max_results=3)

        assert len(events) == 3
        assert adapter.requests_made == 1

    def test_requests_are_capped(self):
        adapter = GoogleCalendarAdapter(access_token="tok")

        assert adapter.cap(10_000) == MAX_CALENDAR_EVENTS
        assert adapter.cap(250) == 250

    async def test_empty_calendar(self):
        async with make_adapter(lambda request: httpx.Response(200, json={})) as adapter:
            assert await adapter.list_events(TIME_MIN, TIME_MAX) == []

    async def test_malformed_event_is_returned_invalid_not_raised(self):
        def handler(request):
            return httpx.Response(200, json={"items": [timed_event("good"), {"id": "bad", "start": {}}]})

        async with make_adapter(handler) as adapter:
            events = await adapter.list_events(TIME_MIN, TIME_MAX)

        assert [e.is_structurally_valid() for e in events] == [True, False]

    async def test_fetch_window(self):
        def handler(request):
            return httpx.Response(200, json={"items": [timed_event("e1")]})

        async with make_adapter(handler) as adapter:
            events = await adapter.fetch(FetchWindow(max_results=10, time_min=TIME_MIN, time_max=TIME_MAX))

        assert len(events) == 1

    async def test_fetch_requires_time_bounds(self):
        async with make_adapter(lambda request: httpx.Response(200, json={})) as adapter:
            with pytest.raises(ValueError):
                await adapter.fetch(FetchWindow(max_results=10))


class TestErrors:
    """Provider failures surface as typed errors."""

    async def test_unauthorized_is_auth_error_without_retry(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(401, json={"error": {"message": "Invalid Credentials"}})

        async with make_adapter(handler) as adapter:
            with pytest.raises(ProviderAuthError) as exc_info:
                await adapter.list_events(TIME_MIN, TIME_MAX)

        assert exc_info.value.status_code == 401
        assert len(calls) == 1

    async def test_server_errors_retried_then_unavailable(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(503, text="backend error")

        async with make_adapter(handler) as adapter:
            with pytest.raises(ProviderUnavailableError):
                await adapter.list_events(TIME_MIN, TIME_MAX)

        assert len(calls) == FAST_RETRY.max_attempts

    async def test_transient_error_then_success(self):
        responses = [
            httpx.Response(429, text="slow down"),
            httpx.Response(200, json={"items": [timed_event("e1")]}),
        ]

        async with make_adapter(lambda request: responses.pop(0)) as adapter:
            events = await adapter.list_events(TIME_MIN, TIME_MAX)

        assert len(events) == 1
        assert adapter.requests_made == 2

    async def test_network_failure_is_unavailable(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        async with make_adapter(handler) as adapter:
            with pytest.raises(ProviderUnavailableError):
                await adapter.list_events(TIME_MIN, TIME_MAX)

    async def test_non_json_body_is_malformed(self):
        async with make_adapter(lambda request: httpx.Response(200, text="<html>oops</html>")) as adapter:
            with pytest.raises(ProviderMalformedResponseError):
                await adapter.list_events(TIME_MIN, TIME_MAX)

    async def test_items_of_wrong_shape_is_malformed(self):
        async with make_adapter(lambda request: httpx.Response(200, json={"items": "nope"})) as adapter:
            with pytest.raises(ProviderMalformedResponseError):
                await adapter.list_events(TIME_MIN, TIME_MAX)

    async def test_bad_request_is_plain_provider_error(self):
        async with make_adapter(lambda request: httpx.Response(400, text="bad timeMin")) as adapter:
            with pytest.raises(ProviderError) as exc_info:
                await adapter.list_events(TIME_MIN, TIME_MAX)

        assert type(exc_info.value) is ProviderError
        assert exc_info.value.status_code == 400

    async def test_used_outside_context_manager(self):
        adapter = GoogleCalendarAdapter(access_token="tok")

        with pytest.raises(RuntimeError):
            await adapter.list_events(TIME_MIN, TIME_MAX)
