"""
Tests for GmailAdapter against a mocked Gmail API.
"""

from datetime import datetime, timezone

import httpx
import pytest

from providers.base import FetchWindow, RetryConfig
from providers.errors import ProviderAuthError, ProviderMalformedResponseError
from providers.gmail import (
    MAX_EMAIL_MESSAGES,
    GmailAdapter,
    normalize_message,
    parse_address,
    parse_address_list,
    parse_message_date,
)

FAST_RETRY = RetryConfig(max_attempts=2, backoff_min=0, backoff_max=0)


def gmail_message(message_id, sender="Jane Doe <jane@acme.com>", to="me@fund.vc",
                  subject="Deck", date="Fri, 01 Mar 2024 10:00:00 -0500", internal_date="1709305200000"):
    headers = [{"name": "From", "value": sender}, {"name": "To", "value": to}, {"name": "Subject", "value": subject}]
    if date is not None:
        headers.append({"name": "Date", "value": date})
    message = {
        "id": message_id,
        "threadId": f"thr-{message_id}",
        "labelIds": ["INBOX"],
        "snippet": "Here is the deck",
        "payload": {"headers": headers},
    }
    if internal_date is not None:
        message["internalDate"] = internal_date
    return message


class FakeGmail:
    """Routes list/get requests to canned messages."""

    def __init__(self, messages, page_size=100, missing=()):
        self.messages = messages
        self.page_size = page_size
        self.missing = set(missing)
        self.requests = []

    def __call__(self, request):
        self.requests.append(request)
        path = request.url.path
        if path.endswith("/messages"):
            start = int(request.url.params.get("pageToken") or 0)
            chunk = self.messages[start:start + self.page_size]
            body = {"messages": [{"id": m["id"], "threadId": m["threadId"]} for m in chunk]}
            if start + self.page_size < len(self.messages):
                body["nextPageToken"] = str(start + self.page_size)
            return httpx.Response(200, json=body)

        message_id = path.rsplit("/", 1)[-1]
        if message_id in self.missing:
            return httpx.Response(404, json={"error": {"message": "Not Found"}})
        for message in self.messages:
            if message["id"] == message_id:
                return httpx.Response(200, json=message)
        return httpx.Response(404)


def make_adapter(handler):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return GmailAdapter(access_token="tok", client=client, retry_config=FAST_RETRY, user_key="u1")


class TestHeaderParsing:
    """Tests for address and date parsing."""

    def test_named_address(self):
        participant = parse_address("Jane Doe <Jane@Acme.com>")

        assert participant.email == "Jane@Acme.com"
        assert participant.normalized_email == "jane@acme.com"
        assert participant.display_name == "Jane Doe"

    def test_bare_address(self):
        participant = parse_address("jane@acme.com")

        assert participant.email == "jane@acme.com"
        assert participant.display_name is None

    def test_empty_address(self):
        assert parse_address("") is None
        assert parse_address(None) is None

    def test_to_list_keeps_header_order(self):
        participants = parse_address_list('"Doe, Jane" <jane@acme.com>, bob@beta.com, Alex <alex@kimco.io>')

        assert [p.email for p in participants] == ["jane@acme.com", "bob@beta.com", "alex@kimco.io"]
        assert participants[0].display_name == "Doe, Jane"

    def test_date_header_preferred(self):
        parsed = parse_message_date("Fri, 01 Mar 2024 10:00:00 -0500", "0")

        assert parsed == datetime(2024, 3, 1, 15, 0, tzinfo=timezone.utc)

    def test_internal_date_fallback(self):
        parsed = parse_message_date("garbage", "1709305200000")

        assert parsed == datetime(2024, 3, 1, 15, 0, tzinfo=timezone.utc)

    def test_no_usable_date(self):
        assert parse_message_date(None, None) is None


class TestNormalizeMessage:

    def test_sender_then_recipients(self):
        record = normalize_message(gmail_message("m1", to="me@fund.vc, partner@fund.vc"))

        assert record.external_id == "m1"
        assert record.thread_id == "thr-m1"
        assert record.title == "Deck"
        assert record.body == "Here is the deck"
        assert [p.email for p in record.participants] == ["jane@acme.com", "me@fund.vc", "partner@fund.vc"]
        assert record.labels == ("INBOX",)
        assert record.is_structurally_valid()

    def test_message_without_any_date_is_invalid(self):
        record = normalize_message(gmail_message("m2", date=None, internal_date=None))

        assert record.sent_at is None
        assert not record.is_structurally_valid()

    def test_message_without_payload(self):
        record = normalize_message({"id": "m3", "internalDate": "1709305200000"})

        assert record.sender is None
        assert record.participants == ()
        assert record.title == ""


class TestFetchMessages:
    """Tests for GmailAdapter.fetch_messages."""

    async def test_lists_then_fetches_metadata(self):
        fake = FakeGmail([gmail_message("m1"), gmail_message("m2")])

        async with make_adapter(fake) as adapter:
            records = await adapter.fetch_messages(max_results=50)

        assert [r.external_id for r in records] == ["m1", "m2"]
        get_request = fake.requests[1]
        assert get_request.url.path == "/gmail/v1/users/me/messages/m1"
        assert get_request.url.params["format"] == "metadata"
        assert get_request.url.params.get_list("metadataHeaders") == ["From", "To", "Subject", "Date"]
        assert get_request.headers["Authorization"] == "Bearer tok"

    async def test_query_is_passed_through(self):
        fake = FakeGmail([gmail_message("m1")])

        async with make_adapter(fake) as adapter:
            await adapter.fetch(FetchWindow(max_results=10, query="after:1709251200"))

        assert fake.requests[0].url.params["q"] == "after:1709251200"

    async def test_pages_until_max_results(self):
        fake = FakeGmail([gmail_message(f"m{i}") for i in range(5)], page_size=2)

        async with make_adapter(fake) as adapter:
            records = await adapter.fetch_messages(max_results=3)

        assert [r.external_id for r in records] == ["m0", "m1", "m2"]

    async def test_message_deleted_between_list_and_get_is_skipped(self):
        fake = FakeGmail([gmail_message("m1"), gmail_message("gone")], missing={"gone"})

        async with make_adapter(fake) as adapter:
            records = await adapter.fetch_messages()

        assert [r.external_id for r in records] == ["m1"]

    async def test_empty_mailbox(self):
        async with make_adapter(lambda request: httpx.Response(200, json={"resultSizeEstimate": 0})) as adapter:
            assert await adapter.fetch_messages() == []

    async def test_wrong_shape_is_malformed(self):
        async with make_adapter(lambda request: httpx.Response(200, json={"messages": {"id": "m1"}})) as adapter:
            with pytest.raises(ProviderMalformedResponseError):
                await adapter.fetch_messages()

    async def test_array_body_is_malformed(self):
        async with make_adapter(lambda request: httpx.Response(200, json=[1, 2])) as adapter:
            with pytest.raises(ProviderMalformedResponseError):
                await adapter.fetch_messages()

    async def test_forbidden_is_auth_error(self):
        async with make_adapter(lambda request: httpx.Response(403, text="insufficient scope")) as adapter:
            with pytest.raises(ProviderAuthError):
                await adapter.fetch_messages()

    def test_requests_are_capped(self):
        assert GmailAdapter(access_token="tok").cap(10_000) == MAX_EMAIL_MESSAGES
