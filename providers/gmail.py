"""
Gmail adapter.

Lists the most recent messages (optionally filtered by a Gmail search query)
and fetches each one's headers in metadata format. Bodies are never
downloaded; the snippet stands in for the body.

API:
    GET https://gmail.googleapis.com/gmail/v1/users/me/messages
    GET https://gmail.googleapis.com/gmail/v1/users/me/messages/{id}?format=metadata
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from email.utils import getaddresses, parseaddr, parsedate_to_datetime
from typing import Any, Dict, List, Optional, Tuple

from providers.base import BaseProviderAdapter, FetchWindow
from providers.errors import ProviderError, ProviderMalformedResponseError
from resolution.records import EmailMessageRecord, Participant, RawPayload, as_text

logger = logging.getLogger(__name__)

# Hard ceiling per sync, regardless of configuration
MAX_EMAIL_MESSAGES = 500

METADATA_HEADERS = ["From", "To", "Subject", "Date"]


def parse_address(value: Optional[str]) -> Optional[Participant]:
    """'Jane Doe <jane@x.com>' -> Participant(email='jane@x.com', display_name='Jane Doe')"""
    if not value:
        return None
    name, address = parseaddr(value)
    if not address and not name:
        return None
    return Participant(email=address or None, display_name=name or None)


def parse_address_list(value: Optional[str]) -> Tuple[Participant, ...]:
    """Comma-separated To header into participants, header order kept."""
    if not value:
        return ()
    participants = []
    for name, address in getaddresses([value]):
        if not address and not name:
            continue
        participants.append(Participant(email=address or None, display_name=name or None))
    return tuple(participants)


def parse_message_date(date_header: Optional[str], internal_date: Any) -> Optional[datetime]:
    """
    Date header first, then Gmail's internalDate (epoch millis).

    Returns None when neither is usable; such messages are dropped as
    structurally invalid.
    """
    if date_header:
        try:
            parsed = parsedate_to_datetime(date_header)
        except (TypeError, ValueError):
            parsed = None
        if parsed is not None:
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return parsed

    if internal_date not in (None, ""):
        try:
            return datetime.fromtimestamp(int(internal_date) / 1000, tz=timezone.utc)
        except (TypeError, ValueError, OverflowError, OSError):
            return None

    return None


def normalize_message(message: Dict[str, Any]) -> EmailMessageRecord:
    """Turn one messages.get (metadata) response into a record."""
    payload = message.get("payload")
    raw_headers = payload.get("headers") if isinstance(payload, dict) else None

    headers: Dict[str, str] = {}
    for header in raw_headers or []:
        if isinstance(header, dict) and header.get("name"):
            # First occurrence wins, as mail clients display it
            headers.setdefault(str(header["name"]).lower(), str(header.get("value") or ""))

    labels = message.get("labelIds")
    if not isinstance(labels, list):
        labels = []

    return EmailMessageRecord(
        external_id=as_text(message.get("id")),
        title=headers.get("subject", ""),
        body=as_text(message.get("snippet")),
        payload=RawPayload.from_provider(message),
        thread_id=as_text(message.get("threadId")) or None,
        sender=parse_address(headers.get("from")),
        recipients=parse_address_list(headers.get("to")),
        sent_at=parse_message_date(headers.get("date"), message.get("internalDate")),
        labels=tuple(str(label) for label in labels),
    )


class GmailAdapter(BaseProviderAdapter):
    """
    Fetch recent Gmail messages for one user.

    Usage:
        async with GmailAdapter(access_token=token, user_key=user_id) as adapter:
            messages = await adapter.fetch_messages(max_results=50)
    """

    API_NAME = "gmail"
    BASE_URL = "https://gmail.googleapis.com/gmail/v1/users/me"
    MAX_RESULTS_CAP = MAX_EMAIL_MESSAGES

    async def fetch(self, window: FetchWindow) -> List[EmailMessageRecord]:
        return await self.fetch_messages(window.max_results, query=window.query)

    async def fetch_messages(
        self,
        max_results: int = 50,
        query: Optional[str] = None,
    ) -> List[EmailMessageRecord]:
        """Most recent messages first, up to max_results (capped)."""
        limit = self.cap(max_results)
        message_ids = await self._list_message_ids(limit, query)

        records: List[EmailMessageRecord] = []
        for message_id in message_ids:
            try:
                message = await self._get_json(
                    f"/messages/{message_id}",
                    {"format": "metadata", "metadataHeaders": METADATA_HEADERS},
                )
            except ProviderError as e:
                if e.status_code == 404:
                    # Deleted between list and get
                    logger.warning(f"{self.API_NAME}: message {message_id} disappeared, skipping")
                    continue
                raise
            records.append(normalize_message(message))

        logger.info(
            f"Fetched {len(records)} Gmail messages"
            + (f" (q={query!r})" if query else "")
            + f", {self.requests_made} requests"
        )
        return records

    async def _list_message_ids(self, limit: int, query: Optional[str]) -> List[str]:
        message_ids: List[str] = []
        page_token: Optional[str] = None

        while len(message_ids) < limit:
            params: Dict[str, Any] = {"maxResults": limit - len(message_ids)}
            if query:
                params["q"] = query
            if page_token:
                params["pageToken"] = page_token

            data = await self._get_json("/messages", params)

            # An empty mailbox omits "messages" entirely
            entries = data.get("messages", [])
            if not isinstance(entries, list):
                raise ProviderMalformedResponseError(
                    f"{self.API_NAME}: 'messages' is {type(entries).__name__}, expected list"
                )

            for entry in entries:
                if not isinstance(entry, dict) or not entry.get("id"):
                    logger.warning(f"{self.API_NAME}: skipping message entry without id")
                    continue
                message_ids.append(str(entry["id"]))
                if len(message_ids) >= limit:
                    break

            page_token = data.get("nextPageToken")
            if not page_token:
                break

        return message_ids
