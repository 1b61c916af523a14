"""
Google Calendar adapter.

Lists events from the user's primary calendar inside a time window,
expanding recurring events into single instances, and normalizes them into
CalendarEventRecord.

API: GET https://www.googleapis.com/calendar/v3/calendars/primary/events
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from providers.base import BaseProviderAdapter, FetchWindow
from providers.errors import ProviderMalformedResponseError
from resolution.records import CalendarEventRecord, Participant, RawPayload, as_text
from storage.base_store import to_iso

logger = logging.getLogger(__name__)

# Hard ceiling per sync, regardless of configuration
MAX_CALENDAR_EVENTS = 2500

# Calendar API accepts up to 2500 per page; smaller pages keep responses light
PAGE_SIZE = 250


def parse_event_time(value: Optional[Dict[str, Any]]) -> Tuple[Optional[datetime], bool]:
    """
    Parse an event start/end object.

    Timed events carry {"dateTime": "...", "timeZone": "..."}, all-day events
    carry {"date": "YYYY-MM-DD"}. All-day dates become midnight UTC.

    Returns:
        (datetime or None if missing/unparseable, is_all_day)
    """
    if not isinstance(value, dict):
        return None, False

    raw = value.get("dateTime")
    if raw:
        try:
            parsed = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
        except ValueError:
            return None, False
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed, False

    raw = value.get("date")
    if raw:
        try:
            day = datetime.strptime(str(raw), "%Y-%m-%d")
        except ValueError:
            return None, True
        return day.replace(tzinfo=timezone.utc), True

    return None, False


def normalize_event(item: Dict[str, Any]) -> CalendarEventRecord:
    """Turn one Calendar API event into a record. Never raises on missing fields."""
    start_time, is_all_day = parse_event_time(item.get("start"))
    end_time, _ = parse_event_time(item.get("end"))
    # Google omits end on some imported events; treat them as zero-length
    if end_time is None:
        end_time = start_time

    attendees = []
    for attendee in item.get("attendees") or []:
        if not isinstance(attendee, dict):
            continue
        attendees.append(
            Participant(
                email=as_text(attendee.get("email")) or None,
                display_name=as_text(attendee.get("displayName")) or None,
            )
        )

    return CalendarEventRecord(
        external_id=as_text(item.get("id")),
        title=as_text(item.get("summary")),
        body=as_text(item.get("description")),
        payload=RawPayload.from_provider(item),
        attendees=tuple(attendees),
        start_time=start_time,
        end_time=end_time,
        is_all_day=is_all_day,
        location=as_text(item.get("location")) or None,
        html_link=as_text(item.get("htmlLink")) or None,
    )


class GoogleCalendarAdapter(BaseProviderAdapter):
    """
    Fetch calendar events for one user.

    Usage:
        async with GoogleCalendarAdapter(access_token=token, user_key=user_id) as adapter:
            events = await adapter.list_events(time_min, time_max, max_results=250)
    """

    API_NAME = "google_calendar"
    BASE_URL = "https://www.googleapis.com/calendar/v3"
    MAX_RESULTS_CAP = MAX_CALENDAR_EVENTS

    def __init__(self, *args, calendar_id: str = "primary", **kwargs):
        super().__init__(*args, **kwargs)
        self.calendar_id = calendar_id

    async def fetch(self, window: FetchWindow) -> List[CalendarEventRecord]:
        if window.time_min is None or window.time_max is None:
            raise ValueError("Calendar fetch needs time_min and time_max")
        return await self.list_events(window.time_min, window.time_max, window.max_results)

    async def list_events(
        self,
        time_min: datetime,
        time_max: datetime,
        max_results: int = 250,
    ) -> List[CalendarEventRecord]:
        """
        List single (expanded) events in [time_min, time_max], oldest first.

        Follows nextPageToken until max_results (capped) events are collected.
        """
        limit = self.cap(max_results)
        events: List[CalendarEventRecord] = []
        page_token: Optional[str] = None

        while len(events) < limit:
            params: Dict[str, Any] = {
                "timeMin": to_iso(time_min),
                "timeMax": to_iso(time_max),
                "singleEvents": "true",
                "orderBy": "startTime",
                "maxResults": min(PAGE_SIZE, limit - len(events)),
            }
            if page_token:
                params["pageToken"] = page_token

            data = await self._get_json(f"/calendars/{self.calendar_id}/events", params)

            items = data.get("items", [])
            if not isinstance(items, list):
                raise ProviderMalformedResponseError(
                    f"{self.API_NAME}: 'items' is {type(items).__name__}, expected list"
                )

            for item in items:
                if not isinstance(item, dict):
                    logger.warning(f"{self.API_NAME}: skipping non-object event entry")
                    continue
                events.append(normalize_event(item))
                if len(events) >= limit:
                    break

            page_token = data.get("nextPageToken")
            if not page_token:
                break

        logger.info(
            f"Fetched {len(events)} calendar events "
            f"({to_iso(time_min)} .. {to_iso(time_max)}, {self.requests_made} requests)"
        )
        return events
