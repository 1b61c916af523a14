"""
Normalized communication records.

Calendar events and email messages are two variants of one record type.
The resolver only ever looks at the shared MatchableFields projection;
the provider payload rides along as an opaque RawPayload that only the
provider adapters know how to decode.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple


class Channel(str, Enum):
    """Which provider channel a record came from."""
    CALENDAR = "google_calendar"
    EMAIL = "gmail"


def as_text(value: Any) -> str:
    """Provider text field as a string; missing values become ""."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return str(value)


@dataclass(frozen=True)
class RawPayload:
    """Serialized provider payload, preserved for later re-processing."""
    serialized: str = "{}"

    @classmethod
    def from_provider(cls, payload: Dict[str, Any]) -> RawPayload:
        return cls(json.dumps(payload, sort_keys=True, default=str))

    def decode(self) -> Dict[str, Any]:
        return json.loads(self.serialized)


@dataclass(frozen=True)
class Participant:
    """An attendee or an address on an email header."""
    email: Optional[str] = None
    display_name: Optional[str] = None

    @property
    def normalized_email(self) -> Optional[str]:
        if not self.email:
            return None
        cleaned = as_text(self.email).strip().lower()
        return cleaned or None


@dataclass(frozen=True)
class MatchableFields:
    """The channel-independent view the resolver works against."""
    participants: Tuple[Participant, ...]
    title: str
    body: str


@dataclass(frozen=True)
class CommunicationRecord:
    """Fields common to every channel."""
    external_id: str
    title: str = ""
    body: str = ""
    payload: RawPayload = field(default_factory=RawPayload)

    channel = None  # set by each variant

    @property
    def participants(self) -> Tuple[Participant, ...]:
        raise NotImplementedError

    @property
    def timestamp(self) -> Optional[datetime]:
        raise NotImplementedError

    @property
    def matchable(self) -> MatchableFields:
        return MatchableFields(
            participants=self.participants,
            title=as_text(self.title),
            body=as_text(self.body),
        )

    def is_structurally_valid(self) -> bool:
        return bool(self.external_id) and self.timestamp is not None


@dataclass(frozen=True)
class CalendarEventRecord(CommunicationRecord):
    """A Google Calendar event. body holds the description."""
    attendees: Tuple[Participant, ...] = ()
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    is_all_day: bool = False
    location: Optional[str] = None
    html_link: Optional[str] = None

    channel = Channel.CALENDAR

    @property
    def participants(self) -> Tuple[Participant, ...]:
        return self.attendees

    @property
    def timestamp(self) -> Optional[datetime]:
        return self.start_time

    def is_structurally_valid(self) -> bool:
        return (
            bool(self.external_id)
            and self.start_time is not None
            and self.end_time is not None
        )


@dataclass(frozen=True)
class EmailMessageRecord(CommunicationRecord):
    """A Gmail message. title holds the subject, body the snippet."""
    thread_id: Optional[str] = None
    sender: Optional[Participant] = None
    recipients: Tuple[Participant, ...] = ()
    sent_at: Optional[datetime] = None
    labels: Tuple[str, ...] = ()

    channel = Channel.EMAIL

    @property
    def participants(self) -> Tuple[Participant, ...]:
        # From first, then To in header order
        if self.sender is None:
            return self.recipients
        return (self.sender,) + self.recipients

    @property
    def timestamp(self) -> Optional[datetime]:
        return self.sent_at
