"""
Communication Storage: the persistence upsert layer for synced records.

Tables:
  - calendar_events: one row per (google_event_id, user_id)
  - email_messages: one row per (gmail_message_id, user_id)

Writes are bulk upserts on the natural key, so re-running a sync over an
overlapping window overwrites rows in place instead of duplicating them.
A conflicting row is replaced wholesale (no merging). Structurally invalid
records are dropped before the write. Each batch is one transaction; if it
fails the whole batch is rolled back and PersistenceError is raised.

Every read is scoped to a user_id.
"""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, AsyncIterator, Dict, List, Optional, Sequence, Tuple, Union

import aiosqlite

from resolution.records import CalendarEventRecord, EmailMessageRecord, Participant
from storage.base_store import MigratingStore, to_iso, utc_now

if TYPE_CHECKING:
    from resolution.resolver import ResolvedLink

logger = logging.getLogger(__name__)


COMMUNICATION_MIGRATIONS = {
    1: """
    CREATE TABLE IF NOT EXISTS calendar_events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT NOT NULL,
        company_id TEXT,
        founder_id TEXT,
        google_event_id TEXT NOT NULL,
        title TEXT NOT NULL,
        description TEXT,
        start_time TEXT NOT NULL,
        end_time TEXT NOT NULL,
        is_all_day BOOLEAN DEFAULT 0,
        location TEXT,
        attendees TEXT,  -- JSON [{email, display_name}]
        html_link TEXT,
        match_method TEXT NOT NULL,
        metadata TEXT,  -- raw provider payload
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        UNIQUE(google_event_id, user_id)
    );

    CREATE INDEX IF NOT EXISTS idx_calendar_events_user ON calendar_events(user_id, start_time DESC);
    CREATE INDEX IF NOT EXISTS idx_calendar_events_founder ON calendar_events(user_id, founder_id);
    CREATE INDEX IF NOT EXISTS idx_calendar_events_company ON calendar_events(user_id, company_id);

    CREATE TABLE IF NOT EXISTS email_messages (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT NOT NULL,
        company_id TEXT,
        founder_id TEXT,
        gmail_message_id TEXT NOT NULL,
        gmail_thread_id TEXT,
        subject TEXT NOT NULL,
        snippet TEXT,
        from_name TEXT,
        from_email TEXT,
        to_email TEXT,  -- comma-separated, header order
        email_date TEXT NOT NULL,
        labels TEXT,  -- JSON array
        match_method TEXT NOT NULL,
        metadata TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        UNIQUE(gmail_message_id, user_id)
    );

    CREATE INDEX IF NOT EXISTS idx_email_messages_user ON email_messages(user_id, email_date DESC);
    CREATE INDEX IF NOT EXISTS idx_email_messages_founder ON email_messages(user_id, founder_id);
    CREATE INDEX IF NOT EXISTS idx_email_messages_company ON email_messages(user_id, company_id);

    CREATE TABLE IF NOT EXISTS communication_schema_migrations (
        version INTEGER PRIMARY KEY,
        applied_at TEXT NOT NULL,
        description TEXT
    );
    """
}

UNTITLED_EVENT = "Untitled Event"
NO_SUBJECT = "No Subject"


class PersistenceError(Exception):
    """A batch write failed; nothing from that batch was committed."""


@dataclass
class UpsertResult:
    """Outcome of one bulk upsert."""
    written: int = 0
    skipped_invalid: int = 0


def _participants_json(participants: Sequence[Participant]) -> str:
    return json.dumps([
        {"email": p.email, "display_name": p.display_name}
        for p in participants
    ])


# Provider id column in the row tuples built below
EXTERNAL_ID_COLUMN = 3


def _last_row_per_id(rows: List[Tuple[Any, ...]]) -> List[Tuple[Any, ...]]:
    """Collapse repeated provider ids within one batch; the last copy wins."""
    by_id: Dict[Any, Tuple[Any, ...]] = {}
    for row in rows:
        by_id[row[EXTERNAL_ID_COLUMN]] = row
    if len(by_id) < len(rows):
        logger.debug(f"Collapsed {len(rows) - len(by_id)} duplicate ids in batch")
    return list(by_id.values())


class CommunicationStore(MigratingStore):
    """Async SQLite storage for synced calendar events and email messages."""

    MIGRATIONS = COMMUNICATION_MIGRATIONS
    MIGRATIONS_TABLE = "communication_schema_migrations"
    STORE_NAME = "CommunicationStore"

    # =========================================================================
    # UPSERTS
    # =========================================================================

    async def upsert_calendar_events(
        self,
        user_id: str,
        links: Sequence["ResolvedLink"],
    ) -> UpsertResult:
        """Bulk upsert resolved calendar events for one user."""
        now = to_iso(utc_now())
        rows: List[Tuple[Any, ...]] = []
        skipped = 0

        for link in links:
            event = link.record
            if not isinstance(event, CalendarEventRecord) or not event.is_structurally_valid():
                skipped += 1
                logger.debug(f"Skipping invalid calendar event {getattr(event, 'external_id', None)!r}")
                continue

            rows.append((
                user_id,
                link.company_id,
                link.founder_id,
                event.external_id,
                event.title or UNTITLED_EVENT,
                event.body or None,
                to_iso(event.start_time),
                to_iso(event.end_time),
                event.is_all_day,
                event.location,
                _participants_json(event.attendees),
                event.html_link,
                link.tier.value,
                event.payload.serialized,
                now,
                now,
            ))

        rows = _last_row_per_id(rows)
        await self._write_batch(
            """
            INSERT INTO calendar_events (
                user_id, company_id, founder_id, google_event_id, title,
                description, start_time, end_time, is_all_day, location,
                attendees, html_link, match_method, metadata,
                created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(google_event_id, user_id) DO UPDATE SET
                company_id = excluded.company_id,
                founder_id = excluded.founder_id,
                title = excluded.title,
                description = excluded.description,
                start_time = excluded.start_time,
                end_time = excluded.end_time,
                is_all_day = excluded.is_all_day,
                location = excluded.location,
                attendees = excluded.attendees,
                html_link = excluded.html_link,
                match_method = excluded.match_method,
                metadata = excluded.metadata,
                updated_at = excluded.updated_at
            """,
            rows,
            table="calendar_events",
        )

        if skipped:
            logger.info(f"Dropped {skipped} invalid calendar events before write")
        return UpsertResult(written=len(rows), skipped_invalid=skipped)

    async def upsert_email_messages(
        self,
        user_id: str,
        links: Sequence["ResolvedLink"],
    ) -> UpsertResult:
        """Bulk upsert resolved email messages for one user."""
        now = to_iso(utc_now())
        rows: List[Tuple[Any, ...]] = []
        skipped = 0

        for link in links:
            message = link.record
            if not isinstance(message, EmailMessageRecord) or not message.is_structurally_valid():
                skipped += 1
                logger.debug(f"Skipping invalid email message {getattr(message, 'external_id', None)!r}")
                continue

            sender = message.sender
            rows.append((
                user_id,
                link.company_id,
                link.founder_id,
                message.external_id,
                message.thread_id,
                message.title or NO_SUBJECT,
                message.body or None,
                sender.display_name if sender else None,
                sender.normalized_email if sender else None,
                ", ".join(p.normalized_email for p in message.recipients if p.normalized_email) or None,
                to_iso(message.sent_at),
                json.dumps(list(message.labels)),
                link.tier.value,
                message.payload.serialized,
                now,
                now,
            ))

        rows = _last_row_per_id(rows)
        await self._write_batch(
            """
            INSERT INTO email_messages (
                user_id, company_id, founder_id, gmail_message_id, gmail_thread_id,
                subject, snippet, from_name, from_email, to_email, email_date,
                labels, match_method, metadata, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(gmail_message_id, user_id) DO UPDATE SET
                company_id = excluded.company_id,
                founder_id = excluded.founder_id,
                gmail_thread_id = excluded.gmail_thread_id,
                subject = excluded.subject,
                snippet = excluded.snippet,
                from_name = excluded.from_name,
                from_email = excluded.from_email,
                to_email = excluded.to_email,
                email_date = excluded.email_date,
                labels = excluded.labels,
                match_method = excluded.match_method,
                metadata = excluded.metadata,
                updated_at = excluded.updated_at
            """,
            rows,
            table="email_messages",
        )

        if skipped:
            logger.info(f"Dropped {skipped} invalid email messages before write")
        return UpsertResult(written=len(rows), skipped_invalid=skipped)

    async def _write_batch(self, sql: str, rows: List[Tuple[Any, ...]], table: str) -> None:
        if not rows:
            return
        try:
            async with self.transaction() as conn:
                await conn.executemany(sql, rows)
        except (aiosqlite.Error, ValueError) as e:
            raise PersistenceError(f"Failed to upsert {len(rows)} rows into {table}: {e}") from e
        logger.debug(f"Upserted {len(rows)} rows into {table}")

    # =========================================================================
    # READS
    # =========================================================================

    async def list_calendar_events(
        self,
        user_id: str,
        founder_id: Optional[str] = None,
        company_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[Dict[str, Any]]:
        """Most recent events first."""
        return await self._list(
            "calendar_events", "start_time", user_id, founder_id, company_id, limit
        )

    async def list_email_messages(
        self,
        user_id: str,
        founder_id: Optional[str] = None,
        company_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[Dict[str, Any]]:
        """Most recent messages first."""
        return await self._list(
            "email_messages", "email_date", user_id, founder_id, company_id, limit
        )

    async def _list(
        self,
        table: str,
        order_column: str,
        user_id: str,
        founder_id: Optional[str],
        company_id: Optional[str],
        limit: int,
    ) -> List[Dict[str, Any]]:
        query = f"SELECT * FROM {table} WHERE user_id = ?"
        params: List[Any] = [user_id]

        if founder_id:
            query += " AND founder_id = ?"
            params.append(founder_id)
        if company_id:
            query += " AND company_id = ?"
            params.append(company_id)

        query += f" ORDER BY {order_column} DESC LIMIT ?"
        params.append(limit)

        cursor = await self.db.execute(query, params)
        rows = await cursor.fetchall()
        return [self._row_to_dict(row) for row in rows]

    async def count_for_user(self, user_id: str) -> Dict[str, int]:
        counts = {}
        for table in ("calendar_events", "email_messages"):
            cursor = await self.db.execute(
                f"SELECT COUNT(*) FROM {table} WHERE user_id = ?",
                (user_id,),
            )
            counts[table] = (await cursor.fetchone())[0]
        return counts

    def _row_to_dict(self, row) -> Dict[str, Any]:
        data = dict(row)
        for key in ("attendees", "labels", "metadata"):
            if data.get(key):
                data[key] = json.loads(data[key])
        if "is_all_day" in data:
            data["is_all_day"] = bool(data["is_all_day"])
        return data


@asynccontextmanager
async def communication_store(
    db_path: Union[str, Path] = "comms.db",
) -> AsyncIterator[CommunicationStore]:
    """Context manager for CommunicationStore."""
    store = CommunicationStore(db_path)
    await store.initialize()
    try:
        yield store
    finally:
        await store.close()
