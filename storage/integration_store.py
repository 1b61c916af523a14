"""
Integration Storage: provider credentials and sync checkpoints.

One row per (user, provider). The access credential is written by the OAuth
flow (outside this package) and is read-only for the sync engine; the
checkpoint columns (synced_at, enabled) are written after every successful
sync.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import AsyncIterator, Optional, Union

from storage.base_store import MigratingStore, from_iso, to_iso, utc_now

logger = logging.getLogger(__name__)


INTEGRATION_MIGRATIONS = {
    1: """
    CREATE TABLE IF NOT EXISTS integrations (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT NOT NULL,
        provider TEXT NOT NULL,  -- google_calendar, gmail
        access_token TEXT,
        refresh_token TEXT,
        token_expires_at TEXT,
        enabled BOOLEAN DEFAULT 1,
        synced_at TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        UNIQUE(user_id, provider)
    );

    CREATE TABLE IF NOT EXISTS integration_schema_migrations (
        version INTEGER PRIMARY KEY,
        applied_at TEXT NOT NULL,
        description TEXT
    );
    """
}


@dataclass(frozen=True)
class Credential:
    """Stored OAuth access credential for one provider."""
    access_token: str
    expires_at: Optional[datetime] = None
    refresh_token: Optional[str] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at < (now or utc_now())


@dataclass(frozen=True)
class SyncCheckpoint:
    """Last successful sync for a (user, provider) pair."""
    user_id: str
    provider: str
    synced_at: Optional[datetime]
    enabled: bool = True


class IntegrationStore(MigratingStore):
    """Async SQLite storage for provider credentials and checkpoints."""

    MIGRATIONS = INTEGRATION_MIGRATIONS
    MIGRATIONS_TABLE = "integration_schema_migrations"
    STORE_NAME = "IntegrationStore"

    async def save_credential(
        self,
        user_id: str,
        provider: str,
        access_token: str,
        expires_at: Optional[datetime] = None,
        refresh_token: Optional[str] = None,
    ) -> None:
        """Store a credential. Checkpoint columns are left untouched."""
        now = to_iso(utc_now())
        async with self.transaction() as conn:
            await conn.execute(
                """
                INSERT INTO integrations (
                    user_id, provider, access_token, refresh_token,
                    token_expires_at, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id, provider) DO UPDATE SET
                    access_token = excluded.access_token,
                    refresh_token = excluded.refresh_token,
                    token_expires_at = excluded.token_expires_at,
                    updated_at = excluded.updated_at
                """,
                (
                    user_id,
                    provider,
                    access_token,
                    refresh_token,
                    to_iso(expires_at),
                    now,
                    now,
                ),
            )

    async def get_credential(self, user_id: str, provider: str) -> Optional[Credential]:
        """Credential for (user, provider), or None if never connected."""
        cursor = await self.db.execute(
            """
            SELECT access_token, refresh_token, token_expires_at
            FROM integrations
            WHERE user_id = ? AND provider = ?
            """,
            (user_id, provider),
        )
        row = await cursor.fetchone()
        if not row or not row["access_token"]:
            return None

        return Credential(
            access_token=row["access_token"],
            refresh_token=row["refresh_token"],
            expires_at=from_iso(row["token_expires_at"]),
        )

    async def get_checkpoint(self, user_id: str, provider: str) -> Optional[SyncCheckpoint]:
        cursor = await self.db.execute(
            """
            SELECT user_id, provider, synced_at, enabled
            FROM integrations
            WHERE user_id = ? AND provider = ?
            """,
            (user_id, provider),
        )
        row = await cursor.fetchone()
        if not row or not row["synced_at"]:
            return None

        return SyncCheckpoint(
            user_id=row["user_id"],
            provider=row["provider"],
            synced_at=from_iso(row["synced_at"]),
            enabled=bool(row["enabled"]),
        )

    async def record_checkpoint(
        self,
        user_id: str,
        provider: str,
        synced_at: datetime,
    ) -> SyncCheckpoint:
        """Mark a successful sync; creates the row on first sync."""
        now = to_iso(utc_now())
        async with self.transaction() as conn:
            await conn.execute(
                """
                INSERT INTO integrations (
                    user_id, provider, enabled, synced_at, created_at, updated_at
                )
                VALUES (?, ?, 1, ?, ?, ?)
                ON CONFLICT(user_id, provider) DO UPDATE SET
                    enabled = 1,
                    synced_at = excluded.synced_at,
                    updated_at = excluded.updated_at
                """,
                (user_id, provider, to_iso(synced_at), now, now),
            )

        logger.debug(f"Checkpoint for {user_id}/{provider}: {synced_at.isoformat()}")
        return SyncCheckpoint(
            user_id=user_id,
            provider=provider,
            synced_at=synced_at,
            enabled=True,
        )


@asynccontextmanager
async def integration_store(
    db_path: Union[str, Path] = "comms.db",
) -> AsyncIterator[IntegrationStore]:
    """Context manager for IntegrationStore."""
    store = IntegrationStore(db_path)
    await store.initialize()
    try:
        yield store
    finally:
        await store.close()
