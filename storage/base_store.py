"""
Shared plumbing for the aiosqlite stores.

Each store owns one connection and a numbered set of schema migrations
tracked in its own migrations table, so several stores can live in one
database file without stepping on each other's versions.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncIterator, Dict, Optional, Union

import aiosqlite

from storage.sqlite_pragmas import open_connection

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime as ISO-8601, assuming UTC for naive values."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class MigratingStore:
    """
    Base class: connection lifecycle, transactions and migrations.

    Subclasses set MIGRATIONS (version -> SQL script) and MIGRATIONS_TABLE.
    """

    MIGRATIONS: Dict[int, str] = {}
    MIGRATIONS_TABLE = "schema_migrations"
    STORE_NAME = "store"

    def __init__(self, db_path: Union[str, Path] = "comms.db"):
        self.db_path = str(db_path)
        self._db: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Open the connection and apply pending migrations."""
        self._db = await open_connection(self.db_path)
        await self._apply_migrations()
        logger.info(f"{self.STORE_NAME} initialized: {self.db_path}")

    async def close(self) -> None:
        """Close database connection."""
        if self._db:
            await self._db.close()
            self._db = None

    @property
    def db(self) -> aiosqlite.Connection:
        if not self._db:
            raise RuntimeError("Database not initialized")
        return self._db

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """
        Serialize writers on this connection and commit or roll back.

        Cancellation (a sync timing out mid-write) rolls back too, otherwise
        the connection stays inside BEGIN and every later write fails.
        """
        conn = self.db

        async with self._lock:
            try:
                await conn.execute("BEGIN")
                yield conn
                await conn.commit()
            except BaseException:
                await asyncio.shield(conn.rollback())
                raise

    async def _current_version(self) -> int:
        try:
            cursor = await self.db.execute(
                f"SELECT MAX(version) FROM {self.MIGRATIONS_TABLE}"
            )
            row = await cursor.fetchone()
            return row[0] if row and row[0] else 0
        except aiosqlite.OperationalError:
            return 0

    async def _apply_migrations(self) -> None:
        """Apply pending schema migrations."""
        current_version = await self._current_version()

        for version in sorted(self.MIGRATIONS.keys()):
            if version <= current_version:
                continue

            logger.info(f"Applying {self.STORE_NAME} migration v{version}...")

            # executescript commits on its own, so the version row is written
            # only after the script has succeeded.
            await self.db.executescript(self.MIGRATIONS[version])
            async with self.transaction() as conn:
                await conn.execute(
                    f"""
                    INSERT INTO {self.MIGRATIONS_TABLE} (version, applied_at, description)
                    VALUES (?, ?, ?)
                    """,
                    (
                        version,
                        to_iso(utc_now()),
                        f"{self.STORE_NAME} schema version {version}",
                    ),
                )

            logger.info(f"{self.STORE_NAME} migration v{version} applied")
