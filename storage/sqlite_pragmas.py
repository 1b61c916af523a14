"""
SQLite connection helpers for the comms sync stores.

Every store opens its connection through open_connection() so the pragma
settings stay identical across the CRM, integration and communication stores,
which usually share one database file.

Usage:
    from storage.sqlite_pragmas import open_connection

    db = await open_connection("comms.db")
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Union

import aiosqlite

logger = logging.getLogger(__name__)

MEMORY_DB = ":memory:"


async def apply_sqlite_pragmas(
    conn: aiosqlite.Connection,
    wal: bool = True,
    busy_timeout_ms: int = 5000,
    foreign_keys: bool = True,
) -> None:
    """
    Apply standard SQLite pragmas.

    Args:
        conn: aiosqlite connection
        wal: Enable WAL mode so a sync can write while the API reads
        busy_timeout_ms: Wait this long on a locked database before failing
        foreign_keys: Enforce referential integrity
    """
    if foreign_keys:
        await conn.execute("PRAGMA foreign_keys = ON")

    if wal:
        await conn.execute("PRAGMA journal_mode = WAL")

    if busy_timeout_ms > 0:
        await conn.execute(f"PRAGMA busy_timeout = {busy_timeout_ms}")

    logger.debug(
        f"Applied SQLite pragmas: WAL={wal}, busy_timeout={busy_timeout_ms}ms, "
        f"foreign_keys={foreign_keys}"
    )


async def open_connection(db_path: Union[str, Path]) -> aiosqlite.Connection:
    """
    Open a connection with pragmas applied and dict-style rows.

    In-memory databases skip WAL (not supported there).
    """
    path = str(db_path)
    if path != MEMORY_DB:
        Path(path).parent.mkdir(parents=True, exist_ok=True)

    conn = await aiosqlite.connect(path)
    conn.row_factory = aiosqlite.Row
    await apply_sqlite_pragmas(conn, wal=path != MEMORY_DB)
    return conn
