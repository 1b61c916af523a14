"""
CRM Storage Layer: founders and companies.

The sync engine only reads from here. Writes come from CRM user actions
(and from tests / seeding scripts).

Tables:
  - founders: people, with a primary email and ordered email aliases
  - companies: owned by exactly one user, optionally linked to one founder

Usage:
    async with crm_store("comms.db") as store:
        await store.save_founder(Founder(id="f1", name="Jane Doe", email="jane@acme.com"))
        await store.save_company(Company(id="c1", name="Acme", owner_id="u1", founder_id="f1"))

        companies = await store.get_companies_for_owner("u1")
        founders = await store.get_founders_by_ids({"f1"})
"""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import AsyncIterator, Iterable, List, Optional, Union

from storage.base_store import MigratingStore, from_iso, to_iso, utc_now

logger = logging.getLogger(__name__)


CRM_MIGRATIONS = {
    1: """
    CREATE TABLE IF NOT EXISTS founders (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        email TEXT NOT NULL,
        additional_emails TEXT,  -- JSON array, order preserved
        role_title TEXT,
        linkedin TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );

    -- No uniqueness on email: alias collisions are a known, unenforced gap
    CREATE INDEX IF NOT EXISTS idx_founders_email ON founders(email);

    CREATE TABLE IF NOT EXISTS companies (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        website TEXT,
        stage TEXT NOT NULL DEFAULT 'Inbound',
        owner_id TEXT NOT NULL,
        founder_id TEXT REFERENCES founders(id) ON DELETE SET NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_companies_owner ON companies(owner_id);
    CREATE INDEX IF NOT EXISTS idx_companies_founder ON companies(founder_id);

    CREATE TABLE IF NOT EXISTS crm_schema_migrations (
        version INTEGER PRIMARY KEY,
        applied_at TEXT NOT NULL,
        description TEXT
    );
    """
}


@dataclass(frozen=True)
class Founder:
    """A person tracked in the CRM."""
    id: str
    name: str
    email: str
    additional_emails: tuple = ()
    role_title: Optional[str] = None
    linkedin: Optional[str] = None

    @property
    def first_name(self) -> str:
        parts = (self.name or "").strip().lower().split()
        return parts[0] if parts else ""

    @property
    def all_emails(self) -> List[str]:
        """Primary first, then aliases; lower-cased, blanks dropped, de-duplicated."""
        seen = set()
        emails: List[str] = []
        for raw in (self.email, *self.additional_emails):
            if not raw:
                continue
            email = raw.strip().lower()
            if email and email not in seen:
                seen.add(email)
                emails.append(email)
        return emails


@dataclass(frozen=True)
class Company:
    """An investable entity owned by one user."""
    id: str
    name: str
    owner_id: str
    founder_id: Optional[str] = None
    website: Optional[str] = None
    stage: str = "Inbound"
    created_at: datetime = field(default_factory=utc_now, compare=False)


class CrmStore(MigratingStore):
    """Async SQLite storage for founders and companies."""

    MIGRATIONS = CRM_MIGRATIONS
    MIGRATIONS_TABLE = "crm_schema_migrations"
    STORE_NAME = "CrmStore"

    # =========================================================================
    # WRITES (CRM user actions)
    # =========================================================================

    async def save_founder(self, founder: Founder) -> str:
        """Insert or overwrite a founder. Returns the founder id."""
        now = to_iso(utc_now())
        async with self.transaction() as conn:
            await conn.execute(
                """
                INSERT INTO founders (
                    id, name, email, additional_emails, role_title, linkedin,
                    created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name,
                    email = excluded.email,
                    additional_emails = excluded.additional_emails,
                    role_title = excluded.role_title,
                    linkedin = excluded.linkedin,
                    updated_at = excluded.updated_at
                """,
                (
                    founder.id,
                    founder.name,
                    founder.email,
                    json.dumps(list(founder.additional_emails)),
                    founder.role_title,
                    founder.linkedin,
                    now,
                    now,
                ),
            )
        logger.debug(f"Saved founder {founder.id}: {founder.name}")
        return founder.id

    async def save_company(self, company: Company) -> str:
        """Insert or overwrite a company. Returns the company id."""
        now = to_iso(utc_now())
        async with self.transaction() as conn:
            await conn.execute(
                """
                INSERT INTO companies (
                    id, name, website, stage, owner_id, founder_id,
                    created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name,
                    website = excluded.website,
                    stage = excluded.stage,
                    owner_id = excluded.owner_id,
                    founder_id = excluded.founder_id,
                    updated_at = excluded.updated_at
                """,
                (
                    company.id,
                    company.name,
                    company.website,
                    company.stage,
                    company.owner_id,
                    company.founder_id,
                    to_iso(company.created_at),
                    now,
                ),
            )
        logger.debug(f"Saved company {company.id}: {company.name} (owner={company.owner_id})")
        return company.id

    # =========================================================================
    # READS (used by the identity index)
    # =========================================================================

    async def get_companies_for_owner(self, owner_id: str) -> List[Company]:
        """All companies owned by a user, oldest first."""
        cursor = await self.db.execute(
            """
            SELECT id, name, website, stage, owner_id, founder_id, created_at
            FROM companies
            WHERE owner_id = ?
            ORDER BY created_at ASC, id ASC
            """,
            (owner_id,),
        )
        rows = await cursor.fetchall()
        return [self._row_to_company(row) for row in rows]

    async def get_founders_by_ids(self, founder_ids: Iterable[str]) -> List[Founder]:
        """Founders for an id set. Order is unspecified."""
        ids = sorted({fid for fid in founder_ids if fid})
        if not ids:
            return []

        placeholders = ", ".join("?" for _ in ids)
        cursor = await self.db.execute(
            f"""
            SELECT id, name, email, additional_emails, role_title, linkedin
            FROM founders
            WHERE id IN ({placeholders})
            """,
            ids,
        )
        rows = await cursor.fetchall()
        return [self._row_to_founder(row) for row in rows]

    async def get_founder(self, founder_id: str) -> Optional[Founder]:
        founders = await self.get_founders_by_ids([founder_id])
        return founders[0] if founders else None

    def _row_to_founder(self, row) -> Founder:
        aliases = json.loads(row["additional_emails"]) if row["additional_emails"] else []
        return Founder(
            id=row["id"],
            name=row["name"],
            email=row["email"],
            additional_emails=tuple(aliases),
            role_title=row["role_title"],
            linkedin=row["linkedin"],
        )

    def _row_to_company(self, row) -> Company:
        return Company(
            id=row["id"],
            name=row["name"],
            website=row["website"],
            stage=row["stage"],
            owner_id=row["owner_id"],
            founder_id=row["founder_id"],
            created_at=from_iso(row["created_at"]) or utc_now(),
        )


@asynccontextmanager
async def crm_store(
    db_path: Union[str, Path] = "comms.db",
) -> AsyncIterator[CrmStore]:
    """Context manager for CrmStore."""
    store = CrmStore(db_path)
    await store.initialize()
    try:
        yield store
    finally:
        await store.close()
