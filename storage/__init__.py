"""
Storage layer for the comms sync engine.

Async SQLite (aiosqlite) stores that can share one database file:
- CrmStore: founders and companies (read by the identity index)
- IntegrationStore: provider credentials and sync checkpoints
- CommunicationStore: upserted calendar events and email messages

Quick start:
    from storage.crm_store import crm_store
    from storage.communication_store import communication_store

    async with crm_store("comms.db") as crm, communication_store("comms.db") as comms:
        companies = await crm.get_companies_for_owner("user-1")
        events = await comms.list_calendar_events("user-1", founder_id="f-1")
"""

from storage.crm_store import Company, CrmStore, Founder, crm_store
from storage.integration_store import (
    Credential,
    IntegrationStore,
    SyncCheckpoint,
    integration_store,
)

__all__ = [
    "Company",
    "CrmStore",
    "Founder",
    "crm_store",
    "Credential",
    "IntegrationStore",
    "SyncCheckpoint",
    "integration_store",
]

__version__ = "1.0.0"
