"""
Comms Sync API

FastAPI backend for triggering syncs and reading synced communications.
Every route is scoped to the user id in the path; rows synced for one user
are never visible under another.

Run:
    uvicorn api.main:app --reload --host 0.0.0.0 --port 8000
"""

import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dotenv import load_dotenv

from resolution.records import Channel
from storage.communication_store import CommunicationStore
from storage.crm_store import CrmStore
from storage.integration_store import IntegrationStore
from workflows.comms_sync import (
    CommsSyncCoordinator,
    SyncConfig,
    SyncErrorKind,
    SyncResult,
    parse_provider,
)

load_dotenv()

logger = logging.getLogger(__name__)

API_VERSION = "1.0.0"

app = FastAPI(
    title="Comms Sync API",
    description="Sync Google Calendar and Gmail into the CRM and read the results",
    version=API_VERSION,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Optional override of how provider adapters are built (tests plug fakes in here)
app.state.adapter_factory = None

RECONNECT_KINDS = {SyncErrorKind.CREDENTIAL_MISSING, SyncErrorKind.CREDENTIAL_EXPIRED}


class HealthResponse(BaseModel):
    status: str
    timestamp: str
    version: str


class SyncResponse(BaseModel):
    user_id: str
    provider: str
    state: str
    ok: bool
    synced_at: Optional[str] = None
    total_fetched: int = 0
    total_matched: int = 0
    total_persisted: int = 0
    skipped_invalid: int = 0
    matches_by_tier: Dict[str, int] = Field(default_factory=dict)
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
    duration_seconds: float = 0.0


class IntegrationStatus(BaseModel):
    user_id: str
    provider: str
    connected: bool
    token_expired: bool = False
    enabled: bool = False
    synced_at: Optional[str] = None


class CommunicationList(BaseModel):
    items: List[Dict[str, Any]]
    total: int


def _db_path() -> str:
    return os.environ.get("COMMS_DB_PATH", "comms.db")


def _channel(provider: str) -> Channel:
    try:
        return parse_provider(provider)
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))


def _raise_for_failure(result: SyncResult) -> None:
    if result.ok:
        return
    detail = {
        "error_kind": result.error_kind.value if result.error_kind else None,
        "message": result.error_message,
        "total_fetched": result.total_fetched,
        "total_persisted": result.total_persisted,
    }
    if result.error_kind in RECONNECT_KINDS:
        detail["message"] = (
            f"{result.error_message}. Please reconnect your Google account in Settings."
        )
        raise HTTPException(status_code=409, detail=detail)
    if result.error_kind in (SyncErrorKind.PROVIDER_UNAVAILABLE, SyncErrorKind.TIMEOUT):
        raise HTTPException(status_code=502, detail=detail)
    raise HTTPException(status_code=500, detail=detail)


@app.get("/health", response_model=HealthResponse, tags=["System"])
async def health_check():
    return HealthResponse(
        status="healthy",
        timestamp=datetime.now(timezone.utc).isoformat(),
        version=API_VERSION,
    )


@app.post("/api/v1/users/{user_id}/sync/{provider}", response_model=SyncResponse, tags=["Sync"])
async def trigger_sync(
    user_id: str,
    provider: str,
    dry_run: bool = Query(False, description="Fetch and resolve without writing"),
):
    """
    Run one sync for the user's calendar or Gmail.

    409 means the user must reconnect the account; 502 means Google was
    unavailable (retry later); 500 means the results could not be stored.
    """
    channel = _channel(provider)
    config = SyncConfig.from_env()
    config.db_path = _db_path()

    crm = CrmStore(config.db_path)
    integrations = IntegrationStore(config.db_path)
    comms = CommunicationStore(config.db_path)

    try:
        await crm.initialize()
        await integrations.initialize()
        await comms.initialize()

        coordinator = CommsSyncCoordinator(
            crm=crm,
            integrations=integrations,
            comms=comms,
            config=config,
            adapter_factory=app.state.adapter_factory,
            dry_run=dry_run,
        )
        result = await coordinator.sync_with_timeout(user_id, channel)
    finally:
        await comms.close()
        await integrations.close()
        await crm.close()

    _raise_for_failure(result)
    data = result.to_dict()
    data.pop("started_at", None)
    data.pop("completed_at", None)
    data.pop("dry_run", None)
    return SyncResponse(**data)


@app.get(
    "/api/v1/users/{user_id}/communications/{provider}",
    response_model=CommunicationList,
    tags=["Communications"],
)
async def list_communications(
    user_id: str,
    provider: str,
    founder_id: Optional[str] = Query(None, description="Only records linked to this founder"),
    company_id: Optional[str] = Query(None, description="Only records linked to this company"),
    limit: int = Query(100, ge=1, le=500, description="Maximum rows"),
):
    """Synced calendar events or email messages, most recent first."""
    channel = _channel(provider)
    store = CommunicationStore(_db_path())

    try:
        await store.initialize()
        if channel == Channel.CALENDAR:
            items = await store.list_calendar_events(user_id, founder_id, company_id, limit)
        else:
            items = await store.list_email_messages(user_id, founder_id, company_id, limit)
        return CommunicationList(items=items, total=len(items))
    finally:
        await store.close()


@app.get(
    "/api/v1/users/{user_id}/integrations/{provider}",
    response_model=IntegrationStatus,
    tags=["Sync"],
)
async def get_integration_status(user_id: str, provider: str):
    """Whether the provider is connected and when it last synced."""
    channel = _channel(provider)
    store = IntegrationStore(_db_path())

    try:
        await store.initialize()
        credential = await store.get_credential(user_id, channel.value)
        checkpoint = await store.get_checkpoint(user_id, channel.value)
    finally:
        await store.close()

    return IntegrationStatus(
        user_id=user_id,
        provider=channel.value,
        connected=credential is not None,
        token_expired=credential.is_expired() if credential else False,
        enabled=checkpoint.enabled if checkpoint else False,
        synced_at=checkpoint.synced_at.isoformat() if checkpoint and checkpoint.synced_at else None,
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
