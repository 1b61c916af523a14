"""
Tests for the Comms Sync API routes.
"""

import tempfile
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from api.main import app
from resolution.records import CalendarEventRecord, Participant
from storage.crm_store import Company, Founder, crm_store
from storage.integration_store import integration_store

EVENT_TIME = datetime(2024, 3, 1, 15, 0, tzinfo=timezone.utc)


class StaticAdapter:
    """Returns the same records for every sync."""

    def __init__(self, records=(), error=None):
        self.records = list(records)
        self.error = error

    def __call__(self, channel, access_token, user_id):
        return self

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return None

    async def fetch(self, window):
        if self.error:
            raise self.error
        return self.records


@pytest.fixture
async def db_path(monkeypatch):
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        path = f.name
    monkeypatch.setenv("COMMS_DB_PATH", path)

    async with crm_store(path) as crm:
        await crm.save_founder(Founder(id="jane", name="Jane Doe", email="jane@acme.com"))
        await crm.save_company(Company(id="acme", name="Acme", owner_id="u1", founder_id="jane"))
    async with integration_store(path) as integrations:
        await integrations.save_credential("u1", "google_calendar", "tok")
        await integrations.save_credential(
            "u1", "gmail", "old", expires_at=datetime.now(timezone.utc) - timedelta(days=1)
        )

    yield path


@pytest.fixture
async def client(db_path):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.state.adapter_factory = None


def intro_event(event_id="evt-1"):
    return CalendarEventRecord(
        external_id=event_id,
        title="Intro call",
        attendees=(Participant(email="jane@acme.com"),),
        start_time=EVENT_TIME,
        end_time=EVENT_TIME + timedelta(minutes=30),
    )


class TestHealth:

    async def test_health(self, client):
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"


class TestSyncRoute:

    async def test_sync_then_read(self, client):
        app.state.adapter_factory = StaticAdapter([intro_event(), intro_event("evt-2")])

        response = await client.post("/api/v1/users/u1/sync/calendar")

        assert response.status_code == 200
        body = response.json()
        assert body["ok"] is True
        assert body["provider"] == "google_calendar"
        assert body["total_fetched"] == 2
        assert body["total_matched"] == 2
        assert body["total_persisted"] == 2

        listing = await client.get("/api/v1/users/u1/communications/calendar", params={"founder_id": "jane"})
        assert listing.status_code == 200
        assert listing.json()["total"] == 2
        assert {item["company_id"] for item in listing.json()["items"]} == {"acme"}

        other_user = await client.get("/api/v1/users/u2/communications/calendar")
        assert other_user.json()["total"] == 0

    async def test_expired_credential_asks_for_reconnect(self, client):
        app.state.adapter_factory = StaticAdapter()

        response = await client.post("/api/v1/users/u1/sync/gmail")

        assert response.status_code == 409
        detail = response.json()["detail"]
        assert detail["error_kind"] == "credential_expired"
        assert "reconnect" in detail["message"]

    async def test_missing_credential(self, client):
        response = await client.post("/api/v1/users/u-nobody/sync/calendar")

        assert response.status_code == 409
        assert response.json()["detail"]["error_kind"] == "credential_missing"

    async def test_provider_down_is_bad_gateway(self, client):
        from providers.errors import ProviderUnavailableError

        app.state.adapter_factory = StaticAdapter(error=ProviderUnavailableError("503", status_code=503))

        response = await client.post("/api/v1/users/u1/sync/calendar")

        assert response.status_code == 502
        assert response.json()["detail"]["error_kind"] == "provider_unavailable"

    async def test_unknown_provider(self, client):
        response = await client.post("/api/v1/users/u1/sync/outlook")

        assert response.status_code == 404

    async def test_dry_run(self, client):
        app.state.adapter_factory = StaticAdapter([intro_event()])

        response = await client.post("/api/v1/users/u1/sync/calendar", params={"dry_run": "true"})

        assert response.status_code == 200
        assert response.json()["total_persisted"] == 0
        listing = await client.get("/api/v1/users/u1/communications/calendar")
        assert listing.json()["total"] == 0


class TestIntegrationRoute:

    async def test_status_before_and_after_sync(self, client):
        before = await client.get("/api/v1/users/u1/integrations/calendar")
        assert before.json()["connected"] is True
        assert before.json()["synced_at"] is None

        app.state.adapter_factory = StaticAdapter()
        await client.post("/api/v1/users/u1/sync/calendar")

        after = await client.get("/api/v1/users/u1/integrations/calendar")
        assert after.json()["enabled"] is True
        assert after.json()["synced_at"] is not None

    async def test_expired_token_reported(self, client):
        response = await client.get("/api/v1/users/u1/integrations/gmail")

        assert response.json()["connected"] is True
        assert response.json()["token_expired"] is True

    async def test_not_connected(self, client):
        response = await client.get("/api/v1/users/u9/integrations/gmail")

        assert response.json()["connected"] is False
