"""
Tests for the FastAPI webhook and admin endpoints.
"""

import json

import pytest
from fastapi.testclient import TestClient

from tenant_sync.api.notion_api import TransientSourceError
from tenant_sync.app_factory import build_services
from tenant_sync.config.settings import Settings
from tenant_sync.web.app import create_app
from tenant_sync.webhook.handler import compute_signature

SECRET = "whsec_test"


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def make_services(db, source, collection_id, tmp_path):
    def _make(**overrides):
        settings = Settings(
            collection_id=collection_id,
            notion_token="secret_token",
            config_dir=tmp_path,
            log_dir=tmp_path / "logs",
            **overrides,
        )
        return build_services(settings, source=source, db=db)

    return _make


@pytest.fixture
def services(make_services):
    return make_services()


@pytest.fixture
def client(services):
    return TestClient(create_app(services, start_scheduler=False))


def page_event(event_type, page_id, parent_id):
    return {
        "type": event_type,
        "entity": {"id": page_id, "type": "page"},
        "data": {"parent": {"id": parent_id, "type": "database"}},
    }


class TestWebhookEndpoint:
    """Tests for POST /api/webhooks/notion."""

    def test_verification_handshake(self, client):
        response = client.post(
            "/api/webhooks/notion", json={"verification_token": "tok-1"}
        )
        assert response.status_code == 200
        assert response.json() == {"challenge": "tok-1"}

    def test_page_event_upserts(self, client, source, db, collection_id):
        source.add("p1", "Acme Corp")

        response = client.post(
            "/api/webhooks/notion", json=page_event("page.created", "p1", collection_id)
        )

        body = response.json()
        assert response.status_code == 200
        assert body["success"] is True
        assert body["action"] == "upserted"
        assert "timestamp" in body
        assert db.get_tenant_count() == 1

    def test_processing_failure_still_returns_200(self, client, source, collection_id):
        source.add("p1", "Acme Corp")
        source.record_errors["p1"] = TransientSourceError("down")

        response = client.post(
            "/api/webhooks/notion", json=page_event("page.updated", "p1", collection_id)
        )

        assert response.status_code == 200
        assert response.json()["success"] is False

    def test_invalid_json(self, client):
        response = client.post(
            "/api/webhooks/notion",
            content=b"{not json",
            headers={"content-type": "application/json"},
        )
        assert response.status_code == 200
        assert response.json()["success"] is False

    def test_unexpected_error_returns_500(self, client, services):
        services.webhook_handler.handle = lambda payload: 1 / 0
        response = client.post("/api/webhooks/notion", json={"type": "page.created"})
        assert response.status_code == 500
        assert response.json()["success"] is False


class TestWebhookSignatures:
    """Tests for signature enforcement when a secret is configured."""

    @pytest.fixture
    def signed_client(self, make_services):
        return TestClient(
            create_app(make_services(webhook_secret=SECRET), start_scheduler=False)
        )

    def test_missing_signature_rejected(self, signed_client):
        response = signed_client.post(
            "/api/webhooks/notion", json={"verification_token": "tok"}
        )
        assert response.status_code == 401

    def test_bad_signature_rejected(self, signed_client):
        response = signed_client.post(
            "/api/webhooks/notion",
            content=b"{}",
            headers={"x-notion-signature": "sha256=deadbeef"},
        )
        assert response.status_code == 401

    def test_valid_signature_accepted(self, signed_client):
        body = json.dumps({"verification_token": "tok"}).encode()
        signature = "sha256=" + compute_signature(SECRET, body)

        response = signed_client.post(
            "/api/webhooks/notion",
            content=body,
            headers={"x-notion-signature": signature, "content-type": "application/json"},
        )

        assert response.status_code == 200
        assert response.json() == {"challenge": "tok"}

    def test_health_reports_signature_verification(self, signed_client):
        body = signed_client.get("/api/webhooks/notion/health").json()
        assert body["config"]["signature_verification"] is True
        assert body["config"]["has_notion_api_key"] is True


class TestAdminEndpoints:
    """Tests for /api/admin/sync."""

    def test_trigger_full_sync(self, client, source):
        source.add("p1", "Acme Corp")

        response = client.post("/api/admin/sync/trigger", json={"kind": "full"})

        assert response.status_code == 200
        body = response.json()
        assert body["kind"] == "full"
        assert body["created"] == 1
        assert body["success"] is True

    def test_trigger_incremental_with_since(self, client, source):
        response = client.post(
            "/api/admin/sync/trigger",
            json={"kind": "incremental", "since": "2024-03-01T00:00:00Z"},
        )
        assert response.status_code == 200
        assert response.json()["since"] == "2024-03-01T00:00:00+00:00"

    def test_trigger_rejects_unknown_kind(self, client):
        response = client.post("/api/admin/sync/trigger", json={"kind": "partial"})
        assert response.status_code == 400

    def test_trigger_conflict_while_running(self, client, services):
        services.engine._run_lock.acquire()
        try:
            response = client.post("/api/admin/sync/trigger", json={"kind": "full"})
        finally:
            services.engine._run_lock.release()

        assert response.status_code == 409
        assert response.json()["detail"] == "Sync already in progress"

    def test_status(self, client, source):
        source.add("p1", "Acme Corp")
        client.post("/api/admin/sync/trigger", json={"kind": "full"})

        body = client.get("/api/admin/sync/status").json()

        assert body["tenants"] == 1
        assert body["totals"] == {"runs": 1, "failed": 0}
        assert body["last_full"]["created"] == 1
        assert body["running"] is False

    def test_health_unhealthy_before_first_run(self, client):
        response = client.get("/api/admin/sync/health")
        assert response.status_code == 503
        assert response.json()["healthy"] is False

    def test_health_after_successful_run(self, services):
        services.scheduler.active_hours = (0, 0)
        client = TestClient(create_app(services, start_scheduler=False))
        client.post("/api/admin/sync/trigger", json={"kind": "full"})

        response = client.get("/api/admin/sync/health")

        assert response.status_code == 200
        assert response.json()["healthy"] is True
