"""Tests for webhook API endpoints."""

import httpx
import pytest
from fastapi.testclient import TestClient

from outbound.api import create_app
from outbound.config import Settings
from outbound.email.store import InMemoryEmailQueueStore
from outbound.service import OutboundService
from outbound.transport import DeliveryOutcome, HttpTransport
from outbound.webhooks.registry import InMemoryWebhookRegistry
from outbound.webhooks.security import sign

# ============================================================================
# Fixtures
# ============================================================================


class NullSender:
    async def send(self, message):  # noqa: ARG002
        return DeliveryOutcome(success=True)


@pytest.fixture
def receiver_requests():
    return []


@pytest.fixture
def service(receiver_requests):
    """Service with in-memory stores and a fake HTTP endpoint."""

    def handler(request):
        receiver_requests.append(request)
        if request.url.host == "down.example.com":
            raise httpx.ConnectError("Connection refused", request=request)
        return httpx.Response(200, text="ok")

    transport = HttpTransport(httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    return OutboundService(
        email_store=InMemoryEmailQueueStore(),
        registry=InMemoryWebhookRegistry(),
        email_sender=NullSender(),
        transport=transport,
        settings=Settings(EMAIL_POLL_INTERVAL_SECONDS=3600),
    )


@pytest.fixture
def client(service):
    """Test client running the app lifespan."""
    with TestClient(create_app(service)) as test_client:
        yield test_client


TENANT = {"X-Tenant-ID": "org-1"}
OTHER_TENANT = {"X-Tenant-ID": "org-2"}


def create_webhook(client, url="https://hooks.example.com/in", **extra):
    response = client.post("/webhooks", json={"url": url, **extra}, headers=TENANT)
    assert response.status_code == 201
    return response.json()


# ============================================================================
# Create Webhook Tests
# ============================================================================


class TestCreateWebhook:
    """Tests for POST /webhooks endpoint."""

    def test_create_webhook(self, client):
        """Test creating a new webhook."""
        response = client.post(
            "/webhooks",
            json={
                "url": "https://example.com/webhook",
                "name": "Dashboards",
                "events": ["dashboard.created", "dashboard.updated"],
            },
            headers=TENANT,
        )

        assert response.status_code == 201
        data = response.json()
        assert data["id"].startswith("wh_")
        assert data["url"] == "https://example.com/webhook"
        assert data["name"] == "Dashboards"
        assert data["events"] == ["dashboard.created", "dashboard.updated"]
        assert data["is_active"] is True
        assert data["failure_count"] == 0
        assert len(data["secret"]) == 64

    def test_create_defaults_to_all_events(self, client):
        data = create_webhook(client)

        assert data["events"] == ["*"]

    def test_create_invalid_url(self, client):
        """Test invalid URL is rejected."""
        response = client.post(
            "/webhooks", json={"url": "ftp://example.com"}, headers=TENANT
        )

        assert response.status_code == 422

    def test_create_requires_tenant(self, client):
        """Test the tenant header is mandatory."""
        response = client.post("/webhooks", json={"url": "https://example.com"})

        assert response.status_code == 400


# ============================================================================
# Read Tests
# ============================================================================


class TestReadWebhooks:
    """Tests for GET /webhooks endpoints."""

    def test_list_is_tenant_scoped(self, client):
        """Test listing only shows the caller's webhooks."""
        create_webhook(client)
        client.post("/webhooks", json={"url": "https://other.example.com"}, headers=OTHER_TENANT)

        response = client.get("/webhooks", headers=TENANT)

        assert response.status_code == 200
        data = response.json()
        assert len(data) == 1
        assert data[0]["url"] == "https://hooks.example.com/in"

    def test_secret_never_listed(self, client):
        """Test secrets are only returned on creation."""
        created = create_webhook(client)

        listed = client.get("/webhooks", headers=TENANT).json()
        single = client.get(f"/webhooks/{created['id']}", headers=TENANT).json()

        assert "secret" not in listed[0]
        assert "secret" not in single

    def test_get_foreign_webhook(self, client):
        """Test other tenants' webhooks are not found."""
        created = create_webhook(client)

        response = client.get(f"/webhooks/{created['id']}", headers=OTHER_TENANT)

        assert response.status_code == 404

    def test_get_missing(self, client):
        response = client.get("/webhooks/wh_missing", headers=TENANT)

        assert response.status_code == 404
        assert "not found" in response.json()["error"]


# ============================================================================
# Update and Delete Tests
# ============================================================================


class TestUpdateWebhook:
    """Tests for PUT and DELETE /webhooks/{id}."""

    def test_update(self, client):
        created = create_webhook(client)

        response = client.put(
            f"/webhooks/{created['id']}",
            json={"is_active": False, "events": ["user.joined"], "name": "Members"},
            headers=TENANT,
        )

        assert response.status_code == 200
        data = response.json()
        assert data["is_active"] is False
        assert data["events"] == ["user.joined"]
        assert data["name"] == "Members"
        assert data["url"] == created["url"]

    def test_update_clear_events(self, client):
        """Test an empty event list is stored, not widened to all events."""
        created = create_webhook(client, events=["dashboard.created"])

        response = client.put(
            f"/webhooks/{created['id']}", json={"events": []}, headers=TENANT
        )

        assert response.status_code == 200
        assert response.json()["events"] == []

    def test_update_invalid_url(self, client):
        created = create_webhook(client)

        response = client.put(
            f"/webhooks/{created['id']}", json={"url": "nope"}, headers=TENANT
        )

        assert response.status_code == 422

    def test_update_foreign(self, client):
        created = create_webhook(client)

        response = client.put(
            f"/webhooks/{created['id']}", json={"name": "x"}, headers=OTHER_TENANT
        )

        assert response.status_code == 404

    def test_delete(self, client):
        created = create_webhook(client)

        response = client.delete(f"/webhooks/{created['id']}", headers=TENANT)

        assert response.status_code == 204
        assert client.get(f"/webhooks/{created['id']}", headers=TENANT).status_code == 404

    def test_delete_foreign(self, client):
        """Test other tenants cannot delete."""
        created = create_webhook(client)

        response = client.delete(f"/webhooks/{created['id']}", headers=OTHER_TENANT)

        assert response.status_code == 404
        assert client.get(f"/webhooks/{created['id']}", headers=TENANT).status_code == 200


# ============================================================================
# Secret and Test Delivery Tests
# ============================================================================


class TestSecretAndTest:
    """Tests for secret regeneration and test deliveries."""

    def test_regenerate_secret(self, client):
        created = create_webhook(client)

        response = client.post(
            f"/webhooks/{created['id']}/regenerate-secret", headers=TENANT
        )

        assert response.status_code == 200
        secret = response.json()["secret"]
        assert len(secret) == 64
        assert secret != created["secret"]

    def test_regenerate_secret_missing(self, client):
        response = client.post("/webhooks/wh_missing/regenerate-secret", headers=TENANT)

        assert response.status_code == 404

    def test_send_test_event(self, client, receiver_requests):
        """Test the test endpoint reports a successful delivery."""
        created = create_webhook(client)

        response = client.post(f"/webhooks/{created['id']}/test", headers=TENANT)

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["status_code"] == 200
        assert data["response"] == "ok"
        assert data["error"] is None
        request = receiver_requests[-1]
        assert request.headers["X-Webhook-ID"] == created["id"]

    def test_send_test_event_unreachable(self, client):
        """Test the outcome of a refused connection is reported."""
        created = create_webhook(client, url="https://down.example.com/in")

        response = client.post(f"/webhooks/{created['id']}/test", headers=TENANT)

        data = response.json()
        assert data["success"] is False
        assert data["status_code"] is None
        assert "Connection refused" in data["error"]

        listed = client.get(f"/webhooks/{created['id']}", headers=TENANT).json()
        assert listed["failure_count"] == 1

    def test_send_test_event_missing(self, client):
        response = client.post("/webhooks/wh_missing/test", headers=TENANT)

        assert response.status_code == 404


# ============================================================================
# Inbound Webhook Tests
# ============================================================================


class TestIncomingWebhook:
    """Tests for POST /webhooks/incoming/{id}."""

    def test_valid_signature(self, client):
        created = create_webhook(client)
        body = b'{"event":"invoice.paid","data":{"id":"in_1"}}'

        response = client.post(
            f"/webhooks/incoming/{created['id']}",
            content=body,
            headers={
                "Content-Type": "application/json",
                "X-Webhook-Signature": sign(body, created["secret"]),
            },
        )

        assert response.status_code == 200
        assert response.json() == {"received": True}

    def test_invalid_signature(self, client):
        created = create_webhook(client)

        response = client.post(
            f"/webhooks/incoming/{created['id']}",
            content=b"{}",
            headers={"X-Webhook-Signature": sign(b"{}", "wrong-secret")},
        )

        assert response.status_code == 401

    def test_missing_signature(self, client):
        """Test unsigned requests are rejected."""
        created = create_webhook(client)

        response = client.post(f"/webhooks/incoming/{created['id']}", content=b"{}")

        assert response.status_code == 401

    def test_unknown_webhook(self, client):
        response = client.post(
            "/webhooks/incoming/wh_missing",
            content=b"{}",
            headers={"X-Webhook-Signature": "abc"},
        )

        assert response.status_code == 404
